"""Data models for the memory store."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

Category = Literal["user", "preferences", "goals", "facts", "projects", "people", "timeline"]
Status = Literal["active", "completed", "paused", "stale"]
OriginType = Literal["user_statement", "conversation", "inferred"]
RelationType = Literal["involves", "part_of", "related_to", "depends_on"]

CATEGORIES: tuple[str, ...] = (
    "user",
    "preferences",
    "goals",
    "facts",
    "projects",
    "people",
    "timeline",
)
STATUSES: tuple[str, ...] = ("active", "completed", "paused", "stale")
ORIGIN_TYPES: tuple[str, ...] = ("user_statement", "conversation", "inferred")
RELATION_TYPES: tuple[str, ...] = ("involves", "part_of", "related_to", "depends_on")

# Label shown on the target side of a relation
INVERSE_LABELS: dict[str, str] = {
    "involves": "involved_in",
    "part_of": "includes",
    "related_to": "related_to",
    "depends_on": "required_by",
}


def utc_now() -> str:
    """Current time as an ISO 8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Entry:
    """A single fact, person, project, goal... stored in memory.

    Attributes:
        id: Opaque unique identifier.
        category: One of CATEGORIES.
        key: Globally unique slug (e.g. 'cadeau-marie').
        content: Current-state snapshot, replaced wholesale on update.
        status: One of STATUSES.
        mention_count: Number of times written or referenced. Never decreases.
        last_mentioned: ISO timestamp of the last write or bump.
        created_at: ISO timestamp of creation.
        origin_type: How the information was obtained.
        origin_summary: Optional note on where it came from.
        embedding: Vector for semantic search, None until computed.
        embedding_text: Text the stored embedding was computed from.
        embedding_dirty: True when the embedding is stale.
    """

    id: str
    category: str
    key: str
    content: str
    status: str = "active"
    mention_count: int = 1
    last_mentioned: str = field(default_factory=utc_now)
    created_at: str = field(default_factory=utc_now)
    origin_type: str = "conversation"
    origin_summary: str | None = None
    embedding: list[float] | None = None
    embedding_text: str | None = None
    embedding_dirty: bool = False


@dataclass(frozen=True)
class Relation:
    """Directed, typed edge between two entries."""

    source_key: str
    target_key: str
    relation_type: str

    def other(self, key: str) -> str:
        """Return the endpoint opposite to key."""
        return self.target_key if self.source_key == key else self.source_key

    def label_for(self, key: str) -> str:
        """Relation label as seen from key (inverse label on the target side)."""
        if self.source_key == key:
            return self.relation_type
        return INVERSE_LABELS.get(self.relation_type, self.relation_type)


@dataclass
class Exchange:
    """One user turn plus one assistant turn, with conversation metadata.

    Exchanges are never persisted as rows: they live in in-memory buffers and
    in the trace log. memory_summary is attached after the writer processed
    the batch containing this exchange.
    """

    channel: str
    conversation_name: str
    user_message: str
    assistant_response: str
    timestamp: str = field(default_factory=utc_now)
    conversation_id: str | None = None
    memory_summary: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "Exchange":
        """Build an exchange from a JSON-like dict, ignoring unknown keys."""
        return cls(
            channel=str(data.get("channel", "")),
            conversation_name=str(data.get("conversation_name", "")),
            user_message=str(data.get("user_message", "")),
            assistant_response=str(data.get("assistant_response", "")),
            timestamp=str(data.get("timestamp") or utc_now()),
            conversation_id=data.get("conversation_id"),
            memory_summary=data.get("memory_summary"),
        )

    def to_xml(self) -> str:
        """Render as the <exchange> block used in agent prompts."""
        return (
            f'<exchange channel="{self.channel}" conversation="{self.conversation_name}" '
            f'time="{self.timestamp}">\n'
            f"<user>{self.user_message}</user>\n"
            f"<assistant>{self.assistant_response}</assistant>\n"
            f"</exchange>"
        )


@dataclass
class SearchHit:
    """One hybrid search result."""

    entry: Entry
    score: float
    match_type: Literal["vector", "keyword", "both"] = "both"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp, treating naive values and 'Z' as UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def recency_score(entry: Entry, now: datetime | None = None) -> float:
    """Frequency x recency score: mention_count / (days since last mention + 1)."""
    now = now or datetime.now(timezone.utc)
    days = (now - parse_timestamp(entry.last_mentioned)).total_seconds() / 86400
    return entry.mention_count / (max(days, 0.0) + 1)
