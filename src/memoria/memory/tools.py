"""Memory tools exposed to the retrieval and writer agents."""

from enum import Enum
from typing import Any

from ..errors import HasRelationsError, NotFoundError
from ..tools.base import Tool, ToolResult
from ..tools.registry import ToolRegistry
from .embeddings import embed_entry
from .formatting import format_entry, truncate
from .models import CATEGORIES, ORIGIN_TYPES, RELATION_TYPES, STATUSES
from .search import MemorySearcher
from .store import EntryStore

DEPTH_SCHEMA = {
    "type": "integer",
    "minimum": 0,
    "maximum": 3,
    "description": (
        "Relation depth: 0=keys only, 1=direct relations with content (default), "
        "2-3=deeper"
    ),
}


class ToolAccess(Enum):
    """Which memory tools an agent phase may use."""

    NONE = "none"
    READ_ONLY = "read_only"
    BUMP = "bump"
    FULL = "full"


READ_TOOLS = ("search_memory", "get_entry", "list_category")
WRITE_TOOLS = ("upsert_entry", "bump_mention", "delete_entry", "add_relation", "remove_relation")

ACCESS_TOOLS: dict[ToolAccess, tuple[str, ...]] = {
    ToolAccess.NONE: (),
    ToolAccess.READ_ONLY: READ_TOOLS,
    ToolAccess.BUMP: READ_TOOLS + ("bump_mention",),
    ToolAccess.FULL: READ_TOOLS + WRITE_TOOLS,
}


class MemoryTool(Tool):
    """Shared plumbing for tools operating on the entry store."""

    def __init__(self, searcher: MemorySearcher) -> None:
        """Initialize with a searcher.

        Args:
            searcher: Hybrid searcher; its store is used for direct access.
        """
        self.searcher = searcher

    @property
    def store(self) -> EntryStore:
        return self.searcher.store


class SearchMemoryTool(MemoryTool):
    """Hybrid search over the store."""

    @property
    def name(self) -> str:
        return "search_memory"

    @property
    def description(self) -> str:
        return (
            "Search memory entries by meaning and keywords (hybrid semantic + "
            "full-text + fuzzy). Results include content summaries of related "
            "entries. If results look incomplete, retry with depth=2 or depth=3 "
            "to discover entries connected through intermediaries."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What to look for"},
                "category": {
                    "type": "string",
                    "enum": list(CATEGORIES),
                    "description": "Restrict results to one category",
                },
                "limit": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": 30,
                    "description": "Max results (default 10)",
                },
                "depth": DEPTH_SCHEMA,
            },
            "required": ["query"],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        query = kwargs["query"]
        hits = await self.searcher.search(
            query, limit=kwargs.get("limit", 10), category=kwargs.get("category")
        )
        if not hits:
            return ToolResult(success=True, output=f'No entries found for "{query}".')

        depth = kwargs.get("depth", 1)
        visited: set[str] = set()
        blocks = [
            f"[score: {hit.score:.3f}, match: {hit.match_type}]\n"
            + format_entry(self.store, hit.entry, depth=depth, visited=visited)
            for hit in hits
        ]
        return ToolResult(
            success=True,
            output="\n\n---\n\n".join(blocks),
            metadata={"keys": [hit.entry.key for hit in hits]},
        )


class GetEntryTool(MemoryTool):
    """Fetch one entry by key."""

    @property
    def name(self) -> str:
        return "get_entry"

    @property
    def description(self) -> str:
        return (
            "Get one entry by its exact key, with content summaries of related "
            "entries. Use depth=2 or depth=3 to see deeper connections."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "key": {"type": "string", "description": "Entry key"},
                "depth": DEPTH_SCHEMA,
            },
            "required": ["key"],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        key = kwargs["key"]
        entry = self.store.get(key)
        if entry is None:
            return ToolResult(success=False, output="", error=f'Entry "{key}" not found')
        return ToolResult(
            success=True,
            output=format_entry(self.store, entry, depth=kwargs.get("depth", 1)),
        )


class ListCategoryTool(MemoryTool):
    """List the best-scored active entries of a category."""

    @property
    def name(self) -> str:
        return "list_category"

    @property
    def description(self) -> str:
        return (
            "List active entries in a category, ordered by relevance score "
            "(frequency x recency)."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "category": {
                    "type": "string",
                    "enum": list(CATEGORIES),
                    "description": "Category to list",
                },
                "limit": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": 50,
                    "description": "Max results (default 20)",
                },
            },
            "required": ["category"],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        category = kwargs["category"]
        entries = self.store.list_category(category, kwargs.get("limit", 20))
        if not entries:
            return ToolResult(success=True, output=f'No active entries in "{category}".')
        return ToolResult(
            success=True,
            output="\n\n---\n\n".join(format_entry(self.store, e) for e in entries),
        )


class UpsertEntryTool(MemoryTool):
    """Create or rewrite an entry, reporting possibly affected entries."""

    @property
    def name(self) -> str:
        return "upsert_entry"

    @property
    def description(self) -> str:
        return (
            "Create a new memory entry or rewrite an existing one. If the key "
            "exists, the content is fully replaced and mention_count is "
            "incremented.\n\n"
            "The response lists related entries found in the database. If one "
            "holds the SAME information, merge them. If one is AFFECTED by this "
            "change, update it too.\n\n"
            "Write a current-state snapshot (what IS true now, not what "
            "happened), 2-5 sentences. When updating, rewrite entirely."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "category": {
                    "type": "string",
                    "enum": list(CATEGORIES),
                    "description": "Entry category",
                },
                "key": {
                    "type": "string",
                    "description": 'Unique key (lowercase, hyphens, e.g. "cadeau-marie")',
                },
                "content": {
                    "type": "string",
                    "description": "Current-state description (2-5 sentences)",
                },
                "status": {
                    "type": "string",
                    "enum": list(STATUSES),
                    "description": "Entry status (default: active)",
                },
                "origin_type": {
                    "type": "string",
                    "enum": list(ORIGIN_TYPES),
                    "description": "How this info was obtained (default: conversation)",
                },
                "origin_summary": {
                    "type": "string",
                    "description": "Brief note on origin context",
                },
            },
            "required": ["category", "key", "content"],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        category = kwargs["category"]
        key = kwargs["key"].strip()
        content = kwargs["content"]

        query_embedding = await self.searcher.embed_query(f"[{category}] {key}: {content}")
        related = [
            hit
            for hit in self.store.hybrid_search(content, query_embedding, limit=5)
            if hit.entry.key != key
        ]

        try:
            entry = self.store.upsert(
                category,
                key,
                content,
                status=kwargs.get("status"),
                origin_type=kwargs.get("origin_type"),
                origin_summary=kwargs.get("origin_summary"),
            )
        except ValueError as e:
            return ToolResult(success=False, output="", error=str(e))

        embedded = await embed_entry(self.store, self.searcher.embedder, key)
        action = "Updated" if entry.mention_count > 1 else "Created"
        output = f'{action} entry "{key}" in {category}.'
        if not embedded:
            output += " (embedding deferred, keyword search only for now)"
        if related:
            lines = [
                f"  - [{hit.entry.category}] {hit.entry.key} (score: {hit.score:.3f}, "
                f"match: {hit.match_type}): {truncate(hit.entry.content, 120)}"
                for hit in related
            ]
            output += (
                "\n\nRelated entries in database:\n"
                + "\n".join(lines)
                + "\nReview: if any of these contain the SAME information, merge them. "
                "If any are affected by this change, update them too."
            )
        return ToolResult(success=True, output=output, metadata={"key": key, "action": action})


class BumpMentionTool(MemoryTool):
    """Record a reference to an entry without changing it."""

    @property
    def name(self) -> str:
        return "bump_mention"

    @property
    def description(self) -> str:
        return (
            "Increment mention count and update timestamp for an entry, without "
            "changing its content. Use when something is referenced but nothing changed."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "key": {"type": "string", "description": "The entry key to bump"},
            },
            "required": ["key"],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        key = kwargs["key"]
        if not self.store.bump(key):
            return ToolResult(success=True, output=f'Entry "{key}" not found.')
        return ToolResult(success=True, output=f'Bumped "{key}".')


class DeleteEntryTool(MemoryTool):
    """Delete an entry once its relations have been handled."""

    @property
    def name(self) -> str:
        return "delete_entry"

    @property
    def description(self) -> str:
        return (
            "Delete a memory entry. REFUSES while the entry still has relations: "
            "remove or transfer them first with remove_relation/add_relation, and "
            "check whether the connected entries need updating too."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "key": {"type": "string", "description": "The entry key to delete"},
            },
            "required": ["key"],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        key = kwargs["key"]
        entry = self.store.get(key)
        if entry is None:
            return ToolResult(success=True, output=f'Entry "{key}" not found.')
        try:
            self.store.delete(key)
        except HasRelationsError as e:
            lines = []
            for relation in e.relations:
                direction = "outgoing" if relation.source_key == key else "incoming"
                lines.append(
                    f"  - {direction} {relation.relation_type}: {relation.other(key)}"
                )
            return ToolResult(
                success=False,
                output="\n".join(lines),
                error=(
                    f'Cannot delete "{key}": it has {len(e.relations)} relation(s). '
                    "Remove or transfer them first, then retry."
                ),
            )
        return ToolResult(success=True, output=f'Deleted entry "{key}" (was in {entry.category}).')


class AddRelationTool(MemoryTool):
    """Link two existing entries."""

    @property
    def name(self) -> str:
        return "add_relation"

    @property
    def description(self) -> str:
        return "Create a directional link between two entries. Both entries must exist."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "source_key": {"type": "string", "description": "Source entry key"},
                "target_key": {"type": "string", "description": "Target entry key"},
                "relation_type": {
                    "type": "string",
                    "enum": list(RELATION_TYPES),
                    "description": "Type of relation",
                },
            },
            "required": ["source_key", "target_key", "relation_type"],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        source, target, relation_type = (
            kwargs["source_key"],
            kwargs["target_key"],
            kwargs["relation_type"],
        )
        try:
            created = self.store.add_relation(source, target, relation_type)
        except (NotFoundError, ValueError) as e:
            return ToolResult(success=False, output="", error=str(e))
        arrow = f"{source} -[{relation_type}]-> {target}"
        return ToolResult(
            success=True,
            output=f"Linked: {arrow}" if created else f"Already linked: {arrow}",
        )


class RemoveRelationTool(MemoryTool):
    """Unlink two entries."""

    @property
    def name(self) -> str:
        return "remove_relation"

    @property
    def description(self) -> str:
        return (
            "Remove relations between two entries. With relation_type, removes only "
            "that source->target relation; without it, removes every relation "
            "between the two keys in both directions."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "source_key": {"type": "string", "description": "Source entry key"},
                "target_key": {"type": "string", "description": "Target entry key"},
                "relation_type": {
                    "type": "string",
                    "enum": list(RELATION_TYPES),
                    "description": "Only remove this type of relation",
                },
            },
            "required": ["source_key", "target_key"],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        source, target = kwargs["source_key"], kwargs["target_key"]
        removed = self.store.remove_relation(source, target, kwargs.get("relation_type"))
        if not removed:
            return ToolResult(
                success=True, output=f'No relations found between "{source}" and "{target}".'
            )
        return ToolResult(
            success=True,
            output=f'Removed {removed} relation(s) between "{source}" and "{target}".',
        )


def build_memory_registry(searcher: MemorySearcher, access: ToolAccess) -> ToolRegistry:
    """Registry with the memory tools allowed for an access level."""
    tools: list[Tool] = [
        SearchMemoryTool(searcher),
        GetEntryTool(searcher),
        ListCategoryTool(searcher),
        UpsertEntryTool(searcher),
        BumpMentionTool(searcher),
        DeleteEntryTool(searcher),
        AddRelationTool(searcher),
        RemoveRelationTool(searcher),
    ]
    return ToolRegistry(tools).subset(ACCESS_TOOLS[access])
