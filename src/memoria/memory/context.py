"""Assembles the memory context document injected into the assistant prompt."""

import logging
import os
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .models import Entry, parse_timestamp
from .settings import InjectionLimits, load_limits
from .store import EntryStore

logger = logging.getLogger(__name__)

# (title, category) in document order, after the user profile
SECTIONS: tuple[tuple[str, str], ...] = (
    ("Active Goals", "goals"),
    ("Current Projects", "projects"),
    ("People", "people"),
    ("Facts", "facts"),
    ("Preferences", "preferences"),
)


class ContextAssembler:
    """Renders a budgeted snapshot of the store into one markdown document.

    The user profile is inlined as plain content. Every other category lists
    its best-scored active entries up to the configured cap, each followed by
    related entries expanded breadth-first up to relation_depth levels. A key
    never appears twice in one document.
    """

    def __init__(self, store: EntryStore, settings_path: Path, context_path: Path) -> None:
        self.store = store
        self.settings_path = settings_path
        self.context_path = context_path

    def render(self, limits: InjectionLimits | None = None, now: datetime | None = None) -> str:
        """Build the document text without writing it."""
        limits = limits or load_limits(self.settings_path)
        now = now or datetime.now(timezone.utc)
        placed: set[str] = set()
        lines = ["# Memory Context", ""]

        user_entries = self.store.list_category("user", limits.user, now=now)
        if user_entries:
            lines.append("## User")
            for entry in user_entries:
                lines.append(entry.content)
                placed.add(entry.key)
            lines.append("")

        for title, category in SECTIONS:
            entries = self.store.list_category(category, getattr(limits, category), now=now)
            self._add_section(lines, title, entries, placed, limits.relation_depth)

        self._add_section(
            lines, "Timeline", self._timeline(limits, now), placed, limits.relation_depth
        )
        return "\n".join(lines).strip() + "\n"

    def generate(self, limits: InjectionLimits | None = None, now: datetime | None = None) -> str:
        """Render the document and atomically overwrite the context file.

        Returns:
            The document text.
        """
        content = self.render(limits, now)
        self.context_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.context_path.with_name(self.context_path.name + ".tmp")
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, self.context_path)
        logger.debug("Context document written to %s", self.context_path)
        return content

    def read_document(self) -> str | None:
        """Current document text, or None if it was never generated."""
        try:
            return self.context_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _timeline(self, limits: InjectionLimits, now: datetime) -> list[Entry]:
        window = timedelta(days=limits.timeline_days)
        entries = [
            e
            for e in self.store.all_entries("timeline")
            if e.status == "active" and abs(parse_timestamp(e.last_mentioned) - now) <= window
        ]
        entries.sort(key=lambda e: parse_timestamp(e.last_mentioned))
        return entries

    def _add_section(
        self,
        lines: list[str],
        title: str,
        entries: list[Entry],
        placed: set[str],
        depth: int,
    ) -> None:
        entries = [e for e in entries if e.key not in placed]
        if not entries:
            return
        lines.append(f"## {title}")
        placed.update(e.key for e in entries)
        for entry in entries:
            lines.append(self._format_line(entry))
            if depth <= 0:
                continue
            for related, level in self._collect_related(entry.key, depth, placed):
                lines.append(self._format_line(related, level))
                placed.add(related.key)
        lines.append("")

    def _collect_related(
        self, root_key: str, max_depth: int, placed: set[str]
    ) -> list[tuple[Entry, int]]:
        """Active entries reachable from root within max_depth, not yet placed.

        Sorted by level, then key.
        """
        found: dict[str, tuple[Entry, int]] = {}
        seen = {root_key}
        queue = deque([(root_key, 0)])
        while queue:
            key, level = queue.popleft()
            if level >= max_depth:
                continue
            for relation in self.store.get_relations(key):
                other_key = relation.other(key)
                if other_key in seen or other_key in placed:
                    continue
                seen.add(other_key)
                other = self.store.get(other_key)
                if other is None or other.status != "active":
                    continue
                found[other_key] = (other, level + 1)
                queue.append((other_key, level + 1))
        return sorted(found.values(), key=lambda item: (item[1], item[0].key))

    def _format_line(self, entry: Entry, level: int = 0) -> str:
        labels = [
            f"{relation.label_for(entry.key)}: {relation.other(entry.key)}"
            for relation in self.store.get_relations(entry.key)
        ]
        suffix = f" [{', '.join(labels)}]" if labels else ""
        if level == 0:
            return (
                f"- **{entry.key}** (mentioned {entry.mention_count}x, "
                f"last: {entry.last_mentioned[:10]}): {entry.content}{suffix}"
            )
        return f"{'  ' * level}- *(related)* **{entry.key}**: {entry.content}{suffix}"
