"""Text rendering of entries and their relation neighbourhood."""

from collections import deque

from .models import Entry, Relation
from .store import EntryStore

MAX_RELATED_LENGTH = 150


def truncate(text: str, length: int) -> str:
    """Cut text to length characters, marking the cut with '...'."""
    return text if len(text) <= length else text[:length] + "..."


def _arrow(relation: Relation) -> str:
    return f"{relation.source_key} -[{relation.relation_type}]-> {relation.target_key}"


def format_entry(
    store: EntryStore,
    entry: Entry,
    depth: int = 1,
    max_related_length: int = MAX_RELATED_LENGTH,
    visited: set[str] | None = None,
) -> str:
    """Render an entry with its relations expanded breadth-first.

    depth=0 lists relation arrows only. depth>=1 walks the relation graph
    level by level, showing a content summary for each newly reached entry.
    Entries already in `visited` are referenced as "(see above)"; pass the
    same set across calls to avoid expanding a neighbour twice.

    Args:
        store: Store used to resolve relations and related entries.
        entry: Entry to render.
        depth: Number of relation levels to expand.
        max_related_length: Truncation length for related content.
        visited: Keys already rendered. Updated in place.

    Returns:
        Multi-line text block.
    """
    visited = visited if visited is not None else set()
    visited.add(entry.key)

    header = (
        f"[{entry.category}] {entry.key} (status: {entry.status}, "
        f"mentions: {entry.mention_count}, last: {entry.last_mentioned})"
    )
    relations = store.get_relations(entry.key)
    if not relations:
        return f"{header}\n{entry.content}"
    if depth <= 0:
        arrows = ", ".join(_arrow(r) for r in relations)
        return f"{header}\n{entry.content}\nRelations: {arrows}"

    queue = deque((entry.key, relation, 1) for relation in relations)
    lines = []
    while queue:
        parent_key, relation, level = queue.popleft()
        if level > depth:
            continue
        other_key = relation.other(parent_key)
        indent = "  " * level
        if other_key in visited:
            lines.append(f"{indent}{_arrow(relation)} (see above)")
            continue
        related = store.get(other_key)
        if related is None:
            lines.append(f"{indent}{_arrow(relation)} (entry not found)")
            continue

        visited.add(other_key)
        lines.append(
            f"{indent}{_arrow(relation)}\n"
            f"{indent}  [{related.category}] {other_key}: "
            f"{truncate(related.content, max_related_length)}"
        )
        if level < depth:
            for sub in store.get_relations(other_key):
                if sub.other(other_key) not in visited:
                    queue.append((other_key, sub, level + 1))

    return f"{header}\n{entry.content}\nRelations:\n" + "\n".join(lines)


def format_pre_context(store: EntryStore, keys: list[str]) -> str:
    """Full content plus direct relations of each entry, for injection.

    Unknown keys are skipped. Returns an empty string when nothing resolves.
    """
    blocks = []
    for key in keys:
        entry = store.get(key)
        if entry is None:
            continue
        lines = [f"- **{entry.key}** [{entry.category}]: {entry.content}"]
        for relation in store.get_relations(key):
            other = store.get(relation.other(key))
            if other is None:
                continue
            lines.append(
                f"  - {relation.label_for(key)} **{other.key}** "
                f"[{other.category}]: {truncate(other.content, MAX_RELATED_LENGTH)}"
            )
        blocks.append("\n".join(lines))
    return "\n".join(blocks)
