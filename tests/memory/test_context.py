"""Tests for the context document assembler."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from memoria.memory import ContextAssembler, EntryStore, InjectionLimits, save_limits

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def set_last_mentioned(store: EntryStore, key: str, when: datetime) -> None:
    conn = store._get_connection()
    conn.execute(
        "UPDATE memory_entries SET last_mentioned = ? WHERE key = ?",
        (when.isoformat(), key),
    )
    conn.commit()


@pytest.fixture
def assembler(store: EntryStore, tmp_path: Path) -> ContextAssembler:
    return ContextAssembler(store, tmp_path / "settings.json", tmp_path / "memory-context.md")


class TestRender:
    """Tests for document layout."""

    def test_empty_store(self, assembler: ContextAssembler):
        assert assembler.render(now=NOW) == "# Memory Context\n"

    def test_user_profile_inlined(self, store: EntryStore, assembler: ContextAssembler):
        store.upsert("user", "name", "The user is called Lucas.")
        store.upsert("user", "job", "Works as a nurse.")
        store.upsert("facts", "other", "Unrelated fact")
        store.add_relation("name", "other", "related_to")

        document = assembler.render(now=NOW)
        assert "## User\n" in document
        assert "The user is called Lucas." in document
        assert "**name**" not in document
        assert "## Facts" in document

    def test_section_order_and_line_format(self, store: EntryStore, assembler: ContextAssembler):
        store.upsert("preferences", "tea", "Prefers green tea")
        store.upsert("goals", "spanish", "Learn Spanish")
        set_last_mentioned(store, "spanish", NOW)

        document = assembler.render(now=NOW)
        assert document.index("## Active Goals") < document.index("## Preferences")
        assert "- **spanish** (mentioned 1x, last: 2026-03-10): Learn Spanish" in document

    def test_marie_nested_once_under_goal(self, store: EntryStore, assembler: ContextAssembler):
        """A related person shows up under the goal, not again under People."""
        store.upsert("people", "marie", "The user's sister")
        store.upsert("goals", "cadeau-marie", "Find a birthday gift for Marie")
        store.add_relation("cadeau-marie", "marie", "involves")

        document = assembler.render(InjectionLimits(relation_depth=1), now=NOW)

        goals = document.split("## Active Goals\n", 1)[1]
        lines = goals.splitlines()
        assert lines[0].startswith("- **cadeau-marie**")
        assert lines[0].endswith("[involves: marie]")
        assert lines[1] == "  - *(related)* **marie**: The user's sister [involved_in: cadeau-marie]"
        assert document.count("**marie**") == 1
        assert "## People" not in document

    def test_depth_zero_disables_expansion(self, store: EntryStore, assembler: ContextAssembler):
        store.upsert("people", "marie", "The user's sister")
        store.upsert("goals", "cadeau-marie", "Find a birthday gift for Marie")
        store.add_relation("cadeau-marie", "marie", "involves")

        document = assembler.render(InjectionLimits(relation_depth=0), now=NOW)
        assert "*(related)*" not in document
        assert "## People\n- **marie**" in document

    def test_bfs_levels_and_cycles(self, store: EntryStore, assembler: ContextAssembler):
        """Cycles terminate and each key appears once, at its shortest depth."""
        store.upsert("projects", "house", "Renovating the house")
        store.upsert("facts", "budget", "Budget is 20000")
        store.upsert("facts", "loan", "Bank loan approved")
        store.add_relation("house", "budget", "depends_on")
        store.add_relation("budget", "loan", "depends_on")
        store.add_relation("loan", "house", "related_to")

        document = assembler.render(InjectionLimits(relation_depth=2), now=NOW)
        projects = document.split("## Current Projects\n", 1)[1].split("\n\n", 1)[0]
        lines = projects.splitlines()
        assert lines[0].startswith("- **house**")
        assert lines[1].startswith("  - *(related)* **budget**")
        assert lines[2].startswith("  - *(related)* **loan**")
        assert len(lines) == 3
        for key in ("house", "budget", "loan"):
            assert document.count(f"**{key}**") == 1

    def test_depth_two_reaches_second_level(self, store: EntryStore, assembler: ContextAssembler):
        store.upsert("projects", "house", "Renovating the house")
        store.upsert("facts", "budget", "Budget is 20000")
        store.upsert("facts", "loan", "Bank loan approved")
        store.add_relation("house", "budget", "depends_on")
        store.add_relation("budget", "loan", "depends_on")

        document = assembler.render(InjectionLimits(relation_depth=2), now=NOW)
        assert "    - *(related)* **loan**" in document
        shallow = assembler.render(InjectionLimits(relation_depth=1), now=NOW)
        assert "*(related)* **loan**" not in shallow
        assert "## Facts\n- **loan**" in shallow

    def test_inactive_related_entries_skipped(self, store: EntryStore, assembler: ContextAssembler):
        store.upsert("projects", "house", "Renovating the house")
        store.upsert("facts", "old-budget", "Budget was 15000", status="stale")
        store.add_relation("house", "old-budget", "related_to")

        document = assembler.render(now=NOW)
        assert "*(related)*" not in document

    def test_category_cap(self, store: EntryStore, assembler: ContextAssembler):
        for i in range(8):
            store.upsert("people", f"person-{i}", f"Person {i}")
        document = assembler.render(InjectionLimits(people=3), now=NOW)
        people = document.split("## People\n", 1)[1]
        assert len([line for line in people.splitlines() if line.startswith("- **")]) == 3

    def test_timeline_window_is_chronological(self, store: EntryStore, assembler: ContextAssembler):
        store.upsert("timeline", "dentist", "Dentist appointment")
        store.upsert("timeline", "trip", "Trip to Rome")
        store.upsert("timeline", "old-move", "Moved flats")
        set_last_mentioned(store, "dentist", NOW + timedelta(days=3))
        set_last_mentioned(store, "trip", NOW - timedelta(days=2))
        set_last_mentioned(store, "old-move", NOW - timedelta(days=40))

        document = assembler.render(InjectionLimits(timeline_days=14), now=NOW)
        timeline = document.split("## Timeline\n", 1)[1]
        assert timeline.index("**trip**") < timeline.index("**dentist**")
        assert "old-move" not in document


class TestGenerate:
    """Tests for writing the document."""

    def test_generate_writes_file(self, store: EntryStore, assembler: ContextAssembler):
        store.upsert("facts", "city", "Lives in Lyon")
        content = assembler.generate(now=NOW)
        assert assembler.context_path.read_text(encoding="utf-8") == content
        assert assembler.read_document() == content
        assert not assembler.context_path.with_name("memory-context.md.tmp").exists()

    def test_read_document_before_generate(self, assembler: ContextAssembler):
        assert assembler.read_document() is None

    def test_uses_persisted_limits(self, store: EntryStore, assembler: ContextAssembler):
        for i in range(4):
            store.upsert("facts", f"fact-{i}", f"Fact {i}")
        save_limits(assembler.settings_path, facts=2)

        document = assembler.generate(now=NOW)
        assert document.count("- **fact-") == 2
