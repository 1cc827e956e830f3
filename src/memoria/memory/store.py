"""SQLite storage for memory entries and their relation graph.

Three search channels are kept in sync with every write:

- an FTS5 table for prefix full-text matching,
- an in-memory token vocabulary for typo-tolerant fuzzy matching,
- float32 embedding blobs compared by cosine similarity.
"""

import difflib
import logging
import re
import sqlite3
import unicodedata
import uuid
from datetime import datetime, timezone
from pathlib import Path

import numpy as np

from ..errors import HasRelationsError, NotFoundError
from .models import (
    CATEGORIES,
    ORIGIN_TYPES,
    RELATION_TYPES,
    STATUSES,
    Entry,
    Relation,
    SearchHit,
    recency_score,
    utc_now,
)

logger = logging.getLogger(__name__)

VECTOR_WEIGHT = 0.6
KEYWORD_WEIGHT = 0.4
FUZZY_PENALTY = 0.7
FUZZY_CUTOFF = 0.75
FUZZY_MIN_TOKEN = 3
RELATED_SUMMARY_LENGTH = 100

_FTS_SPECIAL = re.compile(r"""["'()*:^~{}<>@#$%&!?.,;/\\\[\]+=|`-]""")
_WORD = re.compile(r"\w+", re.UNICODE)


def _in_clause(values: tuple[str, ...]) -> str:
    return ", ".join(f"'{v}'" for v in values)


def _fold(text: str) -> str:
    """Lowercase and strip diacritics, like the FTS5 unicode61 tokenizer."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def tokenize(text: str) -> list[str]:
    """Split text into folded word tokens."""
    return _WORD.findall(_fold(text))


def build_fts_query(text: str) -> str | None:
    """Build an FTS5 MATCH expression of OR-ed prefix terms.

    Returns None when no usable term (2+ characters) remains.
    """
    words = [w for w in _FTS_SPECIAL.sub(" ", text).split() if len(w) >= 2]
    if not words:
        return None
    return " OR ".join(f'"{w}"*' for w in words)


def _to_blob(embedding: list[float]) -> bytes:
    return np.asarray(embedding, dtype=np.float32).tobytes()


def _from_blob(blob: bytes | None) -> list[float] | None:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype=np.float32).tolist()


class EntryStore:
    """Persistent storage for entries and relations using SQLite.

    Keys are globally unique across categories. Every content or relation
    change marks the affected entries' embeddings dirty; vectors are
    regenerated later by refresh_dirty_embeddings().
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the store with a database path.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        # token -> keys containing it, and key -> its tokens
        self._vocab: dict[str, set[str]] = {}
        self._key_tokens: dict[str, set[str]] = {}

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    def init_db(self) -> None:
        """Create tables if needed and rebuild the fuzzy index."""
        conn = self._get_connection()
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS memory_entries (
                id              TEXT PRIMARY KEY,
                category        TEXT NOT NULL CHECK (category IN ({_in_clause(CATEGORIES)})),
                key             TEXT NOT NULL UNIQUE,
                content         TEXT NOT NULL,
                status          TEXT NOT NULL DEFAULT 'active'
                                CHECK (status IN ({_in_clause(STATUSES)})),
                mention_count   INTEGER NOT NULL DEFAULT 1,
                last_mentioned  TEXT NOT NULL,
                created_at      TEXT NOT NULL,
                origin_type     TEXT NOT NULL DEFAULT 'conversation'
                                CHECK (origin_type IN ({_in_clause(ORIGIN_TYPES)})),
                origin_summary  TEXT,
                embedding       BLOB,
                embedding_text  TEXT,
                embedding_dirty INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS memory_relations (
                source_key      TEXT NOT NULL REFERENCES memory_entries(key),
                target_key      TEXT NOT NULL REFERENCES memory_entries(key),
                relation_type   TEXT NOT NULL
                                CHECK (relation_type IN ({_in_clause(RELATION_TYPES)})),
                created_at      TEXT NOT NULL,
                PRIMARY KEY (source_key, target_key, relation_type)
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_entries_category ON memory_entries(category)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_relations_target ON memory_relations(target_key)"
        )
        conn.execute("""
            CREATE VIRTUAL TABLE IF NOT EXISTS memory_fts USING fts5(
                entry_key UNINDEXED,
                content,
                tokenize = 'unicode61 remove_diacritics 2'
            )
        """)
        conn.commit()
        self._rebuild_fuzzy_index()

    def close(self) -> None:
        """Checkpoint the WAL and close the database connection."""
        if self._conn is not None:
            try:
                self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            except sqlite3.Error as e:
                logger.warning("WAL checkpoint failed on close: %s", e)
            self._conn.close()
            self._conn = None
        self._vocab.clear()
        self._key_tokens.clear()

    @property
    def total_changes(self) -> int:
        """Rows modified since the connection was opened."""
        return self._get_connection().total_changes

    # -- entries -----------------------------------------------------------

    def get(self, key: str) -> Entry | None:
        """Get an entry by key, or None if it does not exist."""
        row = self._get_connection().execute(
            "SELECT * FROM memory_entries WHERE key = ?", (key,)
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def require(self, key: str) -> Entry:
        """Get an entry by key.

        Raises:
            NotFoundError: If no entry has this key.
        """
        entry = self.get(key)
        if entry is None:
            raise NotFoundError(key)
        return entry

    def upsert(
        self,
        category: str,
        key: str,
        content: str,
        status: str | None = None,
        origin_type: str | None = None,
        origin_summary: str | None = None,
    ) -> Entry:
        """Create an entry or fully overwrite an existing one.

        Content is replaced, never appended. mention_count is incremented on
        every upsert of an existing key and the embedding is marked dirty.

        Args:
            category: One of CATEGORIES.
            key: Globally unique slug.
            content: Current-state content.
            status: One of STATUSES. Kept unchanged on update when None.
            origin_type: One of ORIGIN_TYPES. Kept unchanged on update when None.
            origin_summary: Optional provenance note. Kept unchanged when None.

        Returns:
            The stored entry.

        Raises:
            ValueError: On an empty key or content, or an unknown enum value.
        """
        key = key.strip()
        if not key:
            raise ValueError("key must not be empty")
        if not content or not content.strip():
            raise ValueError("content must not be empty")
        if category not in CATEGORIES:
            raise ValueError(f"Unknown category: {category}")
        if status is not None and status not in STATUSES:
            raise ValueError(f"Unknown status: {status}")
        if origin_type is not None and origin_type not in ORIGIN_TYPES:
            raise ValueError(f"Unknown origin_type: {origin_type}")

        conn = self._get_connection()
        now = utc_now()
        if self.get(key) is None:
            conn.execute(
                """
                INSERT INTO memory_entries (
                    id, category, key, content, status, mention_count,
                    last_mentioned, created_at, origin_type, origin_summary,
                    embedding_dirty
                ) VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?, ?, 1)
                """,
                (
                    uuid.uuid4().hex,
                    category,
                    key,
                    content,
                    status or "active",
                    now,
                    now,
                    origin_type or "conversation",
                    origin_summary,
                ),
            )
        else:
            conn.execute(
                """
                UPDATE memory_entries SET
                    category = ?,
                    content = ?,
                    status = COALESCE(?, status),
                    origin_type = COALESCE(?, origin_type),
                    origin_summary = COALESCE(?, origin_summary),
                    mention_count = mention_count + 1,
                    last_mentioned = ?,
                    embedding_dirty = 1
                WHERE key = ?
                """,
                (category, content, status, origin_type, origin_summary, now, key),
            )
        self._sync_search_index(conn, key, content)
        conn.commit()
        return self.require(key)

    def bump(self, key: str) -> bool:
        """Increment mention_count and touch last_mentioned.

        Returns:
            False if the entry does not exist (no-op), True otherwise.
        """
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE memory_entries
            SET mention_count = mention_count + 1, last_mentioned = ?
            WHERE key = ?
            """,
            (utc_now(), key),
        )
        conn.commit()
        return cursor.rowcount > 0

    def delete(self, key: str) -> bool:
        """Delete an entry that has no relations.

        Returns:
            True if an entry was deleted, False if it did not exist.

        Raises:
            HasRelationsError: If any relation references the entry. Nothing
                is modified in that case.
        """
        relations = self.get_relations(key)
        if relations:
            raise HasRelationsError(key, relations)
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM memory_entries WHERE key = ?", (key,))
        conn.execute("DELETE FROM memory_fts WHERE entry_key = ?", (key,))
        conn.commit()
        self._remove_fuzzy(key)
        return cursor.rowcount > 0

    def list_category(
        self,
        category: str,
        limit: int = 20,
        now: datetime | None = None,
    ) -> list[Entry]:
        """List active entries of a category, best-scored first.

        Score is mention_count / (days since last mention + 1).
        """
        if limit <= 0:
            return []
        rows = self._get_connection().execute(
            "SELECT * FROM memory_entries WHERE category = ? AND status = 'active'",
            (category,),
        ).fetchall()
        entries = [self._row_to_entry(row) for row in rows]
        now = now or datetime.now(timezone.utc)
        entries.sort(key=lambda e: recency_score(e, now), reverse=True)
        return entries[:limit]

    def all_entries(self, category: str | None = None) -> list[Entry]:
        """Return every entry, optionally restricted to one category."""
        conn = self._get_connection()
        if category is None:
            rows = conn.execute("SELECT * FROM memory_entries ORDER BY key").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM memory_entries WHERE category = ? ORDER BY key",
                (category,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def count(self) -> int:
        """Number of stored entries."""
        row = self._get_connection().execute(
            "SELECT COUNT(*) AS n FROM memory_entries"
        ).fetchone()
        return row["n"]

    # -- relations ---------------------------------------------------------

    def add_relation(self, source_key: str, target_key: str, relation_type: str) -> bool:
        """Create a directed relation between two existing entries.

        Returns:
            True if created, False if the same relation already existed.

        Raises:
            NotFoundError: If either endpoint does not exist.
            ValueError: On an unknown type or a self-relation.
        """
        if relation_type not in RELATION_TYPES:
            raise ValueError(f"Unknown relation type: {relation_type}")
        if source_key == target_key:
            raise ValueError("An entry cannot be related to itself")
        self.require(source_key)
        self.require(target_key)

        conn = self._get_connection()
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO memory_relations
                (source_key, target_key, relation_type, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (source_key, target_key, relation_type, utc_now()),
        )
        created = cursor.rowcount > 0
        if created:
            self._mark_dirty(conn, source_key, target_key)
        conn.commit()
        return created

    def remove_relation(
        self,
        source_key: str,
        target_key: str,
        relation_type: str | None = None,
    ) -> int:
        """Remove relations between two entries.

        With a type, removes only source -> target of that type. Without one,
        removes every relation between the two keys in both directions.

        Returns:
            Number of relations removed.
        """
        conn = self._get_connection()
        if relation_type is not None:
            cursor = conn.execute(
                """
                DELETE FROM memory_relations
                WHERE source_key = ? AND target_key = ? AND relation_type = ?
                """,
                (source_key, target_key, relation_type),
            )
        else:
            cursor = conn.execute(
                """
                DELETE FROM memory_relations
                WHERE (source_key = ? AND target_key = ?)
                   OR (source_key = ? AND target_key = ?)
                """,
                (source_key, target_key, target_key, source_key),
            )
        removed = cursor.rowcount
        if removed:
            self._mark_dirty(conn, source_key, target_key)
        conn.commit()
        return removed

    def get_relations(self, key: str) -> list[Relation]:
        """All relations where key is the source or the target."""
        rows = self._get_connection().execute(
            """
            SELECT source_key, target_key, relation_type FROM memory_relations
            WHERE source_key = ? OR target_key = ?
            ORDER BY created_at, source_key, target_key
            """,
            (key, key),
        ).fetchall()
        return [
            Relation(row["source_key"], row["target_key"], row["relation_type"])
            for row in rows
        ]

    # -- search ------------------------------------------------------------

    def search_by_vector(
        self,
        query_embedding: list[float],
        limit: int = 10,
        category: str | None = None,
    ) -> list[SearchHit]:
        """Rank entries with an embedding by cosine similarity.

        Similarities are clamped to [0, 1]; entries whose vector has a
        different dimension are ignored.
        """
        query = np.asarray(query_embedding, dtype=np.float32)
        query_norm = float(np.linalg.norm(query))
        if query_norm == 0.0 or limit <= 0:
            return []

        sql = "SELECT * FROM memory_entries WHERE embedding IS NOT NULL"
        params: tuple = ()
        if category:
            sql += " AND category = ?"
            params = (category,)
        hits = []
        for row in self._get_connection().execute(sql, params).fetchall():
            vector = np.frombuffer(row["embedding"], dtype=np.float32)
            if vector.shape != query.shape:
                continue
            norm = float(np.linalg.norm(vector))
            if norm == 0.0:
                continue
            similarity = float(np.dot(query, vector)) / (query_norm * norm)
            hits.append(
                SearchHit(self._row_to_entry(row), min(max(similarity, 0.0), 1.0), "vector")
            )
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]

    def search_by_keyword(
        self,
        query: str,
        limit: int = 10,
        category: str | None = None,
    ) -> list[SearchHit]:
        """Prefix full-text search merged with a fuzzy pass.

        Full-text scores are bm25 ranks normalized to (0, 1]. Fuzzy scores
        average the best token similarity per query token and are penalized
        so an exact match always outranks a typo match.
        """
        if limit <= 0:
            return []
        scores: dict[str, float] = {}

        fts_query = build_fts_query(query)
        if fts_query:
            try:
                rows = self._get_connection().execute(
                    """
                    SELECT entry_key, rank FROM memory_fts
                    WHERE memory_fts MATCH ? ORDER BY rank LIMIT ?
                    """,
                    (fts_query, limit * 3),
                ).fetchall()
            except sqlite3.OperationalError as e:
                logger.warning("FTS query failed for %r: %s", query, e)
                rows = []
            max_rank = max((abs(row["rank"]) for row in rows), default=0.0)
            for row in rows:
                scores[row["entry_key"]] = (
                    abs(row["rank"]) / max_rank if max_rank > 0 else 1.0
                )

        for key, score in self._fuzzy_scores(query).items():
            if score > scores.get(key, 0.0):
                scores[key] = score

        hits = []
        for key, score in scores.items():
            entry = self.get(key)
            if entry is None or (category and entry.category != category):
                continue
            hits.append(SearchHit(entry, score, "keyword"))
        hits.sort(key=lambda h: (h.score, h.entry.mention_count), reverse=True)
        return hits[:limit]

    def hybrid_search(
        self,
        query: str,
        query_embedding: list[float] | None = None,
        limit: int = 10,
        category: str | None = None,
    ) -> list[SearchHit]:
        """Weighted union of vector and keyword search.

        score = 0.6 * cosine + 0.4 * keyword / max(keyword). Without a query
        embedding, keyword results are returned ranked by keyword score alone.
        When keyword search finds nothing, raw vector similarities are used.
        """
        candidates = max(limit * 2, limit)
        keyword_hits = self.search_by_keyword(query, candidates, category)
        if query_embedding is None:
            return keyword_hits[:limit]

        vector_hits = self.search_by_vector(query_embedding, candidates, category)
        if not keyword_hits:
            return vector_hits[:limit]

        max_keyword = max(h.score for h in keyword_hits)
        combined: dict[str, list] = {}
        for hit in vector_hits:
            combined[hit.entry.key] = [hit.entry, hit.score, 0.0]
        for hit in keyword_hits:
            normalized = hit.score / max_keyword if max_keyword > 0 else 0.0
            if hit.entry.key in combined:
                combined[hit.entry.key][2] = normalized
            else:
                combined[hit.entry.key] = [hit.entry, 0.0, normalized]

        hits = []
        for entry, vector_score, keyword_score in combined.values():
            if vector_score > 0 and keyword_score > 0:
                match_type = "both"
            elif vector_score > 0:
                match_type = "vector"
            else:
                match_type = "keyword"
            score = VECTOR_WEIGHT * vector_score + KEYWORD_WEIGHT * keyword_score
            hits.append(SearchHit(entry, score, match_type))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]

    # -- embeddings --------------------------------------------------------

    def build_embedding_text(self, key: str) -> str:
        """Text to embed: the entry line plus a summary of related entries.

        Raises:
            NotFoundError: If the entry does not exist.
        """
        entry = self.require(key)
        text = f"[{entry.category}] {entry.key}: {entry.content}"
        summaries = []
        for relation in self.get_relations(key):
            other = self.get(relation.other(key))
            if other is None:
                continue
            summary = other.content
            if len(summary) > RELATED_SUMMARY_LENGTH:
                summary = summary[:RELATED_SUMMARY_LENGTH] + "..."
            summaries.append(f"{other.key} ({summary})")
        if summaries:
            text += "\n| Related: " + ", ".join(summaries)
        return text

    def update_embedding(self, key: str, embedding: list[float], embedding_text: str) -> None:
        """Store a fresh embedding and clear the dirty flag."""
        conn = self._get_connection()
        conn.execute(
            """
            UPDATE memory_entries
            SET embedding = ?, embedding_text = ?, embedding_dirty = 0
            WHERE key = ?
            """,
            (_to_blob(embedding), embedding_text, key),
        )
        conn.commit()

    def mark_embedding_clean(self, key: str) -> None:
        """Clear the dirty flag without touching the stored vector."""
        conn = self._get_connection()
        conn.execute(
            "UPDATE memory_entries SET embedding_dirty = 0 WHERE key = ?", (key,)
        )
        conn.commit()

    def mark_embedding_dirty(self, *keys: str) -> None:
        """Flag entries whose embedding must be regenerated."""
        conn = self._get_connection()
        self._mark_dirty(conn, *keys)
        conn.commit()

    def dirty_keys(self) -> list[str]:
        """Keys of entries with a stale or missing embedding."""
        rows = self._get_connection().execute(
            "SELECT key FROM memory_entries WHERE embedding_dirty = 1 ORDER BY key"
        ).fetchall()
        return [row["key"] for row in rows]

    # -- snapshots ---------------------------------------------------------

    def snapshot(self, dest_dir: Path, keep: int = 10) -> Path:
        """Write a consistent copy of the database and prune old copies.

        Uses SQLite's online backup API, so the copy is consistent even with
        the WAL active. Only the newest `keep` snapshots are kept.

        Returns:
            Path of the new snapshot file.
        """
        dest_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        target_path = dest_dir / f"memory-{stamp}.db"
        target = sqlite3.connect(target_path)
        try:
            self._get_connection().backup(target)
        finally:
            target.close()

        snapshots = sorted(dest_dir.glob("memory-*.db"))
        for old in snapshots[: max(len(snapshots) - max(keep, 1), 0)]:
            old.unlink(missing_ok=True)
            logger.debug("Pruned snapshot %s", old.name)
        return target_path

    # -- internals ---------------------------------------------------------

    def _mark_dirty(self, conn: sqlite3.Connection, *keys: str) -> None:
        for key in keys:
            conn.execute(
                "UPDATE memory_entries SET embedding_dirty = 1 WHERE key = ?", (key,)
            )

    def _sync_search_index(self, conn: sqlite3.Connection, key: str, content: str) -> None:
        conn.execute("DELETE FROM memory_fts WHERE entry_key = ?", (key,))
        conn.execute(
            "INSERT INTO memory_fts (entry_key, content) VALUES (?, ?)",
            (key, f"{key} {content}"),
        )
        self._index_fuzzy(key, content)

    def _rebuild_fuzzy_index(self) -> None:
        self._vocab.clear()
        self._key_tokens.clear()
        conn = self._get_connection()
        rows = conn.execute("SELECT key, content FROM memory_entries").fetchall()
        indexed = conn.execute("SELECT COUNT(*) AS n FROM memory_fts").fetchone()["n"]
        if indexed != len(rows):
            conn.execute("DELETE FROM memory_fts")
            conn.executemany(
                "INSERT INTO memory_fts (entry_key, content) VALUES (?, ?)",
                [(row["key"], f"{row['key']} {row['content']}") for row in rows],
            )
            conn.commit()
            logger.info("Rebuilt full-text index for %d entries", len(rows))
        for row in rows:
            self._index_fuzzy(row["key"], row["content"])

    def _index_fuzzy(self, key: str, content: str) -> None:
        self._remove_fuzzy(key)
        tokens = {t for t in tokenize(f"{key} {content}") if len(t) >= FUZZY_MIN_TOKEN}
        self._key_tokens[key] = tokens
        for token in tokens:
            self._vocab.setdefault(token, set()).add(key)

    def _remove_fuzzy(self, key: str) -> None:
        for token in self._key_tokens.pop(key, set()):
            keys = self._vocab.get(token)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._vocab[token]

    def _fuzzy_scores(self, query: str) -> dict[str, float]:
        query_tokens = [t for t in tokenize(query) if len(t) >= FUZZY_MIN_TOKEN]
        if not query_tokens or not self._vocab:
            return {}
        vocabulary = list(self._vocab)
        best: dict[str, dict[str, float]] = {}
        for query_token in query_tokens:
            matches = difflib.get_close_matches(
                query_token, vocabulary, n=5, cutoff=FUZZY_CUTOFF
            )
            for match in matches:
                ratio = difflib.SequenceMatcher(None, query_token, match).ratio()
                for key in self._vocab[match]:
                    per_token = best.setdefault(key, {})
                    per_token[query_token] = max(per_token.get(query_token, 0.0), ratio)
        return {
            key: FUZZY_PENALTY * sum(per_token.values()) / len(query_tokens)
            for key, per_token in best.items()
        }

    def _row_to_entry(self, row: sqlite3.Row) -> Entry:
        return Entry(
            id=row["id"],
            category=row["category"],
            key=row["key"],
            content=row["content"],
            status=row["status"],
            mention_count=row["mention_count"],
            last_mentioned=row["last_mentioned"],
            created_at=row["created_at"],
            origin_type=row["origin_type"],
            origin_summary=row["origin_summary"],
            embedding=_from_blob(row["embedding"]),
            embedding_text=row["embedding_text"],
            embedding_dirty=bool(row["embedding_dirty"]),
        )
