"""
SQLite-backed affinity graph store.

Holds the listening-behaviour graph:

Nodes:
- User{id}, Track{id}, Artist{id}, Genre{name}

Edges:
- PLAYED (User -> Track): play_count, last_played
- LIKES_ARTIST (User -> Artist): play_count
- LIKES_GENRE (User -> Genre): play_count
- BY_ARTIST (Track -> Artist): structural, written once
- HAS_GENRE (Track -> Genre): structural, written once

Every node and edge is created lazily by ``record_play`` with merge-or-create
semantics. Edge rows carry a ``seq`` column recording first observation, which
is the deterministic traversal order used by every read primitive.
"""

from __future__ import annotations
import contextlib
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from sga.errors import (
    StoreUnavailable,
    QueryTimeout,
    require_positive,
    normalize_genre,
)


class EdgeType(str, Enum):
    PLAYED = "PLAYED"
    LIKES_ARTIST = "LIKES_ARTIST"
    LIKES_GENRE = "LIKES_GENRE"
    BY_ARTIST = "BY_ARTIST"
    HAS_GENRE = "HAS_GENRE"


# edge -> (table, source column, target column, weighted)
_EDGES: Dict[EdgeType, Tuple[str, str, str, bool]] = {
    EdgeType.PLAYED: ("played", "user_id", "track_id", True),
    EdgeType.LIKES_ARTIST: ("likes_artist", "user_id", "artist_id", True),
    EdgeType.LIKES_GENRE: ("likes_genre", "user_id", "genre", True),
    EdgeType.BY_ARTIST: ("by_artist", "track_id", "artist_id", False),
    EdgeType.HAS_GENRE: ("has_genre", "track_id", "genre", False),
}

_NODE_TABLES = ("users", "tracks", "artists", "genres")

# SQLite caps bound parameters per statement
_IN_CHUNK = 500


@dataclass(frozen=True)
class Neighbor:
    """One row of a neighbour lookup."""
    key: Any
    count: Optional[int] = None
    last_played: Optional[float] = None


def to_epoch(played_at: Any = None) -> float:
    """Normalize a play timestamp to UTC epoch seconds (naive datetimes are UTC)."""
    if played_at is None:
        return time.time()
    if isinstance(played_at, datetime):
        if played_at.tzinfo is None:
            played_at = played_at.replace(tzinfo=timezone.utc)
        return played_at.timestamp()
    return float(played_at)


class AffinityGraphStore:
    """
    SQLite-backed store for the affinity graph.

    Each thread gets its own connection; the database runs in WAL mode so
    readers never block the writer. Writes take the database write lock up
    front (``BEGIN IMMEDIATE``) so concurrent upserts serialize instead of
    losing increments.
    """

    def __init__(self, path: str | Path = "data/graph/affinity.db",
                 busy_timeout: float = 5.0):
        """
        Initialize the graph store.

        Args:
            path: Path to the SQLite database file
            busy_timeout: Seconds a writer waits for the write lock
        """
        self.path = Path(path)
        self.busy_timeout = busy_timeout
        self._local = threading.local()
        self._connections: Dict[threading.Thread, sqlite3.Connection] = {}
        self._lock = threading.Lock()
        self._closed = False

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailable(f"cannot create graph directory {self.path.parent}: {e}") from e
        self._create_schema()

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "AffinityGraphStore":
        graph_cfg = cfg.get("graph", {})
        return cls(graph_cfg.get("path", "data/graph/affinity.db"),
                   busy_timeout=graph_cfg.get("busy_timeout", 5.0))

    # === Connections ===

    def _conn(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreUnavailable("graph store is closed")

        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(
                    str(self.path),
                    timeout=self.busy_timeout,
                    isolation_level=None,  # transactions are managed explicitly
                    check_same_thread=False,
                )
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA foreign_keys=ON")
            except sqlite3.Error as e:
                raise StoreUnavailable(f"cannot open graph store at {self.path}: {e}") from e
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._lock:
                self._prune_connections()
                self._connections[threading.current_thread()] = conn
        return conn

    def _prune_connections(self):
        """Close connections owned by threads that have exited (caller holds the lock)."""
        for thread in [t for t in self._connections if not t.is_alive()]:
            conn = self._connections.pop(thread)
            with contextlib.suppress(sqlite3.Error):
                conn.close()

    @property
    def open_connections(self) -> int:
        with self._lock:
            return len(self._connections)

    def _create_schema(self):
        """Create the graph schema."""
        statements = [
            "CREATE TABLE IF NOT EXISTS users (user_id INTEGER PRIMARY KEY)",
            "CREATE TABLE IF NOT EXISTS tracks (track_id INTEGER PRIMARY KEY)",
            "CREATE TABLE IF NOT EXISTS artists (artist_id INTEGER PRIMARY KEY)",
            "CREATE TABLE IF NOT EXISTS genres (name TEXT PRIMARY KEY)",
            # Structural edges: one row per track, never updated
            """
            CREATE TABLE IF NOT EXISTS by_artist (
                seq INTEGER PRIMARY KEY,
                track_id INTEGER NOT NULL UNIQUE REFERENCES tracks(track_id),
                artist_id INTEGER NOT NULL REFERENCES artists(artist_id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS has_genre (
                seq INTEGER PRIMARY KEY,
                track_id INTEGER NOT NULL UNIQUE REFERENCES tracks(track_id),
                genre TEXT NOT NULL REFERENCES genres(name)
            )
            """,
            # Weighted edges
            """
            CREATE TABLE IF NOT EXISTS played (
                seq INTEGER PRIMARY KEY,
                user_id INTEGER NOT NULL REFERENCES users(user_id),
                track_id INTEGER NOT NULL REFERENCES tracks(track_id),
                play_count INTEGER NOT NULL DEFAULT 1 CHECK (play_count >= 1),
                last_played REAL NOT NULL,
                UNIQUE (user_id, track_id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS likes_artist (
                seq INTEGER PRIMARY KEY,
                user_id INTEGER NOT NULL REFERENCES users(user_id),
                artist_id INTEGER NOT NULL REFERENCES artists(artist_id),
                play_count INTEGER NOT NULL DEFAULT 1 CHECK (play_count >= 1),
                UNIQUE (user_id, artist_id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS likes_genre (
                seq INTEGER PRIMARY KEY,
                user_id INTEGER NOT NULL REFERENCES users(user_id),
                genre TEXT NOT NULL REFERENCES genres(name),
                play_count INTEGER NOT NULL DEFAULT 1 CHECK (play_count >= 1),
                UNIQUE (user_id, genre)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_by_artist_artist ON by_artist(artist_id)",
            "CREATE INDEX IF NOT EXISTS idx_has_genre_genre ON has_genre(genre)",
            "CREATE INDEX IF NOT EXISTS idx_played_track ON played(track_id)",
            "CREATE INDEX IF NOT EXISTS idx_played_last ON played(last_played)",
        ]
        with self._transaction() as conn:
            for sql in statements:
                conn.execute(sql)

    @contextlib.contextmanager
    def _transaction(self):
        """Write transaction holding the database write lock."""
        conn = self._conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(f"graph store busy: {e}") from e
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            with contextlib.suppress(sqlite3.Error):
                conn.execute("ROLLBACK")
            raise StoreUnavailable(f"graph write failed: {e}") from e
        except Exception:
            with contextlib.suppress(sqlite3.Error):
                conn.execute("ROLLBACK")
            raise

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        try:
            return self._conn().execute(sql, params).fetchall()
        except sqlite3.OperationalError as e:
            if "interrupted" in str(e):
                raise QueryTimeout("graph query exceeded its deadline") from e
            raise StoreUnavailable(f"graph query failed: {e}") from e

    @contextlib.contextmanager
    def deadline(self, seconds: Optional[float]):
        """
        Abort queries on this thread's connection once ``seconds`` have elapsed.

        Interrupted queries raise QueryTimeout.
        """
        if not seconds or seconds <= 0:
            yield
            return

        conn = self._conn()
        expires_at = time.monotonic() + seconds
        conn.set_progress_handler(lambda: int(time.monotonic() > expires_at), 1000)
        try:
            yield
        finally:
            conn.set_progress_handler(None, 0)

    # === Writes ===

    def record_play(self, user_id: int, track_id: int, artist_id: int,
                    genre: Optional[str] = "", played_at: Any = None) -> None:
        """
        Merge one play into the graph.

        Creates missing nodes and structural edges, then upserts PLAYED,
        LIKES_ARTIST and LIKES_GENRE (create with count 1, otherwise
        increment by one). An empty genre skips the genre node and edges.

        Args:
            user_id: Listener ID
            track_id: Played track ID
            artist_id: The track's artist ID
            genre: The track's genre name (may be empty)
            played_at: Play timestamp (datetime or epoch seconds, default now)

        Raises:
            InvalidReference: Non-positive identifiers
            StoreUnavailable: The database cannot be reached or locked
        """
        require_positive("user_id", user_id)
        require_positive("track_id", track_id)
        require_positive("artist_id", artist_id)
        genre = normalize_genre(genre)
        ts = to_epoch(played_at)

        with self._transaction() as conn:
            conn.execute("INSERT OR IGNORE INTO users (user_id) VALUES (?)", (user_id,))
            conn.execute("INSERT OR IGNORE INTO tracks (track_id) VALUES (?)", (track_id,))
            conn.execute("INSERT OR IGNORE INTO artists (artist_id) VALUES (?)", (artist_id,))
            conn.execute(
                "INSERT OR IGNORE INTO by_artist (track_id, artist_id) VALUES (?, ?)",
                (track_id, artist_id),
            )

            conn.execute("""
                INSERT INTO played (user_id, track_id, play_count, last_played)
                VALUES (?, ?, 1, ?)
                ON CONFLICT (user_id, track_id) DO UPDATE SET
                    play_count = played.play_count + 1,
                    last_played = MAX(played.last_played, excluded.last_played)
            """, (user_id, track_id, ts))

            conn.execute("""
                INSERT INTO likes_artist (user_id, artist_id, play_count)
                VALUES (?, ?, 1)
                ON CONFLICT (user_id, artist_id) DO UPDATE SET
                    play_count = likes_artist.play_count + 1
            """, (user_id, artist_id))

            if genre:
                conn.execute("INSERT OR IGNORE INTO genres (name) VALUES (?)", (genre,))
                conn.execute(
                    "INSERT OR IGNORE INTO has_genre (track_id, genre) VALUES (?, ?)",
                    (track_id, genre),
                )
                conn.execute("""
                    INSERT INTO likes_genre (user_id, genre, play_count)
                    VALUES (?, ?, 1)
                    ON CONFLICT (user_id, genre) DO UPDATE SET
                        play_count = likes_genre.play_count + 1
                """, (user_id, genre))

        logger.debug(f"Recorded play user={user_id} track={track_id} artist={artist_id} genre={genre!r}")

    def replace_contents(self,
                         played: Iterable[Tuple[int, int, int, float]],
                         likes_artist: Iterable[Tuple[int, int, int]],
                         likes_genre: Iterable[Tuple[int, str, int]],
                         by_artist: Iterable[Tuple[int, int]],
                         has_genre: Iterable[Tuple[int, str]]) -> Dict[str, int]:
        """
        Replace the whole graph in a single transaction.

        Rows are inserted in the order given, which becomes the new traversal
        order. Nodes are derived from the edge rows.

        Args:
            played: (user_id, track_id, play_count, last_played) rows
            likes_artist: (user_id, artist_id, play_count) rows
            likes_genre: (user_id, genre, play_count) rows
            by_artist: (track_id, artist_id) rows
            has_genre: (track_id, genre) rows

        Returns:
            Row counts written per edge table
        """
        played, likes_artist, likes_genre = list(played), list(likes_artist), list(likes_genre)
        by_artist, has_genre = list(by_artist), list(has_genre)

        users = {row[0] for row in played} | {row[0] for row in likes_artist} | {row[0] for row in likes_genre}
        tracks = {row[1] for row in played} | {row[0] for row in by_artist} | {row[0] for row in has_genre}
        artists = {row[1] for row in likes_artist} | {row[1] for row in by_artist}
        genres = {row[1] for row in likes_genre} | {row[1] for row in has_genre}

        with self._transaction() as conn:
            for table, _, _, _ in _EDGES.values():
                conn.execute(f"DELETE FROM {table}")
            for table in _NODE_TABLES:
                conn.execute(f"DELETE FROM {table}")

            conn.executemany("INSERT INTO users (user_id) VALUES (?)", [(u,) for u in sorted(users)])
            conn.executemany("INSERT INTO tracks (track_id) VALUES (?)", [(t,) for t in sorted(tracks)])
            conn.executemany("INSERT INTO artists (artist_id) VALUES (?)", [(a,) for a in sorted(artists)])
            conn.executemany("INSERT INTO genres (name) VALUES (?)", [(g,) for g in sorted(genres)])

            conn.executemany("INSERT INTO by_artist (track_id, artist_id) VALUES (?, ?)", by_artist)
            conn.executemany("INSERT INTO has_genre (track_id, genre) VALUES (?, ?)", has_genre)
            conn.executemany(
                "INSERT INTO played (user_id, track_id, play_count, last_played) VALUES (?, ?, ?, ?)",
                played,
            )
            conn.executemany(
                "INSERT INTO likes_artist (user_id, artist_id, play_count) VALUES (?, ?, ?)",
                likes_artist,
            )
            conn.executemany(
                "INSERT INTO likes_genre (user_id, genre, play_count) VALUES (?, ?, ?)",
                likes_genre,
            )

        counts = {
            "played": len(played),
            "likes_artist": len(likes_artist),
            "likes_genre": len(likes_genre),
            "by_artist": len(by_artist),
            "has_genre": len(has_genre),
        }
        logger.info(f"Graph contents replaced: {counts}")
        return counts

    # === Read primitives ===

    def neighbors(self, edge: EdgeType | str, key: Any, reverse: bool = False,
                  min_count: Optional[int] = None, max_count: Optional[int] = None,
                  since: Optional[float] = None, strongest_first: bool = False,
                  limit: Optional[int] = None, exclude_played_by: Optional[int] = None,
                  exclude_min_count: int = 1) -> List[Neighbor]:
        """
        Get the nodes adjacent to ``key`` over one edge type.

        Filters are applied before ``limit``, so excluded rows never use up
        the row budget.

        Args:
            edge: Edge type to follow
            key: Anchor node key (ID, or genre name)
            reverse: Follow the edge from target back to source
            min_count: Keep edges with play_count >= min_count (weighted edges)
            max_count: Keep edges with play_count <= max_count (weighted edges)
            since: Keep PLAYED edges with last_played >= since (epoch seconds)
            strongest_first: Order by play_count descending before traversal order
            limit: Maximum rows to read
            exclude_played_by: Drop track neighbours this user has played
                at least ``exclude_min_count`` times
            exclude_min_count: Play count at which a track is excluded

        Returns:
            Neighbors in traversal order
        """
        table, src, dst, weighted = _EDGES[EdgeType(edge)]
        anchor, other = (dst, src) if reverse else (src, dst)
        if not weighted and (min_count is not None or max_count is not None or strongest_first):
            raise ValueError(f"{edge} edges carry no count")
        if since is not None and table != "played":
            raise ValueError("since only applies to PLAYED edges")
        if exclude_played_by is not None and other != "track_id":
            raise ValueError("exclude_played_by only applies to track neighbours")

        columns = [f"{other} AS node"]
        columns.append("play_count" if weighted else "NULL AS play_count")
        columns.append("last_played" if table == "played" else "NULL AS last_played")

        sql = f"SELECT {', '.join(columns)} FROM {table} WHERE {anchor} = ?"
        params: List[Any] = [key]
        if min_count is not None:
            sql += " AND play_count >= ?"
            params.append(min_count)
        if max_count is not None:
            sql += " AND play_count <= ?"
            params.append(max_count)
        if since is not None:
            sql += " AND last_played >= ?"
            params.append(since)
        if exclude_played_by is not None:
            sql += (f" AND NOT EXISTS (SELECT 1 FROM played p WHERE p.user_id = ?"
                    f" AND p.track_id = {table}.track_id AND p.play_count >= ?)")
            params.extend([exclude_played_by, exclude_min_count])
        sql += " ORDER BY play_count DESC, seq" if strongest_first else " ORDER BY seq"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        return [
            Neighbor(key=row["node"], count=row["play_count"], last_played=row["last_played"])
            for row in self._query(sql, params)
        ]

    def target_of(self, edge: EdgeType | str, key: Any) -> Optional[Any]:
        """Follow a single-valued structural edge (BY_ARTIST, HAS_GENRE)."""
        found = self.neighbors(edge, key, limit=1)
        return found[0].key if found else None

    def count_distinct_sources(self, edge: EdgeType | str, targets: Sequence[Any],
                               exclude_source: Optional[Any] = None) -> Dict[Any, int]:
        """
        Count distinct source nodes pointing at each target.

        With PLAYED this is track popularity (distinct listeners).

        Args:
            edge: Edge type
            targets: Target node keys
            exclude_source: Source node left out of the count

        Returns:
            Mapping target -> count (0 for targets without edges)
        """
        table, src, dst, _ = _EDGES[EdgeType(edge)]
        counts = {target: 0 for target in targets}
        unique = list(counts)

        for start in range(0, len(unique), _IN_CHUNK):
            chunk = unique[start:start + _IN_CHUNK]
            placeholders = ", ".join("?" for _ in chunk)
            sql = (f"SELECT {dst} AS node, COUNT(DISTINCT {src}) AS n FROM {table} "
                   f"WHERE {dst} IN ({placeholders})")
            params: List[Any] = list(chunk)
            if exclude_source is not None:
                sql += f" AND {src} != ?"
                params.append(exclude_source)
            sql += f" GROUP BY {dst}"
            for row in self._query(sql, params):
                counts[row["node"]] = row["n"]

        return counts

    def popular_in_genre(self, genre: str, limit: Optional[int] = None,
                         exclude_played_by: Optional[int] = None,
                         exclude_min_count: int = 1) -> List[Tuple[int, int]]:
        """
        Tracks of a genre ranked by distinct listeners, highest first.

        Ranking and exclusion happen over the whole genre before ``limit``;
        ties keep the order in which tracks were first seen in the genre.

        Args:
            genre: Genre name
            limit: Maximum tracks to return
            exclude_played_by: Drop tracks this user has played at least
                ``exclude_min_count`` times
            exclude_min_count: Play count at which a track is excluded

        Returns:
            List of (track_id, popularity) tuples
        """
        sql = """
            SELECT h.track_id AS node, COUNT(DISTINCT p.user_id) AS n
            FROM has_genre h LEFT JOIN played p ON p.track_id = h.track_id
            WHERE h.genre = ?
        """
        params: List[Any] = [genre]
        if exclude_played_by is not None:
            sql += (" AND NOT EXISTS (SELECT 1 FROM played x WHERE x.user_id = ?"
                    " AND x.track_id = h.track_id AND x.play_count >= ?)")
            params.extend([exclude_played_by, exclude_min_count])
        sql += " GROUP BY h.track_id ORDER BY n DESC, MIN(h.seq)"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        return [(row["node"], row["n"]) for row in self._query(sql, params)]

    def sum_counts(self, edge: EdgeType | str, since: Optional[float] = None,
                   limit: Optional[int] = None) -> List[Tuple[Any, int]]:
        """
        Sum play_count per target node, highest first.

        Ties keep the order in which the target's first edge was observed.

        Args:
            edge: Weighted edge type
            since: Only PLAYED edges with last_played >= since
            limit: Maximum targets to return

        Returns:
            List of (target, total) tuples
        """
        table, _, dst, weighted = _EDGES[EdgeType(edge)]
        if not weighted:
            raise ValueError(f"{edge} edges carry no count")
        if since is not None and table != "played":
            raise ValueError("since only applies to PLAYED edges")

        sql = f"SELECT {dst} AS node, SUM(play_count) AS total FROM {table}"
        params: List[Any] = []
        if since is not None:
            sql += " WHERE last_played >= ?"
            params.append(since)
        sql += f" GROUP BY {dst} ORDER BY total DESC, MIN(seq)"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        return [(row["node"], row["total"]) for row in self._query(sql, params)]

    def edges(self, edge: EdgeType | str) -> List[Tuple[Any, Any, Optional[int], Optional[float]]]:
        """All rows of one edge type as (source, target, count, last_played), in traversal order."""
        table, src, dst, weighted = _EDGES[EdgeType(edge)]
        count_col = "play_count" if weighted else "NULL"
        last_col = "last_played" if table == "played" else "NULL"
        rows = self._query(
            f"SELECT {src} AS s, {dst} AS t, {count_col} AS c, {last_col} AS l FROM {table} ORDER BY seq"
        )
        return [(row["s"], row["t"], row["c"], row["l"]) for row in rows]

    def get_stats(self) -> Dict[str, int]:
        """Get node and edge counts."""
        stats = {}
        for table in _NODE_TABLES:
            stats[table] = self._query(f"SELECT COUNT(*) AS count FROM {table}")[0]["count"]
        for edge, (table, _, _, _) in _EDGES.items():
            stats[edge.value] = self._query(f"SELECT COUNT(*) AS count FROM {table}")[0]["count"]
        return stats

    def close(self):
        """Close every connection opened by this store."""
        with self._lock:
            self._closed = True
            for conn in self._connections.values():
                with contextlib.suppress(sqlite3.Error):
                    conn.close()
            self._connections.clear()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
