"""
Play-event ingestion.

A "track played" event is written synchronously to the play-history log;
that write alone decides success or failure for the caller. The derived
affinity-graph update is then handed to a bounded queue consumed by a fixed
pool of worker threads.

Drop policy for the graph update (best effort, never retried):
- queue full: the event is discarded and logged at WARNING
- worker failure: the error is logged at ERROR and the event discarded
Both outcomes are counted in ``stats()`` so the gap between the log and the
graph stays observable. ``GraphReconciler.rebuild`` repairs it.
"""

from __future__ import annotations
import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger

from sga.db.catalog import CatalogStore
from sga.db.play_history import PlayHistoryStore, PlayRecord
from sga.errors import require_positive
from sga.graph.store import AffinityGraphStore


@dataclass(frozen=True)
class PlayEvent:
    """Graph update derived from one logged play."""
    user_id: int
    track_id: int
    artist_id: int
    genre: str
    played_at: datetime


_STOP = object()


class EventIngestor:
    """
    Records plays and feeds the affinity graph in the background.

    Usage:
        with EventIngestor(history, catalog, graph) as ingestor:
            ingestor.record_play(user_id=1, track_id=10)
    """

    def __init__(self, history: PlayHistoryStore, catalog: CatalogStore,
                 graph: AffinityGraphStore, queue_size: int = 1000, workers: int = 2):
        """
        Initialize the ingestor.

        Args:
            history: Authoritative play-history log
            catalog: Catalog used to resolve a track's artist, genre and duration
            graph: Affinity graph receiving the background updates
            queue_size: Maximum pending graph updates
            workers: Number of worker threads
        """
        if queue_size < 1 or workers < 1:
            raise ValueError("queue_size and workers must be >= 1")

        self.history = history
        self.catalog = catalog
        self.graph = graph
        self.num_workers = workers
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._workers: List[threading.Thread] = []
        self._stats_lock = threading.Lock()
        self._stats = {
            "accepted": 0,
            "enqueued": 0,
            "applied": 0,
            "failed": 0,
            "dropped": 0,
        }

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], history: PlayHistoryStore,
                    catalog: CatalogStore, graph: AffinityGraphStore) -> "EventIngestor":
        ingest_cfg = cfg.get("ingest", {})
        return cls(history, catalog, graph,
                   queue_size=ingest_cfg.get("queue_size", 1000),
                   workers=ingest_cfg.get("workers", 2))

    # === Lifecycle ===

    @property
    def running(self) -> bool:
        return any(worker.is_alive() for worker in self._workers)

    def start(self) -> "EventIngestor":
        """Start the worker pool (no-op if already running)."""
        if self.running:
            return self

        self._workers = [
            threading.Thread(target=self._worker_loop, name=f"graph-writer-{i}", daemon=True)
            for i in range(self.num_workers)
        ]
        for worker in self._workers:
            worker.start()
        logger.info(f"Started {self.num_workers} graph writers (queue size {self._queue.maxsize})")
        return self

    def stop(self, drain: bool = True, timeout: Optional[float] = 10.0):
        """
        Stop the worker pool.

        Args:
            drain: Apply pending updates before stopping
            timeout: Seconds to wait for draining and for each worker to exit
        """
        if not self.running:
            return

        if drain:
            self.drain(timeout)
        else:
            self._discard_pending()

        # Blocking put: sentinels must reach every worker even if new events raced in
        for _ in self._workers:
            self._queue.put(_STOP)
        for worker in self._workers:
            worker.join(timeout)
        self._workers = []
        logger.info(f"Graph writers stopped: {self.stats()}")

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every queued update has been processed.

        Returns:
            True if the queue emptied before the timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def _discard_pending(self):
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return
            self._queue.task_done()
            self._count("dropped")

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop(drain=True)

    # === Ingestion ===

    def record_play(self, user_id: int, track_id: int,
                    duration_played: Optional[int] = None,
                    completed: bool = True,
                    played_at: Optional[datetime] = None) -> PlayRecord:
        """
        Record a "track played" event.

        The play-history append is synchronous and determines the outcome.
        The graph update is queued afterwards and never affects the result.

        Args:
            user_id: Listener ID
            track_id: Played track ID
            duration_played: Seconds listened (default: the track's duration)
            completed: Whether the track played to the end
            played_at: Play timestamp (default now)

        Returns:
            The logged PlayRecord

        Raises:
            InvalidReference: Non-positive IDs
            NotFound: Unknown track
            StoreUnavailable: Catalog or play history unreachable
        """
        require_positive("user_id", user_id)
        require_positive("track_id", track_id)

        track = self.catalog.get_track(track_id)
        if duration_played is None:
            duration_played = track.duration

        record = self.history.append_play(
            user_id, track_id,
            played_at=played_at,
            duration_played=duration_played,
            completed=completed,
        )
        self._count("accepted")

        self._dispatch(PlayEvent(
            user_id=user_id,
            track_id=track_id,
            artist_id=track.artist_id,
            genre=track.genre,
            played_at=record.played_at,
        ))
        return record

    def _dispatch(self, event: PlayEvent):
        if not self.running:
            logger.warning(f"Graph writers not running, play user={event.user_id} "
                           f"track={event.track_id} queued without a consumer")
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self._count("dropped")
            logger.warning(f"Graph update queue full, dropping play user={event.user_id} "
                           f"track={event.track_id} (pending={self._queue.qsize()})")
            return
        self._count("enqueued")

    def _worker_loop(self):
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self.apply(event)
            finally:
                self._queue.task_done()

    def apply(self, event: PlayEvent) -> bool:
        """
        Apply one graph update; failures are logged and discarded.

        Returns:
            True if the graph accepted the update
        """
        try:
            self.graph.record_play(
                event.user_id, event.track_id, event.artist_id,
                genre=event.genre, played_at=event.played_at,
            )
        except Exception as e:
            self._count("failed")
            logger.error(f"Graph update failed for user={event.user_id} track={event.track_id}: {e}")
            return False

        self._count("applied")
        return True

    def _count(self, key: str):
        with self._stats_lock:
            self._stats[key] += 1

    def stats(self) -> Dict[str, int]:
        """Ingestion counters plus the number of pending graph updates."""
        with self._stats_lock:
            stats = dict(self._stats)
        stats["pending"] = self._queue.qsize()
        return stats
