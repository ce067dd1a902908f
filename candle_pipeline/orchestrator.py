import asyncio
import logging
import threading
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .backfiller import BackfillJob
from .config import Config
from .jobs import BaseJob
from .models import (
    BackfillProgress,
    JobProgress,
    JobState,
    RebuildProgress,
    ReconcileProgress,
)
from .processor import LiveProcessor
from .rebuilder import DerivedRebuildJob
from .reconciler import ReconcileJob
from .sources import ArchiveSource, KlineRestClient
from .swings import FeatureExtractor
from .utils import now_ms

log = logging.getLogger("candles.orchestrator")

ProgressEvent = Tuple["JobKind", JobProgress]


class JobKind(str, Enum):
    BACKFILL = "backfill"
    RECONCILE = "reconcile"
    REBUILD = "rebuild"

    @property
    def label(self) -> str:
        return {
            JobKind.BACKFILL: "Backfill",
            JobKind.RECONCILE: "Reconciliation",
            JobKind.REBUILD: "Derived rebuild",
        }[self]


_PROGRESS_TYPES = {
    JobKind.BACKFILL: BackfillProgress,
    JobKind.RECONCILE: ReconcileProgress,
    JobKind.REBUILD: RebuildProgress,
}


class JobOrchestrator:
    """
    Runs the maintenance jobs with a single active-writer slot.

    Backfill, reconciliation and derived rebuild are mutually exclusive:
    starting one while another holds the slot fails immediately with an
    error progress. Jobs run in a worker thread via asyncio.to_thread and are
    stopped cooperatively through per-job events. The slot is held until the
    worker thread returns, even if the awaiting task is cancelled first.
    """

    def __init__(
        self,
        config: Config,
        archive_source: Optional[ArchiveSource] = None,
        rest_client: Optional[KlineRestClient] = None,
        live: Optional[LiveProcessor] = None,
        extract_features: Optional[FeatureExtractor] = None,
    ) -> None:
        self.config: Config = config
        self.archive_source: ArchiveSource = archive_source or ArchiveSource(config)
        self.rest_client: KlineRestClient = rest_client or KlineRestClient(config)
        self.live: Optional[LiveProcessor] = live
        self.extract_features: Optional[FeatureExtractor] = extract_features

        self._slot_lock: threading.Lock = threading.Lock()
        self._active: Optional[JobKind] = None
        self._stop_events: Dict[JobKind, threading.Event] = {
            kind: threading.Event() for kind in JobKind
        }
        self._progress: Dict[JobKind, JobProgress] = {
            kind: _PROGRESS_TYPES[kind]() for kind in JobKind
        }
        self._subscribers: List[Tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = []
        self._shutting_down: bool = False

    @property
    def active_job(self) -> Optional[JobKind]:
        with self._slot_lock:
            return self._active

    def progress(self, kind: JobKind) -> JobProgress:
        return self._progress[kind].model_copy(deep=True)

    def subscribe(self) -> "asyncio.Queue[ProgressEvent]":
        """Queue receiving (kind, progress) for every update; call from the event loop"""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append((asyncio.get_running_loop(), queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers = [(lp, q) for lp, q in self._subscribers if q is not queue]

    def stop(self, kind: JobKind) -> None:
        log.info(f"Stop requested for {kind.value}")
        self._stop_events[kind].set()

    def shutdown(self) -> None:
        self._shutting_down = True
        for kind in JobKind:
            self._stop_events[kind].set()

    async def start_backfill(self, max_months: Optional[int] = None) -> JobProgress:
        result: JobProgress = await self._run(
            JobKind.BACKFILL,
            lambda stop, report: BackfillJob(
                self.config, self.archive_source, max_months, stop, report
            ),
        )
        if (
            result.state == JobState.DONE
            and self.config.REBUILD_AFTER_BACKFILL
            and not self._shutting_down
        ):
            log.info("Backfill complete, starting derived rebuild")
            await self.start_rebuild()
        return result

    async def start_reconcile(self, max_days: Optional[int] = None) -> JobProgress:
        live = self.live
        return await self._run(
            JobKind.RECONCILE,
            lambda stop, report: ReconcileJob(
                self.config,
                self.rest_client,
                max_days,
                active_open_time=(lambda: live.last_final_open_time) if live else None,
                stop_event=stop,
                on_progress=report,
            ),
        )

    async def start_rebuild(self, max_days: Optional[int] = None) -> JobProgress:
        return await self._run(
            JobKind.REBUILD,
            lambda stop, report: DerivedRebuildJob(
                self.config, max_days, self.extract_features, stop, report
            ),
        )

    async def _run(self, kind: JobKind, factory) -> JobProgress:
        with self._slot_lock:
            busy: Optional[JobKind] = self._active
            if busy is None:
                self._active = kind
        if busy is not None:
            now: int = now_ms()
            reason: str = f"{busy.label} is running"
            log.warning(f"Refusing to start {kind.value}: {reason}")
            refused: JobProgress = _PROGRESS_TYPES[kind](
                state=JobState.ERROR,
                started_at=now,
                finished_at=now,
                message=reason,
                last_error=reason,
            )
            self._publish(kind, refused)
            return refused

        stop_event: threading.Event = self._stop_events[kind]
        stop_event.clear()
        if self._shutting_down:
            stop_event.set()

        try:
            job: BaseJob = factory(stop_event, lambda p: self._publish(kind, p))
        except Exception:
            self._release(kind)
            raise

        # The slot belongs to the worker thread, not to the awaiting caller
        worker: asyncio.Future = asyncio.ensure_future(asyncio.to_thread(job.run))
        worker.add_done_callback(lambda _: self._release(kind))
        try:
            return await asyncio.shield(worker)
        except asyncio.CancelledError:
            log.warning(f"{kind.label} cancelled by caller, stopping worker")
            stop_event.set()
            raise

    def _release(self, kind: JobKind) -> None:
        with self._slot_lock:
            if self._active == kind:
                self._active = None

    def _publish(self, kind: JobKind, progress: JobProgress) -> None:
        self._progress[kind] = progress
        for loop, queue in list(self._subscribers):
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(queue.put_nowait, (kind, progress))
