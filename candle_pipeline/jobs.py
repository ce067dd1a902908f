import logging
import threading
from typing import Any, Callable, Optional, Type

from .config import Config
from .models import JobProgress, JobState
from .persistence import StoreLayout
from .utils import now_ms

log = logging.getLogger("candles.jobs")

ProgressCallback = Callable[[JobProgress], None]


class JobStopped(Exception):
    """Raised inside a job when a stop was requested"""

    pass


class BaseJob:
    """
    Cooperative maintenance job: idle -> running -> done | error | stopped.

    Subclasses implement `_execute`, call `check_stop()` at every natural
    suspension point and report through `emit()`. `run()` never raises; any
    failure becomes the `error` state with the exception text attached.
    """

    name: str = "Job"
    progress_cls: Type[JobProgress] = JobProgress

    def __init__(
        self,
        config: Config,
        stop_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.config: Config = config
        self.layout: StoreLayout = StoreLayout(config.DATA_DIR, config.EXCHANGE, config.SYMBOL)
        self.stop_event: threading.Event = stop_event or threading.Event()
        self.on_progress: Optional[ProgressCallback] = on_progress
        self.progress: JobProgress = self.progress_cls()

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    def stop(self) -> None:
        self.stop_event.set()

    def check_stop(self) -> None:
        if self.stop_requested:
            raise JobStopped()

    def snapshot(self) -> JobProgress:
        return self.progress.model_copy(deep=True)

    def emit(self, **updates: Any) -> None:
        for field, value in updates.items():
            setattr(self.progress, field, value)
        if self.on_progress:
            self.on_progress(self.snapshot())

    def run(self) -> JobProgress:
        self.progress = self.progress_cls(state=JobState.RUNNING, started_at=now_ms())
        self.emit()
        log.info(f"{self.name} started for {self.config.EXCHANGE} {self.config.SYMBOL} {self.config.INTERVAL}")

        try:
            message: str = self._execute()
        except JobStopped:
            log.info(f"{self.name} stopped")
            self.emit(state=JobState.STOPPED, finished_at=now_ms(), message="Stopped")
        except Exception as e:
            log.error(f"{self.name} failed: {e}", exc_info=True)
            self.emit(
                state=JobState.ERROR,
                finished_at=now_ms(),
                message=f"{self.name} failed: {e}",
                last_error=str(e),
            )
        else:
            log.info(f"{self.name} finished: {message}")
            self.emit(state=JobState.DONE, finished_at=now_ms(), message=message)

        return self.snapshot()

    def _execute(self) -> str:
        raise NotImplementedError
