from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ..gen.config import PollConfig
from ..gen.errors import ProviderError
from ..gen.events import EventSink, default_sink
from ..gen.types import DownloadedAsset, JobStatus


class JobState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset(
    {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED, JobState.TIMED_OUT}
)


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)


@dataclass
class PollOutcome:
    state: JobState
    handle: str
    polls: int = 0
    uri: Optional[str] = None
    asset: Optional[DownloadedAsset] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state is JobState.COMPLETED and self.asset is not None


StatusFn = Callable[[str], JobStatus]
DownloadFn = Callable[[str], DownloadedAsset]


class JobPoller:
    """Polls an async job on a fixed interval, then downloads its result.

    A provider or network error at any step fails the job. A completed job
    without a result URI ends quietly with no asset.
    """

    def __init__(
        self,
        fetch_status: StatusFn,
        download: DownloadFn,
        interval: float = 5.0,
        max_polls: Optional[int] = 120,
        events: Optional[EventSink] = None,
    ):
        self._fetch_status = fetch_status
        self._download = download
        self.interval = interval
        self.max_polls = max_polls
        self.events = events or default_sink()
        self._state = JobState.IDLE

    @classmethod
    def from_config(
        cls,
        fetch_status: StatusFn,
        download: DownloadFn,
        config: PollConfig,
        events: Optional[EventSink] = None,
    ) -> "JobPoller":
        return cls(fetch_status, download, config.interval_sec, config.max_polls, events)

    @property
    def state(self) -> JobState:
        return self._state

    def run(self, handle: str, token: Optional[CancelToken] = None) -> PollOutcome:
        token = token or CancelToken()
        self._state = JobState.POLLING
        self.events.emit("poll_started", handle=handle, interval_sec=self.interval)
        polls = 0

        while True:
            if self.max_polls is not None and polls >= self.max_polls:
                return self._finish(
                    PollOutcome(JobState.TIMED_OUT, handle, polls, error=f"Job not done after {polls} polls")
                )
            if token.wait(self.interval) or token.cancelled:
                return self._finish(PollOutcome(JobState.CANCELLED, handle, polls))

            polls += 1
            try:
                status = self._fetch_status(handle)
            except ProviderError as e:
                return self._finish(PollOutcome(JobState.FAILED, handle, polls, error=str(e)))

            self.events.emit("poll_status", handle=handle, poll=polls, done=status.done)
            if not status.done:
                continue

            if status.error:
                return self._finish(PollOutcome(JobState.FAILED, handle, polls, error=status.error))
            if not status.uri:
                self.events.emit("poll_completed_without_result", level="warning", handle=handle)
                return self._finish(PollOutcome(JobState.COMPLETED, handle, polls))
            if token.cancelled:
                return self._finish(PollOutcome(JobState.CANCELLED, handle, polls, uri=status.uri))

            try:
                asset = self._download(status.uri)
            except ProviderError as e:
                return self._finish(
                    PollOutcome(JobState.FAILED, handle, polls, uri=status.uri, error=str(e))
                )
            return self._finish(
                PollOutcome(JobState.COMPLETED, handle, polls, uri=status.uri, asset=asset)
            )

    def _finish(self, outcome: PollOutcome) -> PollOutcome:
        self._state = outcome.state
        self.events.emit(
            "poll_finished",
            handle=outcome.handle,
            state=outcome.state.value,
            polls=outcome.polls,
            error=outcome.error,
        )
        return outcome
