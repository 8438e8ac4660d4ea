from __future__ import annotations

from .poller import CancelToken, JobPoller, JobState, PollOutcome

__all__ = [
    "CancelToken",
    "JobPoller",
    "JobState",
    "PollOutcome",
]
