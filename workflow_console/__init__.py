"""Client-side job log synchronization for the workflow job runner."""

from .client import InvalidResponseError, JobApiClient, RequestError
from .controller import ActionState, ErrorKind, ErrorNotice, JobController
from .log_buffer import append_logs, needs_normalize, normalize_logs
from .models import JobPollResponse, JobSnapshot, LogEntry, merge_snapshot
from .persistence import ConsoleState, JsonFileStore, MemoryStore, PersistentSlot
from .scheduler import CancelToken, PollScheduler, PollState

__all__ = [
    "ActionState",
    "CancelToken",
    "ConsoleState",
    "ErrorKind",
    "ErrorNotice",
    "InvalidResponseError",
    "JobApiClient",
    "JobController",
    "JobPollResponse",
    "JobSnapshot",
    "JsonFileStore",
    "LogEntry",
    "MemoryStore",
    "PersistentSlot",
    "PollScheduler",
    "PollState",
    "RequestError",
    "append_logs",
    "merge_snapshot",
    "needs_normalize",
    "normalize_logs",
]
