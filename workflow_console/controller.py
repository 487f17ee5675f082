"""Job lifecycle controller: submit, terminate and follow one job at a time."""

import asyncio
import enum
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx
from loguru import logger

from .client import JobApiClient, RequestError
from .log_buffer import append_logs, normalize_logs
from .models import ERROR, SUCCESS, JobPollResponse, JobSnapshot, LogEntry, merge_snapshot
from .persistence import ConsoleState
from .scheduler import PollScheduler, SleepFn
from .settings import ACTION_STATE_RESET_DELAY

JOB_MISSING_ON_POLL = "Job not found; it may have finished or been cleaned up."
JOB_MISSING_ON_TERMINATE = "Job no longer exists; local state was cleared."


class ErrorKind(str, enum.Enum):
    REQUEST_FAILED = "request_failed"
    JOB_MISSING = "job_missing"


class ActionState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class ErrorNotice:
    """User-visible error slot content."""
    kind: ErrorKind
    message: str


def action_state_for(status: str) -> ActionState:
    if status == SUCCESS:
        return ActionState.SUCCESS
    if status == ERROR:
        return ActionState.ERROR
    return ActionState.RUNNING


LogListener = Callable[[Optional[JobSnapshot], List[LogEntry]], None]


class JobController:
    """Own the job snapshot, log buffer and cursor for a single active job.

    All state changes happen in reaction to a finished request or a fired
    timer on the running event loop, so they never interleave.
    """

    def __init__(
        self,
        api: JobApiClient,
        state: ConsoleState,
        *,
        sleep: SleepFn = asyncio.sleep,
        action_reset_delay: float = ACTION_STATE_RESET_DELAY,
    ):
        self.api = api
        self.state = state
        self.error: Optional[ErrorNotice] = None
        self.terminating = False
        self.submitting = False
        self.action_states: Dict[str, ActionState] = {}
        self._action_reset_delay = action_reset_delay
        self._reset_timers: Dict[str, asyncio.TimerHandle] = {}
        self._listeners: List[LogListener] = []
        self.scheduler = PollScheduler(
            self._fetch,
            on_update=self._handle_poll_update,
            on_not_found=self._handle_poll_not_found,
            on_error=self._handle_poll_error,
            sleep=sleep,
        )
        # Persisted logs may predate a tighter bound or carry duplicates.
        restored = normalize_logs(self.state.logs.value)
        if restored is not self.state.logs.value:
            self.state.logs.set(restored)
        if self.job is not None:
            self.action_states[self.job.action_id] = action_state_for(self.job.status)

    @property
    def job(self) -> Optional[JobSnapshot]:
        return self.state.job.value

    @property
    def logs(self) -> List[LogEntry]:
        return self.state.logs.value

    @property
    def cursor(self) -> int:
        return self.state.cursor.value

    @property
    def busy(self) -> bool:
        return self.submitting or (self.job is not None and self.job.is_active)

    @property
    def can_terminate(self) -> bool:
        job = self.job
        if job is None or self.terminating or job.cancel_requested:
            return False
        return job.is_active

    @property
    def terminate_pending(self) -> bool:
        job = self.job
        return self.terminating or (job is not None and job.cancel_requested and job.is_active)

    def add_listener(self, listener: LogListener) -> None:
        """Call ``listener(job, new_entries)`` whenever a batch is merged."""
        self._listeners.append(listener)

    def action_state(self, action_id: str) -> ActionState:
        return self.action_states.get(action_id, ActionState.IDLE)

    async def submit(
        self,
        action_id: str,
        args: Optional[List[str]] = None,
        story_ids: Optional[List[str]] = None,
    ) -> Optional[JobSnapshot]:
        """Create a job for ``action_id`` and start following it.

        Returns None without a request while another job is active.
        """
        if self.busy:
            logger.debug(f"Ignoring submit for {action_id}: a job is already active")
            return None

        self.scheduler.cancel()
        self.state.selected_action.set(action_id)
        self.error = None
        self.terminating = False
        self.state.logs.set([])
        self._set_cursor(0, force=True)
        self._set_action_state(action_id, ActionState.RUNNING)

        self.submitting = True
        try:
            response = await self.api.create_job(action_id, args=args, story_ids=story_ids)
            job = JobSnapshot.from_dict(response.fields)
        except (RequestError, httpx.HTTPError, ValueError) as exc:
            logger.warning(f"Failed to create job for {action_id}: {exc}")
            self.error = ErrorNotice(ErrorKind.REQUEST_FAILED, str(exc) or "Failed to trigger action")
            self.state.job.clear()
            self.state.logs.clear()
            self.state.cursor.clear()
            self._set_action_state(action_id, ActionState.ERROR)
            self._reset_action_later(action_id)
            return None
        finally:
            self.submitting = False

        logger.info(f"Job {job.id} created for action {action_id} status={job.status}")
        self.state.job.set(job)
        initial = normalize_logs(response.logs)
        self.state.logs.set(initial)
        self._set_cursor(response.next_cursor, force=True)
        self._notify(initial)
        self._sync_action_state()
        if not job.is_terminal:
            self.scheduler.start(job.id, lambda: self.cursor)
        return job

    async def terminate(self, job_id: Optional[str] = None, cursor: Optional[int] = None) -> bool:
        """Request termination of the held job.

        ``cursor`` defaults to the cursor held at call time. Returns True when
        a request was sent and accepted. Calls made while a termination is
        already requested, once the job is finished, or for a job id that is
        not the held one are ignored.
        """
        job = self.job
        if job is None or self.terminating or job.cancel_requested or job.is_terminal:
            return False
        if job_id is not None and job_id != job.id:
            return False
        cursor_at_call = self.cursor if cursor is None else cursor

        self.terminating = True
        try:
            response = await self.api.terminate_job(job.id, cursor_at_call)
        except RequestError as exc:
            if exc.is_not_found:
                logger.info(f"Job {job.id} disappeared before termination")
                self.reset_job_state(job.action_id)
                self.error = ErrorNotice(ErrorKind.JOB_MISSING, JOB_MISSING_ON_TERMINATE)
            else:
                logger.warning(f"Failed to terminate job {job.id}: {exc}")
                self.error = ErrorNotice(ErrorKind.REQUEST_FAILED, str(exc) or "Failed to terminate job")
            return False
        except httpx.HTTPError as exc:
            logger.warning(f"Failed to terminate job {job.id}: {exc}")
            self.error = ErrorNotice(ErrorKind.REQUEST_FAILED, str(exc) or "Failed to terminate job")
            return False
        finally:
            self.terminating = False

        if self.job is None or self.job.id != job.id:
            return False
        logger.info(f"Termination requested for job {job.id}")
        self._apply_response(response)
        self.error = None
        self.scheduler.reset_delay()
        return True

    def reconcile_snapshot(self, partial: Dict[str, Any]) -> Optional[JobSnapshot]:
        """Merge server-reported fields into the held snapshot."""
        if self.job is None and not partial.get("id"):
            return None
        merged = merge_snapshot(self.job, partial)
        self.state.job.set(merged)
        self._sync_action_state()
        return merged

    def attach(self) -> bool:
        """Resume polling for a persisted job that has not finished yet."""
        job = self.job
        if job is None or job.is_terminal:
            return False
        if self.scheduler.is_polling and self.scheduler.job_id == job.id:
            return True
        logger.info(f"Reattaching to job {job.id} at cursor {self.cursor}")
        self.scheduler.start(job.id, lambda: self.cursor)
        return True

    def reset_job_state(self, action_id: Optional[str] = None) -> None:
        """Drop every job-scoped value: snapshot, logs and cursor."""
        self.scheduler.cancel()
        self.state.job.clear()
        self.state.logs.clear()
        self.state.cursor.clear()
        self.terminating = False
        if action_id:
            self._cancel_reset_timer(action_id)
            self.action_states[action_id] = ActionState.IDLE

    async def wait_until_stopped(self) -> None:
        await self.scheduler.wait()

    async def aclose(self) -> None:
        await self.scheduler.aclose()
        for handle in self._reset_timers.values():
            handle.cancel()
        self._reset_timers.clear()
        self.state.flush_all()

    async def _fetch(self, job_id: str, cursor: int) -> JobPollResponse:
        return await self.api.fetch_job(job_id, cursor)

    def _handle_poll_update(self, response: JobPollResponse) -> None:
        self._apply_response(response)

    def _handle_poll_not_found(self, exc: RequestError) -> None:
        job = self.job
        self.reset_job_state(job.action_id if job else None)
        self.error = ErrorNotice(ErrorKind.JOB_MISSING, JOB_MISSING_ON_POLL)

    def _handle_poll_error(self, exc: Exception) -> None:
        self.error = ErrorNotice(ErrorKind.REQUEST_FAILED, str(exc) or "Polling failed")

    def _apply_response(self, response: JobPollResponse) -> None:
        self.reconcile_snapshot(response.fields)
        if self.job is not None and self.job.is_terminal and self.scheduler.is_polling:
            self.scheduler.cancel()
        if response.logs:
            self.state.logs.set(append_logs(self.logs, response.logs))
        self._set_cursor(response.next_cursor)
        if response.logs:
            self._notify(response.logs)

    def _set_cursor(self, value: int, *, force: bool = False) -> None:
        value = max(int(value), 0)
        if not force:
            value = max(value, self.cursor)
        if force or value != self.cursor:
            self.state.cursor.set(value)

    def _notify(self, entries: List[LogEntry]) -> None:
        for listener in self._listeners:
            listener(self.job, entries)

    def _sync_action_state(self) -> None:
        job = self.job
        if job is None:
            return
        mapped = action_state_for(job.status)
        if self.action_states.get(job.action_id) == mapped:
            return
        self._set_action_state(job.action_id, mapped)
        if mapped in (ActionState.SUCCESS, ActionState.ERROR):
            self._reset_action_later(job.action_id)

    def _set_action_state(self, action_id: str, value: ActionState) -> None:
        self._cancel_reset_timer(action_id)
        self.action_states[action_id] = value

    def _reset_action_later(self, action_id: str) -> None:
        self._cancel_reset_timer(action_id)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._reset_timers[action_id] = loop.call_later(
            self._action_reset_delay, self._reset_action, action_id
        )

    def _reset_action(self, action_id: str) -> None:
        self._reset_timers.pop(action_id, None)
        self.action_states[action_id] = ActionState.IDLE

    def _cancel_reset_timer(self, action_id: str) -> None:
        handle = self._reset_timers.pop(action_id, None)
        if handle is not None:
            handle.cancel()
