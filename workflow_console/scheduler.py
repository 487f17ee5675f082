"""Sequential poll loop for the active job.

Only one poll cycle exists at a time. Each tick waits for the current delay,
issues a single request from the current cursor and hands the response to
the owner through callbacks; the scheduler itself keeps no job or log state.

Pacing: a batch with new entries resets the delay to ``POLL_BASE_INTERVAL``,
an empty batch grows it by ``POLL_INCREMENT`` up to ``POLL_MAX_INTERVAL``.
A terminal status, a 404, or any other failure stops the loop. Failed polls
are not retried.
"""

import asyncio
import enum
from typing import Awaitable, Callable, List, Optional

import httpx
from loguru import logger

from .client import RequestError
from .models import JobPollResponse
from .settings import POLL_BASE_INTERVAL, POLL_INCREMENT, POLL_MAX_INTERVAL

FetchFn = Callable[[str, int], Awaitable[JobPollResponse]]
SleepFn = Callable[[float], Awaitable[None]]


class PollState(str, enum.Enum):
    IDLE = "idle"
    POLLING = "polling"
    STOPPED = "stopped"


class CancelToken:
    """Cancellation handle for one poll cycle.

    Results that complete after ``cancel()`` must be dropped by whoever
    checks the token.
    """

    def __init__(self):
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def bind(self, task: asyncio.Task) -> None:
        self._task = task

    def cancel(self) -> None:
        self._cancelled = True
        task = self._task
        # A cycle that stops itself must not cancel its own task.
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()


def next_delay(current: float, had_entries: bool) -> float:
    if had_entries:
        return POLL_BASE_INTERVAL
    return min(POLL_MAX_INTERVAL, current + POLL_INCREMENT)


class PollScheduler:
    """Drive polling for one job id at a time."""

    def __init__(
        self,
        fetch: FetchFn,
        *,
        on_update: Callable[[JobPollResponse], None],
        on_not_found: Callable[[RequestError], None],
        on_error: Callable[[Exception], None],
        sleep: SleepFn = asyncio.sleep,
    ):
        self._fetch = fetch
        self._on_update = on_update
        self._on_not_found = on_not_found
        self._on_error = on_error
        self._sleep = sleep
        self.state = PollState.IDLE
        self.delay = POLL_BASE_INTERVAL
        self.delays: List[float] = []
        self.job_id: Optional[str] = None
        self._token: Optional[CancelToken] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_polling(self) -> bool:
        return self.state == PollState.POLLING

    def start(self, job_id: str, cursor_getter: Callable[[], int]) -> None:
        """Begin a new poll cycle for ``job_id``, cancelling any previous one."""
        self.cancel()
        token = CancelToken()
        self._token = token
        self.job_id = job_id
        self.delay = POLL_BASE_INTERVAL
        self.delays = []
        self.state = PollState.POLLING
        self._task = asyncio.create_task(self._run(job_id, cursor_getter, token))
        token.bind(self._task)
        logger.debug(f"Polling started for job_id={job_id}")

    def reset_delay(self) -> None:
        self.delay = POLL_BASE_INTERVAL

    def cancel(self) -> None:
        """Abort the in-flight request and any pending wait."""
        if self._token is not None:
            self._token.cancel()
            self._token = None
        if self.state == PollState.POLLING:
            self.state = PollState.STOPPED
            logger.debug(f"Polling cancelled for job_id={self.job_id}")

    async def aclose(self) -> None:
        self.cancel()
        await self.wait()

    async def wait(self) -> None:
        """Wait until the current cycle has finished."""
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    def _stop(self, token: CancelToken) -> None:
        token.cancel()
        if self._token is token:
            self._token = None
            self.state = PollState.STOPPED

    async def _run(self, job_id: str, cursor_getter: Callable[[], int], token: CancelToken) -> None:
        while not token.cancelled:
            self.delays.append(self.delay)
            await self._sleep(self.delay)
            if token.cancelled:
                return
            cursor = cursor_getter()
            try:
                response = await self._fetch(job_id, cursor)
            except RequestError as exc:
                if token.cancelled:
                    return
                self._stop(token)
                if exc.is_not_found:
                    logger.info(f"Job {job_id} not found while polling")
                    self._on_not_found(exc)
                else:
                    logger.warning(f"Polling job {job_id} failed with status {exc.status}: {exc}")
                    self._on_error(exc)
                return
            except httpx.HTTPError as exc:
                if token.cancelled:
                    return
                self._stop(token)
                logger.warning(f"Polling job {job_id} failed: {exc}")
                self._on_error(exc)
                return

            if token.cancelled:
                return
            self.delay = next_delay(self.delay, bool(response.logs))
            logger.debug(
                f"Polled job_id={job_id} cursor={cursor} entries={len(response.logs)} "
                f"next_cursor={response.next_cursor} status={response.status}"
            )
            self._on_update(response)
            if response.is_terminal:
                self._stop(token)
                logger.info(f"Job {job_id} finished with status {response.status}")
                return
