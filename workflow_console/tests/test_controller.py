import asyncio
import json

import httpx
import pytest

from workflow_console.client import JobApiClient, RequestError
from workflow_console.controller import (
    JOB_MISSING_ON_POLL,
    JOB_MISSING_ON_TERMINATE,
    ActionState,
    ErrorKind,
    JobController,
)
from workflow_console.fake_server import FakeJobStore
from workflow_console.models import JobPollResponse, JobSnapshot
from workflow_console.persistence import ConsoleState, MemoryStore
from workflow_console.settings import JOB_CURSOR_KEY, JOB_LOGS_KEY, JOB_SNAPSHOT_KEY

from .conftest import make_entries


class StubApi:
    """Records calls and replays queued outcomes per endpoint."""

    def __init__(self, *, create=None, fetch=None, terminate=None):
        self.outcomes = {
            "create": list(create or []),
            "fetch": list(fetch or []),
            "terminate": list(terminate or []),
        }
        self.calls = {"create": [], "fetch": [], "terminate": []}

    def _next(self, name, call):
        self.calls[name].append(call)
        outcome = self.outcomes[name].pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def create_job(self, action_id, *, args=None, extra_args=None, story_ids=None):
        await asyncio.sleep(0)
        return self._next("create", (action_id, args, story_ids))

    async def fetch_job(self, job_id, cursor=0):
        await asyncio.sleep(0)
        return self._next("fetch", (job_id, cursor))

    async def terminate_job(self, job_id, cursor=0):
        await asyncio.sleep(0)
        return self._next("terminate", (job_id, cursor))


def running_job(**overrides):
    data = {
        "id": "job-1",
        "actionId": "qa-report",
        "status": "running",
        "command": ["workflow", "qa", "report"],
        "createdAt": "2025-01-01T00:00:00+00:00",
        "startedAt": "2025-01-01T00:00:01+00:00",
        "cancelRequested": False,
    }
    data.update(overrides)
    return JobSnapshot.from_dict(data)


def seeded_state(store=None, *, cursor=5):
    state = ConsoleState(store or MemoryStore())
    state.job.set(running_job())
    state.logs.set(make_entries(1, 2, 3))
    state.cursor.set(cursor)
    state.flush_all()
    return state


@pytest.mark.asyncio
async def test_submit_follows_job_to_completion(api, console_state, recording_sleep):
    controller = JobController(api, console_state, sleep=recording_sleep)
    seen = []
    controller.add_listener(lambda job, entries: seen.extend(entries))

    job = await controller.submit("qa-report", ["qa", "report"])
    assert job is not None
    assert controller.busy
    await controller.wait_until_stopped()

    assert controller.job.status == "success"
    assert controller.job.exit_code == 0
    seqs = [entry.seq for entry in controller.logs]
    assert seqs == list(range(1, len(seqs) + 1))
    assert controller.cursor == len(seqs)
    assert [entry.seq for entry in seen] == seqs
    assert controller.action_state("qa-report") == ActionState.SUCCESS
    assert controller.error is None
    await controller.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("job_store", [FakeJobStore(resend=2, batch_size=1)])
async def test_resent_entries_are_deduplicated(api, console_state, recording_sleep, job_store):
    controller = JobController(api, console_state, sleep=recording_sleep)

    await controller.submit("qa-report", ["qa"])
    await controller.wait_until_stopped()

    seqs = [entry.seq for entry in controller.logs]
    assert len(seqs) == len(set(seqs))
    assert sorted(seqs) == list(range(1, len(job_store.jobs[controller.job.id].logs) + 1))
    await controller.aclose()


@pytest.mark.asyncio
async def test_submit_is_ignored_while_job_active(recording_sleep):
    stub = StubApi()
    controller = JobController(stub, seeded_state(), sleep=recording_sleep)

    assert await controller.submit("pull-to-notion", ["sync"]) is None
    assert stub.calls["create"] == []
    assert controller.job.id == "job-1"


@pytest.mark.asyncio
async def test_submit_failure_leaves_no_job_state(recording_sleep):
    store = MemoryStore()
    stub = StubApi(create=[RequestError(500, "runner unavailable")])
    controller = JobController(stub, ConsoleState(store), sleep=recording_sleep, action_reset_delay=0.01)

    assert await controller.submit("qa-report", ["qa"]) is None

    assert controller.job is None
    assert controller.logs == []
    assert controller.cursor == 0
    assert controller.error.kind == ErrorKind.REQUEST_FAILED
    assert controller.error.message == "runner unavailable"
    assert controller.action_state("qa-report") == ActionState.ERROR
    assert not controller.scheduler.is_polling
    assert store.get(JOB_SNAPSHOT_KEY) is None

    await asyncio.sleep(0.05)
    assert controller.action_state("qa-report") == ActionState.IDLE


@pytest.mark.asyncio
async def test_terminate_twice_sends_one_request(recording_sleep):
    stub = StubApi(
        terminate=[
            JobPollResponse(
                fields={"status": "running", "cancelRequested": True},
                logs=make_entries(6),
                next_cursor=6,
            )
        ]
    )
    controller = JobController(stub, seeded_state(), sleep=recording_sleep)

    first, second = await asyncio.gather(controller.terminate(), controller.terminate())
    assert (first, second) == (True, False)
    assert controller.job.cancel_requested is True
    snapshot_after_first = controller.job.to_dict()

    assert await controller.terminate() is False
    assert len(stub.calls["terminate"]) == 1
    assert stub.calls["terminate"][0] == ("job-1", 5)
    assert controller.job.to_dict() == snapshot_after_first
    assert controller.cursor == 6
    assert [entry.seq for entry in controller.logs] == [1, 2, 3, 6]
    assert not controller.can_terminate
    assert controller.terminate_pending


@pytest.mark.asyncio
async def test_terminate_uses_cursor_given_at_call_time(recording_sleep):
    stub = StubApi(terminate=[JobPollResponse(fields={"cancelRequested": True}, next_cursor=5)])
    controller = JobController(stub, seeded_state(), sleep=recording_sleep)

    assert await controller.terminate("job-1", 2) is True
    assert stub.calls["terminate"] == [("job-1", 2)]
    assert controller.cursor == 5


@pytest.mark.asyncio
async def test_terminate_ignores_other_job_and_finished_job(recording_sleep):
    stub = StubApi()
    state = seeded_state()
    controller = JobController(stub, state, sleep=recording_sleep)

    assert await controller.terminate("job-2") is False
    state.job.set(running_job(status="success", exitCode=0))
    assert await controller.terminate() is False
    assert stub.calls["terminate"] == []


@pytest.mark.asyncio
async def test_terminate_missing_job_clears_state(recording_sleep):
    store = MemoryStore()
    stub = StubApi(terminate=[RequestError(404, '{"detail":"Job not found"}')])
    controller = JobController(stub, seeded_state(store), sleep=recording_sleep)

    assert await controller.terminate() is False

    assert controller.job is None
    assert controller.logs == []
    assert controller.cursor == 0
    assert controller.error.kind == ErrorKind.JOB_MISSING
    assert controller.error.message == JOB_MISSING_ON_TERMINATE
    assert controller.action_state("qa-report") == ActionState.IDLE
    for key in (JOB_SNAPSHOT_KEY, JOB_LOGS_KEY, JOB_CURSOR_KEY):
        assert store.get(key) is None


@pytest.mark.asyncio
async def test_terminate_failure_keeps_state(recording_sleep):
    stub = StubApi(terminate=[RequestError(502, "bad gateway")])
    state = seeded_state()
    controller = JobController(stub, state, sleep=recording_sleep)
    before = controller.job.to_dict()

    assert await controller.terminate() is False

    assert controller.job.to_dict() == before
    assert [entry.seq for entry in controller.logs] == [1, 2, 3]
    assert controller.cursor == 5
    assert controller.error.kind == ErrorKind.REQUEST_FAILED
    assert controller.error.message == "bad gateway"
    assert controller.can_terminate


@pytest.mark.asyncio
async def test_poll_not_found_clears_everything(recording_sleep):
    store = MemoryStore()
    stub = StubApi(fetch=[RequestError(404, "Job not found"), JobPollResponse(fields={})])
    controller = JobController(stub, seeded_state(store), sleep=recording_sleep)

    assert controller.attach() is True
    await controller.wait_until_stopped()

    assert stub.calls["fetch"] == [("job-1", 5)]
    assert controller.job is None
    assert controller.logs == []
    assert controller.cursor == 0
    assert controller.error.kind == ErrorKind.JOB_MISSING
    assert controller.error.message == JOB_MISSING_ON_POLL
    assert not controller.scheduler.is_polling
    assert recording_sleep.delays == [1.5]
    for key in (JOB_SNAPSHOT_KEY, JOB_LOGS_KEY, JOB_CURSOR_KEY):
        assert store.get(key) is None


@pytest.mark.asyncio
async def test_poll_failure_stops_and_keeps_state(recording_sleep):
    stub = StubApi(fetch=[httpx.ReadTimeout("timed out")])
    controller = JobController(stub, seeded_state(), sleep=recording_sleep)

    controller.attach()
    await controller.wait_until_stopped()

    assert controller.error.kind == ErrorKind.REQUEST_FAILED
    assert controller.job.id == "job-1"
    assert controller.cursor == 5
    assert len(stub.calls["fetch"]) == 1


@pytest.mark.asyncio
async def test_attach_resumes_from_persisted_cursor(recording_sleep):
    store = MemoryStore()
    seeded_state(store, cursor=3)
    stub = StubApi(
        fetch=[
            JobPollResponse(fields={"status": "running"}, logs=make_entries(3, 4), next_cursor=4),
            JobPollResponse(fields={"status": "success", "exitCode": 0}, logs=[], next_cursor=4),
        ]
    )
    controller = JobController(stub, ConsoleState(store), sleep=recording_sleep)

    assert controller.action_state("qa-report") == ActionState.RUNNING
    controller.attach()
    await controller.wait_until_stopped()

    assert stub.calls["fetch"] == [("job-1", 3), ("job-1", 4)]
    assert [entry.seq for entry in controller.logs] == [1, 2, 3, 4]
    assert controller.job.status == "success"
    assert controller.job.started_at == "2025-01-01T00:00:01+00:00"
    assert controller.action_state("qa-report") == ActionState.SUCCESS
    assert controller.attach() is False


@pytest.mark.asyncio
async def test_cursor_never_moves_backwards(recording_sleep):
    stub = StubApi(
        fetch=[
            JobPollResponse(fields={"status": "running"}, logs=[], next_cursor=2),
            JobPollResponse(fields={"status": "success"}, logs=[], next_cursor=5),
        ]
    )
    controller = JobController(stub, seeded_state(cursor=4), sleep=recording_sleep)

    controller.attach()
    await controller.wait_until_stopped()

    assert [call[1] for call in stub.calls["fetch"]] == [4, 4]
    assert controller.cursor == 5


def test_reconcile_snapshot_merges_present_fields_only():
    controller = JobController(StubApi(), seeded_state())

    merged = controller.reconcile_snapshot({"exitCode": 1, "status": "error"})

    assert merged.exit_code == 1
    assert merged.status == "error"
    assert merged.command == ["workflow", "qa", "report"]
    assert merged.started_at == "2025-01-01T00:00:01+00:00"
    assert controller.job == merged


@pytest.mark.asyncio
async def test_aclose_flushes_debounced_logs():
    store = MemoryStore()
    state = ConsoleState(store, log_write_delay=30.0)
    controller = JobController(StubApi(), state)

    state.logs.set(make_entries(1, 2))
    assert store.get(JOB_LOGS_KEY) is None
    await controller.aclose()

    assert [item["seq"] for item in json.loads(store.get(JOB_LOGS_KEY))] == [1, 2]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "job_store",
    [FakeJobStore(script=[("stdout", f"step {i}") for i in range(50)], batch_size=1)],
)
async def test_terminate_against_server(api, console_state, recording_sleep, job_store):
    controller = JobController(api, console_state, sleep=recording_sleep)

    await controller.submit("qa-report", ["qa"])
    assert await controller.terminate() is True
    await controller.wait_until_stopped()

    assert controller.job.cancel_requested is True
    assert controller.job.status == "error"
    assert controller.job.exit_code == -15
    texts = [entry.text for entry in controller.logs]
    assert "Termination requested" in texts
    assert "Process terminated" in texts
    seqs = [entry.seq for entry in controller.logs]
    assert len(seqs) == len(set(seqs))
    await controller.aclose()


def mock_api(handler):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return JobApiClient("http://jobs.local", http_client=http_client)


def proxy_error_page(request):
    return httpx.Response(200, text="<html>proxy error</html>")


@pytest.mark.asyncio
async def test_overlapping_submits_create_one_job(recording_sleep):
    created = running_job(status="pending").to_dict()
    stub = StubApi(create=[JobPollResponse(fields=created, next_cursor=0)])
    controller = JobController(stub, ConsoleState(MemoryStore()), sleep=recording_sleep)

    first, second = await asyncio.gather(
        controller.submit("qa-report", ["qa"]),
        controller.submit("qa-report", ["qa"]),
    )

    assert first.id == "job-1"
    assert second is None
    assert len(stub.calls["create"]) == 1
    assert not controller.submitting
    await controller.aclose()


@pytest.mark.asyncio
async def test_unparseable_poll_body_stops_with_error(recording_sleep):
    controller = JobController(mock_api(proxy_error_page), seeded_state(), sleep=recording_sleep)

    controller.attach()
    await controller.wait_until_stopped()

    assert controller.error.kind == ErrorKind.REQUEST_FAILED
    assert not controller.scheduler.is_polling
    assert controller.job.id == "job-1"
    assert controller.cursor == 5


@pytest.mark.asyncio
async def test_unparseable_terminate_body_keeps_state(recording_sleep):
    controller = JobController(mock_api(proxy_error_page), seeded_state(), sleep=recording_sleep)

    assert await controller.terminate() is False

    assert controller.error.kind == ErrorKind.REQUEST_FAILED
    assert controller.job.cancel_requested is False
    assert controller.can_terminate


@pytest.mark.asyncio
async def test_malformed_submit_response_marks_action_failed(recording_sleep):
    def handler(request):
        return httpx.Response(
            200,
            json={"id": "job-1", "actionId": "qa-report", "status": "pending", "logs": [{"text": "no seq"}]},
        )

    store = MemoryStore()
    controller = JobController(mock_api(handler), ConsoleState(store), sleep=recording_sleep)

    assert await controller.submit("qa-report", ["qa"]) is None

    assert controller.error.kind == ErrorKind.REQUEST_FAILED
    assert controller.action_state("qa-report") == ActionState.ERROR
    assert controller.job is None
    assert not controller.busy
    assert store.get(JOB_SNAPSHOT_KEY) is None
