"""In-memory job API used for tests and local development.

Serves the same routes as the real job runner. Nothing is executed: each job
replays a scripted list of output lines, a few per poll, and finishes once the
script is exhausted.
"""

import shlex
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

DEFAULT_SCRIPT: List[Tuple[str, str]] = [
    ("stdout", "Loading configuration"),
    ("stdout", "Fetching stories"),
    ("stderr", "warning: 1 story has no owner"),
    ("stdout", "Syncing pages"),
    ("stdout", "Done"),
]

DEFAULT_ACTIONS: List[Dict[str, Any]] = [
    {
        "id": "pull-to-notion",
        "title": "Pull stories to Notion",
        "description": "Copy the selected stories into the Notion workspace.",
        "hint": None,
        "defaultArgs": ["sync", "pull"],
        "commandPreview": "workflow sync pull",
        "options": [
            {
                "id": "dry-run",
                "label": "Dry run",
                "args": ["--dry-run"],
                "description": "Report changes without writing them.",
                "defaultSelected": False,
            },
            {
                "id": "verbose",
                "label": "Verbose",
                "args": ["--verbose"],
                "description": "Print every synced page.",
                "defaultSelected": True,
            },
        ],
    },
    {
        "id": "qa-report",
        "title": "QA report",
        "description": "Build the QA link report for the selected owners.",
        "hint": "Runs against the current iteration.",
        "defaultArgs": ["qa", "report"],
        "commandPreview": "workflow qa report",
        "options": [],
    },
]

DEFAULT_STORIES: List[Dict[str, Any]] = [
    {"id": "1001", "title": "Login page revamp", "owners": ["alice"], "status": "doing"},
    {"id": "1002", "title": "Export to CSV", "owners": ["bob", "alice"], "status": "todo"},
    {"id": "1003", "title": "Flaky upload fix", "owners": [], "status": "todo"},
]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CreateJobRequest(BaseModel):
    actionId: str = Field(..., min_length=1)
    args: Optional[List[str]] = Field(default=None)
    extraArgs: Optional[List[str]] = Field(default=None)
    storyIds: Optional[List[str]] = Field(default=None)

    @field_validator("storyIds")
    @classmethod
    def validate_story_ids(cls, value: Optional[List[str]]):
        if value is None:
            return value
        if any(not item.strip() for item in value):
            raise ValueError("Story ids must be non-empty strings")
        return value


@dataclass
class FakeJob:
    id: str
    action_id: str
    title: str
    command: List[str]
    script: List[Tuple[str, str]]
    status: str = "pending"
    created_at: str = field(default_factory=_now)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    exit_code: Optional[int] = None
    cancel_requested: bool = False
    logs: List[Dict[str, Any]] = field(default_factory=list)
    script_position: int = 0

    def emit(self, stream: str, text: str) -> None:
        self.logs.append({"seq": len(self.logs) + 1, "timestamp": _now(), "stream": stream, "text": text})

    def snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "actionId": self.action_id,
            "title": self.title,
            "status": self.status,
            "command": list(self.command),
            "displayCommand": shlex.join(self.command),
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "exitCode": self.exit_code,
            "cancelRequested": self.cancel_requested,
        }


class FakeJobStore:
    """Holds jobs and advances them one step per poll.

    ``batch_size`` lines are emitted per poll. ``resend`` re-sends that many
    already delivered entries in front of each batch to mimic a server that
    repeats itself after a retry.
    """

    def __init__(self, script: Optional[List[Tuple[str, str]]] = None, *, batch_size: int = 2, resend: int = 0):
        self.script = list(script if script is not None else DEFAULT_SCRIPT)
        self.batch_size = batch_size
        self.resend = resend
        self.jobs: Dict[str, FakeJob] = {}

    def create(self, action: Dict[str, Any], args: List[str], story_ids: Optional[List[str]]) -> FakeJob:
        command = ["workflow"] + list(args)
        if story_ids:
            command += ["--story-ids", ",".join(story_ids)]
        job = FakeJob(
            id=uuid.uuid4().hex[:16],
            action_id=action["id"],
            title=action["title"],
            command=command,
            script=list(self.script),
        )
        job.emit("system", f"$ {shlex.join(command)}")
        self.jobs[job.id] = job
        return job

    def advance(self, job: FakeJob) -> None:
        if job.status in ("success", "error"):
            return
        if job.status == "pending":
            job.status = "running"
            job.started_at = _now()
            return
        if job.cancel_requested:
            job.emit("system", "Process terminated")
            self._finish(job, "error", -15)
            return
        batch = job.script[job.script_position:job.script_position + self.batch_size]
        job.script_position += len(batch)
        for stream, text in batch:
            job.emit(stream, text)
        if job.script_position >= len(job.script):
            job.emit("system", "Process exited with code 0")
            self._finish(job, "success", 0)

    def _finish(self, job: FakeJob, status: str, exit_code: int) -> None:
        job.status = status
        job.exit_code = exit_code
        job.finished_at = _now()

    def respond(self, job: FakeJob, cursor: int) -> Dict[str, Any]:
        start = max(min(cursor, len(job.logs)) - self.resend, 0)
        payload = job.snapshot()
        payload["logs"] = list(job.logs[start:])
        payload["nextCursor"] = len(job.logs)
        return payload


def _aggregate_stories(stories: List[Dict[str, Any]], quick: List[str], limit: Optional[int]) -> Dict[str, Any]:
    counts: Dict[str, int] = {}
    for story in stories:
        for owner in story.get("owners") or ["Unassigned"]:
            counts[owner] = counts.get(owner, 0) + 1
    quick_owners = []
    for name in quick:
        matches = sorted(owner for owner in counts if name in owner)
        count = sum(1 for story in stories if any(owner in matches for owner in story.get("owners") or []))
        quick_owners.append({"name": name, "owners": matches, "count": count})
    selected = stories[:limit] if limit else stories
    return {
        "stories": selected,
        "total": len(stories),
        "owners": [{"name": name, "count": count} for name, count in sorted(counts.items())],
        "quickOwners": quick_owners,
        "truncated": len(selected) < len(stories),
    }


def create_app(
    *,
    actions: Optional[List[Dict[str, Any]]] = None,
    stories: Optional[List[Dict[str, Any]]] = None,
    store: Optional[FakeJobStore] = None,
) -> FastAPI:
    """Build a job API app backed by ``store``."""
    catalog = list(actions if actions is not None else DEFAULT_ACTIONS)
    story_list = list(stories if stories is not None else DEFAULT_STORIES)
    job_store = store or FakeJobStore()

    app = FastAPI(
        title="Workflow Job API (in-memory)",
        description="Scripted job runner for local development and tests",
        version="1.0.0",
    )
    app.state.job_store = job_store

    def _get_job(job_id: str) -> FakeJob:
        job = job_store.jobs.get(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    @app.get("/api/actions")
    async def list_actions():
        return catalog

    @app.post("/api/jobs")
    async def create_job(request: CreateJobRequest):
        action = next((item for item in catalog if item["id"] == request.actionId), None)
        if action is None:
            raise HTTPException(status_code=400, detail=f"Unknown action: {request.actionId}")
        args = list(request.args if request.args is not None else action.get("defaultArgs") or [])
        args += list(request.extraArgs or [])
        job = job_store.create(action, args, request.storyIds)
        return job_store.respond(job, 0)

    @app.get("/api/jobs/{job_id}")
    async def poll_job(job_id: str, cursor: int = Query(0, ge=0)):
        job = _get_job(job_id)
        job_store.advance(job)
        return job_store.respond(job, cursor)

    @app.post("/api/jobs/{job_id}/terminate")
    async def terminate_job(job_id: str, cursor: int = Query(0, ge=0)):
        job = _get_job(job_id)
        if job.status not in ("success", "error") and not job.cancel_requested:
            job.cancel_requested = True
            job.emit("system", "Termination requested")
        return job_store.respond(job, cursor)

    @app.get("/api/stories")
    async def list_stories(
        quick: List[str] = Query(default=[]),
        limit: Optional[int] = Query(None, ge=1, le=1000),
    ):
        return _aggregate_stories(story_list, quick, limit)

    @app.get("/health")
    async def health_check():
        active = [job for job in job_store.jobs.values() if job.status in ("pending", "running")]
        return {"status": "ok", "active_jobs": len(active), "total_jobs": len(job_store.jobs)}

    return app
