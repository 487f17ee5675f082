"""Data models for jobs, log entries and the action catalog."""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

PENDING = "pending"
RUNNING = "running"
SUCCESS = "success"
ERROR = "error"

ACTIVE_STATUSES = (PENDING, RUNNING)
TERMINAL_STATUSES = (SUCCESS, ERROR)

LOG_STREAMS = ("stdout", "stderr", "system")

# Wire name -> attribute name for every field a server update may carry.
SNAPSHOT_FIELDS: Dict[str, str] = {
    "id": "id",
    "actionId": "action_id",
    "title": "title",
    "status": "status",
    "command": "command",
    "displayCommand": "display_command",
    "createdAt": "created_at",
    "startedAt": "started_at",
    "finishedAt": "finished_at",
    "exitCode": "exit_code",
    "cancelRequested": "cancel_requested",
}


def is_terminal(status: Optional[str]) -> bool:
    return status in TERMINAL_STATUSES


def is_active(status: Optional[str]) -> bool:
    return status in ACTIVE_STATUSES


@dataclass(frozen=True)
class LogEntry:
    """A single line of job output, keyed by its server-assigned ``seq``."""
    seq: int
    timestamp: str
    stream: str = "stdout"
    text: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "timestamp": self.timestamp,
            "stream": self.stream,
            "text": self.text,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        stream = data.get("stream")
        return cls(
            seq=int(data["seq"]),
            timestamp=str(data.get("timestamp") or ""),
            stream=stream if stream in LOG_STREAMS else "stdout",
            text=str(data.get("text") or ""),
        )


@dataclass
class JobSnapshot:
    """Client-side view of a remote job's status."""
    id: str
    action_id: str
    status: str = PENDING
    title: str = ""
    command: List[str] = field(default_factory=list)
    display_command: str = ""
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    exit_code: Optional[int] = None
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    @property
    def is_active(self) -> bool:
        return is_active(self.status)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase wire representation."""
        return {wire: getattr(self, attr) for wire, attr in SNAPSHOT_FIELDS.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobSnapshot":
        if not data.get("id") or not data.get("actionId"):
            raise ValueError("Job snapshot requires 'id' and 'actionId'")
        values = {attr: data[wire] for wire, attr in SNAPSHOT_FIELDS.items() if wire in data}
        values["command"] = list(values.get("command") or [])
        values["cancel_requested"] = bool(values.get("cancel_requested", False))
        return cls(**values)


def merge_snapshot(current: Optional[JobSnapshot], partial: Dict[str, Any]) -> JobSnapshot:
    """Merge a server-reported partial update into ``current``.

    Only keys present in ``partial`` are applied; everything else keeps its
    current value. A snapshot that already reached a terminal status keeps it.
    """
    if current is None:
        return JobSnapshot.from_dict(partial)

    updates: Dict[str, Any] = {}
    for wire, attr in SNAPSHOT_FIELDS.items():
        if wire not in partial:
            continue
        value = partial[wire]
        if attr == "status" and current.is_terminal and value != current.status:
            continue
        if attr == "command":
            value = list(value or [])
        elif attr == "cancel_requested":
            value = bool(value)
        updates[attr] = value

    return replace(current, **updates)


@dataclass
class JobPollResponse:
    """Response of create/poll/terminate: snapshot fields plus a log batch."""
    fields: Dict[str, Any]
    logs: List[LogEntry] = field(default_factory=list)
    next_cursor: int = 0

    @property
    def status(self) -> Optional[str]:
        return self.fields.get("status")

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobPollResponse":
        return cls(
            fields={wire: data[wire] for wire in SNAPSHOT_FIELDS if wire in data},
            logs=[LogEntry.from_dict(item) for item in data.get("logs") or []],
            next_cursor=int(data.get("nextCursor") or 0),
        )


@dataclass
class ActionOption:
    id: str
    label: str
    args: List[str] = field(default_factory=list)
    description: str = ""
    default_selected: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionOption":
        return cls(
            id=str(data["id"]),
            label=str(data.get("label") or data["id"]),
            args=[str(arg) for arg in data.get("args") or []],
            description=str(data.get("description") or ""),
            default_selected=bool(data.get("defaultSelected") or False),
        )


@dataclass
class ActionMeta:
    """Static description of an action the job runner can execute."""
    id: str
    title: str
    description: str = ""
    hint: Optional[str] = None
    default_args: List[str] = field(default_factory=list)
    command_preview: str = ""
    options: List[ActionOption] = field(default_factory=list)

    def option_ids(self) -> List[str]:
        return [option.id for option in self.options]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionMeta":
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or data["id"]),
            description=str(data.get("description") or ""),
            hint=data.get("hint"),
            default_args=[str(arg) for arg in data.get("defaultArgs") or []],
            command_preview=str(data.get("commandPreview") or ""),
            options=[ActionOption.from_dict(item) for item in data.get("options") or []],
        )


@dataclass
class StorySummary:
    id: str
    title: str
    owners: List[str] = field(default_factory=list)
    status: Optional[str] = None
    frontend: Optional[str] = None
    iteration: Optional[str] = None
    updated_at: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StorySummary":
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            owners=[str(owner) for owner in data.get("owners") or []],
            status=data.get("status"),
            frontend=data.get("frontend"),
            iteration=data.get("iteration"),
            updated_at=data.get("updatedAt"),
            url=data.get("url"),
        )


@dataclass
class OwnerAggregate:
    name: str
    count: int = 0


@dataclass
class QuickOwnerAggregate:
    name: str
    owners: List[str] = field(default_factory=list)
    count: int = 0


@dataclass
class StoryCollection:
    stories: List[StorySummary] = field(default_factory=list)
    total: int = 0
    owners: List[OwnerAggregate] = field(default_factory=list)
    quick_owners: List[QuickOwnerAggregate] = field(default_factory=list)
    truncated: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoryCollection":
        return cls(
            stories=[StorySummary.from_dict(item) for item in data.get("stories") or []],
            total=int(data.get("total") or 0),
            owners=[
                OwnerAggregate(name=str(item["name"]), count=int(item.get("count") or 0))
                for item in data.get("owners") or []
            ],
            quick_owners=[
                QuickOwnerAggregate(
                    name=str(item["name"]),
                    owners=[str(owner) for owner in item.get("owners") or []],
                    count=int(item.get("count") or 0),
                )
                for item in data.get("quickOwners") or []
            ],
            truncated=bool(data.get("truncated") or False),
        )
