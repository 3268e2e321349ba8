"""Job events reported by ansible-runner."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

# Ansible events
EVENT_PLAYBOOK_ON_TASK_START = "playbook_on_task_start"
EVENT_RUNNER_ON_OK = "runner_on_ok"
EVENT_RUNNER_ON_FAILED = "runner_on_failed"
EVENT_PLAYBOOK_ON_STATS = "playbook_on_stats"
EVENT_RUNNER_ITEM_ON_OK = "runner_item_on_ok"

# Ansible task actions
TASK_ACTION_SET_FACT = "set_fact"
TASK_ACTION_DEBUG = "debug"

DEFAULT_FAILED_MESSAGE = "unknown playbook failure"

FailureMessages = list[str]

_TIME_RE = re.compile(r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:[.,](\d+))?")


@dataclass(frozen=True)
class EventTime:
    """A UTC timestamp with nanosecond precision."""

    time: datetime
    extra_nanoseconds: int = 0

    @property
    def nanosecond(self) -> int:
        """The fraction of the second in nanoseconds."""
        return self.time.microsecond * 1000 + self.extra_nanoseconds

    def __str__(self) -> str:
        return format_event_time(self)


ZERO_TIME = EventTime(datetime(1, 1, 1, tzinfo=timezone.utc))


def parse_event_time(value: str) -> EventTime:
    """Parse an ansible-runner timestamp such as 2018-07-09T14:11:44.123456."""
    if not isinstance(value, str):
        raise ValueError(f"cannot parse event time {value!r}")
    text = value.strip('"\\')
    match = _TIME_RE.fullmatch(text)
    if match is None:
        raise ValueError(f"cannot parse event time {value!r}")
    year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
    nanos = int((match.group(7) or "")[:9].ljust(9, "0"))
    try:
        moment = datetime(
            year, month, day, hour, minute, second, nanos // 1000, tzinfo=timezone.utc
        )
    except ValueError as exc:
        raise ValueError(f"cannot parse event time {value!r}: {exc}") from exc
    return EventTime(moment, nanos % 1000)


def format_event_time(value: EventTime | datetime) -> str:
    """Format a timestamp with at most eight fractional digits, trailing zeros dropped."""
    if isinstance(value, EventTime):
        moment, nanos = value.time, value.nanosecond
    else:
        moment, nanos = value, value.microsecond * 1000
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    fraction = f"{nanos:09d}"[:8].rstrip("0")
    return f"{text}.{fraction}" if fraction else text


def _lookup(data: dict, key: str) -> Any:
    if key in data:
        return data[key]
    folded = key.casefold()
    for name, value in data.items():
        if isinstance(name, str) and name.casefold() == folded:
            return value
    return None


def _string(data: dict, key: str) -> str:
    value = _lookup(data, key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {value!r}")
    return value


def _integer(data: dict, key: str) -> int:
    value = _lookup(data, key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {value!r}")
    return value


def _mapping(data: dict, key: str) -> dict:
    value = _lookup(data, key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{key} must be an object, got {value!r}")
    return value


def _counts(data: dict, key: str) -> dict[str, int]:
    counts = _mapping(data, key)
    for host, count in counts.items():
        if isinstance(count, bool) or not isinstance(count, int):
            raise ValueError(f"{key}[{host!r}] must be an integer, got {count!r}")
    return dict(counts)


def _common_fields(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError("event must be a JSON object")
    created = _lookup(data, "created")
    return {
        "uuid": _string(data, "uuid"),
        "counter": _integer(data, "counter"),
        "stdout": _string(data, "stdout"),
        "start_line": _integer(data, "start_line"),
        "end_line": _integer(data, "EndLine"),
        "event": _string(data, "event"),
        "pid": _integer(data, "pid"),
        "created": ZERO_TIME if created is None else parse_event_time(created),
    }


@dataclass
class JobEvent:
    """One event of an ansible run."""

    uuid: str = ""
    counter: int = 0
    stdout: str = ""
    start_line: int = 0
    end_line: int = 0
    event: str = ""
    event_data: dict[str, Any] = field(default_factory=dict)
    pid: int = 0
    created: EventTime = ZERO_TIME

    @classmethod
    def from_dict(cls, data: Any) -> JobEvent:
        """Build an event from decoded JSON; raise ValueError on mismatched types."""
        fields = _common_fields(data)
        return cls(event_data=dict(_mapping(data, "event_data")), **fields)

    def to_dict(self) -> dict[str, Any]:
        """Return the event in its JSON shape."""
        return {
            "uuid": self.uuid,
            "counter": self.counter,
            "stdout": self.stdout,
            "start_line": self.start_line,
            "EndLine": self.end_line,
            "event": self.event,
            "event_data": self.event_data,
            "pid": self.pid,
            "created": format_event_time(self.created),
        }

    def failed_playbook_message(self) -> str:
        """Return res.msg from the event data, or a generic failure message."""
        result = self.event_data.get("res")
        if not isinstance(result, dict):
            return DEFAULT_FAILED_MESSAGE
        message = result.get("msg")
        return message if isinstance(message, str) else DEFAULT_FAILED_MESSAGE

    def ignore_error(self) -> bool:
        """Whether the task carried the ignore_errors flag."""
        return self.event_data.get("ignore_errors") is True

    def rescued(self) -> bool:
        """Whether any host reported the task as rescued."""
        if "rescued" not in self.event_data:
            return False
        hosts = self.event_data["rescued"]
        if not isinstance(hosts, dict):
            raise TypeError("rescued must map hosts to counts")
        return any(int(count) == 1 for count in hosts.values())


@dataclass
class StatsEventData:
    """Per-host summary carried by a playbook_on_stats event."""

    playbook: str = ""
    playbook_uuid: str = ""
    changed: dict[str, int] = field(default_factory=dict)
    ok: dict[str, int] = field(default_factory=dict)
    failures: dict[str, int] = field(default_factory=dict)
    skipped: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> StatsEventData:
        """Build stats from decoded JSON; raise ValueError on mismatched types."""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("event_data must be a JSON object")
        return cls(
            playbook=_string(data, "playbook"),
            playbook_uuid=_string(data, "playbook_uuid"),
            changed=_counts(data, "changed"),
            ok=_counts(data, "ok"),
            failures=_counts(data, "failures"),
            skipped=_counts(data, "skipped"),
        )


@dataclass
class StatusJobEvent:
    """A job event whose data is the end-of-playbook summary."""

    uuid: str = ""
    counter: int = 0
    stdout: str = ""
    start_line: int = 0
    end_line: int = 0
    event: str = ""
    event_data: StatsEventData = field(default_factory=StatsEventData)
    pid: int = 0
    created: EventTime = ZERO_TIME

    @classmethod
    def from_dict(cls, data: Any) -> StatusJobEvent:
        """Build a status event from decoded JSON; raise ValueError on mismatched types."""
        fields = _common_fields(data)
        return cls(event_data=StatsEventData.from_dict(_lookup(data, "event_data")), **fields)