"""Scheduling engine: effort parsing, ASAP schedules and Gantt metrics.

Hours are floats relative to a reference instant ``t0``. All functions are
pure and take the ``dict[str, TaskNode]`` produced by ``build_graph``.
"""

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from backlog_conductor.core.graph import TaskNode
from backlog_conductor.db.models import TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_SIZES = {"S": 0.5, "M": 1.0, "L": 2.0, "XL": 4.0}

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(h|hr|hrs|hours?|m|min|mins|minutes?)?$")


def parse_duration(value: str | None) -> float | None:
    """Parse ``"2h"``, ``"30m"``, ``"1.5h"`` or ``"90min"`` to hours. A bare number is hours."""
    if not value:
        return None
    match = _DURATION_RE.match(str(value).strip().lower())
    if not match:
        return None
    amount = float(match.group(1))
    unit = match.group(2) or "h"
    if unit.startswith("m"):
        return amount / 60
    return amount


@dataclass(frozen=True)
class EffortConfig:
    default_duration: float = 1.0
    effort_map: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_SIZES))

    @classmethod
    def from_string(cls, table: str, default_duration: float = 1.0) -> "EffortConfig":
        """Parse a size table like ``"S=2h,M=4h"`` on top of the defaults."""
        sizes = dict(DEFAULT_SIZES)
        for part in (table or "").split(","):
            part = part.strip()
            if not part:
                continue
            if "=" not in part:
                raise ValueError(f"Invalid effort entry '{part}' (expected SIZE=DURATION)")
            size, raw = part.split("=", 1)
            hours = parse_duration(raw)
            if hours is None:
                raise ValueError(f"Invalid duration '{raw}' for size '{size.strip()}'")
            sizes[size.strip().upper()] = hours
        return cls(default_duration=default_duration, effort_map=sizes)

    @classmethod
    def from_strings(cls, default_duration: str, effort_map: str) -> "EffortConfig":
        hours = parse_duration(default_duration)
        if hours is None:
            raise ValueError(f"Invalid default duration '{default_duration}'")
        return cls.from_string(effort_map, default_duration=hours)


def get_duration(effort: str | None, cfg: EffortConfig) -> float:
    """Duration string first, then a legacy size via the table, then the default."""
    hours = parse_duration(effort)
    if hours is not None:
        return hours
    if effort:
        size = str(effort).strip().upper()
        if size in cfg.effort_map:
            return cfg.effort_map[size]
    return cfg.default_duration


@dataclass
class Schedule:
    start_hour: float
    end_hour: float
    duration_hours: float
    overflow_hours: float = 0.0


@dataclass
class Envelope:
    total_hours: float = 0.0
    weighted_hours: float = 0.0
    earliest_start: float = 0.0
    latest_end: float = 0.0
    task_count: int = 0


@dataclass
class GanttMetrics:
    real_span_hours: float
    display_span_hours: float
    total_effort_hours: float
    critical_timespan_hours: float
    min_start_hour: float
    max_end_hour: float
    display_max_end_hour: float
    overflow_hours: float
    critical_path: list[str]
    parallel_efficiency: float
    task_count: int

    def to_dict(self) -> dict:
        return {
            "real_span_hours": self.real_span_hours,
            "display_span_hours": self.display_span_hours,
            "total_effort_hours": self.total_effort_hours,
            "critical_timespan_hours": self.critical_timespan_hours,
            "min_start_hour": self.min_start_hour,
            "max_end_hour": self.max_end_hour,
            "display_max_end_hour": self.display_max_end_hour,
            "overflow_hours": self.overflow_hours,
            "critical_path": self.critical_path,
            "parallel_efficiency": self.parallel_efficiency,
            "task_count": self.task_count,
        }


def _task_duration(node: TaskNode, cfg: EffortConfig) -> float:
    if node.status == TaskStatus.CANCELLED:
        return 0.0
    return get_duration(node.effort, cfg)


def _topological_order(tasks: dict[str, TaskNode]) -> tuple[list[str], list[str]]:
    """Kahn's algorithm over in-set blocker edges. Returns (ordered, cyclic leftovers)."""
    in_degree = {task_id: 0 for task_id in tasks}
    dependents: dict[str, list[str]] = {}
    for task_id, node in tasks.items():
        for blocker_id in node.blocked_by:
            if blocker_id in tasks:
                in_degree[task_id] += 1
                dependents.setdefault(blocker_id, []).append(task_id)

    queue = deque(task_id for task_id, deg in in_degree.items() if deg == 0)
    ordered = []
    while queue:
        task_id = queue.popleft()
        ordered.append(task_id)
        for dep_id in dependents.get(task_id, []):
            in_degree[dep_id] -= 1
            if in_degree[dep_id] == 0:
                queue.append(dep_id)

    placed = set(ordered)
    leftovers = [task_id for task_id in tasks if task_id not in placed]
    return ordered, leftovers


def _blocker_end(node: TaskNode, schedule: dict[str, Schedule]) -> float:
    ends = [schedule[b].end_hour for b in node.blocked_by if b in schedule]
    return max(ends, default=0.0)


def calculate_theoretical_schedule(tasks: dict[str, TaskNode], cfg: EffortConfig) -> dict[str, Schedule]:
    """Pure ASAP schedule from hour 0, ignoring real dates.

    Tasks caught in a cycle cannot be ordered; they are appended one after
    another past the current maximum end so the schedule stays total.
    """
    ordered, leftovers = _topological_order(tasks)
    schedule: dict[str, Schedule] = {}

    for task_id in ordered:
        node = tasks[task_id]
        duration = _task_duration(node, cfg)
        start = _blocker_end(node, schedule)
        schedule[task_id] = Schedule(start, start + duration, duration)

    if leftovers:
        logger.warning("Scheduling %d task(s) caught in dependency cycles: %s", len(leftovers), leftovers)
    for task_id in leftovers:
        duration = _task_duration(tasks[task_id], cfg)
        start = max((s.end_hour for s in schedule.values()), default=0.0)
        schedule[task_id] = Schedule(start, start + duration, duration)

    return schedule


def _hours_since(t0: datetime, dt: datetime) -> float:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - t0).total_seconds() / 3600


def compute_t0(tasks: dict[str, TaskNode], now: datetime | None = None) -> datetime:
    """Earliest ``started_at`` truncated to the start of its day, else ``now``."""
    now = now or datetime.now(timezone.utc)
    starts = [n.started_at for n in tasks.values() if n.started_at is not None]
    if not starts:
        return now
    earliest = min(s if s.tzinfo else s.replace(tzinfo=timezone.utc) for s in starts)
    return earliest.replace(hour=0, minute=0, second=0, microsecond=0)


def get_task_schedules(
    tasks: dict[str, TaskNode],
    cfg: EffortConfig,
    t0: datetime,
    now: datetime | None = None,
) -> dict[str, Schedule]:
    """Real schedule anchored on recorded dates.

    A task never starts before its last blocker ends. Done tasks keep their
    recorded start (or ``done_at - duration``), in-progress tasks keep
    ``started_at``, everything else starts no earlier than ``now``. The end is
    always ``start + duration``; an in-progress task running past its planned
    end reports the excess as ``overflow_hours`` instead of moving its end.
    """
    now = now or datetime.now(timezone.utc)
    if t0.tzinfo is None:
        t0 = t0.replace(tzinfo=timezone.utc)
    now_hour = _hours_since(t0, now)

    ordered, leftovers = _topological_order(tasks)
    schedule: dict[str, Schedule] = {}

    for task_id in ordered + leftovers:
        node = tasks[task_id]
        duration = _task_duration(node, cfg)
        blocker_end = _blocker_end(node, schedule)

        if node.status.is_done:
            if node.started_at is not None:
                start = max(_hours_since(t0, node.started_at), blocker_end)
            elif node.done_at is not None:
                start = _hours_since(t0, node.done_at) - duration
            else:
                start = blocker_end
        elif node.status == TaskStatus.IN_PROGRESS:
            if node.started_at is not None:
                start = max(_hours_since(t0, node.started_at), blocker_end)
            else:
                start = max(now_hour, blocker_end)
        else:
            start = max(now_hour, blocker_end)

        end = start + duration
        overflow = 0.0
        if node.status == TaskStatus.IN_PROGRESS and now_hour > end:
            overflow = now_hour - end
        schedule[task_id] = Schedule(start, end, duration, overflow)

    return schedule


def calculate_critical_path(tasks: dict[str, TaskNode], schedule: dict[str, Schedule]) -> list[str]:
    """Tasks ending at project end, traced back through blockers that end
    exactly when their dependent starts. Returned in schedule order."""
    if not schedule:
        return []
    project_end = max(s.end_hour for s in schedule.values())

    critical = {task_id for task_id, s in schedule.items() if s.end_hour == project_end}
    pending = list(critical)
    while pending:
        task_id = pending.pop()
        node = tasks.get(task_id)
        if node is None:
            continue
        start = schedule[task_id].start_hour
        for blocker_id in node.blocked_by:
            if blocker_id in critical:
                continue
            blocker = schedule.get(blocker_id)
            if blocker is not None and blocker.end_hour == start:
                critical.add(blocker_id)
                pending.append(blocker_id)

    return sorted(critical, key=lambda t: (schedule[t].start_hour, schedule[t].end_hour, t))


def get_schedule_envelope(schedule: dict[str, Schedule]) -> Envelope:
    if not schedule:
        return Envelope()
    earliest = min(s.start_hour for s in schedule.values())
    latest = max(s.end_hour for s in schedule.values())
    return Envelope(
        total_hours=sum(s.duration_hours for s in schedule.values()),
        weighted_hours=latest - earliest,
        earliest_start=earliest,
        latest_end=latest,
        task_count=len(schedule),
    )


def calculate_parallel_efficiency(envelope: Envelope) -> float:
    """Total hours / span. 1.0 is fully serial; higher means more parallel work."""
    if envelope.weighted_hours == 0:
        return 1.0
    return envelope.total_hours / envelope.weighted_hours


def delay_task(
    schedule: dict[str, Schedule],
    task_id: str,
    hours: float,
    tasks: dict[str, TaskNode],
) -> dict[str, Schedule]:
    """Push ``task_id`` back by ``hours`` and cascade to dependents.

    Tasks are only ever moved later, never earlier. The input is not modified.
    """
    if hours <= 0 or task_id not in schedule:
        return dict(schedule)

    dependents: dict[str, list[str]] = {}
    for node_id, node in tasks.items():
        for blocker_id in node.blocked_by:
            dependents.setdefault(blocker_id, []).append(node_id)

    result = dict(schedule)
    queue = deque([task_id])
    processed: set[str] = set()
    while queue:
        current = queue.popleft()
        if current in processed:
            continue
        processed.add(current)
        entry = result.get(current)
        if entry is None:
            continue

        if current == task_id:
            new_start = entry.start_hour + hours
        else:
            new_start = entry.start_hour
            node = tasks.get(current)
            for blocker_id in node.blocked_by if node else ():
                blocker = result.get(blocker_id)
                if blocker is not None and blocker.end_hour > new_start:
                    new_start = blocker.end_hour

        if new_start != entry.start_hour:
            result[current] = Schedule(
                new_start, new_start + entry.duration_hours, entry.duration_hours, entry.overflow_hours
            )
            queue.extend(d for d in dependents.get(current, []) if d not in processed)

    return result


def calculate_gantt_metrics(
    tasks: dict[str, TaskNode],
    cfg: EffortConfig,
    t0: datetime,
    now: datetime | None = None,
    display_cap_hours: float | None = None,
) -> GanttMetrics:
    """All chart metrics, derived from one real schedule and one theoretical one.

    ``max_end_hour`` is read from the real schedule and nowhere else.
    ``display_span_hours`` pads the real span out to the furthest overflowing
    in-progress task and is optionally capped; it never feeds scheduling.
    """
    schedule = get_task_schedules(tasks, cfg, t0, now)
    theoretical = calculate_theoretical_schedule(tasks, cfg)

    envelope = get_schedule_envelope(schedule)
    theoretical_envelope = get_schedule_envelope(theoretical)

    min_start = envelope.earliest_start
    max_end = envelope.latest_end
    real_span = max_end - min_start

    display_max_end = max((s.end_hour + s.overflow_hours for s in schedule.values()), default=0.0)
    display_span = display_max_end - min_start if schedule else 0.0
    if display_cap_hours is not None and display_span > display_cap_hours:
        display_span = display_cap_hours
        display_max_end = min_start + display_cap_hours

    return GanttMetrics(
        real_span_hours=real_span,
        display_span_hours=display_span,
        total_effort_hours=envelope.total_hours,
        critical_timespan_hours=theoretical_envelope.weighted_hours,
        min_start_hour=min_start,
        max_end_hour=max_end,
        display_max_end_hour=display_max_end,
        overflow_hours=sum(s.overflow_hours for s in schedule.values()),
        critical_path=calculate_critical_path(tasks, theoretical),
        parallel_efficiency=calculate_parallel_efficiency(envelope),
        task_count=len(schedule),
    )


def verify_gantt_metrics(schedule: dict[str, Schedule], metrics: GanttMetrics, tolerance: float = 1e-6) -> list[str]:
    """Recompute span metrics from ``schedule`` and list any disagreement."""
    problems = []
    envelope = get_schedule_envelope(schedule)

    if abs(envelope.latest_end - metrics.max_end_hour) > tolerance:
        problems.append(
            f"max_end_hour {metrics.max_end_hour:.3f} != schedule max end {envelope.latest_end:.3f}"
        )
    if abs(envelope.earliest_start - metrics.min_start_hour) > tolerance:
        problems.append(
            f"min_start_hour {metrics.min_start_hour:.3f} != schedule min start {envelope.earliest_start:.3f}"
        )
    if abs(envelope.weighted_hours - metrics.real_span_hours) > tolerance:
        problems.append(
            f"real_span_hours {metrics.real_span_hours:.3f} != schedule span {envelope.weighted_hours:.3f}"
        )
    if abs(envelope.total_hours - metrics.total_effort_hours) > tolerance:
        problems.append(
            f"total_effort_hours {metrics.total_effort_hours:.3f} != schedule total {envelope.total_hours:.3f}"
        )
    if envelope.task_count != metrics.task_count:
        problems.append(f"task_count {metrics.task_count} != schedule size {envelope.task_count}")

    for task_id, s in schedule.items():
        if abs(s.end_hour - (s.start_hour + s.duration_hours)) > tolerance:
            problems.append(f"{task_id}: end {s.end_hour:.3f} != start + duration")

    return problems
