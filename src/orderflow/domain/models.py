from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = 'PENDING'
    IN_PROGRESS = 'IN_PROGRESS'
    COMPLETED = 'COMPLETED'


class TaskStatus(str, Enum):
    NOT_ASSIGNED = 'NOT_ASSIGNED'
    ASSIGNED = 'ASSIGNED'
    IN_PROGRESS = 'IN_PROGRESS'
    PAUSED = 'PAUSED'
    COMPLETED = 'COMPLETED'
    # Display-only; never persisted.
    OVERDUE = 'OVERDUE'


class TaskPriority(str, Enum):
    LOW = 'LOW'
    MEDIUM = 'MEDIUM'
    HIGH = 'HIGH'
    URGENT = 'URGENT'


class ServiceType(str, Enum):
    SERVICE_TASK = 'SERVICE_TASK'
    ASKING_SERVICE = 'ASKING_SERVICE'


class UserRole(str, Enum):
    ADMIN = 'ADMIN'
    ORDER_CREATOR = 'ORDER_CREATOR'
    REVISION_MANAGER = 'REVISION_MANAGER'
    MEMBER = 'MEMBER'


class AskingStage(str, Enum):
    ASKED = 'ASKED'
    SHARED = 'SHARED'
    VERIFIED = 'VERIFIED'
    INFORMED_TEAM = 'INFORMED_TEAM'


ASKING_STAGE_ORDER: tuple[AskingStage, ...] = (
    AskingStage.ASKED,
    AskingStage.SHARED,
    AskingStage.VERIFIED,
    AskingStage.INFORMED_TEAM,
)
FINAL_ASKING_STAGE = ASKING_STAGE_ORDER[-1]

STAGE_DETAIL_FIELDS: dict[AskingStage, frozenset[str]] = {
    AskingStage.ASKED: frozenset({'initial_confirmation', 'initial_staff', 'notes'}),
    AskingStage.SHARED: frozenset({'shared_via', 'shared_with', 'notes'}),
    AskingStage.VERIFIED: frozenset({'update_request', 'update_staff', 'notes'}),
    AskingStage.INFORMED_TEAM: frozenset({'informed_staff', 'notes'}),
}

_TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.NOT_ASSIGNED: frozenset({TaskStatus.ASSIGNED, TaskStatus.NOT_ASSIGNED}),
    TaskStatus.ASSIGNED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.ASSIGNED, TaskStatus.NOT_ASSIGNED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.PAUSED, TaskStatus.COMPLETED, TaskStatus.ASSIGNED, TaskStatus.NOT_ASSIGNED}
    ),
    TaskStatus.PAUSED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.ASSIGNED, TaskStatus.NOT_ASSIGNED}),
    TaskStatus.COMPLETED: frozenset(),
}

REASSIGNABLE_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS, TaskStatus.PAUSED})


def can_transition(current: TaskStatus | str, target: TaskStatus | str) -> bool:
    try:
        current_status = TaskStatus(current)
        target_status = TaskStatus(target)
    except ValueError:
        return False
    return target_status in _TASK_TRANSITIONS.get(current_status, frozenset())


def stage_index(stage: AskingStage | str) -> int:
    return ASKING_STAGE_ORDER.index(AskingStage(stage))


def can_advance_stage(current: AskingStage | str, target: AskingStage | str) -> bool:
    """Stages move one step forward at a time; staying put is allowed."""
    try:
        delta = stage_index(target) - stage_index(current)
    except ValueError:
        return False
    return delta in (0, 1)


def is_removable(work: dict | None) -> bool:
    """Whether the work attached to a service instance is still untouched."""
    if work is None:
        return True
    if work.get('completed_at') is not None:
        return False
    if 'status' in work:
        return work['status'] == TaskStatus.NOT_ASSIGNED.value
    if int(work.get('stage_count', 0) or 0) > 0:
        return False
    return work.get('current_stage') == AskingStage.ASKED.value


def effective_task_status(status: TaskStatus | str, deadline: datetime | None, *, now: datetime | None = None) -> TaskStatus:
    current = TaskStatus(status)
    if current == TaskStatus.COMPLETED or deadline is None:
        return current
    moment = now or datetime.now(timezone.utc)
    if as_utc(deadline) < moment:
        return TaskStatus.OVERDUE
    return current


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_delivery_time(value: str | None) -> tuple[int, int] | None:
    """Parse an ``HH:MM`` delivery time; ``None`` or blank means unset."""
    text = str(value or '').strip()
    if not text:
        return None
    hours_text, sep, minutes_text = text.partition(':')
    if not sep or not hours_text.isdigit() or not minutes_text.isdigit() or len(minutes_text) != 2:
        raise ValueError(f'invalid delivery time: {value!r}')
    hours, minutes = int(hours_text), int(minutes_text)
    if hours > 23 or minutes > 59:
        raise ValueError(f'invalid delivery time: {value!r}')
    return hours, minutes


def delivery_datetime(delivery_date: datetime, delivery_time: str | None) -> datetime:
    moment = as_utc(delivery_date)
    parsed = parse_delivery_time(delivery_time)
    if parsed is None:
        return moment
    hours, minutes = parsed
    return moment.replace(hour=hours, minute=minutes, second=0, microsecond=0)
