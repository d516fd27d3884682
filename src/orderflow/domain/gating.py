from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from orderflow.domain.models import (
    ASKING_STAGE_ORDER,
    AskingStage,
    OrderStatus,
    TaskStatus,
    as_utc,
    stage_index,
)

READINESS_COMPLETE = 'complete'
READINESS_PARTIAL = 'partial'
READINESS_INCOMPLETE = 'incomplete'


@dataclass(frozen=True)
class DeliveryGate:
    can_deliver: bool
    mandatory_remaining: int
    incomplete_total: int
    requires_confirmation: bool
    readiness: str


@dataclass(frozen=True)
class OrderStatistics:
    total_tasks: int
    completed_tasks: int
    unassigned_tasks: int
    overdue_tasks: int
    mandatory_tasks: int
    mandatory_completed: int
    mandatory_remaining: int
    days_old: int


@dataclass(frozen=True)
class StageProgress:
    completed: int
    total: int
    percentage: int
    stages: dict[str, bool]


def _work_items(tasks: Iterable[dict], asking_tasks: Iterable[dict]) -> list[dict]:
    return [*tasks, *asking_tasks]


def mandatory_remaining(tasks: Iterable[dict], asking_tasks: Iterable[dict]) -> int:
    return sum(
        1
        for item in _work_items(tasks, asking_tasks)
        if bool(item.get('is_mandatory')) and item.get('completed_at') is None
    )


def incomplete_total(tasks: Iterable[dict], asking_tasks: Iterable[dict]) -> int:
    return sum(1 for item in _work_items(tasks, asking_tasks) if item.get('completed_at') is None)


def evaluate_delivery(tasks: Iterable[dict], asking_tasks: Iterable[dict]) -> DeliveryGate:
    """Summarize outstanding work before delivery.

    Delivery is never blocked here. The counts let the caller demand an
    explicit acknowledgement when work is still open.
    """
    items = _work_items(tasks, asking_tasks)
    remaining = mandatory_remaining(items, [])
    open_total = incomplete_total(items, [])
    if open_total == 0:
        readiness = READINESS_COMPLETE
    elif remaining == 0:
        readiness = READINESS_PARTIAL
    else:
        readiness = READINESS_INCOMPLETE
    return DeliveryGate(
        can_deliver=True,
        mandatory_remaining=remaining,
        incomplete_total=open_total,
        requires_confirmation=(remaining > 0 or open_total > 0),
        readiness=readiness,
    )


def _has_started(task: dict) -> bool:
    return str(task.get('status') or TaskStatus.NOT_ASSIGNED.value) != TaskStatus.NOT_ASSIGNED.value


def _asking_has_started(asking_task: dict) -> bool:
    if asking_task.get('completed_at') is not None:
        return True
    if int(asking_task.get('stage_count', 0) or 0) > 0:
        return True
    return str(asking_task.get('current_stage') or AskingStage.ASKED.value) != AskingStage.ASKED.value


def derive_status(order: dict, tasks: Iterable[dict], asking_tasks: Iterable[dict]) -> OrderStatus:
    """Suggest an order status from its work items; callers may override it."""
    if order.get('completed_at') is not None:
        return OrderStatus.COMPLETED
    task_list = list(tasks)
    asking_list = list(asking_tasks)
    items = _work_items(task_list, asking_list)
    if items and all(item.get('completed_at') is not None for item in items):
        return OrderStatus.COMPLETED
    if any(_has_started(t) for t in task_list) or any(_asking_has_started(a) for a in asking_list):
        return OrderStatus.IN_PROGRESS
    return OrderStatus.PENDING


def compute_statistics(
    order: dict,
    tasks: Iterable[dict],
    asking_tasks: Iterable[dict],
    *,
    now: datetime | None = None,
) -> OrderStatistics:
    moment = now or datetime.now(timezone.utc)
    task_list = list(tasks)
    items = _work_items(task_list, asking_tasks)

    completed = sum(1 for item in items if item.get('completed_at') is not None)
    unassigned = sum(1 for t in task_list if str(t.get('status')) == TaskStatus.NOT_ASSIGNED.value)
    overdue = 0
    for item in items:
        if item.get('completed_at') is not None:
            continue
        deadline = item.get('deadline')
        if deadline is not None and as_utc(deadline) < moment:
            overdue += 1
    mandatory_items = [item for item in items if bool(item.get('is_mandatory'))]
    mandatory_done = sum(1 for item in mandatory_items if item.get('completed_at') is not None)

    created_at = order.get('created_at')
    days_old = 0
    if isinstance(created_at, datetime):
        days_old = max(0, (moment - as_utc(created_at)).days)

    return OrderStatistics(
        total_tasks=len(items),
        completed_tasks=completed,
        unassigned_tasks=unassigned,
        overdue_tasks=overdue,
        mandatory_tasks=len(mandatory_items),
        mandatory_completed=mandatory_done,
        mandatory_remaining=len(mandatory_items) - mandatory_done,
        days_old=days_old,
    )


def stage_progress(current_stage: AskingStage | str) -> StageProgress:
    reached = stage_index(current_stage)
    stages = {stage.value: index <= reached for index, stage in enumerate(ASKING_STAGE_ORDER)}
    completed = sum(1 for flag in stages.values() if flag)
    total = len(ASKING_STAGE_ORDER)
    return StageProgress(
        completed=completed,
        total=total,
        percentage=round(completed * 100 / total),
        stages=stages,
    )
