from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from orderflow.actors import ActorContext
from orderflow.domain.errors import AuthorizationError, NotFoundError
from orderflow.domain.gating import DeliveryGate, OrderStatistics, stage_progress
from orderflow.domain.models import (
    AskingStage,
    OrderStatus,
    TaskPriority,
    TaskStatus,
    effective_task_status,
)
from orderflow.observability import bind_order, get_logger, set_request_context
from orderflow.repository import OrderRepository
from orderflow.service_layers import (
    AskingTaskService,
    CatalogService,
    OrderAnalyticsService,
    OrderStatusService,
    ReconcilerService,
    ServiceChange,
    ServiceQuantity,
    TaskLifecycleService,
)

_log = get_logger('orderflow.service')


@dataclass(frozen=True)
class CreateOrderInput:
    order_number: str
    customer_name: str
    amount: float
    order_date: datetime
    delivery_date: datetime
    delivery_time: str | None = None
    folder_link: str | None = None
    notes: str | None = None
    services: list[ServiceQuantity] = field(default_factory=list)


@dataclass(frozen=True)
class UpdateOrderInput:
    delivery_date: datetime | None = None
    delivery_time: str | None = None
    amount: float | None = None
    notes: str | None = None
    folder_link: str | None = None
    status: OrderStatus | None = None


@dataclass(frozen=True)
class AssignTaskInput:
    user_id: str
    deadline: datetime
    priority: TaskPriority = TaskPriority.MEDIUM
    notes: str | None = None


@dataclass(frozen=True)
class CustomTaskInput:
    title: str
    team_id: str
    is_mandatory: bool = False
    assigned_to: str | None = None
    deadline: datetime | None = None
    priority: TaskPriority | None = None
    notes: str | None = None


@dataclass(frozen=True)
class RevisionTaskInput:
    title: str
    member_id: str
    deadline: datetime | None = None
    notes: str | None = None
    team_id: str | None = None


@dataclass(frozen=True)
class OrderView:
    order_id: str
    order_number: str
    customer_name: str
    status: OrderStatus
    suggested_status: OrderStatus
    is_revision: bool
    original_order_id: str | None
    revision_completed_at: datetime | None
    amount: float
    order_date: datetime
    delivery_date: datetime
    delivery_time: str | None
    completed_at: datetime | None
    folder_link: str | None
    notes: str | None
    is_customized: bool
    created_by: str
    created_at: datetime
    updated_at: datetime
    version: int


@dataclass(frozen=True)
class TaskView:
    task_id: str
    order_id: str
    instance_id: str | None
    service_id: str | None
    team_id: str | None
    title: str
    status: TaskStatus
    display_status: TaskStatus
    priority: TaskPriority | None
    deadline: datetime | None
    assigned_to: str | None
    notes: str | None
    started_at: datetime | None
    completed_at: datetime | None
    completion_notes: str | None
    is_mandatory: bool
    requires_completion_note: bool
    is_revision_task: bool
    marked_for_revision: bool
    version: int


@dataclass(frozen=True)
class AskingTaskView:
    asking_task_id: str
    order_id: str
    instance_id: str | None
    service_id: str | None
    team_id: str | None
    title: str
    current_stage: AskingStage
    stage_count: int
    progress_percentage: int
    is_flagged: bool
    flag_reason: str | None
    is_mandatory: bool
    notes: str | None
    completed_at: datetime | None
    completed_by: str | None
    version: int


@dataclass(frozen=True)
class MutationResult:
    """A mutated entity together with its order's fresh statistics."""

    entity: object
    statistics: OrderStatistics
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class OrderDetail:
    order: OrderView
    tasks: list[TaskView]
    asking_tasks: list[AskingTaskView]
    statistics: OrderStatistics
    delivery: DeliveryGate


class OrderEngine:
    def __init__(
        self,
        *,
        repository: OrderRepository,
        enforce_delivery_ack: bool = False,
        default_list_limit: int = 100,
        clock: Callable[[], datetime] | None = None,
    ):
        self.repository = repository
        self.catalog = CatalogService(repository=repository)
        self.analytics = OrderAnalyticsService(repository=repository, default_limit=default_list_limit)
        self.reconciler = ReconcilerService(repository=repository, on_work_changed=self._on_work_changed)
        self.order_status = OrderStatusService(
            repository=repository,
            plan_initial_work=self.reconciler.plan_initial,
            enforce_delivery_ack=enforce_delivery_ack,
            clock=clock,
        )
        self.tasks = TaskLifecycleService(repository=repository, on_work_changed=self._on_work_changed)
        self.asking = AskingTaskService(repository=repository, on_work_changed=self._on_work_changed)

    def _on_work_changed(self, order_id: str) -> dict:
        return self.order_status.recompute(order_id)

    # actors and catalog

    def resolve_actor(self, user_id: str | None) -> ActorContext | None:
        actor = self.catalog.resolve_actor(user_id)
        if actor is None:
            _log.warning('actor_rejected user_id=%s', str(user_id or '').strip() or '-')
            return None
        set_request_context(actor=actor.user_id)
        return actor

    def create_user(self, actor: ActorContext, **kwargs) -> dict:
        return self.catalog.create_user(actor, **kwargs)

    def create_team(self, actor: ActorContext, **kwargs) -> dict:
        return self.catalog.create_team(actor, **kwargs)

    def add_team_member(self, actor: ActorContext, team_id: str, *, user_id: str) -> dict:
        return self.catalog.add_team_member(actor, team_id, user_id=user_id)

    def remove_team_member(self, actor: ActorContext, team_id: str, membership_id: str) -> dict:
        return self.catalog.remove_team_member(actor, team_id, membership_id)

    def set_user_active(self, actor: ActorContext, user_id: str, *, is_active: bool) -> dict:
        return self.catalog.set_user_active(actor, user_id, is_active=is_active)

    def set_team_active(self, actor: ActorContext, team_id: str, *, is_active: bool) -> dict:
        return self.catalog.set_team_active(actor, team_id, is_active=is_active)

    def create_service(self, actor: ActorContext, **kwargs) -> dict:
        return self.catalog.create_service(actor, **kwargs)

    def set_service_active(self, actor: ActorContext, service_id: str, *, is_active: bool) -> dict:
        return self.catalog.set_service_active(actor, service_id, is_active=is_active)

    def list_services(self, *, active_only: bool = False) -> list[dict]:
        return self.catalog.list_services(active_only=active_only)

    # orders

    def create_order(self, actor: ActorContext, payload: CreateOrderInput) -> MutationResult:
        row = self.order_status.create_order(
            actor,
            order_number=payload.order_number,
            customer_name=payload.customer_name,
            amount=payload.amount,
            order_date=payload.order_date,
            delivery_date=payload.delivery_date,
            delivery_time=payload.delivery_time,
            folder_link=payload.folder_link,
            notes=payload.notes,
            services=payload.services,
        )
        set_request_context(order_id=row['order_id'], actor=actor.user_id, order_number=row['order_number'])
        return self._order_result(row)

    def get_order(self, actor: ActorContext, order_id: str) -> OrderDetail:
        row = self._visible_order(actor, order_id)
        tasks = self.repository.list_tasks(order_id=order_id)
        asking = self.repository.list_asking_tasks(order_id=order_id)
        return OrderDetail(
            order=self._order_view(row),
            tasks=[self._task_view(t) for t in tasks],
            asking_tasks=[self._asking_view(a) for a in asking],
            statistics=self.analytics.statistics(order_id),
            delivery=self.order_status.delivery_gate(order_id),
        )

    def list_orders(
        self,
        actor: ActorContext,
        *,
        status: OrderStatus | None = None,
        is_revision: bool | None = None,
        limit: int | None = None,
    ) -> list[OrderView]:
        rows = self.analytics.list_orders(
            actor,
            status=status.value if status is not None else None,
            is_revision=is_revision,
            limit=limit,
        )
        return [self._order_view(r) for r in rows]

    def update_order(self, actor: ActorContext, order_id: str, payload: UpdateOrderInput) -> MutationResult:
        row = self.order_status.update_fields(
            actor,
            order_id,
            delivery_date=payload.delivery_date,
            delivery_time=payload.delivery_time,
            amount=payload.amount,
            notes=payload.notes,
            folder_link=payload.folder_link,
            status=payload.status,
        )
        return self._order_result(row)

    def list_order_services(self, actor: ActorContext, order_id: str) -> list[dict]:
        self._visible_order(actor, order_id)
        return self.reconciler.current_services(order_id)

    def preview_services(
        self, actor: ActorContext, order_id: str, services: list[ServiceQuantity],
    ) -> list[ServiceChange]:
        return self.reconciler.preview(actor, order_id, services)

    def update_services(self, actor: ActorContext, order_id: str, services: list[ServiceQuantity]) -> MutationResult:
        row, changes = self.reconciler.apply(actor, order_id, services)
        return self._order_result(row, changes=[self._change_dict(c) for c in changes])

    def verify_order(self, actor: ActorContext, order_id: str) -> MutationResult:
        return self._order_result(self.order_status.verify(actor, order_id))

    def deliver_order(
        self,
        actor: ActorContext,
        order_id: str,
        *,
        acknowledged: bool = False,
        notes: str | None = None,
    ) -> MutationResult:
        row, gate = self.order_status.deliver(actor, order_id, acknowledged=acknowledged, notes=notes)
        return self._order_result(
            row,
            mandatory_remaining=gate.mandatory_remaining,
            incomplete_total=gate.incomplete_total,
            readiness=gate.readiness,
        )

    def convert_to_revision(
        self,
        actor: ActorContext,
        order_id: str,
        *,
        task_ids: list[str] | None = None,
        asking_task_ids: list[str] | None = None,
    ) -> MutationResult:
        row, created = self.order_status.convert_to_revision(
            actor, order_id, task_ids=task_ids or [], asking_task_ids=asking_task_ids or [],
        )
        return self._order_result(
            row,
            original_order_id=order_id,
            task_ids=[t['task_id'] for t in created['tasks']],
            asking_task_ids=[a['asking_task_id'] for a in created['asking_tasks']],
        )

    def complete_revision(self, actor: ActorContext, order_id: str) -> MutationResult:
        return self._order_result(self.order_status.complete_revision(actor, order_id))

    def add_revision_task(self, actor: ActorContext, order_id: str, payload: RevisionTaskInput) -> MutationResult:
        row = self.order_status.add_revision_task(
            actor,
            order_id,
            title=payload.title,
            member_id=payload.member_id,
            deadline=payload.deadline,
            notes=payload.notes,
            team_id=payload.team_id,
        )
        return self._task_result(row)

    def add_custom_task(self, actor: ActorContext, order_id: str, payload: CustomTaskInput) -> MutationResult:
        row = self.order_status.add_custom_task(
            actor,
            order_id,
            title=payload.title,
            team_id=payload.team_id,
            is_mandatory=payload.is_mandatory,
            assigned_to=payload.assigned_to,
            deadline=payload.deadline,
            priority=payload.priority.value if payload.priority is not None else None,
            notes=payload.notes,
        )
        return self._task_result(row)

    def list_audit(self, actor: ActorContext, order_id: str) -> list[dict]:
        self._visible_order(actor, order_id)
        return self.repository.list_audit(order_id=order_id)

    # tasks

    def my_tasks(self, actor: ActorContext, *, include_completed: bool = False) -> list[TaskView]:
        return [self._task_view(t) for t in self.analytics.my_tasks(actor, include_completed=include_completed)]

    def assign_task(self, actor: ActorContext, task_id: str, payload: AssignTaskInput) -> MutationResult:
        row = self.tasks.assign(
            actor,
            task_id,
            user_id=payload.user_id,
            deadline=payload.deadline,
            priority=payload.priority,
            notes=payload.notes,
        )
        return self._task_result(row)

    def reassign_task(self, actor: ActorContext, task_id: str, payload: AssignTaskInput) -> MutationResult:
        row = self.tasks.reassign(
            actor,
            task_id,
            user_id=payload.user_id,
            deadline=payload.deadline,
            priority=payload.priority,
            notes=payload.notes,
        )
        return self._task_result(row)

    def discard_task(self, actor: ActorContext, task_id: str) -> MutationResult:
        return self._task_result(self.tasks.discard(actor, task_id))

    def start_task(self, actor: ActorContext, task_id: str) -> MutationResult:
        return self._task_result(self.tasks.start(actor, task_id))

    def pause_task(self, actor: ActorContext, task_id: str) -> MutationResult:
        return self._task_result(self.tasks.pause(actor, task_id))

    def resume_task(self, actor: ActorContext, task_id: str) -> MutationResult:
        return self._task_result(self.tasks.resume(actor, task_id))

    def toggle_pause(self, actor: ActorContext, task_id: str) -> MutationResult:
        return self._task_result(self.tasks.toggle_pause(actor, task_id))

    def complete_task(self, actor: ActorContext, task_id: str, *, notes: str | None = None) -> MutationResult:
        row, spent = self.tasks.complete(actor, task_id, notes=notes)
        return self._task_result(row, time_spent=spent)

    def mark_task_for_revision(self, actor: ActorContext, task_id: str, *, marked: bool = True) -> MutationResult:
        return self._task_result(self.tasks.mark_for_revision(actor, task_id, marked=marked))

    # asking tasks

    def advance_asking_stage(
        self,
        actor: ActorContext,
        asking_task_id: str,
        *,
        stage: AskingStage,
        details: dict | None = None,
    ) -> MutationResult:
        row, entry = self.asking.advance_stage(actor, asking_task_id, stage=stage, details=details)
        return self._asking_result(row, entry=entry)

    def complete_asking_task(self, actor: ActorContext, asking_task_id: str, *, notes: str | None = None) -> MutationResult:
        return self._asking_result(self.asking.complete(actor, asking_task_id, notes=notes))

    def flag_asking_task(
        self,
        actor: ActorContext,
        asking_task_id: str,
        *,
        flagged: bool,
        reason: str | None = None,
    ) -> MutationResult:
        return self._asking_result(self.asking.set_flag(actor, asking_task_id, flagged=flagged, reason=reason))

    def update_asking_notes(self, actor: ActorContext, asking_task_id: str, *, notes: str | None) -> MutationResult:
        return self._asking_result(self.asking.update_notes(actor, asking_task_id, notes=notes))

    def list_stage_entries(
        self,
        actor: ActorContext,
        asking_task_id: str,
        *,
        after_seq: int = 0,
        limit: int | None = None,
    ) -> list[dict]:
        return self.asking.list_stage_entries(actor, asking_task_id, after_seq=after_seq, limit=limit)

    # helpers

    def _visible_order(self, actor: ActorContext, order_id: str) -> dict:
        row = self.repository.get_order(order_id)
        if row is None:
            raise NotFoundError('order', order_id)
        if not self.analytics.can_view(actor, order_id):
            raise AuthorizationError('order is not visible to this user', field='order_id')
        bind_order(row)
        return row

    def _order_result(self, row: dict, **extra) -> MutationResult:
        return MutationResult(
            entity=self._order_view(row),
            statistics=self.analytics.statistics(row['order_id']),
            extra=extra,
        )

    def _task_result(self, row: dict, **extra) -> MutationResult:
        return MutationResult(
            entity=self._task_view(row),
            statistics=self.analytics.statistics(row['order_id']),
            extra=extra,
        )

    def _asking_result(self, row: dict, **extra) -> MutationResult:
        return MutationResult(
            entity=self._asking_view(row),
            statistics=self.analytics.statistics(row['order_id']),
            extra=extra,
        )

    @staticmethod
    def _change_dict(change: ServiceChange) -> dict:
        return {'service_id': change.service_id, 'service_name': change.service_name, 'change': change.change}

    @staticmethod
    def _order_view(row: dict) -> OrderView:
        return OrderView(
            order_id=row['order_id'],
            order_number=row['order_number'],
            customer_name=row['customer_name'],
            status=OrderStatus(row['status']),
            suggested_status=OrderStatus(row.get('suggested_status') or row['status']),
            is_revision=bool(row['is_revision']),
            original_order_id=row.get('original_order_id'),
            revision_completed_at=row.get('revision_completed_at'),
            amount=float(row['amount']),
            order_date=row['order_date'],
            delivery_date=row['delivery_date'],
            delivery_time=row.get('delivery_time'),
            completed_at=row.get('completed_at'),
            folder_link=row.get('folder_link'),
            notes=row.get('notes'),
            is_customized=bool(row.get('is_customized')),
            created_by=row['created_by'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
            version=int(row['version']),
        )

    @staticmethod
    def _task_view(row: dict) -> TaskView:
        status = TaskStatus(row['status'])
        return TaskView(
            task_id=row['task_id'],
            order_id=row['order_id'],
            instance_id=row.get('instance_id'),
            service_id=row.get('service_id'),
            team_id=row.get('team_id'),
            title=row['title'],
            status=status,
            display_status=effective_task_status(status, row.get('deadline')),
            priority=TaskPriority(row['priority']) if row.get('priority') else None,
            deadline=row.get('deadline'),
            assigned_to=row.get('assigned_to'),
            notes=row.get('notes'),
            started_at=row.get('started_at'),
            completed_at=row.get('completed_at'),
            completion_notes=row.get('completion_notes'),
            is_mandatory=bool(row.get('is_mandatory')),
            requires_completion_note=bool(row.get('requires_completion_note')),
            is_revision_task=bool(row.get('is_revision_task')),
            marked_for_revision=bool(row.get('marked_for_revision')),
            version=int(row['version']),
        )

    @staticmethod
    def _asking_view(row: dict) -> AskingTaskView:
        stage = AskingStage(row['current_stage'])
        return AskingTaskView(
            asking_task_id=row['asking_task_id'],
            order_id=row['order_id'],
            instance_id=row.get('instance_id'),
            service_id=row.get('service_id'),
            team_id=row.get('team_id'),
            title=row['title'],
            current_stage=stage,
            stage_count=int(row.get('stage_count', 0) or 0),
            progress_percentage=stage_progress(stage).percentage,
            is_flagged=bool(row.get('is_flagged')),
            flag_reason=row.get('flag_reason'),
            is_mandatory=bool(row.get('is_mandatory')),
            notes=row.get('notes'),
            completed_at=row.get('completed_at'),
            completed_by=row.get('completed_by'),
            version=int(row['version']),
        )
