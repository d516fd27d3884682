from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from orderflow.actors import ActorContext, require_editor_or_leader, require_roles
from orderflow.domain.errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from orderflow.domain.events import AuditAction, EntityType
from orderflow.domain.gating import DeliveryGate, derive_status, evaluate_delivery
from orderflow.domain.models import (
    OrderStatus,
    ServiceType,
    TaskPriority,
    TaskStatus,
    UserRole,
    as_utc,
    delivery_datetime,
    parse_delivery_time,
)
from orderflow.observability import bind_order, get_logger
from orderflow.repository import OrderCreateRecord, WorkItemCreateRecord

_log = get_logger('orderflow.service_layers.order_status')

_REVISION_SUFFIX_DIGITS = 6


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def revision_order_number(original_number: str, moment: datetime) -> str:
    stamp = str(int(as_utc(moment).timestamp() * 1000))
    return f'{original_number}-REV-{stamp[-_REVISION_SUFFIX_DIGITS:]}'


def _normalize_delivery_time(value: str | None) -> str | None:
    try:
        parsed = parse_delivery_time(value)
    except ValueError as exc:
        raise ValidationError(str(exc), field='delivery_time') from exc
    if parsed is None:
        return None
    return f'{parsed[0]:02d}:{parsed[1]:02d}'


def _append_note(existing: str | None, label: str, text: str) -> str:
    block = f'[{label}] {text}'
    base = str(existing or '').rstrip()
    return f'{base}\n\n{block}' if base else block


@dataclass(frozen=True)
class _FieldChange:
    values: dict
    action: AuditAction
    description: str
    old: dict
    new: dict


class OrderStatusService:
    def __init__(
        self,
        *,
        repository,
        plan_initial_work: Callable[[Iterable], object],
        enforce_delivery_ack: bool = False,
        clock: Callable[[], datetime] | None = None,
    ):
        self.repository = repository
        self._plan_initial_work = plan_initial_work
        self.enforce_delivery_ack = bool(enforce_delivery_ack)
        self._clock = clock or _utc_now

    def recompute(self, order_id: str) -> dict:
        """Refresh ``suggested_status`` from the order's work; never touches ``status``."""
        order = self._load(order_id)
        tasks = self.repository.list_tasks(order_id=order_id)
        asking = self.repository.list_asking_tasks(order_id=order_id)
        suggestion = derive_status(order, tasks, asking).value
        if order.get('suggested_status') == suggestion:
            return order
        _log.info(
            'order_status_suggested order_id=%s status=%s suggested=%s',
            order_id,
            order['status'],
            suggestion,
        )
        return self.repository.update_order(order_id, values={'suggested_status': suggestion})

    def delivery_gate(self, order_id: str) -> DeliveryGate:
        self._load(order_id)
        return evaluate_delivery(
            self.repository.list_tasks(order_id=order_id),
            self.repository.list_asking_tasks(order_id=order_id),
        )

    def create_order(
        self,
        actor: ActorContext,
        *,
        order_number: str,
        customer_name: str,
        amount: float,
        order_date: datetime,
        delivery_date: datetime,
        delivery_time: str | None = None,
        folder_link: str | None = None,
        notes: str | None = None,
        services: Iterable = (),
    ) -> dict:
        require_roles(actor, UserRole.ADMIN, UserRole.ORDER_CREATOR, action='create orders')
        number = str(order_number or '').strip()
        if not number:
            raise ValidationError('order_number is required', field='order_number')
        customer = str(customer_name or '').strip()
        if not customer:
            raise ValidationError('customer_name is required', field='customer_name')
        amount_value = self._validate_amount(amount)
        if order_date is None or delivery_date is None:
            raise ValidationError('order_date and delivery_date are required', field='delivery_date')
        if as_utc(delivery_date) < as_utc(order_date):
            raise ValidationError('delivery_date cannot be before order_date', field='delivery_date')
        time_text = _normalize_delivery_time(delivery_time)
        plan = self._plan_initial_work(services)
        if self.repository.get_order_by_number(number) is not None:
            raise ConflictError(f'order number already exists: {number}', field='order_number')

        order = self.repository.create_order(
            OrderCreateRecord(
                order_number=number,
                customer_name=customer,
                amount=amount_value,
                order_date=as_utc(order_date),
                delivery_date=as_utc(delivery_date),
                delivery_time=time_text,
                folder_link=str(folder_link or '').strip() or None,
                notes=str(notes or '').strip() or None,
                created_by=actor.user_id,
            )
        )
        created = self.repository.apply_work_changes(order['order_id'], create=plan.create, remove_instance_ids=[])
        self.repository.append_audit(
            entity_type=EntityType.ORDER,
            entity_id=order['order_id'],
            order_id=order['order_id'],
            action=AuditAction.ORDER_CREATED,
            performed_by=actor.user_id,
            new_value={
                'order_number': number,
                'services': [
                    {'service_id': c.service_id, 'service_name': c.service_name, 'quantity': c.change}
                    for c in plan.changes
                ],
            },
            description=f'order {number} created',
        )
        _log.info(
            'order_created order_id=%s order_number=%s tasks=%s asking_tasks=%s',
            order['order_id'],
            number,
            len(created['tasks']),
            len(created['asking_tasks']),
        )
        return self.recompute(order['order_id'])

    def verify(self, actor: ActorContext, order_id: str) -> dict:
        require_editor_or_leader(actor, action='verify orders', allow_order_creator=True)
        order = self._load(order_id)
        if order['status'] != OrderStatus.PENDING.value:
            raise InvalidTransitionError(f'only PENDING orders can be verified, not {order["status"]}', field='status')
        has_work = self.repository.list_tasks(order_id=order_id) or self.repository.list_asking_tasks(order_id=order_id)
        if not has_work:
            raise PreconditionError('order has no tasks to work on', field='services')
        updated = self._save(order, {'status': OrderStatus.IN_PROGRESS.value})
        self._audit(
            actor, order_id, AuditAction.ORDER_VERIFIED, 'order verified',
            old={'status': order['status']}, new={'status': updated['status']},
        )
        _log.info('order_verified order_id=%s', order_id)
        return updated

    def deliver(
        self,
        actor: ActorContext,
        order_id: str,
        *,
        acknowledged: bool = False,
        notes: str | None = None,
    ) -> tuple[dict, DeliveryGate]:
        require_roles(actor, UserRole.ADMIN, UserRole.ORDER_CREATOR, action='deliver orders')
        order = self._load(order_id)
        if order['status'] == OrderStatus.COMPLETED.value:
            raise InvalidTransitionError('order is already delivered', field='status')
        gate = self.delivery_gate(order_id)
        if self.enforce_delivery_ack and gate.requires_confirmation and not acknowledged:
            raise PreconditionError(
                f'{gate.incomplete_total} incomplete tasks ({gate.mandatory_remaining} mandatory); '
                'delivery must be acknowledged',
                field='acknowledged',
            )
        now = self._clock()
        values: dict = {
            'status': OrderStatus.COMPLETED.value,
            'suggested_status': OrderStatus.COMPLETED.value,
            'completed_at': now,
        }
        if order['is_revision'] and order.get('revision_completed_at') is None:
            values['revision_completed_at'] = now
        text = str(notes or '').strip()
        if text:
            values['notes'] = _append_note(order.get('notes'), 'delivery', text)
        updated = self._save(order, values)
        self._audit(
            actor, order_id, AuditAction.ORDER_DELIVERED,
            f'delivered with {gate.incomplete_total} incomplete ({gate.mandatory_remaining} mandatory)',
            old={'status': order['status'], 'completed_at': None},
            new={
                'status': updated['status'],
                'completed_at': updated['completed_at'],
                'mandatory_remaining': gate.mandatory_remaining,
                'incomplete_total': gate.incomplete_total,
                'acknowledged': bool(acknowledged),
            },
        )
        if gate.requires_confirmation:
            _log.warning(
                'order_delivered_incomplete order_id=%s mandatory_remaining=%s incomplete_total=%s acknowledged=%s',
                order_id,
                gate.mandatory_remaining,
                gate.incomplete_total,
                bool(acknowledged),
            )
        else:
            _log.info('order_delivered order_id=%s', order_id)
        return updated, gate

    def convert_to_revision(
        self,
        actor: ActorContext,
        order_id: str,
        *,
        task_ids: Iterable[str] = (),
        asking_task_ids: Iterable[str] = (),
    ) -> tuple[dict, dict]:
        require_roles(actor, UserRole.ADMIN, UserRole.REVISION_MANAGER, action='create revision orders')
        original = self._load(order_id)
        if original['status'] != OrderStatus.COMPLETED.value:
            raise PreconditionError('only delivered orders can be revised', field='status')
        active = [
            r for r in self.repository.list_orders(original_order_id=order_id, limit=1000)
            if r.get('revision_completed_at') is None
        ]
        if active:
            raise ConflictError(
                f'order already has an active revision: {active[0]["order_number"]}',
                field='original_order_id',
            )

        tasks = {t['task_id']: t for t in self.repository.list_tasks(order_id=order_id)}
        asking = {a['asking_task_id']: a for a in self.repository.list_asking_tasks(order_id=order_id)}
        selected_tasks = list(dict.fromkeys(str(t) for t in task_ids))
        selected_asking = list(dict.fromkeys(str(a) for a in asking_task_ids))
        for task_id in selected_tasks:
            if task_id not in tasks:
                raise ValidationError(f'task does not belong to this order: {task_id}', field='task_ids')
        for asking_id in selected_asking:
            if asking_id not in asking:
                raise ValidationError(
                    f'asking task does not belong to this order: {asking_id}', field='asking_task_ids',
                )
        carried = [*selected_tasks, *(tid for tid, t in tasks.items() if t.get('marked_for_revision'))]
        create = [self._clone_task(tasks[tid]) for tid in dict.fromkeys(carried)]
        create.extend(self._clone_asking(asking[aid]) for aid in selected_asking)

        now = self._clock()
        number = revision_order_number(original['order_number'], now)
        while self.repository.get_order_by_number(number) is not None:
            now = now + timedelta(milliseconds=1)
            number = revision_order_number(original['order_number'], now)
        revision = self.repository.create_order(
            OrderCreateRecord(
                order_number=number,
                customer_name=original['customer_name'],
                amount=float(original['amount']),
                order_date=now,
                delivery_date=self._revision_delivery_date(original, now),
                delivery_time=original.get('delivery_time'),
                folder_link=original.get('folder_link'),
                notes=original.get('notes'),
                created_by=actor.user_id,
                status=OrderStatus.IN_PROGRESS,
                is_revision=True,
                original_order_id=order_id,
            )
        )
        created = self.repository.apply_work_changes(revision['order_id'], create=create, remove_instance_ids=[])
        self._audit(
            actor, revision['order_id'], AuditAction.REVISION_CREATED,
            f'revision of {original["order_number"]}',
            old={'original_order_id': order_id},
            new={'order_number': number, 'tasks': len(created['tasks']), 'asking_tasks': len(created['asking_tasks'])},
        )
        _log.info(
            'revision_created order_id=%s original_order_id=%s order_number=%s cloned=%s',
            revision['order_id'],
            order_id,
            number,
            len(create),
        )
        return self.recompute(revision['order_id']), created

    def complete_revision(self, actor: ActorContext, order_id: str) -> dict:
        require_roles(actor, UserRole.ADMIN, UserRole.REVISION_MANAGER, action='complete revision orders')
        order = self._load(order_id)
        if not order['is_revision']:
            raise PreconditionError('order is not a revision', field='is_revision')
        if order.get('revision_completed_at') is not None:
            raise InvalidTransitionError('revision is already completed', field='revision_completed_at')
        now = self._clock()
        updated = self._save(
            order,
            {
                'revision_completed_at': now,
                'status': OrderStatus.COMPLETED.value,
                'suggested_status': OrderStatus.COMPLETED.value,
                'completed_at': order.get('completed_at') or now,
            },
        )
        self._audit(
            actor, order_id, AuditAction.REVISION_COMPLETED, 'revision completed',
            old={'status': order['status']}, new={'status': updated['status'], 'revision_completed_at': now},
        )
        _log.info('revision_completed order_id=%s original_order_id=%s', order_id, order.get('original_order_id'))
        return updated

    def add_revision_task(
        self,
        actor: ActorContext,
        order_id: str,
        *,
        title: str,
        member_id: str,
        deadline: datetime | None = None,
        notes: str | None = None,
        team_id: str | None = None,
    ) -> dict:
        require_roles(actor, UserRole.ADMIN, UserRole.REVISION_MANAGER, action='add revision tasks')
        order = self._load(order_id)
        if not order['is_revision']:
            raise PreconditionError('revision tasks can only be added to revision orders', field='is_revision')
        if order.get('revision_completed_at') is not None:
            raise PreconditionError('revision is already completed', field='revision_completed_at')
        text = self._require_title(title)
        team = self._member_team(member_id, team_id)
        if deadline is None:
            raise ValidationError('deadline is required', field='deadline')
        created = self.repository.apply_work_changes(
            order_id,
            create=[
                WorkItemCreateRecord(
                    title=text,
                    kind=ServiceType.SERVICE_TASK,
                    team_id=team,
                    is_mandatory=True,
                    status=TaskStatus.ASSIGNED,
                    priority=TaskPriority.HIGH.value,
                    assigned_to=member_id,
                    deadline=as_utc(deadline),
                    notes=str(notes or '').strip() or None,
                    is_revision_task=True,
                )
            ],
            remove_instance_ids=[],
        )
        task = created['tasks'][0]
        self._audit(
            actor, order_id, AuditAction.REVISION_TASK_CREATED, f'revision task for {member_id}',
            old={}, new={'task_id': task['task_id'], 'title': text, 'assigned_to': member_id},
        )
        _log.info('revision_task_created order_id=%s task_id=%s assignee=%s', order_id, task['task_id'], member_id)
        self.recompute(order_id)
        return task

    def add_custom_task(
        self,
        actor: ActorContext,
        order_id: str,
        *,
        title: str,
        team_id: str,
        is_mandatory: bool = False,
        assigned_to: str | None = None,
        deadline: datetime | None = None,
        priority: str | None = None,
        notes: str | None = None,
    ) -> dict:
        if not (actor.can_edit or actor.leads(team_id)):
            raise AuthorizationError(f'{actor.role.value} may not add custom tasks', field='team_id')
        order = self._load(order_id)
        if order['status'] == OrderStatus.COMPLETED.value:
            raise PreconditionError('tasks cannot be added to a completed order', field='status')
        text = self._require_title(title)
        team = self.repository.get_team(team_id) if team_id else None
        if team is None or not team.get('is_active', True):
            raise ValidationError(f'unknown or inactive team: {team_id}', field='team_id')
        priority_text = str(priority or TaskPriority.MEDIUM.value).strip().upper()
        if priority_text not in {p.value for p in TaskPriority}:
            raise ValidationError(f'invalid priority: {priority}', field='priority')
        status = TaskStatus.NOT_ASSIGNED
        if assigned_to:
            memberships = self.repository.list_team_memberships(team_id=team_id, user_id=assigned_to)
            if not any(m.get('is_active', True) for m in memberships):
                raise ValidationError('assignee is not an active member of the team', field='assigned_to')
            if deadline is None:
                raise ValidationError('deadline is required when assigning', field='deadline')
            self._check_deadline(order, deadline)
            status = TaskStatus.ASSIGNED
        created = self.repository.apply_work_changes(
            order_id,
            create=[
                WorkItemCreateRecord(
                    title=text,
                    kind=ServiceType.SERVICE_TASK,
                    team_id=team_id,
                    is_mandatory=bool(is_mandatory),
                    status=status,
                    priority=priority_text,
                    assigned_to=assigned_to or None,
                    deadline=as_utc(deadline) if (assigned_to and deadline is not None) else None,
                    notes=str(notes or '').strip() or None,
                )
            ],
            remove_instance_ids=[],
        )
        task = created['tasks'][0]
        self._audit(
            actor, order_id, AuditAction.CUSTOM_TASK_CREATED, f'custom task {text}',
            old={}, new={'task_id': task['task_id'], 'team_id': team_id, 'assigned_to': assigned_to},
        )
        _log.info('custom_task_created order_id=%s task_id=%s team_id=%s', order_id, task['task_id'], team_id)
        self.recompute(order_id)
        return task

    def update_fields(
        self,
        actor: ActorContext,
        order_id: str,
        *,
        delivery_date: datetime | None = None,
        delivery_time: str | None = None,
        amount: float | None = None,
        notes: str | None = None,
        folder_link: str | None = None,
        status: OrderStatus | str | None = None,
    ) -> dict:
        """Apply an order edit as one write.

        Every requested field is authorized and validated first; a rejection
        on any of them leaves the order untouched. An unspecified delivery
        date or time keeps its current value and a blank time clears it.
        """
        order = self._load(order_id)
        changes: list[_FieldChange] = []
        if delivery_date is not None or delivery_time is not None:
            changes.append(
                self._delivery_change(
                    actor,
                    order,
                    delivery_date=delivery_date or order['delivery_date'],
                    delivery_time=delivery_time if delivery_time is not None else order.get('delivery_time'),
                )
            )
        if amount is not None:
            changes.append(self._amount_change(actor, order, amount))
        if notes is not None:
            changes.append(self._notes_change(actor, order, notes))
        if folder_link is not None:
            changes.append(self._folder_link_change(actor, order, folder_link))
        status_change = self._status_change(actor, order, status) if status is not None else None
        if status_change is not None:
            changes.append(status_change)
        if not changes:
            return order

        values: dict = {}
        for change in changes:
            values.update(change.values)
        updated = self._save(order, values)
        for change in changes:
            self._audit(actor, order_id, change.action, change.description, old=change.old, new=change.new)
        _log.info(
            'order_fields_updated order_id=%s fields=%s',
            order_id,
            ','.join(sorted(values)),
        )
        if 'delivery_date' in values and order['status'] == OrderStatus.COMPLETED.value:
            _log.warning('delivery_changed_after_completion order_id=%s', order_id)
        if status_change is not None:
            _log.info(
                'order_status_overridden order_id=%s from=%s to=%s',
                order_id,
                order['status'],
                updated['status'],
            )
            return self.recompute(order_id)
        return updated

    def _delivery_change(
        self, actor: ActorContext, order: dict, *, delivery_date: datetime, delivery_time: str | None,
    ) -> _FieldChange:
        require_editor_or_leader(actor, action='change delivery dates')
        if as_utc(delivery_date) < as_utc(order['order_date']):
            raise ValidationError('delivery_date cannot be before order_date', field='delivery_date')
        time_text = _normalize_delivery_time(delivery_time)
        return _FieldChange(
            values={'delivery_date': as_utc(delivery_date), 'delivery_time': time_text},
            action=AuditAction.ORDER_DELIVERY_EXTENDED,
            description='delivery date changed',
            old={'delivery_date': order['delivery_date'], 'delivery_time': order.get('delivery_time')},
            new={'delivery_date': as_utc(delivery_date), 'delivery_time': time_text},
        )

    def _amount_change(self, actor: ActorContext, order: dict, amount) -> _FieldChange:
        require_editor_or_leader(actor, action='change order amounts')
        value = self._validate_amount(amount)
        return _FieldChange(
            values={'amount': value},
            action=AuditAction.ORDER_AMOUNT_UPDATED,
            description='amount changed',
            old={'amount': order['amount']},
            new={'amount': value},
        )

    def _notes_change(self, actor: ActorContext, order: dict, notes: str | None) -> _FieldChange:
        require_editor_or_leader(actor, action='edit order notes')
        text = str(notes or '').strip() or None
        return _FieldChange(
            values={'notes': text},
            action=AuditAction.ORDER_NOTES_UPDATED,
            description='notes changed',
            old={'notes': order.get('notes')},
            new={'notes': text},
        )

    def _folder_link_change(self, actor: ActorContext, order: dict, folder_link: str | None) -> _FieldChange:
        require_editor_or_leader(actor, action='edit folder links', allow_order_creator=True)
        link = str(folder_link or '').strip() or None
        return _FieldChange(
            values={'folder_link': link},
            action=AuditAction.ORDER_FOLDER_LINK_UPDATED,
            description='folder link changed',
            old={'folder_link': order.get('folder_link')},
            new={'folder_link': link},
        )

    def _status_change(self, actor: ActorContext, order: dict, status: OrderStatus | str) -> _FieldChange | None:
        require_roles(actor, UserRole.ADMIN, action='override order status')
        try:
            target = OrderStatus(str(getattr(status, 'value', status) or '').strip().upper())
        except ValueError as exc:
            raise ValidationError(f'invalid status: {status}', field='status') from exc
        if target.value == order['status']:
            return None
        values: dict = {'status': target.value}
        if target == OrderStatus.COMPLETED:
            values['completed_at'] = order.get('completed_at') or self._clock()
        elif order['status'] == OrderStatus.COMPLETED.value:
            values['completed_at'] = None
        return _FieldChange(
            values=values,
            action=AuditAction.ORDER_STATUS_OVERRIDDEN,
            description=f'status set to {target.value}',
            old={'status': order['status']},
            new={'status': target.value},
        )

    def _load(self, order_id: str) -> dict:
        order = self.repository.get_order(order_id)
        if order is None:
            raise NotFoundError('order', order_id)
        bind_order(order)
        return order

    def _save(self, order: dict, values: dict) -> dict:
        updated = self.repository.update_order_if(
            order['order_id'], expected_version=int(order['version']), values=values,
        )
        if updated is None:
            raise ConflictError('order was modified concurrently; reload and retry', field='version')
        return updated

    def _audit(self, actor: ActorContext, order_id: str, action: AuditAction, description: str, *, old: dict, new: dict):
        self.repository.append_audit(
            entity_type=EntityType.ORDER,
            entity_id=order_id,
            order_id=order_id,
            action=action,
            performed_by=actor.user_id,
            old_value=old,
            new_value=new,
            description=description,
        )

    @staticmethod
    def _validate_amount(amount) -> float:
        try:
            value = float(amount)
        except (TypeError, ValueError) as exc:
            raise ValidationError('amount must be a number', field='amount') from exc
        if value <= 0:
            raise ValidationError('amount must be greater than zero', field='amount')
        return round(value, 2)

    @staticmethod
    def _require_title(title: str) -> str:
        text = str(title or '').strip()
        if not text:
            raise ValidationError('title is required', field='title')
        return text

    @staticmethod
    def _revision_delivery_date(original: dict, now: datetime) -> datetime:
        """Keep the original delivery date unless it has already passed.

        A lapsed date is moved forward by the original turnaround (at least
        one day) so cloned work can be assigned inside a valid window.
        """
        delivery_date = as_utc(original['delivery_date'])
        if delivery_datetime(delivery_date, original.get('delivery_time')) > as_utc(now):
            return delivery_date
        turnaround = delivery_date - as_utc(original['order_date'])
        days = max(1, turnaround.days)
        return (as_utc(now) + timedelta(days=days)).replace(hour=0, minute=0, second=0, microsecond=0)

    @staticmethod
    def _check_deadline(order: dict, deadline: datetime) -> None:
        when = as_utc(deadline)
        if when < as_utc(order['order_date']):
            raise ValidationError('deadline cannot be before the order date', field='deadline')
        if when >= delivery_datetime(order['delivery_date'], order.get('delivery_time')):
            raise ValidationError('deadline must be before the order delivery time', field='deadline')

    def _member_team(self, member_id: str, team_id: str | None) -> str:
        user = self.repository.get_user(member_id)
        if user is None or not user.get('is_active', True):
            raise ValidationError(f'unknown or inactive user: {member_id}', field='member_id')
        memberships = [
            m for m in self.repository.list_team_memberships(user_id=member_id) if m.get('is_active', True)
        ]
        if team_id:
            if not any(m['team_id'] == team_id for m in memberships):
                raise ValidationError('member does not belong to the given team', field='team_id')
            return team_id
        if not memberships:
            raise ValidationError('member belongs to no team', field='member_id')
        return memberships[0]['team_id']

    @staticmethod
    def _clone_task(task: dict) -> WorkItemCreateRecord:
        return WorkItemCreateRecord(
            title=str(task['title']),
            kind=ServiceType.SERVICE_TASK,
            team_id=task.get('team_id'),
            service_id=task.get('service_id'),
            is_mandatory=bool(task.get('is_mandatory')),
            requires_completion_note=bool(task.get('requires_completion_note')),
        )

    @staticmethod
    def _clone_asking(asking_task: dict) -> WorkItemCreateRecord:
        return WorkItemCreateRecord(
            title=str(asking_task['title']),
            kind=ServiceType.ASKING_SERVICE,
            team_id=asking_task.get('team_id'),
            service_id=asking_task.get('service_id'),
            is_mandatory=bool(asking_task.get('is_mandatory')),
        )
