from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from orderflow.actors import ActorContext, require_team_lead
from orderflow.domain.errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from orderflow.domain.events import AuditAction, EntityType
from orderflow.domain.models import (
    REASSIGNABLE_STATUSES,
    TaskPriority,
    TaskStatus,
    UserRole,
    as_utc,
    can_transition,
    delivery_datetime,
)
from orderflow.observability import get_logger

_log = get_logger('orderflow.service_layers.task_lifecycle')


def time_spent(started_at: datetime | None, completed_at: datetime) -> dict:
    if started_at is None:
        return {'hours': 0, 'minutes': 0, 'total_seconds': 0}
    seconds = max(0, int((as_utc(completed_at) - as_utc(started_at)).total_seconds()))
    return {'hours': seconds // 3600, 'minutes': (seconds % 3600) // 60, 'total_seconds': seconds}


class TaskLifecycleService:
    def __init__(
        self,
        *,
        repository,
        on_work_changed: Callable[[str], dict],
    ):
        self.repository = repository
        self._on_work_changed = on_work_changed

    def assign(
        self,
        actor: ActorContext,
        task_id: str,
        *,
        user_id: str,
        deadline: datetime,
        priority: TaskPriority | str = TaskPriority.MEDIUM,
        notes: str | None = None,
    ) -> dict:
        task = self._load(task_id)
        self._require_transition(task, TaskStatus.ASSIGNED, allowed={TaskStatus.NOT_ASSIGNED})
        order = self._check_assignment(actor, task, user_id=user_id, deadline=deadline)
        updated = self._save(
            task,
            {
                'status': TaskStatus.ASSIGNED.value,
                'assigned_to': user_id,
                'deadline': as_utc(deadline),
                'priority': self._normalize_priority(priority),
                'notes': notes,
            },
        )
        self._record(
            actor,
            task,
            updated,
            AuditAction.TASK_ASSIGNED,
            f'assigned to {user_id}',
            fields=('status', 'assigned_to', 'deadline', 'priority'),
        )
        _log.info(
            'task_assigned task_id=%s order_id=%s assignee=%s deadline=%s',
            task_id,
            order['order_id'],
            user_id,
            updated['deadline'].isoformat(),
        )
        self._on_work_changed(task['order_id'])
        return updated

    def reassign(
        self,
        actor: ActorContext,
        task_id: str,
        *,
        user_id: str,
        deadline: datetime,
        priority: TaskPriority | str = TaskPriority.MEDIUM,
        notes: str | None = None,
    ) -> dict:
        task = self._load(task_id)
        self._require_transition(task, TaskStatus.ASSIGNED, allowed=REASSIGNABLE_STATUSES)
        self._check_assignment(actor, task, user_id=user_id, deadline=deadline)
        updated = self._save(
            task,
            {
                'status': TaskStatus.ASSIGNED.value,
                'assigned_to': user_id,
                'deadline': as_utc(deadline),
                'priority': self._normalize_priority(priority),
                'notes': notes,
                'started_at': None,
            },
        )
        self._record(
            actor,
            task,
            updated,
            AuditAction.TASK_REASSIGNED,
            f'reassigned from {task.get("assigned_to")} to {user_id}',
            fields=('status', 'assigned_to', 'deadline', 'priority', 'started_at'),
        )
        _log.info(
            'task_reassigned task_id=%s previous=%s assignee=%s previous_status=%s',
            task_id,
            task.get('assigned_to'),
            user_id,
            task['status'],
        )
        self._on_work_changed(task['order_id'])
        return updated

    def discard(self, actor: ActorContext, task_id: str) -> dict:
        task = self._load(task_id)
        if task['status'] == TaskStatus.COMPLETED.value:
            raise InvalidTransitionError('completed tasks cannot be discarded', field='status')
        require_team_lead(actor, task.get('team_id'), action='discard task assignments')
        updated = self._save(
            task,
            {
                'status': TaskStatus.NOT_ASSIGNED.value,
                'assigned_to': None,
                'deadline': None,
                'priority': None,
                'notes': None,
                'started_at': None,
            },
        )
        self._record(
            actor,
            task,
            updated,
            AuditAction.TASK_DISCARDED,
            'assignment discarded',
            fields=('status', 'assigned_to', 'deadline', 'priority'),
        )
        _log.info('task_discarded task_id=%s previous_status=%s', task_id, task['status'])
        self._on_work_changed(task['order_id'])
        return updated

    def start(self, actor: ActorContext, task_id: str) -> dict:
        task = self._load(task_id)
        self._require_assignee(actor, task, action='start')
        self._require_transition(task, TaskStatus.IN_PROGRESS, allowed={TaskStatus.ASSIGNED})
        values: dict = {'status': TaskStatus.IN_PROGRESS.value}
        if task.get('started_at') is None:
            values['started_at'] = datetime.now(timezone.utc)
        updated = self._save(task, values)
        self._record(actor, task, updated, AuditAction.TASK_STARTED, 'work started', fields=('status',))
        _log.info('task_started task_id=%s assignee=%s', task_id, actor.user_id)
        self._on_work_changed(task['order_id'])
        return updated

    def pause(self, actor: ActorContext, task_id: str) -> dict:
        task = self._load(task_id)
        self._require_assignee(actor, task, action='pause')
        self._require_transition(task, TaskStatus.PAUSED, allowed={TaskStatus.IN_PROGRESS})
        updated = self._save(task, {'status': TaskStatus.PAUSED.value})
        self._record(actor, task, updated, AuditAction.TASK_PAUSED, 'work paused', fields=('status',))
        _log.info('task_paused task_id=%s', task_id)
        self._on_work_changed(task['order_id'])
        return updated

    def resume(self, actor: ActorContext, task_id: str) -> dict:
        task = self._load(task_id)
        self._require_assignee(actor, task, action='resume')
        self._require_transition(task, TaskStatus.IN_PROGRESS, allowed={TaskStatus.PAUSED})
        updated = self._save(task, {'status': TaskStatus.IN_PROGRESS.value})
        self._record(actor, task, updated, AuditAction.TASK_RESUMED, 'work resumed', fields=('status',))
        _log.info('task_resumed task_id=%s', task_id)
        self._on_work_changed(task['order_id'])
        return updated

    def toggle_pause(self, actor: ActorContext, task_id: str) -> dict:
        task = self._load(task_id)
        if task['status'] == TaskStatus.PAUSED.value:
            return self.resume(actor, task_id)
        return self.pause(actor, task_id)

    def complete(self, actor: ActorContext, task_id: str, *, notes: str | None = None) -> tuple[dict, dict]:
        task = self._load(task_id)
        self._require_assignee(actor, task, action='complete')
        self._require_transition(task, TaskStatus.COMPLETED, allowed={TaskStatus.IN_PROGRESS})
        text = str(notes or '').strip()
        if task.get('requires_completion_note') and not text:
            raise ValidationError('completion notes are required for this service', field='notes')
        now = datetime.now(timezone.utc)
        updated = self._save(
            task,
            {
                'status': TaskStatus.COMPLETED.value,
                'completed_at': now,
                'completion_notes': text or None,
            },
        )
        spent = time_spent(task.get('started_at'), now)
        self._record(
            actor,
            task,
            updated,
            AuditAction.TASK_COMPLETED,
            f'completed after {spent["hours"]}h {spent["minutes"]}m',
            fields=('status', 'completed_at'),
        )
        _log.info('task_completed task_id=%s seconds=%s', task_id, spent['total_seconds'])
        self._on_work_changed(task['order_id'])
        return updated, spent

    def mark_for_revision(self, actor: ActorContext, task_id: str, *, marked: bool) -> dict:
        task = self._load(task_id)
        if not (actor.role in {UserRole.ADMIN, UserRole.REVISION_MANAGER} or actor.leads(task.get('team_id'))):
            raise AuthorizationError(f'{actor.role.value} may not mark tasks for revision')
        order = self.repository.get_order(task['order_id'])
        if order is None:
            raise NotFoundError('order', task['order_id'])
        if order['completed_at'] is None:
            raise PreconditionError('only tasks of delivered orders can be marked for revision', field='order_id')
        updated = self._save(task, {'marked_for_revision': bool(marked)})
        self._record(
            actor, task, updated, AuditAction.TASK_REVISION_MARKED,
            'marked for revision' if marked else 'revision mark cleared',
            fields=('marked_for_revision',),
        )
        return updated

    def _load(self, task_id: str) -> dict:
        task = self.repository.get_task(task_id)
        if task is None:
            raise NotFoundError('task', task_id)
        return task

    def _check_assignment(self, actor: ActorContext, task: dict, *, user_id: str, deadline: datetime) -> dict:
        team_id = task.get('team_id')
        require_team_lead(actor, team_id, action='assign tasks')
        user = self.repository.get_user(user_id)
        if user is None or not user.get('is_active', True):
            raise ValidationError(f'unknown or inactive user: {user_id}', field='user_id')
        memberships = self.repository.list_team_memberships(team_id=team_id, user_id=user_id)
        if not any(m.get('is_active', True) for m in memberships):
            raise ValidationError('assignee is not an active member of the task team', field='user_id')

        order = self.repository.get_order(task['order_id'])
        if order is None:
            raise NotFoundError('order', task['order_id'])
        if not str(order.get('folder_link') or '').strip():
            raise PreconditionError('the order has no folder link yet', field='folder_link')

        if deadline is None:
            raise ValidationError('deadline is required', field='deadline')
        when = as_utc(deadline)
        if when < as_utc(order['order_date']):
            raise ValidationError('deadline cannot be before the order date', field='deadline')
        if when >= delivery_datetime(order['delivery_date'], order.get('delivery_time')):
            raise ValidationError('deadline must be before the order delivery time', field='deadline')
        return order

    @staticmethod
    def _require_transition(task: dict, target: TaskStatus, *, allowed=None) -> None:
        current = task['status']
        if allowed is not None and TaskStatus(current) not in allowed:
            raise InvalidTransitionError(
                f'cannot move task from {current} to {target.value}', field='status',
            )
        if not can_transition(current, target):
            raise InvalidTransitionError(
                f'cannot move task from {current} to {target.value}', field='status',
            )

    @staticmethod
    def _require_assignee(actor: ActorContext, task: dict, *, action: str) -> None:
        if task.get('assigned_to') != actor.user_id:
            raise AuthorizationError(f'only the assignee may {action} this task', field='assigned_to')

    @staticmethod
    def _normalize_priority(value: TaskPriority | str | None) -> str:
        text = str(getattr(value, 'value', value) or TaskPriority.MEDIUM.value).strip().upper()
        try:
            return TaskPriority(text).value
        except ValueError as exc:
            raise ValidationError(f'invalid priority: {value}', field='priority') from exc

    def _save(self, task: dict, values: dict) -> dict:
        updated = self.repository.update_task_if(
            task['task_id'], expected_version=int(task['version']), values=values,
        )
        if updated is None:
            raise ConflictError('task was modified concurrently; reload and retry', field='version')
        return updated

    def _record(
        self,
        actor: ActorContext,
        before: dict,
        after: dict,
        action: AuditAction,
        description: str,
        *,
        fields: tuple[str, ...],
    ) -> None:
        self.repository.append_audit(
            entity_type=EntityType.TASK,
            entity_id=before['task_id'],
            order_id=before['order_id'],
            action=action,
            performed_by=actor.user_id,
            old_value={k: before.get(k) for k in fields},
            new_value={k: after.get(k) for k in fields},
            description=description,
        )
