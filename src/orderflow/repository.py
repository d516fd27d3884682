from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol
from uuid import uuid4

from orderflow.domain.errors import ConflictError, NotFoundError
from orderflow.domain.events import AuditAction, EntityType, normalize_audit_action
from orderflow.domain.models import AskingStage, OrderStatus, ServiceType, TaskStatus, is_removable


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f'{prefix}-{uuid4().hex[:12]}'


@dataclass(frozen=True)
class ServiceCreateRecord:
    name: str
    service_type: ServiceType
    team_id: str | None
    is_mandatory: bool = False
    requires_completion_note: bool = False
    is_active: bool = True


@dataclass(frozen=True)
class OrderCreateRecord:
    order_number: str
    customer_name: str
    amount: float
    order_date: datetime
    delivery_date: datetime
    delivery_time: str | None
    folder_link: str | None
    notes: str | None
    created_by: str
    status: OrderStatus = OrderStatus.PENDING
    is_revision: bool = False
    original_order_id: str | None = None


@dataclass(frozen=True)
class WorkItemCreateRecord:
    """One unit of work to create on an order.

    With ``service_id`` set, a service instance is created alongside it.
    Custom and revision tasks carry no service and no instance.
    """

    title: str
    kind: ServiceType
    team_id: str | None
    service_id: str | None = None
    is_mandatory: bool = False
    requires_completion_note: bool = False
    status: TaskStatus = TaskStatus.NOT_ASSIGNED
    priority: str | None = 'MEDIUM'
    assigned_to: str | None = None
    deadline: datetime | None = None
    notes: str | None = None
    is_revision_task: bool = False


class OrderRepository(Protocol):
    def create_user(self, *, user_id: str, display_name: str, email: str | None, role: str) -> dict:
        ...

    def get_user(self, user_id: str) -> dict | None:
        ...

    def create_team(self, *, name: str, leader_id: str | None) -> dict:
        ...

    def get_team(self, team_id: str) -> dict | None:
        ...

    def list_teams(self) -> list[dict]:
        ...

    def add_team_member(self, *, team_id: str, user_id: str) -> dict:
        ...

    def list_team_memberships(self, *, team_id: str | None = None, user_id: str | None = None) -> list[dict]:
        ...

    def create_service(self, record: ServiceCreateRecord) -> dict:
        ...

    def get_service(self, service_id: str) -> dict | None:
        ...

    def list_services(self, *, active_only: bool = False) -> list[dict]:
        ...

    def set_user_active(self, user_id: str, *, is_active: bool) -> dict:
        ...

    def set_team_active(self, team_id: str, *, is_active: bool) -> dict:
        ...

    def set_membership_active(self, membership_id: str, *, is_active: bool) -> dict:
        ...

    def set_service_active(self, service_id: str, *, is_active: bool) -> dict:
        ...

    def create_order(self, record: OrderCreateRecord) -> dict:
        ...

    def get_order(self, order_id: str) -> dict | None:
        ...

    def get_order_by_number(self, order_number: str) -> dict | None:
        ...

    def list_orders(
        self,
        *,
        status: str | None = None,
        is_revision: bool | None = None,
        original_order_id: str | None = None,
        order_ids: list[str] | None = None,
        limit: int = 100,
    ) -> list[dict]:
        ...

    def update_order_if(self, order_id: str, *, expected_version: int, values: dict) -> dict | None:
        """Apply *values* only if the stored version still equals *expected_version*.

        Returns the updated row, or ``None`` when another writer got there first.
        """
        ...

    def update_order(self, order_id: str, *, values: dict) -> dict:
        ...

    def apply_work_changes(
        self,
        order_id: str,
        *,
        create: list[WorkItemCreateRecord],
        remove_instance_ids: list[str],
    ) -> dict:
        """Create and remove work items for one order in a single unit."""
        ...

    def list_service_instances(self, order_id: str) -> list[dict]:
        ...

    def get_task(self, task_id: str) -> dict | None:
        ...

    def list_tasks(
        self,
        *,
        order_id: str | None = None,
        assigned_to: str | None = None,
        team_ids: list[str] | None = None,
    ) -> list[dict]:
        ...

    def update_task_if(self, task_id: str, *, expected_version: int, values: dict) -> dict | None:
        ...

    def get_asking_task(self, asking_task_id: str) -> dict | None:
        ...

    def list_asking_tasks(self, *, order_id: str | None = None, team_ids: list[str] | None = None) -> list[dict]:
        ...

    def update_asking_task_if(self, asking_task_id: str, *, expected_version: int, values: dict) -> dict | None:
        ...

    def record_stage(
        self,
        asking_task_id: str,
        *,
        expected_version: int,
        stage: str,
        details: dict,
        recorded_by: str,
    ) -> tuple[dict, dict] | None:
        """Move ``current_stage`` and append one stage entry atomically."""
        ...

    def list_stage_entries(self, asking_task_id: str, *, after_seq: int = 0, limit: int | None = None) -> list[dict]:
        ...

    def append_audit(
        self,
        *,
        entity_type: str | EntityType,
        entity_id: str,
        order_id: str | None,
        action: str | AuditAction,
        performed_by: str,
        old_value: dict | None = None,
        new_value: dict | None = None,
        description: str = '',
    ) -> dict:
        ...

    def list_audit(self, *, order_id: str | None = None, entity_id: str | None = None) -> list[dict]:
        ...


def _enum_value(value) -> str:
    return value.value if hasattr(value, 'value') else str(value)


class InMemoryOrderRepository:
    def __init__(self):
        self.users: dict[str, dict] = {}
        self.teams: dict[str, dict] = {}
        self.memberships: list[dict] = []
        self.services: dict[str, dict] = {}
        self.orders: dict[str, dict] = {}
        self.instances: dict[str, dict] = {}
        self.tasks: dict[str, dict] = {}
        self.asking_tasks: dict[str, dict] = {}
        self.stage_entries: dict[str, list[dict]] = {}
        self.audit: list[dict] = []

    def create_user(self, *, user_id: str, display_name: str, email: str | None, role: str) -> dict:
        if user_id in self.users:
            raise ConflictError(f'user already exists: {user_id}', field='user_id')
        row = {
            'user_id': user_id,
            'display_name': display_name,
            'email': email,
            'role': _enum_value(role),
            'is_active': True,
            'created_at': _utc_now(),
        }
        self.users[user_id] = row
        return dict(row)

    def get_user(self, user_id: str) -> dict | None:
        row = self.users.get(user_id)
        return dict(row) if row else None

    def create_team(self, *, name: str, leader_id: str | None) -> dict:
        team_id = new_id('team')
        row = {
            'team_id': team_id,
            'name': name,
            'leader_id': leader_id,
            'is_active': True,
            'created_at': _utc_now(),
        }
        self.teams[team_id] = row
        return dict(row)

    def get_team(self, team_id: str) -> dict | None:
        row = self.teams.get(team_id)
        return dict(row) if row else None

    def list_teams(self) -> list[dict]:
        return [dict(t) for t in self.teams.values()]

    def add_team_member(self, *, team_id: str, user_id: str) -> dict:
        if team_id not in self.teams:
            raise NotFoundError('team', team_id)
        for membership in self.memberships:
            if membership['team_id'] == team_id and membership['user_id'] == user_id:
                membership['is_active'] = True
                return dict(membership)
        row = {
            'membership_id': new_id('mbr'),
            'team_id': team_id,
            'user_id': user_id,
            'is_active': True,
            'created_at': _utc_now(),
        }
        self.memberships.append(row)
        return dict(row)

    def list_team_memberships(self, *, team_id: str | None = None, user_id: str | None = None) -> list[dict]:
        return [
            dict(m)
            for m in self.memberships
            if (team_id is None or m['team_id'] == team_id) and (user_id is None or m['user_id'] == user_id)
        ]

    def create_service(self, record: ServiceCreateRecord) -> dict:
        service_id = new_id('svc')
        row = {
            'service_id': service_id,
            'name': record.name,
            'type': _enum_value(record.service_type),
            'team_id': record.team_id,
            'is_mandatory': bool(record.is_mandatory),
            'requires_completion_note': bool(record.requires_completion_note),
            'is_active': bool(record.is_active),
            'created_at': _utc_now(),
        }
        self.services[service_id] = row
        return dict(row)

    def get_service(self, service_id: str) -> dict | None:
        row = self.services.get(service_id)
        return dict(row) if row else None

    def list_services(self, *, active_only: bool = False) -> list[dict]:
        return [dict(s) for s in self.services.values() if s['is_active'] or not active_only]

    def set_user_active(self, user_id: str, *, is_active: bool) -> dict:
        return self._set_active(self.users.get(user_id), 'user', user_id, is_active)

    def set_team_active(self, team_id: str, *, is_active: bool) -> dict:
        return self._set_active(self.teams.get(team_id), 'team', team_id, is_active)

    def set_membership_active(self, membership_id: str, *, is_active: bool) -> dict:
        row = next((m for m in self.memberships if m['membership_id'] == membership_id), None)
        return self._set_active(row, 'team membership', membership_id, is_active)

    def set_service_active(self, service_id: str, *, is_active: bool) -> dict:
        return self._set_active(self.services.get(service_id), 'service', service_id, is_active)

    @staticmethod
    def _set_active(row: dict | None, entity: str, entity_id: str, is_active: bool) -> dict:
        if row is None:
            raise NotFoundError(entity, entity_id)
        row['is_active'] = bool(is_active)
        return dict(row)

    def create_order(self, record: OrderCreateRecord) -> dict:
        if self.get_order_by_number(record.order_number) is not None:
            raise ConflictError(f'order number already exists: {record.order_number}', field='order_number')
        order_id = new_id('ord')
        now = _utc_now()
        row = {
            'order_id': order_id,
            'order_number': record.order_number,
            'customer_name': record.customer_name,
            'status': _enum_value(record.status),
            'suggested_status': _enum_value(record.status),
            'is_revision': bool(record.is_revision),
            'original_order_id': record.original_order_id,
            'revision_completed_at': None,
            'amount': float(record.amount),
            'order_date': record.order_date,
            'delivery_date': record.delivery_date,
            'delivery_time': record.delivery_time,
            'completed_at': None,
            'folder_link': record.folder_link,
            'notes': record.notes,
            'is_customized': False,
            'created_by': record.created_by,
            'created_at': now,
            'updated_at': now,
            'version': 1,
        }
        self.orders[order_id] = row
        return dict(row)

    def get_order(self, order_id: str) -> dict | None:
        row = self.orders.get(order_id)
        return dict(row) if row else None

    def get_order_by_number(self, order_number: str) -> dict | None:
        for row in self.orders.values():
            if row['order_number'] == order_number:
                return dict(row)
        return None

    def list_orders(
        self,
        *,
        status: str | None = None,
        is_revision: bool | None = None,
        original_order_id: str | None = None,
        order_ids: list[str] | None = None,
        limit: int = 100,
    ) -> list[dict]:
        wanted = set(order_ids) if order_ids is not None else None
        rows = [
            r
            for r in self.orders.values()
            if (status is None or r['status'] == status)
            and (is_revision is None or r['is_revision'] == is_revision)
            and (original_order_id is None or r['original_order_id'] == original_order_id)
            and (wanted is None or r['order_id'] in wanted)
        ]
        rows.sort(key=lambda r: r['created_at'], reverse=True)
        return [dict(r) for r in rows[:limit]]

    def update_order_if(self, order_id: str, *, expected_version: int, values: dict) -> dict | None:
        row = self.orders.get(order_id)
        if row is None:
            raise NotFoundError('order', order_id)
        if int(row['version']) != int(expected_version):
            return None
        row.update(values)
        row['version'] = int(row['version']) + 1
        row['updated_at'] = _utc_now()
        return dict(row)

    def update_order(self, order_id: str, *, values: dict) -> dict:
        row = self.orders.get(order_id)
        if row is None:
            raise NotFoundError('order', order_id)
        row.update(values)
        row['updated_at'] = _utc_now()
        return dict(row)

    def apply_work_changes(
        self,
        order_id: str,
        *,
        create: list[WorkItemCreateRecord],
        remove_instance_ids: list[str],
    ) -> dict:
        if order_id not in self.orders:
            raise NotFoundError('order', order_id)
        for instance_id in remove_instance_ids:
            instance = self.instances.get(instance_id)
            if instance is None or instance['order_id'] != order_id:
                raise NotFoundError('service instance', instance_id)
        doomed = set(remove_instance_ids)
        work = [*self.tasks.values(), *self.asking_tasks.values()]
        if any(w['instance_id'] in doomed and not is_removable(w) for w in work):
            raise ConflictError('cannot remove instances with assigned tasks', field='remove_instance_ids')

        removed = 0
        for instance_id in remove_instance_ids:
            del self.instances[instance_id]
            for task_id in [k for k, t in self.tasks.items() if t['instance_id'] == instance_id]:
                del self.tasks[task_id]
            for asking_id in [k for k, a in self.asking_tasks.items() if a['instance_id'] == instance_id]:
                del self.asking_tasks[asking_id]
                self.stage_entries.pop(asking_id, None)
            removed += 1

        created_instances: list[dict] = []
        created_tasks: list[dict] = []
        created_asking: list[dict] = []
        for record in create:
            now = _utc_now()
            instance_id = None
            if record.service_id:
                instance_id = new_id('svi')
                instance = {
                    'instance_id': instance_id,
                    'order_id': order_id,
                    'service_id': record.service_id,
                    'created_at': now,
                }
                self.instances[instance_id] = instance
                created_instances.append(dict(instance))
            if record.kind == ServiceType.ASKING_SERVICE:
                asking_id = new_id('ask')
                asking = {
                    'asking_task_id': asking_id,
                    'order_id': order_id,
                    'instance_id': instance_id,
                    'service_id': record.service_id,
                    'team_id': record.team_id,
                    'title': record.title,
                    'current_stage': AskingStage.ASKED.value,
                    'stage_count': 0,
                    'is_flagged': False,
                    'flag_reason': None,
                    'is_mandatory': bool(record.is_mandatory),
                    'notes': record.notes,
                    'completed_at': None,
                    'completed_by': None,
                    'version': 1,
                    'created_at': now,
                    'updated_at': now,
                }
                self.asking_tasks[asking_id] = asking
                self.stage_entries[asking_id] = []
                created_asking.append(dict(asking))
                continue
            task_id = new_id('tsk')
            task = {
                'task_id': task_id,
                'order_id': order_id,
                'instance_id': instance_id,
                'service_id': record.service_id,
                'team_id': record.team_id,
                'title': record.title,
                'status': _enum_value(record.status),
                'priority': record.priority,
                'deadline': record.deadline,
                'assigned_to': record.assigned_to,
                'notes': record.notes,
                'started_at': None,
                'completed_at': None,
                'completion_notes': None,
                'is_mandatory': bool(record.is_mandatory),
                'requires_completion_note': bool(record.requires_completion_note),
                'is_revision_task': bool(record.is_revision_task),
                'marked_for_revision': False,
                'version': 1,
                'created_at': now,
                'updated_at': now,
            }
            self.tasks[task_id] = task
            created_tasks.append(dict(task))

        return {
            'instances': created_instances,
            'tasks': created_tasks,
            'asking_tasks': created_asking,
            'removed': removed,
        }

    def list_service_instances(self, order_id: str) -> list[dict]:
        rows = [dict(i) for i in self.instances.values() if i['order_id'] == order_id]
        rows.sort(key=lambda r: r['created_at'])
        return rows

    def get_task(self, task_id: str) -> dict | None:
        row = self.tasks.get(task_id)
        return dict(row) if row else None

    def list_tasks(
        self,
        *,
        order_id: str | None = None,
        assigned_to: str | None = None,
        team_ids: list[str] | None = None,
    ) -> list[dict]:
        teams = set(team_ids) if team_ids is not None else None
        rows = [
            dict(t)
            for t in self.tasks.values()
            if (order_id is None or t['order_id'] == order_id)
            and (assigned_to is None or t['assigned_to'] == assigned_to)
            and (teams is None or t['team_id'] in teams)
        ]
        rows.sort(key=lambda r: r['created_at'])
        return rows

    def update_task_if(self, task_id: str, *, expected_version: int, values: dict) -> dict | None:
        row = self.tasks.get(task_id)
        if row is None:
            raise NotFoundError('task', task_id)
        if int(row['version']) != int(expected_version):
            return None
        row.update(values)
        row['version'] = int(row['version']) + 1
        row['updated_at'] = _utc_now()
        return dict(row)

    def get_asking_task(self, asking_task_id: str) -> dict | None:
        row = self.asking_tasks.get(asking_task_id)
        return dict(row) if row else None

    def list_asking_tasks(self, *, order_id: str | None = None, team_ids: list[str] | None = None) -> list[dict]:
        teams = set(team_ids) if team_ids is not None else None
        rows = [
            dict(a)
            for a in self.asking_tasks.values()
            if (order_id is None or a['order_id'] == order_id) and (teams is None or a['team_id'] in teams)
        ]
        rows.sort(key=lambda r: r['created_at'])
        return rows

    def update_asking_task_if(self, asking_task_id: str, *, expected_version: int, values: dict) -> dict | None:
        row = self.asking_tasks.get(asking_task_id)
        if row is None:
            raise NotFoundError('asking task', asking_task_id)
        if int(row['version']) != int(expected_version):
            return None
        row.update(values)
        row['version'] = int(row['version']) + 1
        row['updated_at'] = _utc_now()
        return dict(row)

    def record_stage(
        self,
        asking_task_id: str,
        *,
        expected_version: int,
        stage: str,
        details: dict,
        recorded_by: str,
    ) -> tuple[dict, dict] | None:
        row = self.asking_tasks.get(asking_task_id)
        if row is None:
            raise NotFoundError('asking task', asking_task_id)
        if int(row['version']) != int(expected_version):
            return None
        entries = self.stage_entries.setdefault(asking_task_id, [])
        now = _utc_now()
        entry = {
            'seq': len(entries) + 1,
            'asking_task_id': asking_task_id,
            'stage': _enum_value(stage),
            'details': dict(details),
            'recorded_by': recorded_by,
            'created_at': now,
        }
        entries.append(entry)
        row['current_stage'] = entry['stage']
        row['stage_count'] = len(entries)
        row['version'] = int(row['version']) + 1
        row['updated_at'] = now
        return dict(row), {**entry, 'details': dict(entry['details'])}

    def list_stage_entries(self, asking_task_id: str, *, after_seq: int = 0, limit: int | None = None) -> list[dict]:
        if asking_task_id not in self.asking_tasks:
            raise NotFoundError('asking task', asking_task_id)
        rows = [
            {**e, 'details': dict(e['details'])}
            for e in self.stage_entries.get(asking_task_id, [])
            if e['seq'] > after_seq
        ]
        return rows if limit is None else rows[:limit]

    def append_audit(
        self,
        *,
        entity_type: str | EntityType,
        entity_id: str,
        order_id: str | None,
        action: str | AuditAction,
        performed_by: str,
        old_value: dict | None = None,
        new_value: dict | None = None,
        description: str = '',
    ) -> dict:
        entry = {
            'seq': len(self.audit) + 1,
            'entity_type': _enum_value(entity_type),
            'entity_id': entity_id,
            'order_id': order_id,
            'action': normalize_audit_action(action),
            'performed_by': performed_by,
            'old_value': dict(old_value or {}),
            'new_value': dict(new_value or {}),
            'description': description,
            'created_at': _utc_now(),
        }
        self.audit.append(entry)
        return dict(entry)

    def list_audit(self, *, order_id: str | None = None, entity_id: str | None = None) -> list[dict]:
        return [
            dict(e)
            for e in self.audit
            if (order_id is None or e['order_id'] == order_id) and (entity_id is None or e['entity_id'] == entity_id)
        ]
