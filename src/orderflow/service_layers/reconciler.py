from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable

from orderflow.actors import ActorContext, require_roles
from orderflow.domain.errors import ConflictError, NotFoundError, PreconditionError, ValidationError
from orderflow.domain.events import AuditAction, EntityType
from orderflow.domain.models import OrderStatus, ServiceType, UserRole, is_removable
from orderflow.observability import get_logger
from orderflow.repository import WorkItemCreateRecord

_log = get_logger('orderflow.service_layers.reconciler')

MAX_SERVICE_QUANTITY = 100


@dataclass(frozen=True)
class ServiceQuantity:
    service_id: str
    quantity: int


@dataclass(frozen=True)
class ServiceChange:
    service_id: str
    service_name: str
    change: int


@dataclass(frozen=True)
class ReconcilePlan:
    create: list[WorkItemCreateRecord]
    remove_instance_ids: list[str]
    changes: list[ServiceChange]


def work_item_for_service(service: dict) -> WorkItemCreateRecord:
    return WorkItemCreateRecord(
        title=str(service['name']),
        kind=ServiceType(service['type']),
        team_id=service.get('team_id'),
        service_id=service['service_id'],
        is_mandatory=bool(service.get('is_mandatory')),
        requires_completion_note=bool(service.get('requires_completion_note')),
    )


def normalize_quantities(items: Iterable[ServiceQuantity | dict]) -> list[ServiceQuantity]:
    out: list[ServiceQuantity] = []
    seen: set[str] = set()
    for index, item in enumerate(items):
        if isinstance(item, dict):
            service_id = item.get('service_id')
            quantity = item.get('quantity')
        else:
            service_id, quantity = item.service_id, item.quantity
        service_id = str(service_id or '').strip()
        if not service_id:
            raise ValidationError('service_id is required', field=f'services[{index}].service_id')
        if service_id in seen:
            raise ValidationError(f'duplicate service: {service_id}', field=f'services[{index}].service_id')
        seen.add(service_id)
        if isinstance(quantity, bool):
            raise ValidationError('quantity must be an integer', field=f'services[{index}].quantity')
        try:
            qty = int(quantity)
        except (TypeError, ValueError) as exc:
            raise ValidationError('quantity must be an integer', field=f'services[{index}].quantity') from exc
        if qty < 0 or qty > MAX_SERVICE_QUANTITY:
            raise ValidationError(
                f'quantity must be between 0 and {MAX_SERVICE_QUANTITY}',
                field=f'services[{index}].quantity',
            )
        out.append(ServiceQuantity(service_id=service_id, quantity=qty))
    return out


class ReconcilerService:
    def __init__(
        self,
        *,
        repository,
        on_work_changed: Callable[[str], dict],
    ):
        self.repository = repository
        self._on_work_changed = on_work_changed

    def current_services(self, order_id: str) -> list[dict]:
        """Per-service quantities with how many instances may still be removed."""
        if self.repository.get_order(order_id) is None:
            raise NotFoundError('order', order_id)
        grouped = self._group_instances(order_id)
        rows: list[dict] = []
        for service_id, instances in grouped.items():
            service = self.repository.get_service(service_id) or {}
            removable = sum(1 for _, work in instances if is_removable(work))
            rows.append(
                {
                    'service_id': service_id,
                    'service_name': service.get('name', service_id),
                    'service_type': service.get('type'),
                    'team_id': service.get('team_id'),
                    'quantity': len(instances),
                    'assigned_count': len(instances) - removable,
                    'removable_count': removable,
                }
            )
        return rows

    def plan_initial(self, desired: Iterable[ServiceQuantity | dict]) -> ReconcilePlan:
        create: list[WorkItemCreateRecord] = []
        changes: list[ServiceChange] = []
        for item in normalize_quantities(desired):
            if item.quantity == 0:
                continue
            service = self._active_service(item.service_id)
            create.extend(work_item_for_service(service) for _ in range(item.quantity))
            changes.append(ServiceChange(item.service_id, str(service['name']), item.quantity))
        return ReconcilePlan(create=create, remove_instance_ids=[], changes=changes)

    def plan(self, order: dict, desired: Iterable[ServiceQuantity | dict]) -> ReconcilePlan:
        if order['status'] == OrderStatus.COMPLETED.value or order.get('completed_at') is not None:
            raise PreconditionError('services of a completed order cannot be changed', field='status')
        wanted = normalize_quantities(desired)
        grouped = self._group_instances(order['order_id'])
        wanted_ids = {w.service_id for w in wanted}
        targets = [*wanted, *(ServiceQuantity(sid, 0) for sid in grouped if sid not in wanted_ids)]

        create: list[WorkItemCreateRecord] = []
        remove: list[str] = []
        changes: list[ServiceChange] = []
        for item in targets:
            instances = grouped.get(item.service_id, [])
            delta = item.quantity - len(instances)
            if delta == 0:
                continue
            if delta > 0:
                service = self._active_service(item.service_id)
                create.extend(work_item_for_service(service) for _ in range(delta))
                changes.append(ServiceChange(item.service_id, str(service['name']), delta))
                continue
            service = self.repository.get_service(item.service_id) or {'name': item.service_id}
            free = [instance for instance, work in instances if is_removable(work)]
            if -delta > len(free):
                raise ConflictError(
                    f'cannot remove instances with assigned tasks: {service["name"]} '
                    f'has {len(free)} removable of {len(instances)}',
                    field=item.service_id,
                )
            # newest free instances go first
            free.sort(key=lambda i: i['created_at'], reverse=True)
            remove.extend(i['instance_id'] for i in free[:-delta])
            changes.append(ServiceChange(item.service_id, str(service['name']), delta))
        return ReconcilePlan(create=create, remove_instance_ids=remove, changes=changes)

    def preview(self, actor: ActorContext, order_id: str, desired: Iterable[ServiceQuantity | dict]) -> list[ServiceChange]:
        require_roles(actor, UserRole.ADMIN, UserRole.ORDER_CREATOR, action='edit order services')
        return self.plan(self._load_order(order_id), desired).changes

    def apply(
        self,
        actor: ActorContext,
        order_id: str,
        desired: Iterable[ServiceQuantity | dict],
    ) -> tuple[dict, list[ServiceChange]]:
        require_roles(actor, UserRole.ADMIN, UserRole.ORDER_CREATOR, action='edit order services')
        order = self._load_order(order_id)
        plan = self.plan(order, desired)
        if not plan.changes:
            return order, []
        claimed = self.repository.update_order_if(
            order_id, expected_version=int(order['version']), values={'is_customized': True},
        )
        if claimed is None:
            raise ConflictError('order was modified concurrently; reload and retry', field='version')
        result = self.repository.apply_work_changes(
            order_id, create=plan.create, remove_instance_ids=plan.remove_instance_ids,
        )
        changes = [{'service_id': c.service_id, 'service_name': c.service_name, 'change': c.change} for c in plan.changes]
        self.repository.append_audit(
            entity_type=EntityType.ORDER,
            entity_id=order_id,
            order_id=order_id,
            action=AuditAction.ORDER_SERVICES_UPDATED,
            performed_by=actor.user_id,
            old_value={},
            new_value={'changes': changes},
            description=', '.join(f'{c["service_name"]} {c["change"]:+d}' for c in changes),
        )
        _log.info(
            'order_services_updated order_id=%s created=%s removed=%s',
            order_id,
            len(result['tasks']) + len(result['asking_tasks']),
            result['removed'],
        )
        updated = self._on_work_changed(order_id)
        return updated, plan.changes

    def _load_order(self, order_id: str) -> dict:
        order = self.repository.get_order(order_id)
        if order is None:
            raise NotFoundError('order', order_id)
        return order

    def _active_service(self, service_id: str) -> dict:
        service = self.repository.get_service(service_id)
        if service is None:
            raise ValidationError(f'unknown service: {service_id}', field='service_id')
        if not service.get('is_active', True):
            raise ValidationError(f'service is inactive: {service["name"]}', field='service_id')
        return service

    def _group_instances(self, order_id: str) -> dict[str, list[tuple[dict, dict | None]]]:
        work_by_instance: dict[str, dict] = {}
        for task in self.repository.list_tasks(order_id=order_id):
            if task.get('instance_id'):
                work_by_instance[task['instance_id']] = task
        for asking in self.repository.list_asking_tasks(order_id=order_id):
            if asking.get('instance_id'):
                work_by_instance[asking['instance_id']] = asking
        grouped: dict[str, list[tuple[dict, dict | None]]] = {}
        for instance in self.repository.list_service_instances(order_id):
            grouped.setdefault(instance['service_id'], []).append(
                (instance, work_by_instance.get(instance['instance_id']))
            )
        return grouped
