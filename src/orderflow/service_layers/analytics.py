from __future__ import annotations

from datetime import datetime, timezone

from orderflow.actors import ActorContext
from orderflow.domain.gating import OrderStatistics, compute_statistics
from orderflow.domain.models import UserRole, effective_task_status
from orderflow.domain.errors import NotFoundError

_GLOBAL_VIEW_ROLES = {UserRole.ADMIN, UserRole.ORDER_CREATOR, UserRole.REVISION_MANAGER}


class OrderAnalyticsService:
    def __init__(self, *, repository, default_limit: int = 100):
        self.repository = repository
        self.default_limit = max(1, int(default_limit))

    def statistics(self, order_id: str, *, now: datetime | None = None) -> OrderStatistics:
        order = self.repository.get_order(order_id)
        if order is None:
            raise NotFoundError('order', order_id)
        return compute_statistics(
            order,
            self.repository.list_tasks(order_id=order_id),
            self.repository.list_asking_tasks(order_id=order_id),
            now=now,
        )

    def visible_order_ids(self, actor: ActorContext) -> set[str] | None:
        """Order ids the actor may see; ``None`` means every order."""
        if actor.role in _GLOBAL_VIEW_ROLES:
            return None
        ids = {t['order_id'] for t in self.repository.list_tasks(assigned_to=actor.user_id)}
        if actor.led_team_ids:
            led = sorted(actor.led_team_ids)
            ids.update(t['order_id'] for t in self.repository.list_tasks(team_ids=led))
            ids.update(a['order_id'] for a in self.repository.list_asking_tasks(team_ids=led))
        return ids

    def list_orders(
        self,
        actor: ActorContext,
        *,
        status: str | None = None,
        is_revision: bool | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        visible = self.visible_order_ids(actor)
        return self.repository.list_orders(
            status=status,
            is_revision=is_revision,
            order_ids=sorted(visible) if visible is not None else None,
            limit=max(1, int(limit or self.default_limit)),
        )

    def can_view(self, actor: ActorContext, order_id: str) -> bool:
        visible = self.visible_order_ids(actor)
        return visible is None or order_id in visible

    def my_tasks(self, actor: ActorContext, *, include_completed: bool = False, now: datetime | None = None) -> list[dict]:
        moment = now or datetime.now(timezone.utc)
        rows: list[dict] = []
        for task in self.repository.list_tasks(assigned_to=actor.user_id):
            if task.get('completed_at') is not None and not include_completed:
                continue
            display = effective_task_status(task['status'], task.get('deadline'), now=moment)
            rows.append({**task, 'display_status': display.value})
        rows.sort(key=lambda t: (t.get('deadline') is None, t.get('deadline') or moment))
        return rows
