from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

import pytest


def _prepend_repo_src_to_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / 'src'
    if not src.is_dir():
        return
    src_text = str(src)
    normalized = src_text.replace('\\', '/').lower()

    cleaned: list[str] = []
    seen: set[str] = set()

    def add(item: str) -> None:
        text = str(item or '').strip()
        if not text:
            return
        key = text.replace('\\', '/').lower()
        if key in seen:
            return
        seen.add(key)
        cleaned.append(text)

    add(src_text)
    for item in list(sys.path):
        text = str(item or '').strip()
        if not text:
            continue
        key = text.replace('\\', '/').lower()
        if key == normalized:
            continue
        add(text)
    sys.path[:] = cleaned


_prepend_repo_src_to_syspath()


@dataclass
class World:
    engine: object
    repo: object
    users: dict = field(default_factory=dict)
    teams: dict = field(default_factory=dict)
    services: dict = field(default_factory=dict)
    order_date: datetime | None = None
    delivery_date: datetime | None = None
    counter: int = 0

    def actor(self, user_id: str):
        return self.engine.resolve_actor(user_id)

    def deadline(self, days: int = 2) -> datetime:
        return self.order_date + timedelta(days=days)

    def new_order(self, *, services=None, folder_link='https://files.example/ord', actor='creator', **overrides):
        from orderflow.service import CreateOrderInput
        from orderflow.service_layers import ServiceQuantity

        self.counter += 1
        if services is None:
            services = {'logo': 1, 'copy': 1, 'check': 1}
        payload = {
            'order_number': f'ORD-{self.counter:04d}',
            'customer_name': 'Acme Corp',
            'amount': 250.0,
            'order_date': self.order_date,
            'delivery_date': self.delivery_date,
            'delivery_time': '17:00',
            'folder_link': folder_link,
            'notes': None,
            'services': [
                ServiceQuantity(service_id=self.services[key]['service_id'], quantity=qty)
                for key, qty in services.items()
            ],
        }
        payload.update(overrides)
        return self.engine.create_order(self.actor(actor), CreateOrderInput(**payload)).entity


def build_world(repository=None, **engine_kwargs) -> World:
    from orderflow.domain.models import ServiceType, UserRole
    from orderflow.repository import InMemoryOrderRepository
    from orderflow.service import OrderEngine

    repo = repository if repository is not None else InMemoryOrderRepository()
    engine = OrderEngine(repository=repo, **engine_kwargs)
    admin = engine.catalog.ensure_admin('admin')
    world = World(engine=engine, repo=repo)
    world.users['admin'] = admin
    admin_actor = world.actor('admin')

    for user_id, role in (
        ('creator', UserRole.ORDER_CREATOR),
        ('revman', UserRole.REVISION_MANAGER),
        ('lead', UserRole.MEMBER),
        ('alice', UserRole.MEMBER),
        ('bob', UserRole.MEMBER),
        ('rlead', UserRole.MEMBER),
        ('carol', UserRole.MEMBER),
        ('outsider', UserRole.MEMBER),
    ):
        world.users[user_id] = engine.create_user(
            admin_actor, user_id=user_id, display_name=user_id.title(), role=role,
        )

    world.teams['design'] = engine.create_team(admin_actor, name='Design', leader_id='lead')
    world.teams['research'] = engine.create_team(admin_actor, name='Research', leader_id='rlead')
    for user_id in ('alice', 'bob'):
        engine.add_team_member(admin_actor, world.teams['design']['team_id'], user_id=user_id)
    engine.add_team_member(admin_actor, world.teams['research']['team_id'], user_id='carol')

    world.services['logo'] = engine.create_service(
        admin_actor,
        name='Logo design',
        service_type=ServiceType.SERVICE_TASK,
        team_id=world.teams['design']['team_id'],
        is_mandatory=True,
    )
    world.services['copy'] = engine.create_service(
        admin_actor,
        name='Copywriting',
        service_type=ServiceType.SERVICE_TASK,
        team_id=world.teams['design']['team_id'],
        requires_completion_note=True,
    )
    world.services['check'] = engine.create_service(
        admin_actor,
        name='Customer check',
        service_type=ServiceType.ASKING_SERVICE,
        team_id=world.teams['research']['team_id'],
        is_mandatory=True,
    )
    world.services['retired'] = engine.create_service(
        admin_actor,
        name='Retired service',
        service_type=ServiceType.SERVICE_TASK,
        team_id=world.teams['design']['team_id'],
        is_active=False,
    )

    now = datetime.now(timezone.utc).replace(microsecond=0)
    world.order_date = now - timedelta(days=1)
    world.delivery_date = (now + timedelta(days=14)).replace(hour=0, minute=0, second=0)
    return world


@pytest.fixture
def world() -> World:
    return build_world()


@pytest.fixture
def world_factory():
    return build_world
