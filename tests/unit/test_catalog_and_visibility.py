from __future__ import annotations

import pytest

from orderflow.domain.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from orderflow.domain.models import OrderStatus, ServiceType, UserRole
from orderflow.service import AssignTaskInput


def test_resolve_actor_collects_led_and_member_teams(world):
    lead = world.actor('lead')
    design = world.teams['design']['team_id']
    assert lead.role == UserRole.MEMBER
    assert lead.leads(design)
    assert lead.belongs_to(design)
    alice = world.actor('alice')
    assert not alice.is_team_leader
    assert alice.belongs_to(design)
    assert world.actor('ghost') is None
    assert world.actor('  ') is None


def test_inactive_users_do_not_resolve(world):
    world.repo.users['bob']['is_active'] = False
    assert world.actor('bob') is None


def test_ensure_admin_is_idempotent(world):
    again = world.engine.catalog.ensure_admin('admin')
    assert again['role'] == UserRole.ADMIN.value
    assert len([u for u in world.repo.users.values() if u['role'] == 'ADMIN']) == 1


def test_catalog_writes_are_admin_only(world):
    with pytest.raises(AuthorizationError):
        world.engine.create_user(world.actor('creator'), user_id='x1', display_name='X')
    with pytest.raises(AuthorizationError):
        world.engine.create_team(world.actor('lead'), name='Other')
    with pytest.raises(AuthorizationError):
        world.engine.create_service(
            world.actor('creator'), name='S', service_type=ServiceType.SERVICE_TASK, team_id=None,
        )


def test_create_user_validation(world):
    admin = world.actor('admin')
    with pytest.raises(ValidationError):
        world.engine.create_user(admin, user_id='has space', display_name='X')
    with pytest.raises(ValidationError):
        world.engine.create_user(admin, user_id='x2', display_name='X', role='OWNER')
    with pytest.raises(ConflictError):
        world.engine.create_user(admin, user_id='alice', display_name='Alice again')
    row = world.engine.create_user(admin, user_id='dave@example', display_name='Dave', role='order_creator')
    assert row['role'] == UserRole.ORDER_CREATOR.value


def test_team_leads_manage_their_own_members(world):
    design = world.teams['design']['team_id']
    research = world.teams['research']['team_id']
    membership = world.engine.add_team_member(world.actor('lead'), design, user_id='outsider')
    assert membership['is_active'] is True
    with pytest.raises(AuthorizationError):
        world.engine.add_team_member(world.actor('lead'), research, user_id='outsider')
    with pytest.raises(ValidationError):
        world.engine.add_team_member(world.actor('lead'), design, user_id='ghost')
    with pytest.raises(NotFoundError):
        world.engine.add_team_member(world.actor('admin'), 'team-missing', user_id='alice')


def test_list_services_can_hide_inactive(world):
    names = {s['name'] for s in world.engine.list_services(active_only=True)}
    assert 'Retired service' not in names
    assert 'Retired service' in {s['name'] for s in world.engine.list_services()}


def test_order_visibility_by_role(world):
    first = world.new_order()
    second = world.new_order(services={'check': 1})
    task = world.repo.list_tasks(order_id=first.order_id)[0]
    world.engine.assign_task(
        world.actor('lead'), task['task_id'], AssignTaskInput(user_id='alice', deadline=world.deadline()),
    )

    def visible(user_id):
        return {o.order_id for o in world.engine.list_orders(world.actor(user_id))}

    assert visible('admin') == {first.order_id, second.order_id}
    assert visible('creator') == {first.order_id, second.order_id}
    assert visible('revman') == {first.order_id, second.order_id}
    assert visible('alice') == {first.order_id}
    assert visible('bob') == set()
    assert visible('lead') == {first.order_id}
    assert visible('rlead') == {first.order_id, second.order_id}

    with pytest.raises(AuthorizationError):
        world.engine.get_order(world.actor('bob'), first.order_id)
    assert world.engine.get_order(world.actor('alice'), first.order_id).order.order_id == first.order_id


def test_list_orders_filters(world):
    order = world.new_order()
    world.new_order()
    world.engine.deliver_order(world.actor('creator'), order.order_id, acknowledged=True)
    admin = world.actor('admin')
    assert [o.order_id for o in world.engine.list_orders(admin, status=OrderStatus.COMPLETED)] == [order.order_id]
    assert world.engine.list_orders(admin, is_revision=True) == []
    assert len(world.engine.list_orders(admin, limit=1)) == 1


def test_get_order_detail_bundles_work_and_gate(world):
    order = world.new_order()
    detail = world.engine.get_order(world.actor('creator'), order.order_id)
    assert len(detail.tasks) == 2
    assert len(detail.asking_tasks) == 1
    assert detail.asking_tasks[0].progress_percentage == 25
    assert detail.statistics.total_tasks == 3
    assert detail.statistics.unassigned_tasks == 2
    assert detail.delivery.requires_confirmation is True
    assert detail.delivery.readiness == 'incomplete'


def test_deactivated_service_cannot_be_ordered(world):
    logo = world.services['logo']['service_id']
    with pytest.raises(AuthorizationError):
        world.engine.set_service_active(world.actor('lead'), logo, is_active=False)
    row = world.engine.set_service_active(world.actor('creator'), logo, is_active=False)
    assert row['is_active'] is False
    with pytest.raises(ValidationError):
        world.new_order(services={'logo': 1})
    assert world.engine.set_service_active(world.actor('admin'), logo, is_active=True)['is_active'] is True
    assert world.new_order(services={'logo': 1}).order_id

    entries = world.repo.list_audit(entity_id=logo)
    assert [e['action'] for e in entries] == ['service_status_changed', 'service_status_changed']
    assert entries[0]['new_value'] == {'is_active': False}


def test_deactivated_user_no_longer_resolves(world):
    admin = world.actor('admin')
    with pytest.raises(AuthorizationError):
        world.engine.set_user_active(world.actor('creator'), 'bob', is_active=False)
    with pytest.raises(ValidationError):
        world.engine.set_user_active(admin, 'admin', is_active=False)
    with pytest.raises(NotFoundError):
        world.engine.set_user_active(admin, 'ghost', is_active=False)

    world.engine.set_user_active(admin, 'bob', is_active=False)
    assert world.actor('bob') is None
    world.engine.set_user_active(admin, 'bob', is_active=True)
    assert world.actor('bob') is not None


def test_deactivated_team_loses_its_leader(world):
    design = world.teams['design']['team_id']
    with pytest.raises(AuthorizationError):
        world.engine.set_team_active(world.actor('lead'), design, is_active=False)
    world.engine.set_team_active(world.actor('admin'), design, is_active=False)
    assert not world.actor('lead').leads(design)
    world.engine.set_team_active(world.actor('admin'), design, is_active=True)
    assert world.actor('lead').leads(design)


def test_removed_member_cannot_take_team_work(world):
    design = world.teams['design']['team_id']
    membership = next(m for m in world.repo.list_team_memberships(team_id=design) if m['user_id'] == 'bob')
    with pytest.raises(AuthorizationError):
        world.engine.remove_team_member(world.actor('rlead'), design, membership['membership_id'])
    with pytest.raises(NotFoundError):
        world.engine.remove_team_member(world.actor('lead'), design, 'mbr-missing')

    removed = world.engine.remove_team_member(world.actor('lead'), design, membership['membership_id'])
    assert removed['is_active'] is False
    assert not world.actor('bob').belongs_to(design)

    order = world.new_order(services={'logo': 1})
    task = world.repo.list_tasks(order_id=order.order_id)[0]
    with pytest.raises(ValidationError):
        world.engine.assign_task(
            world.actor('lead'), task['task_id'], AssignTaskInput(user_id='bob', deadline=world.deadline()),
        )

    again = world.engine.add_team_member(world.actor('lead'), design, user_id='bob')
    assert again['membership_id'] == membership['membership_id']
    assert again['is_active'] is True
