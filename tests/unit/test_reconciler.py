from __future__ import annotations

import pytest

from orderflow.db import Database, SqlOrderRepository
from orderflow.domain.errors import AuthorizationError, ConflictError, PreconditionError, ValidationError
from orderflow.domain.models import AskingStage
from orderflow.service import AssignTaskInput
from orderflow.service_layers import ServiceQuantity
from orderflow.repository import InMemoryOrderRepository
from orderflow.service_layers.reconciler import is_removable, normalize_quantities


def _qty(world, **quantities):
    return [ServiceQuantity(service_id=world.services[k]['service_id'], quantity=v) for k, v in quantities.items()]


def _counts(world, order_id):
    return {row['service_name']: row['quantity'] for row in world.engine.reconciler.current_services(order_id)}


def test_normalize_quantities_rejects_bad_input():
    assert normalize_quantities([{'service_id': ' svc-1 ', 'quantity': '2'}]) == [ServiceQuantity('svc-1', 2)]
    with pytest.raises(ValidationError):
        normalize_quantities([ServiceQuantity('svc-1', 1), ServiceQuantity('svc-1', 2)])
    with pytest.raises(ValidationError):
        normalize_quantities([ServiceQuantity('svc-1', -1)])
    with pytest.raises(ValidationError):
        normalize_quantities([{'service_id': 'svc-1', 'quantity': True}])
    with pytest.raises(ValidationError):
        normalize_quantities([{'service_id': 'svc-1', 'quantity': 'two'}])
    with pytest.raises(ValidationError):
        normalize_quantities([{'service_id': '', 'quantity': 1}])


def test_is_removable():
    assert is_removable(None)
    assert is_removable({'status': 'NOT_ASSIGNED', 'completed_at': None})
    assert not is_removable({'status': 'ASSIGNED', 'completed_at': None})
    assert is_removable({'current_stage': 'ASKED', 'stage_count': 0, 'completed_at': None})
    assert not is_removable({'current_stage': 'ASKED', 'stage_count': 1, 'completed_at': None})
    assert not is_removable({'current_stage': 'SHARED', 'stage_count': 0, 'completed_at': None})


def test_apply_adds_and_removes_instances(world):
    order = world.new_order(services={'logo': 1, 'check': 1})
    result = world.engine.update_services(world.actor('creator'), order.order_id, _qty(world, logo=3, copy=1))

    changes = {c['service_name']: c['change'] for c in result.extra['changes']}
    assert changes == {'Logo design': 2, 'Copywriting': 1, 'Customer check': -1}
    assert result.entity.is_customized is True
    assert _counts(world, order.order_id) == {'Logo design': 3, 'Copywriting': 1}
    assert world.repo.list_asking_tasks(order_id=order.order_id) == []
    assert result.statistics.total_tasks == 4

    audit = [e for e in world.repo.list_audit(order_id=order.order_id) if e['action'] == 'order_services_updated']
    assert len(audit) == 1
    assert 'Logo design +2' in audit[0]['description']


def test_unchanged_quantities_are_a_noop(world):
    order = world.new_order(services={'logo': 1})
    result = world.engine.update_services(world.actor('creator'), order.order_id, _qty(world, logo=1))
    assert result.extra['changes'] == []
    assert result.entity.is_customized is False


def test_reduction_below_assigned_count_conflicts(world):
    order = world.new_order(services={'logo': 2})
    task = world.repo.list_tasks(order_id=order.order_id)[0]
    world.engine.assign_task(
        world.actor('lead'), task['task_id'], AssignTaskInput(user_id='alice', deadline=world.deadline()),
    )
    current = world.engine.list_order_services(world.actor('creator'), order.order_id)
    assert current[0]['assigned_count'] == 1
    assert current[0]['removable_count'] == 1

    with pytest.raises(ConflictError) as exc:
        world.engine.update_services(world.actor('creator'), order.order_id, _qty(world, logo=0))
    assert 'cannot remove instances with assigned tasks' in exc.value.message
    assert _counts(world, order.order_id) == {'Logo design': 2}

    world.engine.update_services(world.actor('creator'), order.order_id, _qty(world, logo=1))
    remaining = world.repo.list_tasks(order_id=order.order_id)
    assert [t['task_id'] for t in remaining] == [task['task_id']]


def test_started_asking_work_is_not_removable(world):
    order = world.new_order(services={'check': 1})
    asking = world.repo.list_asking_tasks(order_id=order.order_id)[0]
    world.engine.advance_asking_stage(world.actor('carol'), asking['asking_task_id'], stage=AskingStage.ASKED)
    with pytest.raises(ConflictError):
        world.engine.update_services(world.actor('creator'), order.order_id, [])


def test_preview_does_not_mutate(world):
    order = world.new_order(services={'logo': 1})
    changes = world.engine.preview_services(world.actor('creator'), order.order_id, _qty(world, logo=2, copy=1))
    assert {(c.service_name, c.change) for c in changes} == {('Logo design', 1), ('Copywriting', 1)}
    assert _counts(world, order.order_id) == {'Logo design': 1}


def test_services_of_completed_order_are_frozen(world):
    order = world.new_order(services={'logo': 1})
    world.engine.deliver_order(world.actor('creator'), order.order_id, acknowledged=True)
    with pytest.raises(PreconditionError):
        world.engine.update_services(world.actor('creator'), order.order_id, _qty(world, logo=2))


def test_reconcile_requires_editor_and_active_services(world):
    order = world.new_order(services={'logo': 1})
    with pytest.raises(AuthorizationError):
        world.engine.update_services(world.actor('lead'), order.order_id, _qty(world, logo=2))
    with pytest.raises(ValidationError):
        world.engine.update_services(world.actor('creator'), order.order_id, _qty(world, logo=1, retired=1))
    with pytest.raises(ValidationError):
        world.engine.update_services(
            world.actor('creator'), order.order_id, [ServiceQuantity(service_id='svc-missing', quantity=1)],
        )


def _repository(kind, tmp_path):
    if kind == 'memory':
        return InMemoryOrderRepository()
    db = Database(f"sqlite+pysqlite:///{(tmp_path / 'reconcile.db').as_posix()}")
    db.create_schema()
    return SqlOrderRepository(db)


def _interleave_after_plan(world, monkeypatch, action):
    reconciler = world.engine.reconciler
    planned = reconciler.plan

    def plan_then_act(order, desired):
        result = planned(order, desired)
        action()
        return result

    monkeypatch.setattr(reconciler, 'plan', plan_then_act)


@pytest.mark.parametrize('kind', ['memory', 'sqlite'])
def test_assignment_after_planning_blocks_removal(kind, tmp_path, monkeypatch, world_factory):
    world = world_factory(_repository(kind, tmp_path))
    order = world.new_order(services={'logo': 1, 'copy': 1})
    logo = next(
        t for t in world.repo.list_tasks(order_id=order.order_id)
        if t['service_id'] == world.services['logo']['service_id']
    )
    _interleave_after_plan(
        world,
        monkeypatch,
        lambda: world.engine.assign_task(
            world.actor('lead'), logo['task_id'], AssignTaskInput(user_id='alice', deadline=world.deadline()),
        ),
    )

    with pytest.raises(ConflictError):
        world.engine.update_services(world.actor('creator'), order.order_id, _qty(world, logo=0, copy=1))

    kept = world.repo.get_task(logo['task_id'])
    assert kept is not None
    assert kept['status'] == 'ASSIGNED'
    assert _counts(world, order.order_id) == {'Logo design': 1, 'Copywriting': 1}


@pytest.mark.parametrize('kind', ['memory', 'sqlite'])
def test_started_asking_work_after_planning_blocks_removal(kind, tmp_path, monkeypatch, world_factory):
    world = world_factory(_repository(kind, tmp_path))
    order = world.new_order(services={'logo': 1, 'check': 1})
    asking = world.repo.list_asking_tasks(order_id=order.order_id)[0]
    _interleave_after_plan(
        world,
        monkeypatch,
        lambda: world.engine.advance_asking_stage(
            world.actor('carol'), asking['asking_task_id'], stage=AskingStage.ASKED, details={'initial_staff': 'Dana'},
        ),
    )

    with pytest.raises(ConflictError):
        world.engine.update_services(world.actor('creator'), order.order_id, _qty(world, logo=2, check=0))

    assert world.repo.get_asking_task(asking['asking_task_id']) is not None
    # nothing from the rejected plan is written, additions included
    assert _counts(world, order.order_id) == {'Logo design': 1, 'Customer check': 1}
