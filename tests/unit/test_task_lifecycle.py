from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from orderflow.domain.errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    PreconditionError,
    ValidationError,
)
from orderflow.domain.models import TaskPriority, TaskStatus
from orderflow.service import AssignTaskInput
from orderflow.service_layers import time_spent


def _task_for(world, order, service_key):
    service_id = world.services[service_key]['service_id']
    return next(t for t in world.repo.list_tasks(order_id=order.order_id) if t['service_id'] == service_id)


def _assign(world, task_id, user_id='alice', *, actor='lead', days=2):
    return world.engine.assign_task(
        world.actor(actor),
        task_id,
        AssignTaskInput(user_id=user_id, deadline=world.deadline(days), priority=TaskPriority.HIGH),
    )


def test_time_spent_breaks_down_seconds():
    start = datetime(2026, 3, 1, 9, tzinfo=timezone.utc)
    assert time_spent(start, start + timedelta(hours=2, minutes=5, seconds=9)) == {
        'hours': 2,
        'minutes': 5,
        'total_seconds': 7509,
    }
    assert time_spent(None, start)['total_seconds'] == 0


def test_assign_start_pause_resume_complete_roundtrip(world):
    order = world.new_order()
    task = _task_for(world, order, 'logo')

    assigned = _assign(world, task['task_id']).entity
    assert assigned.status == TaskStatus.ASSIGNED
    assert assigned.assigned_to == 'alice'
    assert assigned.priority == TaskPriority.HIGH

    alice = world.actor('alice')
    started = world.engine.start_task(alice, task['task_id']).entity
    assert started.status == TaskStatus.IN_PROGRESS
    assert started.started_at is not None

    assert world.engine.toggle_pause(alice, task['task_id']).entity.status == TaskStatus.PAUSED
    assert world.engine.toggle_pause(alice, task['task_id']).entity.status == TaskStatus.IN_PROGRESS

    result = world.engine.complete_task(alice, task['task_id'])
    assert result.entity.status == TaskStatus.COMPLETED
    assert result.entity.completed_at is not None
    assert set(result.extra['time_spent']) == {'hours', 'minutes', 'total_seconds'}
    assert result.statistics.completed_tasks == 1

    actions = [e['action'] for e in world.repo.list_audit(entity_id=task['task_id'])]
    assert actions == [
        'task_assigned',
        'task_started',
        'task_paused',
        'task_resumed',
        'task_completed',
    ]


def test_assign_requires_team_lead(world):
    order = world.new_order()
    task = _task_for(world, order, 'logo')
    with pytest.raises(AuthorizationError):
        _assign(world, task['task_id'], actor='rlead')
    with pytest.raises(AuthorizationError):
        _assign(world, task['task_id'], actor='alice')
    assert _assign(world, task['task_id'], actor='admin').entity.status == TaskStatus.ASSIGNED


def test_assign_rejects_non_members(world):
    order = world.new_order()
    task = _task_for(world, order, 'logo')
    with pytest.raises(ValidationError) as exc:
        _assign(world, task['task_id'], user_id='carol')
    assert exc.value.field == 'user_id'
    with pytest.raises(ValidationError):
        _assign(world, task['task_id'], user_id='ghost')


def test_assign_requires_folder_link(world):
    order = world.new_order(folder_link=None)
    task = _task_for(world, order, 'logo')
    with pytest.raises(PreconditionError) as exc:
        _assign(world, task['task_id'])
    assert exc.value.field == 'folder_link'


def test_assign_deadline_window_is_order_date_to_delivery_time(world):
    order = world.new_order()
    task = _task_for(world, order, 'logo')
    lead = world.actor('lead')
    delivery = world.delivery_date.replace(hour=17, minute=0)

    for bad in (world.order_date - timedelta(minutes=1), delivery, delivery + timedelta(hours=1)):
        with pytest.raises(ValidationError) as exc:
            world.engine.assign_task(lead, task['task_id'], AssignTaskInput(user_id='alice', deadline=bad))
        assert exc.value.field == 'deadline'

    ok = world.engine.assign_task(
        lead, task['task_id'], AssignTaskInput(user_id='alice', deadline=delivery - timedelta(minutes=1)),
    )
    assert ok.entity.status == TaskStatus.ASSIGNED


def test_assign_twice_is_an_invalid_transition(world):
    order = world.new_order()
    task = _task_for(world, order, 'logo')
    _assign(world, task['task_id'])
    with pytest.raises(InvalidTransitionError):
        _assign(world, task['task_id'], user_id='bob')


def test_only_assignee_may_work_the_task(world):
    order = world.new_order()
    task = _task_for(world, order, 'logo')
    _assign(world, task['task_id'])
    with pytest.raises(AuthorizationError):
        world.engine.start_task(world.actor('bob'), task['task_id'])
    with pytest.raises(AuthorizationError):
        world.engine.start_task(world.actor('lead'), task['task_id'])


def test_complete_requires_in_progress(world):
    order = world.new_order()
    task = _task_for(world, order, 'logo')
    _assign(world, task['task_id'])
    with pytest.raises(InvalidTransitionError):
        world.engine.complete_task(world.actor('alice'), task['task_id'])
    world.engine.start_task(world.actor('alice'), task['task_id'])
    world.engine.pause_task(world.actor('alice'), task['task_id'])
    with pytest.raises(InvalidTransitionError):
        world.engine.complete_task(world.actor('alice'), task['task_id'])


def test_complete_requires_note_when_service_demands_it(world):
    order = world.new_order()
    task = _task_for(world, order, 'copy')
    _assign(world, task['task_id'])
    alice = world.actor('alice')
    world.engine.start_task(alice, task['task_id'])
    with pytest.raises(ValidationError) as exc:
        world.engine.complete_task(alice, task['task_id'], notes='   ')
    assert exc.value.field == 'notes'
    done = world.engine.complete_task(alice, task['task_id'], notes='final copy uploaded').entity
    assert done.completion_notes == 'final copy uploaded'


def test_reassign_resets_progress(world):
    order = world.new_order()
    task = _task_for(world, order, 'logo')
    _assign(world, task['task_id'])
    world.engine.start_task(world.actor('alice'), task['task_id'])

    moved = world.engine.reassign_task(
        world.actor('lead'),
        task['task_id'],
        AssignTaskInput(user_id='bob', deadline=world.deadline(3)),
    ).entity
    assert moved.status == TaskStatus.ASSIGNED
    assert moved.assigned_to == 'bob'
    assert moved.started_at is None
    assert moved.priority == TaskPriority.MEDIUM


def test_reassign_unassigned_task_is_rejected(world):
    order = world.new_order()
    task = _task_for(world, order, 'logo')
    with pytest.raises(InvalidTransitionError):
        world.engine.reassign_task(
            world.actor('lead'), task['task_id'], AssignTaskInput(user_id='bob', deadline=world.deadline()),
        )


def test_discard_clears_assignment(world):
    order = world.new_order()
    task = _task_for(world, order, 'logo')
    _assign(world, task['task_id'])
    with pytest.raises(AuthorizationError):
        world.engine.discard_task(world.actor('alice'), task['task_id'])

    cleared = world.engine.discard_task(world.actor('lead'), task['task_id']).entity
    assert cleared.status == TaskStatus.NOT_ASSIGNED
    assert cleared.assigned_to is None
    assert cleared.deadline is None
    assert cleared.priority is None
    assert cleared.notes is None


def test_discard_accepts_an_unassigned_task(world):
    order = world.new_order()
    task = _task_for(world, order, 'logo')
    assert task['status'] == TaskStatus.NOT_ASSIGNED.value
    with pytest.raises(AuthorizationError):
        world.engine.discard_task(world.actor('rlead'), task['task_id'])

    cleared = world.engine.discard_task(world.actor('lead'), task['task_id']).entity
    assert cleared.status == TaskStatus.NOT_ASSIGNED
    assert cleared.assigned_to is None
    actions = [e['action'] for e in world.repo.list_audit(order_id=order.order_id)]
    assert 'task_discarded' in actions


def test_discard_completed_task_is_rejected(world):
    order = world.new_order()
    task = _task_for(world, order, 'logo')
    _assign(world, task['task_id'])
    alice = world.actor('alice')
    world.engine.start_task(alice, task['task_id'])
    world.engine.complete_task(alice, task['task_id'])
    with pytest.raises(InvalidTransitionError):
        world.engine.discard_task(world.actor('lead'), task['task_id'])


def test_stale_version_raises_conflict(world):
    order = world.new_order()
    task = _task_for(world, order, 'logo')
    stale = dict(task)
    world.repo.update_task_if(task['task_id'], expected_version=task['version'], values={'notes': 'touched'})
    with pytest.raises(ConflictError):
        world.engine.tasks._save(stale, {'notes': 'late write'})


def test_mark_for_revision_requires_delivered_order(world):
    order = world.new_order()
    task = _task_for(world, order, 'logo')
    with pytest.raises(PreconditionError):
        world.engine.mark_task_for_revision(world.actor('revman'), task['task_id'])

    world.engine.deliver_order(world.actor('creator'), order.order_id, acknowledged=True)
    with pytest.raises(AuthorizationError):
        world.engine.mark_task_for_revision(world.actor('alice'), task['task_id'])
    marked = world.engine.mark_task_for_revision(world.actor('lead'), task['task_id']).entity
    assert marked.marked_for_revision is True
    cleared = world.engine.mark_task_for_revision(world.actor('revman'), task['task_id'], marked=False).entity
    assert cleared.marked_for_revision is False


def test_work_changes_refresh_suggested_status(world):
    order = world.new_order()
    assert world.repo.get_order(order.order_id)['suggested_status'] == 'PENDING'
    task = _task_for(world, order, 'logo')
    _assign(world, task['task_id'])
    row = world.repo.get_order(order.order_id)
    assert row['suggested_status'] == 'IN_PROGRESS'
    assert row['status'] == 'PENDING'


def test_my_tasks_lists_open_work_sorted_by_deadline(world):
    order = world.new_order()
    logo = _task_for(world, order, 'logo')
    copy = _task_for(world, order, 'copy')
    _assign(world, logo['task_id'], days=5)
    _assign(world, copy['task_id'], days=3)

    alice = world.actor('alice')
    assert [t.task_id for t in world.engine.my_tasks(alice)] == [copy['task_id'], logo['task_id']]

    world.engine.start_task(alice, logo['task_id'])
    world.engine.complete_task(alice, logo['task_id'])
    assert [t.task_id for t in world.engine.my_tasks(alice)] == [copy['task_id']]
    assert len(world.engine.my_tasks(alice, include_completed=True)) == 2
