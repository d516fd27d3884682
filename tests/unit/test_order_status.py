from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from orderflow.domain.errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from orderflow.domain.models import OrderStatus, TaskPriority, TaskStatus
from orderflow.service import AssignTaskInput, CustomTaskInput, RevisionTaskInput, UpdateOrderInput
from orderflow.service_layers import revision_order_number


def _finish_task(world, task_id, user_id='alice'):
    world.engine.assign_task(
        world.actor('lead'), task_id, AssignTaskInput(user_id=user_id, deadline=world.deadline()),
    )
    who = world.actor(user_id)
    world.engine.start_task(who, task_id)
    world.engine.complete_task(who, task_id, notes='done')


def test_revision_order_number_uses_last_six_millisecond_digits():
    moment = datetime(2026, 3, 1, 9, 0, 0, 123000, tzinfo=timezone.utc)
    stamp = str(int(moment.timestamp() * 1000))
    assert revision_order_number('ORD-1', moment) == f'ORD-1-REV-{stamp[-6:]}'


def test_create_order_builds_work_and_audit(world):
    order = world.new_order(services={'logo': 2, 'check': 1})
    assert order.status == OrderStatus.PENDING
    assert order.suggested_status == OrderStatus.PENDING
    assert order.delivery_time == '17:00'
    assert order.created_by == 'creator'
    assert order.is_customized is False

    tasks = world.repo.list_tasks(order_id=order.order_id)
    asking = world.repo.list_asking_tasks(order_id=order.order_id)
    assert len(tasks) == 2
    assert len(asking) == 1
    assert all(t['status'] == TaskStatus.NOT_ASSIGNED.value and t['is_mandatory'] for t in tasks)
    assert len(world.repo.list_service_instances(order.order_id)) == 3

    audit = world.repo.list_audit(order_id=order.order_id)
    assert audit[0]['action'] == 'order_created'
    assert audit[0]['performed_by'] == 'creator'


def test_create_order_validation(world):
    with pytest.raises(ValidationError) as exc:
        world.new_order(amount=0)
    assert exc.value.field == 'amount'
    with pytest.raises(ValidationError):
        world.new_order(customer_name='  ')
    with pytest.raises(ValidationError) as exc:
        world.new_order(delivery_date=world.order_date - timedelta(days=1))
    assert exc.value.field == 'delivery_date'
    with pytest.raises(ValidationError) as exc:
        world.new_order(delivery_time='25:00')
    assert exc.value.field == 'delivery_time'
    with pytest.raises(ValidationError):
        world.new_order(services={'retired': 1})
    assert world.repo.list_orders() == []


def test_create_order_requires_editor_role(world):
    with pytest.raises(AuthorizationError):
        world.new_order(actor='lead')
    assert world.new_order(actor='admin').order_number.startswith('ORD-')


def test_duplicate_order_number_conflicts(world):
    world.new_order(order_number='ORD-X')
    with pytest.raises(ConflictError):
        world.new_order(order_number='ORD-X')


def test_verify_moves_pending_to_in_progress_once(world):
    order = world.new_order()
    with pytest.raises(AuthorizationError):
        world.engine.verify_order(world.actor('alice'), order.order_id)
    verified = world.engine.verify_order(world.actor('lead'), order.order_id).entity
    assert verified.status == OrderStatus.IN_PROGRESS
    with pytest.raises(InvalidTransitionError):
        world.engine.verify_order(world.actor('creator'), order.order_id)


def test_verify_requires_work(world):
    order = world.new_order(services={})
    with pytest.raises(PreconditionError):
        world.engine.verify_order(world.actor('creator'), order.order_id)


def test_deliver_with_outstanding_work_reports_counts(world):
    order = world.new_order()
    result = world.engine.deliver_order(world.actor('creator'), order.order_id, notes='sent by courier')
    assert result.entity.status == OrderStatus.COMPLETED
    assert result.entity.completed_at is not None
    assert result.entity.notes.endswith('[delivery] sent by courier')
    assert result.extra['mandatory_remaining'] == 2
    assert result.extra['incomplete_total'] == 3
    assert result.extra['readiness'] == 'incomplete'

    with pytest.raises(InvalidTransitionError):
        world.engine.deliver_order(world.actor('creator'), order.order_id)


def test_deliver_enforces_acknowledgement_when_configured(world_factory):
    world = world_factory(enforce_delivery_ack=True)
    order = world.new_order()
    with pytest.raises(PreconditionError) as exc:
        world.engine.deliver_order(world.actor('creator'), order.order_id)
    assert exc.value.field == 'acknowledged'
    done = world.engine.deliver_order(world.actor('creator'), order.order_id, acknowledged=True)
    assert done.entity.status == OrderStatus.COMPLETED


def test_deliver_complete_order_needs_no_acknowledgement(world_factory):
    world = world_factory(enforce_delivery_ack=True)
    order = world.new_order(services={'logo': 1})
    task = world.repo.list_tasks(order_id=order.order_id)[0]
    _finish_task(world, task['task_id'])
    assert world.repo.get_order(order.order_id)['suggested_status'] == 'COMPLETED'
    result = world.engine.deliver_order(world.actor('creator'), order.order_id)
    assert result.extra['readiness'] == 'complete'


def test_deliver_requires_editor(world):
    order = world.new_order()
    with pytest.raises(AuthorizationError):
        world.engine.deliver_order(world.actor('lead'), order.order_id)


def test_convert_to_revision_clones_selected_and_marked_work(world):
    order = world.new_order()
    tasks = {t['service_id']: t for t in world.repo.list_tasks(order_id=order.order_id)}
    logo = tasks[world.services['logo']['service_id']]
    copy = tasks[world.services['copy']['service_id']]
    asking = world.repo.list_asking_tasks(order_id=order.order_id)[0]
    world.engine.deliver_order(world.actor('creator'), order.order_id, acknowledged=True)
    world.engine.mark_task_for_revision(world.actor('revman'), copy['task_id'])

    result = world.engine.convert_to_revision(
        world.actor('revman'),
        order.order_id,
        task_ids=[logo['task_id']],
        asking_task_ids=[asking['asking_task_id']],
    )
    revision = result.entity
    assert revision.is_revision is True
    assert revision.original_order_id == order.order_id
    assert revision.status == OrderStatus.IN_PROGRESS
    assert revision.order_number.startswith(f'{order.order_number}-REV-')
    assert len(result.extra['task_ids']) == 2
    assert len(result.extra['asking_task_ids']) == 1

    cloned = world.repo.list_tasks(order_id=revision.order_id)
    assert {t['title'] for t in cloned} == {logo['title'], copy['title']}
    assert all(t['status'] == TaskStatus.NOT_ASSIGNED.value for t in cloned)
    assert world.repo.get_order(order.order_id)['status'] == OrderStatus.COMPLETED.value


def test_convert_to_revision_rules(world):
    order = world.new_order()
    with pytest.raises(PreconditionError):
        world.engine.convert_to_revision(world.actor('revman'), order.order_id)
    world.engine.deliver_order(world.actor('creator'), order.order_id, acknowledged=True)
    with pytest.raises(AuthorizationError):
        world.engine.convert_to_revision(world.actor('creator'), order.order_id)
    with pytest.raises(ValidationError):
        world.engine.convert_to_revision(world.actor('revman'), order.order_id, task_ids=['tsk-foreign'])

    first = world.engine.convert_to_revision(world.actor('revman'), order.order_id).entity
    with pytest.raises(ConflictError):
        world.engine.convert_to_revision(world.actor('revman'), order.order_id)

    world.engine.complete_revision(world.actor('revman'), first.order_id)
    second = world.engine.convert_to_revision(world.actor('admin'), order.order_id).entity
    assert second.order_number != first.order_number


def test_revision_numbers_stay_unique_with_a_frozen_clock(world_factory):
    frozen = datetime(2026, 3, 1, 12, tzinfo=timezone.utc)
    world = world_factory(clock=lambda: frozen)
    order = world.new_order(services={'logo': 1})
    revman = world.actor('revman')
    world.engine.deliver_order(world.actor('creator'), order.order_id, acknowledged=True)
    first = world.engine.convert_to_revision(revman, order.order_id).entity
    world.engine.complete_revision(revman, first.order_id)
    second = world.engine.convert_to_revision(revman, order.order_id).entity
    assert first.order_number != second.order_number


def test_complete_revision(world):
    order = world.new_order()
    revman = world.actor('revman')
    with pytest.raises(PreconditionError):
        world.engine.complete_revision(revman, order.order_id)
    world.engine.deliver_order(world.actor('creator'), order.order_id, acknowledged=True)
    revision = world.engine.convert_to_revision(revman, order.order_id).entity

    done = world.engine.complete_revision(revman, revision.order_id).entity
    assert done.status == OrderStatus.COMPLETED
    assert done.revision_completed_at is not None
    assert done.completed_at is not None
    with pytest.raises(InvalidTransitionError):
        world.engine.complete_revision(revman, revision.order_id)


def test_delivering_a_revision_closes_it(world):
    order = world.new_order()
    world.engine.deliver_order(world.actor('creator'), order.order_id, acknowledged=True)
    revision = world.engine.convert_to_revision(world.actor('revman'), order.order_id).entity
    delivered = world.engine.deliver_order(world.actor('creator'), revision.order_id, acknowledged=True).entity
    assert delivered.revision_completed_at is not None


def test_add_revision_task_assigns_member_directly(world):
    order = world.new_order()
    world.engine.deliver_order(world.actor('creator'), order.order_id, acknowledged=True)
    revision = world.engine.convert_to_revision(world.actor('revman'), order.order_id).entity

    with pytest.raises(PreconditionError):
        world.engine.add_revision_task(
            world.actor('revman'), order.order_id, RevisionTaskInput(title='Fix', member_id='alice'),
        )
    with pytest.raises(ValidationError):
        world.engine.add_revision_task(
            world.actor('revman'), revision.order_id, RevisionTaskInput(title='Fix', member_id='outsider'),
        )

    task = world.engine.add_revision_task(
        world.actor('revman'),
        revision.order_id,
        RevisionTaskInput(title='Fix logo colours', member_id='alice', deadline=world.deadline()),
    ).entity
    assert task.status == TaskStatus.ASSIGNED
    assert task.assigned_to == 'alice'
    assert task.priority == TaskPriority.HIGH
    assert task.is_mandatory is True
    assert task.is_revision_task is True
    assert task.team_id == world.teams['design']['team_id']


def test_add_custom_task(world):
    order = world.new_order()
    design = world.teams['design']['team_id']
    with pytest.raises(AuthorizationError):
        world.engine.add_custom_task(world.actor('alice'), order.order_id, CustomTaskInput(title='Extra', team_id=design))
    with pytest.raises(AuthorizationError):
        world.engine.add_custom_task(world.actor('rlead'), order.order_id, CustomTaskInput(title='Extra', team_id=design))

    free = world.engine.add_custom_task(
        world.actor('lead'), order.order_id, CustomTaskInput(title='Extra mockup', team_id=design, is_mandatory=True),
    )
    assert free.entity.status == TaskStatus.NOT_ASSIGNED
    assert free.entity.instance_id is None
    assert free.statistics.total_tasks == 4

    assigned = world.engine.add_custom_task(
        world.actor('creator'),
        order.order_id,
        CustomTaskInput(title='Print proof', team_id=design, assigned_to='bob', deadline=world.deadline()),
    ).entity
    assert assigned.status == TaskStatus.ASSIGNED
    assert assigned.assigned_to == 'bob'

    with pytest.raises(ValidationError):
        world.engine.add_custom_task(
            world.actor('creator'), order.order_id,
            CustomTaskInput(title='No deadline', team_id=design, assigned_to='bob'),
        )


def test_update_order_fields(world):
    order = world.new_order()
    lead = world.actor('lead')
    new_date = world.delivery_date + timedelta(days=3)

    updated = world.engine.update_order(lead, order.order_id, UpdateOrderInput(delivery_date=new_date)).entity
    assert updated.delivery_date == new_date
    assert updated.delivery_time == '17:00'

    cleared = world.engine.update_order(lead, order.order_id, UpdateOrderInput(delivery_time='')).entity
    assert cleared.delivery_time is None

    patched = world.engine.update_order(
        lead, order.order_id, UpdateOrderInput(amount=99.999, notes='rush', folder_link='https://f/x'),
    ).entity
    assert patched.amount == 100.0
    assert patched.notes == 'rush'
    assert patched.folder_link == 'https://f/x'

    actions = [e['action'] for e in world.repo.list_audit(order_id=order.order_id)]
    assert 'order_delivery_extended' in actions
    assert 'order_amount_updated' in actions


def test_status_override_is_admin_only(world):
    order = world.new_order()
    with pytest.raises(AuthorizationError):
        world.engine.update_order(world.actor('creator'), order.order_id, UpdateOrderInput(status=OrderStatus.COMPLETED))
    done = world.engine.update_order(
        world.actor('admin'), order.order_id, UpdateOrderInput(status=OrderStatus.COMPLETED),
    ).entity
    assert done.status == OrderStatus.COMPLETED
    assert done.completed_at is not None
    reopened = world.engine.update_order(
        world.actor('admin'), order.order_id, UpdateOrderInput(status=OrderStatus.PENDING),
    ).entity
    assert reopened.status == OrderStatus.PENDING
    assert reopened.completed_at is None


def test_unknown_order_is_not_found(world):
    with pytest.raises(NotFoundError):
        world.engine.verify_order(world.actor('creator'), 'ord-missing')
    with pytest.raises(NotFoundError):
        world.engine.get_order(world.actor('admin'), 'ord-missing')


def test_order_creator_may_only_edit_the_folder_link(world):
    order = world.new_order(folder_link=None)
    creator = world.actor('creator')
    with pytest.raises(AuthorizationError):
        world.engine.update_order(creator, order.order_id, UpdateOrderInput(amount=10))
    with pytest.raises(AuthorizationError):
        world.engine.update_order(creator, order.order_id, UpdateOrderInput(notes='x'))
    linked = world.engine.update_order(creator, order.order_id, UpdateOrderInput(folder_link='https://f/y')).entity
    assert linked.folder_link == 'https://f/y'


def test_delivery_can_be_extended_after_completion(world):
    order = world.new_order()
    world.engine.deliver_order(world.actor('creator'), order.order_id, acknowledged=True)
    later = world.delivery_date + timedelta(days=7)
    moved = world.engine.update_order(
        world.actor('admin'), order.order_id, UpdateOrderInput(delivery_date=later, delivery_time='09:30'),
    ).entity
    assert moved.delivery_date == later
    assert moved.delivery_time == '09:30'
    assert moved.status == OrderStatus.COMPLETED


def test_revision_of_a_lapsed_order_accepts_new_deadlines(world):
    now = datetime.now(timezone.utc).replace(microsecond=0)
    lapsed = (now - timedelta(days=5)).replace(hour=0, minute=0, second=0)
    order = world.new_order(order_date=lapsed - timedelta(days=5), delivery_date=lapsed)
    logo = next(
        t for t in world.repo.list_tasks(order_id=order.order_id)
        if t['service_id'] == world.services['logo']['service_id']
    )
    world.engine.deliver_order(world.actor('creator'), order.order_id, acknowledged=True)
    revision = world.engine.convert_to_revision(
        world.actor('revman'), order.order_id, task_ids=[logo['task_id']],
    ).entity
    assert revision.delivery_date > now
    assert revision.delivery_date == (now + timedelta(days=5)).replace(hour=0, minute=0, second=0)

    added = world.engine.add_revision_task(
        world.actor('revman'),
        revision.order_id,
        RevisionTaskInput(title='Fix kerning', member_id='alice', deadline=now + timedelta(days=1)),
    ).entity
    assert added.deadline == now + timedelta(days=1)

    cloned = next(t for t in world.repo.list_tasks(order_id=revision.order_id) if not t['is_revision_task'])
    assigned = world.engine.assign_task(
        world.actor('lead'), cloned['task_id'], AssignTaskInput(user_id='bob', deadline=now + timedelta(hours=1)),
    ).entity
    assert assigned.status == TaskStatus.ASSIGNED


def test_revision_keeps_a_delivery_date_that_has_not_passed(world):
    order = world.new_order(services={'logo': 1})
    world.engine.deliver_order(world.actor('creator'), order.order_id, acknowledged=True)
    revision = world.engine.convert_to_revision(world.actor('revman'), order.order_id).entity
    assert revision.delivery_date == world.delivery_date


def test_revision_task_requires_a_deadline(world):
    order = world.new_order(services={'logo': 1})
    world.engine.deliver_order(world.actor('creator'), order.order_id, acknowledged=True)
    revision = world.engine.convert_to_revision(world.actor('revman'), order.order_id).entity
    with pytest.raises(ValidationError) as info:
        world.engine.add_revision_task(
            world.actor('revman'), revision.order_id, RevisionTaskInput(title='Fix', member_id='alice'),
        )
    assert info.value.field == 'deadline'
    assert world.repo.list_tasks(order_id=revision.order_id) == []


def test_rejected_order_edit_changes_nothing(world):
    order = world.new_order()
    before = world.repo.get_order(order.order_id)
    audit_before = len(world.repo.list_audit(order_id=order.order_id))

    with pytest.raises(AuthorizationError):
        world.engine.update_order(
            world.actor('lead'),
            order.order_id,
            UpdateOrderInput(
                delivery_date=world.delivery_date + timedelta(days=3),
                amount=500,
                status=OrderStatus.COMPLETED,
            ),
        )
    after = world.repo.get_order(order.order_id)
    assert after['delivery_date'] == before['delivery_date']
    assert after['amount'] == before['amount']
    assert after['version'] == before['version']
    assert len(world.repo.list_audit(order_id=order.order_id)) == audit_before

    with pytest.raises(ValidationError):
        world.engine.update_order(
            world.actor('admin'), order.order_id, UpdateOrderInput(notes='rush', amount=-1),
        )
    assert world.repo.get_order(order.order_id)['notes'] == before['notes']


def test_order_edit_is_a_single_write(world):
    order = world.new_order()
    version = world.repo.get_order(order.order_id)['version']
    updated = world.engine.update_order(
        world.actor('admin'),
        order.order_id,
        UpdateOrderInput(amount=300, notes='rush', status=OrderStatus.IN_PROGRESS),
    ).entity
    assert updated.amount == 300.0
    assert updated.status == OrderStatus.IN_PROGRESS
    assert world.repo.get_order(order.order_id)['version'] == version + 1
    actions = [e['action'] for e in world.repo.list_audit(order_id=order.order_id)]
    assert {'order_amount_updated', 'order_notes_updated', 'order_status_overridden'} <= set(actions)


def test_revision_leaves_the_original_order_untouched(world):
    order = world.new_order()
    delivered = world.engine.deliver_order(world.actor('creator'), order.order_id, acknowledged=True).entity
    before = world.repo.get_order(order.order_id)

    revision = world.engine.convert_to_revision(world.actor('revman'), order.order_id).entity
    world.engine.complete_revision(world.actor('revman'), revision.order_id)

    after = world.repo.get_order(order.order_id)
    assert after['completed_at'] == before['completed_at'] == delivered.completed_at
    assert after['order_number'] == order.order_number
    assert after['status'] == OrderStatus.COMPLETED.value
    assert after['is_revision'] is False


def test_mandatory_remaining_only_counts_down(world):
    order = world.new_order(services={'logo': 2, 'copy': 1, 'check': 1})
    tasks = world.repo.list_tasks(order_id=order.order_id)
    logos = [t for t in tasks if t['service_id'] == world.services['logo']['service_id']]
    copy = next(t for t in tasks if t['service_id'] == world.services['copy']['service_id'])
    asking = world.repo.list_asking_tasks(order_id=order.order_id)[0]

    def remaining():
        return world.engine.order_status.delivery_gate(order.order_id).mandatory_remaining

    seen = [remaining()]
    _finish_task(world, logos[0]['task_id'], 'alice')
    seen.append(remaining())
    _finish_task(world, copy['task_id'], 'bob')
    seen.append(remaining())
    _finish_task(world, logos[1]['task_id'], 'bob')
    seen.append(remaining())
    carol = world.actor('carol')
    for stage in ('ASKED', 'SHARED', 'VERIFIED', 'INFORMED_TEAM'):
        world.engine.advance_asking_stage(carol, asking['asking_task_id'], stage=stage)
        seen.append(remaining())
    world.engine.complete_asking_task(carol, asking['asking_task_id'])
    seen.append(remaining())

    assert seen[0] == 3
    assert seen[-1] == 0
    assert all(later <= earlier for earlier, later in zip(seen, seen[1:]))
    assert min(seen) >= 0
    assert world.engine.order_status.delivery_gate(order.order_id).readiness == 'complete'
