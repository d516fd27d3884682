from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from orderflow.actors import ActorContext
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
    FINAL_ASKING_STAGE,
    STAGE_DETAIL_FIELDS,
    AskingStage,
    UserRole,
    can_advance_stage,
)
from orderflow.observability import get_logger

_log = get_logger('orderflow.service_layers.asking_tasks')

_MAX_DETAIL_LENGTH = 4000


def normalize_stage_details(stage: AskingStage, details: dict | None) -> dict:
    """Validate stage details against the keys that stage accepts.

    Blank values are dropped; everything kept is stored as a string.
    """
    allowed = STAGE_DETAIL_FIELDS[stage]
    out: dict[str, str] = {}
    for raw_key, raw_value in dict(details or {}).items():
        key = str(raw_key or '').strip()
        if key not in allowed:
            raise ValidationError(
                f'{key or "<blank>"} is not a valid detail for stage {stage.value}',
                field=f'details.{key}',
            )
        if raw_value is None:
            continue
        value = str(raw_value).strip()
        if not value:
            continue
        if len(value) > _MAX_DETAIL_LENGTH:
            raise ValidationError(f'{key} is too long', field=f'details.{key}')
        out[key] = value
    return out


class AskingTaskService:
    def __init__(
        self,
        *,
        repository,
        on_work_changed: Callable[[str], dict],
    ):
        self.repository = repository
        self._on_work_changed = on_work_changed

    def advance_stage(
        self,
        actor: ActorContext,
        asking_task_id: str,
        *,
        stage: AskingStage | str,
        details: dict | None = None,
    ) -> tuple[dict, dict]:
        task = self._load(asking_task_id)
        self._require_access(actor, task, action='record asking stages')
        try:
            target = AskingStage(str(getattr(stage, 'value', stage) or '').strip().upper())
        except ValueError as exc:
            raise ValidationError(f'invalid stage: {stage}', field='stage') from exc
        if task.get('completed_at') is not None:
            raise PreconditionError('asking task is already completed', field='stage')
        if not can_advance_stage(task['current_stage'], target):
            raise InvalidTransitionError(
                f'cannot move asking task from {task["current_stage"]} to {target.value}',
                field='stage',
            )
        clean = normalize_stage_details(target, details)
        result = self.repository.record_stage(
            asking_task_id,
            expected_version=int(task['version']),
            stage=target.value,
            details=clean,
            recorded_by=actor.user_id,
        )
        if result is None:
            raise ConflictError('asking task was modified concurrently; reload and retry', field='version')
        updated, entry = result
        self.repository.append_audit(
            entity_type=EntityType.ASKING_TASK,
            entity_id=asking_task_id,
            order_id=task['order_id'],
            action=AuditAction.ASKING_TASK_STAGE_RECORDED,
            performed_by=actor.user_id,
            old_value={'current_stage': task['current_stage']},
            new_value={'current_stage': target.value, 'seq': entry['seq'], 'details': clean},
            description=f'stage {target.value} recorded',
        )
        _log.info(
            'asking_stage_recorded asking_task_id=%s stage=%s seq=%s',
            asking_task_id,
            target.value,
            entry['seq'],
        )
        self._on_work_changed(task['order_id'])
        return updated, entry

    def list_stage_entries(
        self,
        actor: ActorContext,
        asking_task_id: str,
        *,
        after_seq: int = 0,
        limit: int | None = None,
    ) -> list[dict]:
        task = self._load(asking_task_id)
        self._require_access(actor, task, action='read asking stages')
        return self.repository.list_stage_entries(asking_task_id, after_seq=max(0, int(after_seq)), limit=limit)

    def complete(self, actor: ActorContext, asking_task_id: str, *, notes: str | None = None) -> dict:
        task = self._load(asking_task_id)
        self._require_access(actor, task, action='complete asking tasks')
        if task.get('completed_at') is not None:
            raise InvalidTransitionError('asking task is already completed', field='completed_at')
        if task['current_stage'] != FINAL_ASKING_STAGE.value:
            raise PreconditionError(
                f'asking task must reach {FINAL_ASKING_STAGE.value} before completion',
                field='current_stage',
            )
        values: dict = {
            'completed_at': datetime.now(timezone.utc),
            'completed_by': actor.user_id,
        }
        text = str(notes or '').strip()
        if text:
            values['notes'] = text
        updated = self._save(task, values)
        self._audit(
            actor, task, AuditAction.ASKING_TASK_COMPLETED, 'asking task completed',
            old={'completed_at': None}, new={'completed_at': updated['completed_at'], 'completed_by': actor.user_id},
        )
        _log.info('asking_task_completed asking_task_id=%s', asking_task_id)
        self._on_work_changed(task['order_id'])
        return updated

    def set_flag(
        self,
        actor: ActorContext,
        asking_task_id: str,
        *,
        flagged: bool,
        reason: str | None = None,
    ) -> dict:
        task = self._load(asking_task_id)
        self._require_access(actor, task, action='flag asking tasks')
        text = str(reason or '').strip() or None
        updated = self._save(task, {'is_flagged': bool(flagged), 'flag_reason': text if flagged else None})
        action = AuditAction.ASKING_TASK_FLAGGED if flagged else AuditAction.ASKING_TASK_UNFLAGGED
        self._audit(
            actor, task, action, text or action.value.replace('_', ' '),
            old={'is_flagged': task.get('is_flagged'), 'flag_reason': task.get('flag_reason')},
            new={'is_flagged': updated['is_flagged'], 'flag_reason': updated['flag_reason']},
        )
        _log.info('asking_task_flag asking_task_id=%s flagged=%s', asking_task_id, bool(flagged))
        return updated

    def update_notes(self, actor: ActorContext, asking_task_id: str, *, notes: str | None) -> dict:
        task = self._load(asking_task_id)
        self._require_access(actor, task, action='edit asking task notes')
        text = str(notes or '').strip() or None
        updated = self._save(task, {'notes': text})
        self._audit(
            actor, task, AuditAction.ASKING_TASK_NOTES_UPDATED, 'notes updated',
            old={'notes': task.get('notes')}, new={'notes': text},
        )
        return updated

    def _load(self, asking_task_id: str) -> dict:
        task = self.repository.get_asking_task(asking_task_id)
        if task is None:
            raise NotFoundError('asking task', asking_task_id)
        return task

    @staticmethod
    def _require_access(actor: ActorContext, task: dict, *, action: str) -> None:
        if actor.role in {UserRole.ADMIN, UserRole.ORDER_CREATOR}:
            return
        if actor.belongs_to(task.get('team_id')):
            return
        raise AuthorizationError(f'{actor.role.value} may not {action}', field='team_id')

    def _save(self, task: dict, values: dict) -> dict:
        updated = self.repository.update_asking_task_if(
            task['asking_task_id'], expected_version=int(task['version']), values=values,
        )
        if updated is None:
            raise ConflictError('asking task was modified concurrently; reload and retry', field='version')
        return updated

    def _audit(self, actor: ActorContext, task: dict, action: AuditAction, description: str, *, old: dict, new: dict):
        self.repository.append_audit(
            entity_type=EntityType.ASKING_TASK,
            entity_id=task['asking_task_id'],
            order_id=task['order_id'],
            action=action,
            performed_by=actor.user_id,
            old_value=old,
            new_value=new,
            description=description,
        )
