from __future__ import annotations

from enum import Enum


class AuditAction(str, Enum):
    ASKING_TASK_COMPLETED = 'asking_task_completed'
    ASKING_TASK_FLAGGED = 'asking_task_flagged'
    ASKING_TASK_NOTES_UPDATED = 'asking_task_notes_updated'
    ASKING_TASK_STAGE_RECORDED = 'asking_task_stage_recorded'
    ASKING_TASK_UNFLAGGED = 'asking_task_unflagged'
    CUSTOM_TASK_CREATED = 'custom_task_created'
    ORDER_AMOUNT_UPDATED = 'order_amount_updated'
    ORDER_CREATED = 'order_created'
    ORDER_DELIVERED = 'order_delivered'
    ORDER_DELIVERY_EXTENDED = 'order_delivery_extended'
    ORDER_FOLDER_LINK_UPDATED = 'order_folder_link_updated'
    ORDER_NOTES_UPDATED = 'order_notes_updated'
    ORDER_SERVICES_UPDATED = 'order_services_updated'
    ORDER_STATUS_OVERRIDDEN = 'order_status_overridden'
    ORDER_VERIFIED = 'order_verified'
    REVISION_COMPLETED = 'revision_completed'
    REVISION_CREATED = 'revision_created'
    REVISION_TASK_CREATED = 'revision_task_created'
    SERVICE_STATUS_CHANGED = 'service_status_changed'
    TASK_ASSIGNED = 'task_assigned'
    TASK_COMPLETED = 'task_completed'
    TASK_DISCARDED = 'task_discarded'
    TASK_PAUSED = 'task_paused'
    TASK_REASSIGNED = 'task_reassigned'
    TASK_RESUMED = 'task_resumed'
    TASK_REVISION_MARKED = 'task_revision_marked'
    TASK_STARTED = 'task_started'
    TEAM_MEMBER_REMOVED = 'team_member_removed'
    TEAM_STATUS_CHANGED = 'team_status_changed'
    USER_STATUS_CHANGED = 'user_status_changed'


class EntityType(str, Enum):
    ORDER = 'order'
    TASK = 'task'
    ASKING_TASK = 'asking_task'
    USER = 'user'
    TEAM = 'team'
    TEAM_MEMBERSHIP = 'team_membership'
    SERVICE = 'service'


def normalize_audit_action(value: str | AuditAction) -> str:
    if isinstance(value, AuditAction):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('audit action is required')
    return text
