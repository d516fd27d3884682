from orderflow.domain.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    EngineError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from orderflow.domain.events import AuditAction, EntityType, normalize_audit_action
from orderflow.domain.models import (
    AskingStage,
    OrderStatus,
    ServiceType,
    TaskPriority,
    TaskStatus,
    UserRole,
    can_advance_stage,
    can_transition,
)

__all__ = [
    'AskingStage',
    'AuditAction',
    'AuthenticationError',
    'AuthorizationError',
    'ConflictError',
    'EngineError',
    'EntityType',
    'InvalidTransitionError',
    'NotFoundError',
    'OrderStatus',
    'PreconditionError',
    'ServiceType',
    'TaskPriority',
    'TaskStatus',
    'UserRole',
    'ValidationError',
    'can_advance_stage',
    'can_transition',
    'normalize_audit_action',
]
