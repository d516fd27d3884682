from __future__ import annotations


class EngineError(Exception):
    code = 'engine_error'

    def __init__(self, message: str, *, field: str | None = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field
        if code:
            self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(EngineError, ValueError):
    code = 'validation_error'


class InvalidTransitionError(EngineError):
    code = 'invalid_transition'


class PreconditionError(EngineError):
    code = 'precondition_failed'


class AuthorizationError(EngineError):
    code = 'forbidden'


class ConflictError(EngineError):
    code = 'conflict'


class NotFoundError(EngineError, LookupError):
    code = 'not_found'

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f'{entity} not found: {entity_id}')
        self.entity = entity
        self.entity_id = entity_id


class AuthenticationError(EngineError):
    code = 'unauthenticated'
