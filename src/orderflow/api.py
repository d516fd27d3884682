from __future__ import annotations

from datetime import datetime
from ipaddress import ip_address
from typing import Any

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from orderflow.actors import ActorContext
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
from orderflow.domain.models import AskingStage, OrderStatus, ServiceType, TaskPriority, TaskStatus, UserRole
from orderflow.observability import get_logger, set_request_context
from orderflow.repository import InMemoryOrderRepository
from orderflow.service import (
    AssignTaskInput,
    CreateOrderInput,
    CustomTaskInput,
    MutationResult,
    OrderEngine,
    RevisionTaskInput,
    UpdateOrderInput,
)
from orderflow.service_layers import ServiceQuantity

_log = get_logger('orderflow.api')

ACTOR_HEADER = 'x-orderflow-user'

_ERROR_STATUS: tuple[tuple[type[EngineError], int], ...] = (
    (ValidationError, 400),
    (AuthenticationError, 401),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (InvalidTransitionError, 409),
    (ConflictError, 409),
    (PreconditionError, 422),
)


class ServiceQuantityRequest(BaseModel):
    service_id: str = Field(min_length=1, max_length=64)
    quantity: int = Field(ge=0, le=100)


class CreateOrderRequest(BaseModel):
    order_number: str = Field(min_length=1, max_length=128)
    customer_name: str = Field(min_length=1, max_length=255)
    amount: float = Field(gt=0)
    order_date: datetime
    delivery_date: datetime
    delivery_time: str | None = Field(default=None, max_length=5)
    folder_link: str | None = Field(default=None, max_length=2000)
    notes: str | None = Field(default=None, max_length=8000)
    services: list[ServiceQuantityRequest] = Field(default_factory=list)


class UpdateOrderRequest(BaseModel):
    delivery_date: datetime | None = None
    delivery_time: str | None = Field(default=None, max_length=5)
    amount: float | None = Field(default=None, gt=0)
    notes: str | None = Field(default=None, max_length=8000)
    folder_link: str | None = Field(default=None, max_length=2000)
    status: OrderStatus | None = None


class ServicesUpdateRequest(BaseModel):
    services: list[ServiceQuantityRequest]


class DeliverRequest(BaseModel):
    acknowledged: bool = Field(default=False)
    notes: str | None = Field(default=None, max_length=4000)


class ConvertToRevisionRequest(BaseModel):
    task_ids: list[str] = Field(default_factory=list)
    asking_task_ids: list[str] = Field(default_factory=list)


class RevisionTaskRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    member_id: str = Field(min_length=1, max_length=64)
    deadline: datetime
    notes: str | None = Field(default=None, max_length=4000)
    team_id: str | None = Field(default=None, max_length=64)


class CustomTaskRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    team_id: str = Field(min_length=1, max_length=64)
    is_mandatory: bool = Field(default=False)
    assigned_to: str | None = Field(default=None, max_length=64)
    deadline: datetime | None = None
    priority: TaskPriority | None = None
    notes: str | None = Field(default=None, max_length=4000)


class AssignTaskRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    deadline: datetime
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    notes: str | None = Field(default=None, max_length=4000)


class CompleteTaskRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=4000)


class RevisionMarkRequest(BaseModel):
    marked: bool = Field(default=True)


class StageRequest(BaseModel):
    stage: AskingStage
    details: dict[str, str | None] = Field(default_factory=dict)


class AskingCompleteRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=4000)


class FlagRequest(BaseModel):
    is_flagged: bool
    reason: str | None = Field(default=None, max_length=2000)


class NotesRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=8000)


class CreateUserRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    display_name: str = Field(min_length=1, max_length=255)
    email: str | None = Field(default=None, max_length=255)
    role: UserRole = Field(default=UserRole.MEMBER)


class CreateTeamRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    leader_id: str | None = Field(default=None, max_length=64)


class AddMemberRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)


class ActiveStatusRequest(BaseModel):
    is_active: bool


class CreateServiceRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    service_type: ServiceType
    team_id: str | None = Field(default=None, max_length=64)
    is_mandatory: bool = Field(default=False)
    requires_completion_note: bool = Field(default=False)
    is_active: bool = Field(default=True)


class _ViewModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class StatisticsResponse(_ViewModel):
    total_tasks: int
    completed_tasks: int
    unassigned_tasks: int
    overdue_tasks: int
    mandatory_tasks: int
    mandatory_completed: int
    mandatory_remaining: int
    days_old: int


class DeliveryGateResponse(_ViewModel):
    can_deliver: bool
    mandatory_remaining: int
    incomplete_total: int
    requires_confirmation: bool
    readiness: str


class OrderResponse(_ViewModel):
    order_id: str
    order_number: str
    customer_name: str
    status: OrderStatus
    suggested_status: OrderStatus
    is_revision: bool
    original_order_id: str | None
    revision_completed_at: datetime | None
    amount: float
    order_date: datetime
    delivery_date: datetime
    delivery_time: str | None
    completed_at: datetime | None
    folder_link: str | None
    notes: str | None
    is_customized: bool
    created_by: str
    created_at: datetime
    updated_at: datetime
    version: int


class TaskResponse(_ViewModel):
    task_id: str
    order_id: str
    instance_id: str | None
    service_id: str | None
    team_id: str | None
    title: str
    status: TaskStatus
    display_status: TaskStatus
    priority: TaskPriority | None
    deadline: datetime | None
    assigned_to: str | None
    notes: str | None
    started_at: datetime | None
    completed_at: datetime | None
    completion_notes: str | None
    is_mandatory: bool
    requires_completion_note: bool
    is_revision_task: bool
    marked_for_revision: bool
    version: int


class AskingTaskResponse(_ViewModel):
    asking_task_id: str
    order_id: str
    instance_id: str | None
    service_id: str | None
    team_id: str | None
    title: str
    current_stage: AskingStage
    stage_count: int
    progress_percentage: int
    is_flagged: bool
    flag_reason: str | None
    is_mandatory: bool
    notes: str | None
    completed_at: datetime | None
    completed_by: str | None
    version: int


class StageEntryResponse(BaseModel):
    seq: int
    asking_task_id: str
    stage: AskingStage
    details: dict[str, str]
    recorded_by: str
    created_at: datetime


class ServiceChangeResponse(BaseModel):
    service_id: str
    service_name: str
    change: int


class TimeSpentResponse(BaseModel):
    hours: int
    minutes: int
    total_seconds: int


class OrderResultResponse(BaseModel):
    order: OrderResponse
    statistics: StatisticsResponse
    mandatory_remaining: int | None = None
    incomplete_total: int | None = None
    readiness: str | None = None
    changes: list[ServiceChangeResponse] | None = None
    original_order_id: str | None = None
    task_ids: list[str] | None = None
    asking_task_ids: list[str] | None = None


class TaskResultResponse(BaseModel):
    task: TaskResponse
    statistics: StatisticsResponse
    time_spent: TimeSpentResponse | None = None


class AskingResultResponse(BaseModel):
    asking_task: AskingTaskResponse
    statistics: StatisticsResponse
    entry: StageEntryResponse | None = None


class OrderDetailResponse(BaseModel):
    order: OrderResponse
    tasks: list[TaskResponse]
    asking_tasks: list[AskingTaskResponse]
    statistics: StatisticsResponse
    delivery: DeliveryGateResponse


class OrderServiceResponse(BaseModel):
    service_id: str
    service_name: str
    service_type: ServiceType | None
    team_id: str | None
    quantity: int
    assigned_count: int
    removable_count: int


class AuditEntryResponse(BaseModel):
    seq: int
    entity_type: str
    entity_id: str
    order_id: str | None
    action: str
    performed_by: str
    old_value: dict[str, Any]
    new_value: dict[str, Any]
    description: str
    created_at: datetime


class UserResponse(BaseModel):
    user_id: str
    display_name: str
    email: str | None
    role: UserRole
    is_active: bool


class TeamResponse(BaseModel):
    team_id: str
    name: str
    leader_id: str | None
    is_active: bool


class MembershipResponse(BaseModel):
    membership_id: str
    team_id: str
    user_id: str
    is_active: bool


class ServiceResponse(BaseModel):
    service_id: str
    name: str
    type: ServiceType
    team_id: str | None
    is_mandatory: bool
    requires_completion_note: bool
    is_active: bool


class AppState:
    def __init__(self, engine: OrderEngine):
        self.engine = engine


def _quantities(items: list[ServiceQuantityRequest]) -> list[ServiceQuantity]:
    return [ServiceQuantity(service_id=i.service_id, quantity=i.quantity) for i in items]


def _order_result(result: MutationResult) -> OrderResultResponse:
    return OrderResultResponse(
        order=OrderResponse.model_validate(result.entity),
        statistics=StatisticsResponse.model_validate(result.statistics),
        **result.extra,
    )


def _task_result(result: MutationResult) -> TaskResultResponse:
    return TaskResultResponse(
        task=TaskResponse.model_validate(result.entity),
        statistics=StatisticsResponse.model_validate(result.statistics),
        time_spent=result.extra.get('time_spent'),
    )


def _asking_result(result: MutationResult) -> AskingResultResponse:
    return AskingResultResponse(
        asking_task=AskingTaskResponse.model_validate(result.entity),
        statistics=StatisticsResponse.model_validate(result.statistics),
        entry=result.extra.get('entry'),
    )


def create_app(
    *,
    engine: OrderEngine | None = None,
    allow_remote_api: bool = False,
    api_access_token: str | None = None,
    api_access_token_header: str = 'x-orderflow-api-token',
) -> FastAPI:
    if engine is None:
        engine = OrderEngine(repository=InMemoryOrderRepository())

    app = FastAPI(title='orderflow api', version='0.3.0')
    app.state.container = AppState(engine=engine)
    token_header = str(api_access_token_header or 'x-orderflow-api-token').strip().lower()

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        parts = list(loc)
        if parts and str(parts[0]) in {'body', 'query', 'path', 'header', 'cookie'}:
            parts = parts[1:]
        field = ''
        for part in parts:
            if isinstance(part, int):
                field += f'[{part}]'
            else:
                field = f'{field}.{part}' if field else str(part)
        return field or None

    def _error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
        payload: dict[str, str] = {
            'code': code,
            'message': message,
        }
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            field = _field_from_loc(first.get('loc'))
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(status_code=400, content=_error_payload(message=message, field=field))

    @app.exception_handler(EngineError)
    async def handle_engine_error(request: Request, exc: EngineError):  # noqa: ARG001
        status_code = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 400)
        if status_code >= 409:
            _log.info('request_rejected code=%s path=%s message=%s', exc.code, request.url.path, exc.message)
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(message=exc.message, field=exc.field, code=exc.code),
        )

    def get_engine() -> OrderEngine:
        return app.state.container.engine

    def get_actor(request: Request, engine: OrderEngine = Depends(get_engine)) -> ActorContext:
        actor = engine.resolve_actor(request.headers.get(ACTOR_HEADER))
        if actor is None:
            raise AuthenticationError(f'unknown user; send the {ACTOR_HEADER} header', field=ACTOR_HEADER)
        return actor

    def _is_loopback_host(host: str | None) -> bool:
        text = str(host or '').strip().lower()
        if not text:
            return False
        if text in {'localhost', 'testclient'}:
            return True
        if text.startswith('::ffff:'):
            text = text[7:]
        try:
            return ip_address(text).is_loopback
        except ValueError:
            return False

    @app.middleware('http')
    async def enforce_api_access_controls(request: Request, call_next):
        set_request_context()
        if request.url.path.startswith('/api/'):
            client_host = request.client.host if request.client is not None else ''
            if not allow_remote_api and not _is_loopback_host(client_host):
                return JSONResponse(
                    status_code=403,
                    content=_error_payload(code='forbidden', message='api access denied'),
                )
            if api_access_token:
                token = request.headers.get(token_header)
                if token != api_access_token:
                    return JSONResponse(
                        status_code=401,
                        content=_error_payload(code='unauthorized', message='invalid api token'),
                    )
        return await call_next(request)

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    # orders

    @app.post('/api/orders', response_model=OrderResultResponse, status_code=201)
    def create_order(
        payload: CreateOrderRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> OrderResultResponse:
        result = engine.create_order(
            actor,
            CreateOrderInput(
                order_number=payload.order_number,
                customer_name=payload.customer_name,
                amount=payload.amount,
                order_date=payload.order_date,
                delivery_date=payload.delivery_date,
                delivery_time=payload.delivery_time,
                folder_link=payload.folder_link,
                notes=payload.notes,
                services=_quantities(payload.services),
            ),
        )
        return _order_result(result)

    @app.get('/api/orders', response_model=list[OrderResponse])
    def list_orders(
        status: OrderStatus | None = Query(default=None),
        is_revision: bool | None = Query(default=None),
        limit: int | None = Query(default=None, ge=1, le=1000),
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> list[OrderResponse]:
        rows = engine.list_orders(actor, status=status, is_revision=is_revision, limit=limit)
        return [OrderResponse.model_validate(r) for r in rows]

    @app.get('/api/orders/{order_id}', response_model=OrderDetailResponse)
    def get_order(
        order_id: str,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> OrderDetailResponse:
        detail = engine.get_order(actor, order_id)
        return OrderDetailResponse(
            order=OrderResponse.model_validate(detail.order),
            tasks=[TaskResponse.model_validate(t) for t in detail.tasks],
            asking_tasks=[AskingTaskResponse.model_validate(a) for a in detail.asking_tasks],
            statistics=StatisticsResponse.model_validate(detail.statistics),
            delivery=DeliveryGateResponse.model_validate(detail.delivery),
        )

    @app.patch('/api/orders/{order_id}', response_model=OrderResultResponse)
    def update_order(
        order_id: str,
        payload: UpdateOrderRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> OrderResultResponse:
        result = engine.update_order(
            actor,
            order_id,
            UpdateOrderInput(
                delivery_date=payload.delivery_date,
                delivery_time=payload.delivery_time,
                amount=payload.amount,
                notes=payload.notes,
                folder_link=payload.folder_link,
                status=payload.status,
            ),
        )
        return _order_result(result)

    @app.get('/api/orders/{order_id}/services', response_model=list[OrderServiceResponse])
    def get_order_services(
        order_id: str,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> list[OrderServiceResponse]:
        return [OrderServiceResponse(**row) for row in engine.list_order_services(actor, order_id)]

    @app.patch('/api/orders/{order_id}/services', response_model=OrderResultResponse)
    def update_order_services(
        order_id: str,
        payload: ServicesUpdateRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> OrderResultResponse:
        return _order_result(engine.update_services(actor, order_id, _quantities(payload.services)))

    @app.post('/api/orders/{order_id}/services/preview', response_model=list[ServiceChangeResponse])
    def preview_order_services(
        order_id: str,
        payload: ServicesUpdateRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> list[ServiceChangeResponse]:
        changes = engine.preview_services(actor, order_id, _quantities(payload.services))
        return [
            ServiceChangeResponse(service_id=c.service_id, service_name=c.service_name, change=c.change)
            for c in changes
        ]

    @app.post('/api/orders/{order_id}/verify', response_model=OrderResultResponse)
    def verify_order(
        order_id: str,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> OrderResultResponse:
        return _order_result(engine.verify_order(actor, order_id))

    @app.post('/api/orders/{order_id}/deliver', response_model=OrderResultResponse)
    def deliver_order(
        order_id: str,
        payload: DeliverRequest | None = None,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> OrderResultResponse:
        body = payload or DeliverRequest()
        result = engine.deliver_order(actor, order_id, acknowledged=body.acknowledged, notes=body.notes)
        return _order_result(result)

    @app.post('/api/orders/{order_id}/convert-to-revision', response_model=OrderResultResponse, status_code=201)
    def convert_to_revision(
        order_id: str,
        payload: ConvertToRevisionRequest | None = None,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> OrderResultResponse:
        body = payload or ConvertToRevisionRequest()
        result = engine.convert_to_revision(
            actor, order_id, task_ids=body.task_ids, asking_task_ids=body.asking_task_ids,
        )
        return _order_result(result)

    @app.post('/api/orders/{order_id}/complete-revision', response_model=OrderResultResponse)
    def complete_revision(
        order_id: str,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> OrderResultResponse:
        return _order_result(engine.complete_revision(actor, order_id))

    @app.post('/api/orders/{order_id}/revision-tasks', response_model=TaskResultResponse, status_code=201)
    def add_revision_task(
        order_id: str,
        payload: RevisionTaskRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> TaskResultResponse:
        result = engine.add_revision_task(
            actor,
            order_id,
            RevisionTaskInput(
                title=payload.title,
                member_id=payload.member_id,
                deadline=payload.deadline,
                notes=payload.notes,
                team_id=payload.team_id,
            ),
        )
        return _task_result(result)

    @app.post('/api/orders/{order_id}/custom-tasks', response_model=TaskResultResponse, status_code=201)
    def add_custom_task(
        order_id: str,
        payload: CustomTaskRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> TaskResultResponse:
        result = engine.add_custom_task(
            actor,
            order_id,
            CustomTaskInput(
                title=payload.title,
                team_id=payload.team_id,
                is_mandatory=payload.is_mandatory,
                assigned_to=payload.assigned_to,
                deadline=payload.deadline,
                priority=payload.priority,
                notes=payload.notes,
            ),
        )
        return _task_result(result)

    @app.get('/api/orders/{order_id}/audit', response_model=list[AuditEntryResponse])
    def list_order_audit(
        order_id: str,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> list[AuditEntryResponse]:
        return [AuditEntryResponse(**row) for row in engine.list_audit(actor, order_id)]

    # tasks

    @app.get('/api/tasks', response_model=list[TaskResponse])
    def list_my_tasks(
        include_completed: bool = Query(default=False),
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> list[TaskResponse]:
        return [TaskResponse.model_validate(t) for t in engine.my_tasks(actor, include_completed=include_completed)]

    @app.post('/api/tasks/{task_id}/assign', response_model=TaskResultResponse)
    def assign_task(
        task_id: str,
        payload: AssignTaskRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> TaskResultResponse:
        result = engine.assign_task(
            actor,
            task_id,
            AssignTaskInput(
                user_id=payload.user_id,
                deadline=payload.deadline,
                priority=payload.priority,
                notes=payload.notes,
            ),
        )
        return _task_result(result)

    @app.patch('/api/tasks/{task_id}/reassign', response_model=TaskResultResponse)
    def reassign_task(
        task_id: str,
        payload: AssignTaskRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> TaskResultResponse:
        result = engine.reassign_task(
            actor,
            task_id,
            AssignTaskInput(
                user_id=payload.user_id,
                deadline=payload.deadline,
                priority=payload.priority,
                notes=payload.notes,
            ),
        )
        return _task_result(result)

    @app.delete('/api/tasks/{task_id}/discard', response_model=TaskResultResponse)
    def discard_task(
        task_id: str,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> TaskResultResponse:
        return _task_result(engine.discard_task(actor, task_id))

    @app.post('/api/tasks/{task_id}/start', response_model=TaskResultResponse)
    def start_task(
        task_id: str,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> TaskResultResponse:
        return _task_result(engine.start_task(actor, task_id))

    @app.post('/api/tasks/{task_id}/pause', response_model=TaskResultResponse)
    def toggle_pause(
        task_id: str,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> TaskResultResponse:
        return _task_result(engine.toggle_pause(actor, task_id))

    @app.post('/api/tasks/{task_id}/complete', response_model=TaskResultResponse)
    def complete_task(
        task_id: str,
        payload: CompleteTaskRequest | None = None,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> TaskResultResponse:
        notes = payload.notes if payload is not None else None
        return _task_result(engine.complete_task(actor, task_id, notes=notes))

    @app.post('/api/tasks/{task_id}/revision-mark', response_model=TaskResultResponse)
    def mark_task_for_revision(
        task_id: str,
        payload: RevisionMarkRequest | None = None,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> TaskResultResponse:
        marked = payload.marked if payload is not None else True
        return _task_result(engine.mark_task_for_revision(actor, task_id, marked=marked))

    # asking tasks

    @app.patch('/api/asking-tasks/{asking_task_id}/stage', response_model=AskingResultResponse)
    def advance_asking_stage(
        asking_task_id: str,
        payload: StageRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> AskingResultResponse:
        result = engine.advance_asking_stage(actor, asking_task_id, stage=payload.stage, details=payload.details)
        return _asking_result(result)

    @app.patch('/api/asking-tasks/{asking_task_id}/complete', response_model=AskingResultResponse)
    def complete_asking_task(
        asking_task_id: str,
        payload: AskingCompleteRequest | None = None,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> AskingResultResponse:
        notes = payload.notes if payload is not None else None
        return _asking_result(engine.complete_asking_task(actor, asking_task_id, notes=notes))

    @app.patch('/api/asking-tasks/{asking_task_id}/flag', response_model=AskingResultResponse)
    def flag_asking_task(
        asking_task_id: str,
        payload: FlagRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> AskingResultResponse:
        result = engine.flag_asking_task(actor, asking_task_id, flagged=payload.is_flagged, reason=payload.reason)
        return _asking_result(result)

    @app.patch('/api/asking-tasks/{asking_task_id}/notes', response_model=AskingResultResponse)
    def update_asking_notes(
        asking_task_id: str,
        payload: NotesRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> AskingResultResponse:
        return _asking_result(engine.update_asking_notes(actor, asking_task_id, notes=payload.notes))

    @app.get('/api/asking-tasks/{asking_task_id}/stages', response_model=list[StageEntryResponse])
    def list_asking_stages(
        asking_task_id: str,
        after_seq: int = Query(default=0, ge=0),
        limit: int | None = Query(default=None, ge=1, le=1000),
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> list[StageEntryResponse]:
        rows = engine.list_stage_entries(actor, asking_task_id, after_seq=after_seq, limit=limit)
        return [StageEntryResponse(**row) for row in rows]

    # catalog

    @app.post('/api/users', response_model=UserResponse, status_code=201)
    def create_user(
        payload: CreateUserRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> UserResponse:
        row = engine.create_user(
            actor,
            user_id=payload.user_id,
            display_name=payload.display_name,
            email=payload.email,
            role=payload.role,
        )
        return UserResponse(**{k: row[k] for k in UserResponse.model_fields})

    @app.patch('/api/users/{user_id}/status', response_model=UserResponse)
    def set_user_status(
        user_id: str,
        payload: ActiveStatusRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> UserResponse:
        row = engine.set_user_active(actor, user_id, is_active=payload.is_active)
        return UserResponse(**{k: row[k] for k in UserResponse.model_fields})

    @app.post('/api/teams', response_model=TeamResponse, status_code=201)
    def create_team(
        payload: CreateTeamRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> TeamResponse:
        row = engine.create_team(actor, name=payload.name, leader_id=payload.leader_id)
        return TeamResponse(**{k: row[k] for k in TeamResponse.model_fields})

    @app.post('/api/teams/{team_id}/members', response_model=MembershipResponse, status_code=201)
    def add_team_member(
        team_id: str,
        payload: AddMemberRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> MembershipResponse:
        row = engine.add_team_member(actor, team_id, user_id=payload.user_id)
        return MembershipResponse(**{k: row[k] for k in MembershipResponse.model_fields})

    @app.delete('/api/teams/{team_id}/members/{membership_id}', response_model=MembershipResponse)
    def remove_team_member(
        team_id: str,
        membership_id: str,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> MembershipResponse:
        row = engine.remove_team_member(actor, team_id, membership_id)
        return MembershipResponse(**{k: row[k] for k in MembershipResponse.model_fields})

    @app.patch('/api/teams/{team_id}/status', response_model=TeamResponse)
    def set_team_status(
        team_id: str,
        payload: ActiveStatusRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> TeamResponse:
        row = engine.set_team_active(actor, team_id, is_active=payload.is_active)
        return TeamResponse(**{k: row[k] for k in TeamResponse.model_fields})

    @app.post('/api/services', response_model=ServiceResponse, status_code=201)
    def create_service(
        payload: CreateServiceRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> ServiceResponse:
        row = engine.create_service(
            actor,
            name=payload.name,
            service_type=payload.service_type,
            team_id=payload.team_id,
            is_mandatory=payload.is_mandatory,
            requires_completion_note=payload.requires_completion_note,
            is_active=payload.is_active,
        )
        return ServiceResponse(**{k: row[k] for k in ServiceResponse.model_fields})

    @app.patch('/api/services/{service_id}/status', response_model=ServiceResponse)
    def set_service_status(
        service_id: str,
        payload: ActiveStatusRequest,
        actor: ActorContext = Depends(get_actor),
        engine: OrderEngine = Depends(get_engine),
    ) -> ServiceResponse:
        row = engine.set_service_active(actor, service_id, is_active=payload.is_active)
        return ServiceResponse(**{k: row[k] for k in ServiceResponse.model_fields})

    @app.get('/api/services', response_model=list[ServiceResponse])
    def list_services(
        active_only: bool = Query(default=False),
        actor: ActorContext = Depends(get_actor),  # noqa: ARG001
        engine: OrderEngine = Depends(get_engine),
    ) -> list[ServiceResponse]:
        return [
            ServiceResponse(**{k: row[k] for k in ServiceResponse.model_fields})
            for row in engine.list_services(active_only=active_only)
        ]

    return app
