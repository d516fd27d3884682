from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
import time
from typing import Callable, Iterator, TypeVar

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from orderflow.domain.errors import ConflictError, NotFoundError
from orderflow.domain.events import AuditAction, EntityType, normalize_audit_action
from orderflow.domain.models import AskingStage, ServiceType, TaskStatus, as_utc
from orderflow.repository import (
    OrderCreateRecord,
    ServiceCreateRecord,
    WorkItemCreateRecord,
    new_id,
)

T = TypeVar('T')


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value is None:
        return None
    return as_utc(value)


class Base(DeclarativeBase):
    pass


class UserEntity(Base):
    __tablename__ = 'users'

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TeamEntity(Base):
    __tablename__ = 'teams'

    team_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    leader_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TeamMembershipEntity(Base):
    __tablename__ = 'team_memberships'
    __table_args__ = (
        UniqueConstraint('team_id', 'user_id', name='uq_team_memberships_team_id_user_id'),
    )

    membership_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    team_id: Mapped[str] = mapped_column(String(64), ForeignKey('teams.team_id'), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ServiceEntity(Base):
    __tablename__ = 'services'

    service_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    service_type: Mapped[str] = mapped_column(String(32), nullable=False)
    team_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_mandatory: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    requires_completion_note: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class OrderEntity(Base):
    __tablename__ = 'orders'
    __table_args__ = (
        Index('ix_orders_status_created_at', 'status', 'created_at'),
        Index('ix_orders_original_order_id', 'original_order_id'),
    )

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_number: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    suggested_status: Mapped[str] = mapped_column(String(32), nullable=False)
    is_revision: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    original_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    revision_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    amount: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False)
    order_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    delivery_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    delivery_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    folder_link: Mapped[str | None] = mapped_column(Text(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text(), nullable=True)
    is_customized: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    version: Mapped[int] = mapped_column(Integer(), nullable=False)


class ServiceInstanceEntity(Base):
    __tablename__ = 'service_instances'

    instance_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), ForeignKey('orders.order_id'), nullable=False, index=True)
    service_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TaskEntity(Base):
    __tablename__ = 'tasks'
    __table_args__ = (
        Index('ix_tasks_order_id_created_at', 'order_id', 'created_at'),
        Index('ix_tasks_assigned_to_status', 'assigned_to', 'status'),
    )

    task_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), ForeignKey('orders.order_id'), nullable=False)
    instance_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey('service_instances.instance_id'), nullable=True, index=True,
    )
    service_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    team_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    priority: Mapped[str | None] = mapped_column(String(16), nullable=True)
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_to: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text(), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_notes: Mapped[str | None] = mapped_column(Text(), nullable=True)
    is_mandatory: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    requires_completion_note: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    is_revision_task: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    marked_for_revision: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    version: Mapped[int] = mapped_column(Integer(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AskingTaskEntity(Base):
    __tablename__ = 'asking_tasks'
    __table_args__ = (
        Index('ix_asking_tasks_order_id_created_at', 'order_id', 'created_at'),
    )

    asking_task_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), ForeignKey('orders.order_id'), nullable=False)
    instance_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey('service_instances.instance_id'), nullable=True, index=True,
    )
    service_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    team_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    current_stage: Mapped[str] = mapped_column(String(32), nullable=False)
    stage_count: Mapped[int] = mapped_column(Integer(), nullable=False)
    is_flagged: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    flag_reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    is_mandatory: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AskingStageEntryEntity(Base):
    __tablename__ = 'asking_stage_entries'
    __table_args__ = (
        UniqueConstraint('asking_task_id', 'seq', name='uq_asking_stage_entries_task_id_seq'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    asking_task_id: Mapped[str] = mapped_column(
        String(64), ForeignKey('asking_tasks.asking_task_id'), nullable=False, index=True,
    )
    seq: Mapped[int] = mapped_column(Integer(), nullable=False)
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    details_json: Mapped[str] = mapped_column(Text(), nullable=False)
    recorded_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AuditEntryEntity(Base):
    __tablename__ = 'audit_entries'
    __table_args__ = (
        Index('ix_audit_entries_order_id_id', 'order_id', 'id'),
        Index('ix_audit_entries_entity_id_id', 'entity_id', 'id'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    performed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    old_value_json: Mapped[str] = mapped_column(Text(), nullable=False)
    new_value_json: Mapped[str] = mapped_column(Text(), nullable=False)
    description: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {
            'future': True,
        }
        if str(url or '').strip().lower().startswith('sqlite'):
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA foreign_keys=ON')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


class SqlOrderRepository:
    def __init__(self, db: Database):
        self.db = db

    def _sqlite_lock_retry_attempts(self) -> int:
        return 8 if self.db.engine.dialect.name == 'sqlite' else 1

    @staticmethod
    def _is_sqlite_lock_error(exc: Exception) -> bool:
        text = str(exc or '').lower()
        return 'database is locked' in text or 'database table is locked' in text

    @staticmethod
    def _sqlite_lock_backoff_seconds(attempt: int) -> float:
        return min(0.2, 0.02 * (2 ** max(0, int(attempt) - 1)))

    def _write(self, label: str, work: Callable[[Session], T]) -> T:
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                with self.db.session() as session:
                    return work(session)
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError(f'{label}_retry_exhausted')

    # catalog

    def create_user(self, *, user_id: str, display_name: str, email: str | None, role: str) -> dict:
        row = UserEntity(
            user_id=user_id,
            display_name=display_name,
            email=email,
            role=getattr(role, 'value', str(role)),
            is_active=True,
            created_at=_utc_now(),
        )

        def work(session: Session) -> dict:
            if session.get(UserEntity, user_id) is not None:
                raise ConflictError(f'user already exists: {user_id}', field='user_id')
            session.add(row)
            session.flush()
            return self._user_to_dict(row)

        return self._write('create_user', work)

    def get_user(self, user_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(UserEntity, user_id)
            return self._user_to_dict(row) if row is not None else None

    def create_team(self, *, name: str, leader_id: str | None) -> dict:
        row = TeamEntity(
            team_id=new_id('team'),
            name=name,
            leader_id=leader_id,
            is_active=True,
            created_at=_utc_now(),
        )

        def work(session: Session) -> dict:
            session.add(row)
            session.flush()
            return self._team_to_dict(row)

        return self._write('create_team', work)

    def get_team(self, team_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(TeamEntity, team_id)
            return self._team_to_dict(row) if row is not None else None

    def list_teams(self) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(select(TeamEntity).order_by(TeamEntity.created_at.asc())).scalars().all()
            return [self._team_to_dict(r) for r in rows]

    def add_team_member(self, *, team_id: str, user_id: str) -> dict:
        def work(session: Session) -> dict:
            if session.get(TeamEntity, team_id) is None:
                raise NotFoundError('team', team_id)
            existing = session.execute(
                select(TeamMembershipEntity).where(
                    TeamMembershipEntity.team_id == team_id,
                    TeamMembershipEntity.user_id == user_id,
                )
            ).scalar_one_or_none()
            if existing is not None:
                existing.is_active = True
                session.flush()
                return self._membership_to_dict(existing)
            row = TeamMembershipEntity(
                membership_id=new_id('mbr'),
                team_id=team_id,
                user_id=user_id,
                is_active=True,
                created_at=_utc_now(),
            )
            session.add(row)
            session.flush()
            return self._membership_to_dict(row)

        return self._write('add_team_member', work)

    def list_team_memberships(self, *, team_id: str | None = None, user_id: str | None = None) -> list[dict]:
        stmt = select(TeamMembershipEntity).order_by(TeamMembershipEntity.created_at.asc())
        if team_id is not None:
            stmt = stmt.where(TeamMembershipEntity.team_id == team_id)
        if user_id is not None:
            stmt = stmt.where(TeamMembershipEntity.user_id == user_id)
        with self.db.session() as session:
            return [self._membership_to_dict(r) for r in session.execute(stmt).scalars().all()]

    def create_service(self, record: ServiceCreateRecord) -> dict:
        row = ServiceEntity(
            service_id=new_id('svc'),
            name=record.name,
            service_type=ServiceType(record.service_type).value,
            team_id=record.team_id,
            is_mandatory=bool(record.is_mandatory),
            requires_completion_note=bool(record.requires_completion_note),
            is_active=bool(record.is_active),
            created_at=_utc_now(),
        )

        def work(session: Session) -> dict:
            session.add(row)
            session.flush()
            return self._service_to_dict(row)

        return self._write('create_service', work)

    def get_service(self, service_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(ServiceEntity, service_id)
            return self._service_to_dict(row) if row is not None else None

    def list_services(self, *, active_only: bool = False) -> list[dict]:
        stmt = select(ServiceEntity).order_by(ServiceEntity.created_at.asc())
        if active_only:
            stmt = stmt.where(ServiceEntity.is_active.is_(True))
        with self.db.session() as session:
            return [self._service_to_dict(r) for r in session.execute(stmt).scalars().all()]

    def set_user_active(self, user_id: str, *, is_active: bool) -> dict:
        return self._set_active(UserEntity, 'user', user_id, is_active, self._user_to_dict)

    def set_team_active(self, team_id: str, *, is_active: bool) -> dict:
        return self._set_active(TeamEntity, 'team', team_id, is_active, self._team_to_dict)

    def set_membership_active(self, membership_id: str, *, is_active: bool) -> dict:
        return self._set_active(
            TeamMembershipEntity, 'team membership', membership_id, is_active, self._membership_to_dict,
        )

    def set_service_active(self, service_id: str, *, is_active: bool) -> dict:
        return self._set_active(ServiceEntity, 'service', service_id, is_active, self._service_to_dict)

    def _set_active(self, model, entity: str, entity_id: str, is_active: bool, to_dict: Callable) -> dict:
        def work(session: Session) -> dict:
            row = session.get(model, entity_id)
            if row is None:
                raise NotFoundError(entity, entity_id)
            row.is_active = bool(is_active)
            session.flush()
            return to_dict(row)

        return self._write(f'set_{entity.replace(" ", "_")}_active', work)

    # orders

    def create_order(self, record: OrderCreateRecord) -> dict:
        now = _utc_now()
        status = getattr(record.status, 'value', str(record.status))
        row = OrderEntity(
            order_id=new_id('ord'),
            order_number=record.order_number,
            customer_name=record.customer_name,
            status=status,
            suggested_status=status,
            is_revision=bool(record.is_revision),
            original_order_id=record.original_order_id,
            revision_completed_at=None,
            amount=float(record.amount),
            order_date=record.order_date,
            delivery_date=record.delivery_date,
            delivery_time=record.delivery_time,
            completed_at=None,
            folder_link=record.folder_link,
            notes=record.notes,
            is_customized=False,
            created_by=record.created_by,
            created_at=now,
            updated_at=now,
            version=1,
        )

        def work(session: Session) -> dict:
            session.add(row)
            session.flush()
            return self._order_to_dict(row)

        try:
            return self._write('create_order', work)
        except IntegrityError as exc:
            raise ConflictError(
                f'order number already exists: {record.order_number}', field='order_number',
            ) from exc

    def get_order(self, order_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(OrderEntity, order_id)
            return self._order_to_dict(row) if row is not None else None

    def get_order_by_number(self, order_number: str) -> dict | None:
        with self.db.session() as session:
            row = session.execute(
                select(OrderEntity).where(OrderEntity.order_number == order_number)
            ).scalar_one_or_none()
            return self._order_to_dict(row) if row is not None else None

    def list_orders(
        self,
        *,
        status: str | None = None,
        is_revision: bool | None = None,
        original_order_id: str | None = None,
        order_ids: list[str] | None = None,
        limit: int = 100,
    ) -> list[dict]:
        if order_ids is not None and not order_ids:
            return []
        stmt = select(OrderEntity).order_by(OrderEntity.created_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(OrderEntity.status == status)
        if is_revision is not None:
            stmt = stmt.where(OrderEntity.is_revision.is_(bool(is_revision)))
        if original_order_id is not None:
            stmt = stmt.where(OrderEntity.original_order_id == original_order_id)
        if order_ids is not None:
            stmt = stmt.where(OrderEntity.order_id.in_(list(order_ids)))
        with self.db.session() as session:
            return [self._order_to_dict(r) for r in session.execute(stmt).scalars().all()]

    def _update_if(
        self,
        session: Session,
        entity: type[Base],
        key_column,
        entity_name: str,
        entity_id: str,
        *,
        expected_version: int,
        values: dict,
    ):
        result = session.execute(
            update(entity)
            .where(key_column == entity_id, entity.version == int(expected_version))
            .values(**values, version=entity.version + 1, updated_at=_utc_now())
        )
        session.flush()
        if int(result.rowcount or 0) == 0:
            if session.get(entity, entity_id) is None:
                raise NotFoundError(entity_name, entity_id)
            return None
        row = session.get(entity, entity_id, populate_existing=True)
        if row is None:
            raise NotFoundError(entity_name, entity_id)
        return row

    def update_order_if(self, order_id: str, *, expected_version: int, values: dict) -> dict | None:
        def work(session: Session) -> dict | None:
            row = self._update_if(
                session, OrderEntity, OrderEntity.order_id, 'order', order_id,
                expected_version=expected_version, values=values,
            )
            return self._order_to_dict(row) if row is not None else None

        return self._write('update_order_if', work)

    def update_order(self, order_id: str, *, values: dict) -> dict:
        def work(session: Session) -> dict:
            row = session.get(OrderEntity, order_id)
            if row is None:
                raise NotFoundError('order', order_id)
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = _utc_now()
            session.flush()
            return self._order_to_dict(row)

        return self._write('update_order', work)

    # work items

    def apply_work_changes(
        self,
        order_id: str,
        *,
        create: list[WorkItemCreateRecord],
        remove_instance_ids: list[str],
    ) -> dict:
        def work(session: Session) -> dict:
            if session.get(OrderEntity, order_id) is None:
                raise NotFoundError('order', order_id)
            remove_ids = list(dict.fromkeys(remove_instance_ids))
            if remove_ids:
                owned = set(
                    session.execute(
                        select(ServiceInstanceEntity.instance_id).where(
                            ServiceInstanceEntity.order_id == order_id,
                            ServiceInstanceEntity.instance_id.in_(remove_ids),
                        )
                    ).scalars().all()
                )
                for instance_id in remove_ids:
                    if instance_id not in owned:
                        raise NotFoundError('service instance', instance_id)
                busy_tasks = session.execute(
                    select(func.count()).select_from(TaskEntity).where(
                        TaskEntity.instance_id.in_(remove_ids),
                        or_(TaskEntity.status != TaskStatus.NOT_ASSIGNED.value, TaskEntity.completed_at.is_not(None)),
                    )
                ).scalar_one()
                busy_asking = session.execute(
                    select(func.count()).select_from(AskingTaskEntity).where(
                        AskingTaskEntity.instance_id.in_(remove_ids),
                        or_(
                            AskingTaskEntity.current_stage != AskingStage.ASKED.value,
                            AskingTaskEntity.stage_count > 0,
                            AskingTaskEntity.completed_at.is_not(None),
                        ),
                    )
                ).scalar_one()
                if busy_tasks or busy_asking:
                    raise ConflictError('cannot remove instances with assigned tasks', field='remove_instance_ids')
                asking_ids = list(
                    session.execute(
                        select(AskingTaskEntity.asking_task_id).where(AskingTaskEntity.instance_id.in_(remove_ids))
                    ).scalars().all()
                )
                if asking_ids:
                    session.execute(
                        delete(AskingStageEntryEntity).where(AskingStageEntryEntity.asking_task_id.in_(asking_ids))
                    )
                    session.execute(delete(AskingTaskEntity).where(AskingTaskEntity.asking_task_id.in_(asking_ids)))
                session.execute(delete(TaskEntity).where(TaskEntity.instance_id.in_(remove_ids)))
                session.execute(delete(ServiceInstanceEntity).where(ServiceInstanceEntity.instance_id.in_(remove_ids)))
                session.flush()

            instances: list[ServiceInstanceEntity] = []
            tasks: list[TaskEntity] = []
            asking: list[AskingTaskEntity] = []
            for record in create:
                now = _utc_now()
                instance_id = None
                if record.service_id:
                    instance = ServiceInstanceEntity(
                        instance_id=new_id('svi'),
                        order_id=order_id,
                        service_id=record.service_id,
                        created_at=now,
                    )
                    session.add(instance)
                    session.flush()
                    instances.append(instance)
                    instance_id = instance.instance_id
                if ServiceType(record.kind) == ServiceType.ASKING_SERVICE:
                    row = AskingTaskEntity(
                        asking_task_id=new_id('ask'),
                        order_id=order_id,
                        instance_id=instance_id,
                        service_id=record.service_id,
                        team_id=record.team_id,
                        title=record.title,
                        current_stage=AskingStage.ASKED.value,
                        stage_count=0,
                        is_flagged=False,
                        flag_reason=None,
                        is_mandatory=bool(record.is_mandatory),
                        notes=record.notes,
                        completed_at=None,
                        completed_by=None,
                        version=1,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                    asking.append(row)
                    continue
                task = TaskEntity(
                    task_id=new_id('tsk'),
                    order_id=order_id,
                    instance_id=instance_id,
                    service_id=record.service_id,
                    team_id=record.team_id,
                    title=record.title,
                    status=getattr(record.status, 'value', str(record.status)),
                    priority=record.priority,
                    deadline=record.deadline,
                    assigned_to=record.assigned_to,
                    notes=record.notes,
                    started_at=None,
                    completed_at=None,
                    completion_notes=None,
                    is_mandatory=bool(record.is_mandatory),
                    requires_completion_note=bool(record.requires_completion_note),
                    is_revision_task=bool(record.is_revision_task),
                    marked_for_revision=False,
                    version=1,
                    created_at=now,
                    updated_at=now,
                )
                session.add(task)
                tasks.append(task)
            session.flush()
            return {
                'instances': [self._instance_to_dict(i) for i in instances],
                'tasks': [self._task_to_dict(t) for t in tasks],
                'asking_tasks': [self._asking_to_dict(a) for a in asking],
                'removed': len(remove_ids),
            }

        return self._write('apply_work_changes', work)

    def list_service_instances(self, order_id: str) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(
                select(ServiceInstanceEntity)
                .where(ServiceInstanceEntity.order_id == order_id)
                .order_by(ServiceInstanceEntity.created_at.asc())
            ).scalars().all()
            return [self._instance_to_dict(r) for r in rows]

    def get_task(self, task_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(TaskEntity, task_id)
            return self._task_to_dict(row) if row is not None else None

    def list_tasks(
        self,
        *,
        order_id: str | None = None,
        assigned_to: str | None = None,
        team_ids: list[str] | None = None,
    ) -> list[dict]:
        if team_ids is not None and not team_ids:
            return []
        stmt = select(TaskEntity).order_by(TaskEntity.created_at.asc())
        if order_id is not None:
            stmt = stmt.where(TaskEntity.order_id == order_id)
        if assigned_to is not None:
            stmt = stmt.where(TaskEntity.assigned_to == assigned_to)
        if team_ids is not None:
            stmt = stmt.where(TaskEntity.team_id.in_(list(team_ids)))
        with self.db.session() as session:
            return [self._task_to_dict(r) for r in session.execute(stmt).scalars().all()]

    def update_task_if(self, task_id: str, *, expected_version: int, values: dict) -> dict | None:
        def work(session: Session) -> dict | None:
            row = self._update_if(
                session, TaskEntity, TaskEntity.task_id, 'task', task_id,
                expected_version=expected_version, values=values,
            )
            return self._task_to_dict(row) if row is not None else None

        return self._write('update_task_if', work)

    def get_asking_task(self, asking_task_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(AskingTaskEntity, asking_task_id)
            return self._asking_to_dict(row) if row is not None else None

    def list_asking_tasks(self, *, order_id: str | None = None, team_ids: list[str] | None = None) -> list[dict]:
        if team_ids is not None and not team_ids:
            return []
        stmt = select(AskingTaskEntity).order_by(AskingTaskEntity.created_at.asc())
        if order_id is not None:
            stmt = stmt.where(AskingTaskEntity.order_id == order_id)
        if team_ids is not None:
            stmt = stmt.where(AskingTaskEntity.team_id.in_(list(team_ids)))
        with self.db.session() as session:
            return [self._asking_to_dict(r) for r in session.execute(stmt).scalars().all()]

    def update_asking_task_if(self, asking_task_id: str, *, expected_version: int, values: dict) -> dict | None:
        def work(session: Session) -> dict | None:
            row = self._update_if(
                session, AskingTaskEntity, AskingTaskEntity.asking_task_id, 'asking task', asking_task_id,
                expected_version=expected_version, values=values,
            )
            return self._asking_to_dict(row) if row is not None else None

        return self._write('update_asking_task_if', work)

    def record_stage(
        self,
        asking_task_id: str,
        *,
        expected_version: int,
        stage: str,
        details: dict,
        recorded_by: str,
    ) -> tuple[dict, dict] | None:
        stage_value = getattr(stage, 'value', str(stage))

        def work(session: Session) -> tuple[dict, dict] | None:
            row = self._update_if(
                session, AskingTaskEntity, AskingTaskEntity.asking_task_id, 'asking task', asking_task_id,
                expected_version=expected_version,
                values={'current_stage': stage_value, 'stage_count': AskingTaskEntity.stage_count + 1},
            )
            if row is None:
                return None
            entry = AskingStageEntryEntity(
                asking_task_id=asking_task_id,
                seq=int(row.stage_count),
                stage=stage_value,
                details_json=json.dumps(details, ensure_ascii=True),
                recorded_by=recorded_by,
                created_at=_utc_now(),
            )
            session.add(entry)
            session.flush()
            return self._asking_to_dict(row), self._stage_entry_to_dict(entry)

        return self._write('record_stage', work)

    def list_stage_entries(self, asking_task_id: str, *, after_seq: int = 0, limit: int | None = None) -> list[dict]:
        with self.db.session() as session:
            if session.get(AskingTaskEntity, asking_task_id) is None:
                raise NotFoundError('asking task', asking_task_id)
            stmt = (
                select(AskingStageEntryEntity)
                .where(
                    AskingStageEntryEntity.asking_task_id == asking_task_id,
                    AskingStageEntryEntity.seq > int(after_seq),
                )
                .order_by(AskingStageEntryEntity.seq.asc())
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            return [self._stage_entry_to_dict(r) for r in session.execute(stmt).scalars().all()]

    # audit

    def append_audit(
        self,
        *,
        entity_type: str | EntityType,
        entity_id: str,
        order_id: str | None,
        action: str | AuditAction,
        performed_by: str,
        old_value: dict | None = None,
        new_value: dict | None = None,
        description: str = '',
    ) -> dict:
        row = AuditEntryEntity(
            entity_type=getattr(entity_type, 'value', str(entity_type)),
            entity_id=entity_id,
            order_id=order_id,
            action=normalize_audit_action(action),
            performed_by=performed_by,
            old_value_json=json.dumps(old_value or {}, ensure_ascii=True, default=str),
            new_value_json=json.dumps(new_value or {}, ensure_ascii=True, default=str),
            description=description,
            created_at=_utc_now(),
        )

        def work(session: Session) -> dict:
            session.add(row)
            session.flush()
            return self._audit_to_dict(row)

        return self._write('append_audit', work)

    def list_audit(self, *, order_id: str | None = None, entity_id: str | None = None) -> list[dict]:
        stmt = select(AuditEntryEntity).order_by(AuditEntryEntity.id.asc())
        if order_id is not None:
            stmt = stmt.where(AuditEntryEntity.order_id == order_id)
        if entity_id is not None:
            stmt = stmt.where(AuditEntryEntity.entity_id == entity_id)
        with self.db.session() as session:
            return [self._audit_to_dict(r) for r in session.execute(stmt).scalars().all()]

    @staticmethod
    def _user_to_dict(row: UserEntity) -> dict:
        return {
            'user_id': row.user_id,
            'display_name': row.display_name,
            'email': row.email,
            'role': row.role,
            'is_active': bool(row.is_active),
            'created_at': _utc(row.created_at),
        }

    @staticmethod
    def _team_to_dict(row: TeamEntity) -> dict:
        return {
            'team_id': row.team_id,
            'name': row.name,
            'leader_id': row.leader_id,
            'is_active': bool(row.is_active),
            'created_at': _utc(row.created_at),
        }

    @staticmethod
    def _membership_to_dict(row: TeamMembershipEntity) -> dict:
        return {
            'membership_id': row.membership_id,
            'team_id': row.team_id,
            'user_id': row.user_id,
            'is_active': bool(row.is_active),
            'created_at': _utc(row.created_at),
        }

    @staticmethod
    def _service_to_dict(row: ServiceEntity) -> dict:
        return {
            'service_id': row.service_id,
            'name': row.name,
            'type': row.service_type,
            'team_id': row.team_id,
            'is_mandatory': bool(row.is_mandatory),
            'requires_completion_note': bool(row.requires_completion_note),
            'is_active': bool(row.is_active),
            'created_at': _utc(row.created_at),
        }

    @staticmethod
    def _order_to_dict(row: OrderEntity) -> dict:
        return {
            'order_id': row.order_id,
            'order_number': row.order_number,
            'customer_name': row.customer_name,
            'status': row.status,
            'suggested_status': row.suggested_status,
            'is_revision': bool(row.is_revision),
            'original_order_id': row.original_order_id,
            'revision_completed_at': _utc(row.revision_completed_at),
            'amount': float(row.amount),
            'order_date': _utc(row.order_date),
            'delivery_date': _utc(row.delivery_date),
            'delivery_time': row.delivery_time,
            'completed_at': _utc(row.completed_at),
            'folder_link': row.folder_link,
            'notes': row.notes,
            'is_customized': bool(row.is_customized),
            'created_by': row.created_by,
            'created_at': _utc(row.created_at),
            'updated_at': _utc(row.updated_at),
            'version': int(row.version),
        }

    @staticmethod
    def _instance_to_dict(row: ServiceInstanceEntity) -> dict:
        return {
            'instance_id': row.instance_id,
            'order_id': row.order_id,
            'service_id': row.service_id,
            'created_at': _utc(row.created_at),
        }

    @staticmethod
    def _task_to_dict(row: TaskEntity) -> dict:
        return {
            'task_id': row.task_id,
            'order_id': row.order_id,
            'instance_id': row.instance_id,
            'service_id': row.service_id,
            'team_id': row.team_id,
            'title': row.title,
            'status': row.status,
            'priority': row.priority,
            'deadline': _utc(row.deadline),
            'assigned_to': row.assigned_to,
            'notes': row.notes,
            'started_at': _utc(row.started_at),
            'completed_at': _utc(row.completed_at),
            'completion_notes': row.completion_notes,
            'is_mandatory': bool(row.is_mandatory),
            'requires_completion_note': bool(row.requires_completion_note),
            'is_revision_task': bool(row.is_revision_task),
            'marked_for_revision': bool(row.marked_for_revision),
            'version': int(row.version),
            'created_at': _utc(row.created_at),
            'updated_at': _utc(row.updated_at),
        }

    @staticmethod
    def _asking_to_dict(row: AskingTaskEntity) -> dict:
        return {
            'asking_task_id': row.asking_task_id,
            'order_id': row.order_id,
            'instance_id': row.instance_id,
            'service_id': row.service_id,
            'team_id': row.team_id,
            'title': row.title,
            'current_stage': row.current_stage,
            'stage_count': int(row.stage_count),
            'is_flagged': bool(row.is_flagged),
            'flag_reason': row.flag_reason,
            'is_mandatory': bool(row.is_mandatory),
            'notes': row.notes,
            'completed_at': _utc(row.completed_at),
            'completed_by': row.completed_by,
            'version': int(row.version),
            'created_at': _utc(row.created_at),
            'updated_at': _utc(row.updated_at),
        }

    @staticmethod
    def _stage_entry_to_dict(row: AskingStageEntryEntity) -> dict:
        return {
            'seq': int(row.seq),
            'asking_task_id': row.asking_task_id,
            'stage': row.stage,
            'details': json.loads(row.details_json),
            'recorded_by': row.recorded_by,
            'created_at': _utc(row.created_at),
        }

    @staticmethod
    def _audit_to_dict(row: AuditEntryEntity) -> dict:
        return {
            'seq': int(row.id),
            'entity_type': row.entity_type,
            'entity_id': row.entity_id,
            'order_id': row.order_id,
            'action': row.action,
            'performed_by': row.performed_by,
            'old_value': json.loads(row.old_value_json),
            'new_value': json.loads(row.new_value_json),
            'description': row.description,
            'created_at': _utc(row.created_at),
        }
