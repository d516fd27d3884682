from __future__ import annotations

import re

from orderflow.actors import ActorContext, build_actor, require_roles, require_team_lead
from orderflow.domain.errors import NotFoundError, ValidationError
from orderflow.domain.events import AuditAction, EntityType
from orderflow.domain.models import ServiceType, UserRole
from orderflow.observability import get_logger
from orderflow.repository import ServiceCreateRecord

_log = get_logger('orderflow.service_layers.catalog')

_USER_ID_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.@-]{0,63}$')


class CatalogService:
    def __init__(self, *, repository):
        self.repository = repository

    def resolve_actor(self, user_id: str | None) -> ActorContext | None:
        text = str(user_id or '').strip()
        if not text:
            return None
        user = self.repository.get_user(text)
        if user is None or not user.get('is_active', True):
            return None
        return build_actor(
            user,
            self.repository.list_teams(),
            self.repository.list_team_memberships(user_id=text),
        )

    def ensure_admin(self, user_id: str, *, display_name: str = 'Administrator') -> dict:
        existing = self.repository.get_user(user_id)
        if existing is not None:
            return existing
        _log.info('bootstrap_admin_created user_id=%s', user_id)
        return self.repository.create_user(
            user_id=user_id, display_name=display_name, email=None, role=UserRole.ADMIN.value,
        )

    def create_user(
        self,
        actor: ActorContext,
        *,
        user_id: str,
        display_name: str,
        email: str | None = None,
        role: UserRole | str = UserRole.MEMBER,
    ) -> dict:
        require_roles(actor, UserRole.ADMIN, action='manage users')
        text = str(user_id or '').strip()
        if not _USER_ID_RE.match(text):
            raise ValidationError('user_id must be 1-64 characters of letters, digits, _ . @ -', field='user_id')
        name = str(display_name or '').strip()
        if not name:
            raise ValidationError('display_name is required', field='display_name')
        try:
            role_value = UserRole(str(getattr(role, 'value', role) or '').strip().upper()).value
        except ValueError as exc:
            raise ValidationError(f'invalid role: {role}', field='role') from exc
        row = self.repository.create_user(
            user_id=text, display_name=name, email=str(email or '').strip() or None, role=role_value,
        )
        _log.info('user_created user_id=%s role=%s', text, role_value)
        return row

    def create_team(self, actor: ActorContext, *, name: str, leader_id: str | None = None) -> dict:
        require_roles(actor, UserRole.ADMIN, action='manage teams')
        text = str(name or '').strip()
        if not text:
            raise ValidationError('team name is required', field='name')
        leader = str(leader_id or '').strip() or None
        if leader is not None and self.repository.get_user(leader) is None:
            raise ValidationError(f'unknown leader: {leader}', field='leader_id')
        team = self.repository.create_team(name=text, leader_id=leader)
        if leader is not None:
            self.repository.add_team_member(team_id=team['team_id'], user_id=leader)
        _log.info('team_created team_id=%s leader_id=%s', team['team_id'], leader)
        return team

    def add_team_member(self, actor: ActorContext, team_id: str, *, user_id: str) -> dict:
        team = self.repository.get_team(team_id)
        if team is None:
            raise NotFoundError('team', team_id)
        require_team_lead(actor, team_id, action='manage team members')
        user = self.repository.get_user(str(user_id or '').strip())
        if user is None:
            raise ValidationError(f'unknown user: {user_id}', field='user_id')
        membership = self.repository.add_team_member(team_id=team_id, user_id=user['user_id'])
        _log.info('team_member_added team_id=%s user_id=%s', team_id, user['user_id'])
        return membership

    def remove_team_member(self, actor: ActorContext, team_id: str, membership_id: str) -> dict:
        """Soft-remove a membership; the row stays for history and can be re-added."""
        if self.repository.get_team(team_id) is None:
            raise NotFoundError('team', team_id)
        require_team_lead(actor, team_id, action='manage team members')
        membership = next(
            (m for m in self.repository.list_team_memberships(team_id=team_id) if m['membership_id'] == membership_id),
            None,
        )
        if membership is None:
            raise NotFoundError('team membership', membership_id)
        updated = self.repository.set_membership_active(membership_id, is_active=False)
        self._audit(
            actor, EntityType.TEAM_MEMBERSHIP, membership_id, AuditAction.TEAM_MEMBER_REMOVED,
            f'removed {membership["user_id"]} from team {team_id}',
            old={'is_active': membership.get('is_active', True)}, new={'is_active': False},
        )
        _log.info('team_member_removed team_id=%s user_id=%s', team_id, membership['user_id'])
        return updated

    def set_user_active(self, actor: ActorContext, user_id: str, *, is_active: bool) -> dict:
        require_roles(actor, UserRole.ADMIN, action='manage users')
        user = self.repository.get_user(user_id)
        if user is None:
            raise NotFoundError('user', user_id)
        if not is_active and user_id == actor.user_id:
            raise ValidationError('administrators cannot deactivate themselves', field='user_id')
        updated = self.repository.set_user_active(user_id, is_active=is_active)
        self._status_audit(actor, EntityType.USER, user_id, AuditAction.USER_STATUS_CHANGED, user, updated)
        return updated

    def set_team_active(self, actor: ActorContext, team_id: str, *, is_active: bool) -> dict:
        require_roles(actor, UserRole.ADMIN, action='manage teams')
        team = self.repository.get_team(team_id)
        if team is None:
            raise NotFoundError('team', team_id)
        updated = self.repository.set_team_active(team_id, is_active=is_active)
        self._status_audit(actor, EntityType.TEAM, team_id, AuditAction.TEAM_STATUS_CHANGED, team, updated)
        return updated

    def create_service(
        self,
        actor: ActorContext,
        *,
        name: str,
        service_type: ServiceType | str,
        team_id: str | None,
        is_mandatory: bool = False,
        requires_completion_note: bool = False,
        is_active: bool = True,
    ) -> dict:
        require_roles(actor, UserRole.ADMIN, action='manage services')
        text = str(name or '').strip()
        if not text:
            raise ValidationError('service name is required', field='name')
        try:
            kind = ServiceType(str(getattr(service_type, 'value', service_type) or '').strip().upper())
        except ValueError as exc:
            raise ValidationError(f'invalid service type: {service_type}', field='service_type') from exc
        team = str(team_id or '').strip() or None
        if team is not None and self.repository.get_team(team) is None:
            raise ValidationError(f'unknown team: {team}', field='team_id')
        service = self.repository.create_service(
            ServiceCreateRecord(
                name=text,
                service_type=kind,
                team_id=team,
                is_mandatory=bool(is_mandatory),
                requires_completion_note=bool(requires_completion_note),
                is_active=bool(is_active),
            )
        )
        _log.info('service_created service_id=%s type=%s mandatory=%s', service['service_id'], kind.value, bool(is_mandatory))
        return service

    def set_service_active(self, actor: ActorContext, service_id: str, *, is_active: bool) -> dict:
        require_roles(actor, UserRole.ADMIN, UserRole.ORDER_CREATOR, action='manage services')
        service = self.repository.get_service(service_id)
        if service is None:
            raise NotFoundError('service', service_id)
        updated = self.repository.set_service_active(service_id, is_active=is_active)
        self._status_audit(actor, EntityType.SERVICE, service_id, AuditAction.SERVICE_STATUS_CHANGED, service, updated)
        return updated

    def list_services(self, *, active_only: bool = False) -> list[dict]:
        return self.repository.list_services(active_only=active_only)

    def _status_audit(
        self, actor: ActorContext, entity_type: EntityType, entity_id: str, action: AuditAction, before: dict, after: dict,
    ) -> None:
        was, now = bool(before.get('is_active', True)), bool(after['is_active'])
        if was == now:
            return
        verb = 'activated' if now else 'deactivated'
        self._audit(
            actor, entity_type, entity_id, action, f'{verb} {entity_type.value} {entity_id}',
            old={'is_active': was}, new={'is_active': now},
        )
        _log.info('catalog_%s entity=%s id=%s by=%s', verb, entity_type.value, entity_id, actor.user_id)

    def _audit(
        self, actor: ActorContext, entity_type: EntityType, entity_id: str, action: AuditAction, description: str,
        *, old: dict, new: dict,
    ) -> None:
        self.repository.append_audit(
            entity_type=entity_type,
            entity_id=entity_id,
            order_id=None,
            action=action,
            performed_by=actor.user_id,
            old_value=old,
            new_value=new,
            description=description,
        )
