from __future__ import annotations

from dataclasses import dataclass, field

from orderflow.domain.errors import AuthorizationError
from orderflow.domain.models import UserRole


@dataclass(frozen=True)
class ActorContext:
    """Who is calling, and which teams they lead or belong to.

    Built once per request by the caller and passed into every engine
    operation; the engine never looks up sessions on its own.
    """

    user_id: str
    role: UserRole
    led_team_ids: frozenset[str] = field(default_factory=frozenset)
    member_team_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def can_edit(self) -> bool:
        return self.role in {UserRole.ADMIN, UserRole.ORDER_CREATOR}

    @property
    def team_ids(self) -> frozenset[str]:
        return self.led_team_ids | self.member_team_ids

    @property
    def is_team_leader(self) -> bool:
        return bool(self.led_team_ids)

    def leads(self, team_id: str | None) -> bool:
        return bool(team_id) and team_id in self.led_team_ids

    def belongs_to(self, team_id: str | None) -> bool:
        return bool(team_id) and team_id in self.team_ids


def build_actor(user: dict, teams: list[dict], memberships: list[dict]) -> ActorContext:
    user_id = str(user['user_id'])
    led = frozenset(
        str(t['team_id']) for t in teams if t.get('leader_id') == user_id and bool(t.get('is_active', True))
    )
    member_of = frozenset(
        str(m['team_id']) for m in memberships if m.get('user_id') == user_id and bool(m.get('is_active', True))
    )
    return ActorContext(
        user_id=user_id,
        role=UserRole(str(user.get('role') or UserRole.MEMBER.value)),
        led_team_ids=led,
        member_team_ids=member_of,
    )


def require_roles(actor: ActorContext, *roles: UserRole, action: str) -> None:
    if actor.role not in roles:
        raise AuthorizationError(f'{actor.role.value} may not {action}')


def require_team_lead(actor: ActorContext, team_id: str | None, *, action: str) -> None:
    if actor.is_admin or actor.leads(team_id):
        return
    raise AuthorizationError(f'only the team leader may {action}', field='team_id')


def require_editor_or_leader(actor: ActorContext, *, action: str, allow_order_creator: bool = False) -> None:
    if actor.is_admin or actor.is_team_leader:
        return
    if allow_order_creator and actor.role == UserRole.ORDER_CREATOR:
        return
    raise AuthorizationError(f'{actor.role.value} may not {action}')
