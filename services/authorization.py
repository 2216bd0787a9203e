"""Role based authorization gate.

Every permission question in the application is answered here. Departments
are always compared by id; an actor whose role or department cannot be
resolved is denied.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional

from models import BorrowRequest, Role, User
from services.errors import AuthorizationError


class Action:
    VIEW_INVENTORY = 'view_inventory'
    CREATE_REQUEST = 'create_request'
    MANAGE_ITEMS = 'manage_items'
    OWNER_REVIEW = 'owner_review'
    HEADMASTER_REVIEW = 'headmaster_review'
    MANAGE_DIRECTORY = 'manage_directory'
    HANDLE_LOAN = 'handle_loan'
    CANCEL_REQUEST = 'cancel_request'
    VIEW_REQUEST = 'view_request'


@dataclass(frozen=True)
class Actor:
    user_id: Optional[int] = None
    roles: FrozenSet[str] = field(default_factory=frozenset)
    owner_departments: FrozenSet[int] = field(default_factory=frozenset)

    @classmethod
    def anonymous(cls) -> 'Actor':
        return cls()

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN in self.roles

    @property
    def is_owner(self) -> bool:
        return Role.OWNER in self.roles and bool(self.owner_departments)

    @property
    def is_headmaster(self) -> bool:
        return Role.HEADMASTER in self.roles

    def owns_any(self, department_ids: Iterable[int]) -> bool:
        return self.is_owner and not self.owner_departments.isdisjoint(department_ids)


def resolve_actor(user: Optional[User]) -> Actor:
    """Build an Actor from the user's role assignments.

    Owner assignments without a department are ignored.
    """
    if user is None:
        return Actor.anonymous()
    roles = set()
    departments = set()
    for assignment in user.role_assignments:
        if assignment.role not in Role.ALL:
            continue
        if assignment.role == Role.OWNER:
            if assignment.department_id is None:
                continue
            departments.add(assignment.department_id)
        roles.add(assignment.role)
    return Actor(user_id=user.id, roles=frozenset(roles), owner_departments=frozenset(departments))


class AuthorizationGate:
    def allows(
        self,
        actor: Actor,
        action: str,
        *,
        request: Optional[BorrowRequest] = None,
        department_id: Optional[int] = None,
    ) -> bool:
        if action == Action.VIEW_INVENTORY:
            return True
        if not actor.is_authenticated:
            return False
        if actor.is_admin:
            return True

        if action == Action.CREATE_REQUEST:
            return bool(actor.roles & {Role.BORROWER, Role.OWNER})
        if action == Action.MANAGE_ITEMS:
            return department_id is not None and actor.is_owner and department_id in actor.owner_departments
        if action == Action.HEADMASTER_REVIEW:
            return actor.is_headmaster
        if action == Action.MANAGE_DIRECTORY:
            return False

        if request is None:
            return False
        is_borrower = request.borrower_id == actor.user_id
        touches_department = actor.owns_any(request.department_ids)
        if action == Action.OWNER_REVIEW:
            return touches_department
        if action == Action.HANDLE_LOAN:
            return is_borrower or touches_department
        if action == Action.CANCEL_REQUEST:
            return is_borrower
        if action == Action.VIEW_REQUEST:
            return is_borrower or touches_department or actor.is_headmaster
        return False

    def require(self, actor: Actor, action: str, **target) -> None:
        if not self.allows(actor, action, **target):
            raise AuthorizationError()

    def require_no_self_dealing(self, actor: Actor, department_ids: Iterable[int]) -> None:
        """Owners may not borrow from the departments they own."""
        if actor.owns_any(department_ids):
            raise AuthorizationError('You cannot request items from a department you own.')

    def owner_scope(self, actor: Actor) -> Optional[FrozenSet[int]]:
        """Departments whose requests the actor may review; None means every department."""
        if actor.is_admin:
            return None
        if actor.is_owner:
            return actor.owner_departments
        return frozenset()
