"""
Approver Specification Module

A level's required approver is exactly one of: a role, a specific user, or a
named group. ``resolve_approvers`` turns any of them into the set of user
identities allowed to act, using a tenant-scoped directory.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Set, Tuple
import threading


class ApproverKind(Enum):
    ROLE = "role"
    USER = "user"
    GROUP = "group"


@dataclass(frozen=True)
class ApproverSpec:
    """Tagged approver specification"""
    kind: ApproverKind
    value: str

    @classmethod
    def role(cls, role: str) -> 'ApproverSpec':
        return cls(ApproverKind.ROLE, role)

    @classmethod
    def user(cls, user_id: str) -> 'ApproverSpec':
        return cls(ApproverKind.USER, user_id)

    @classmethod
    def group(cls, group: str) -> 'ApproverSpec':
        return cls(ApproverKind.GROUP, group)

    def to_dict(self) -> Dict[str, str]:
        return {'kind': self.kind.value, 'value': self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'ApproverSpec':
        return cls(ApproverKind(data['kind']), data['value'])

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.value}"


class ApproverDirectory(ABC):
    """Tenant-scoped lookup of users by role and group membership"""

    @abstractmethod
    def users_with_role(self, tenant_id: str, role: str) -> Set[str]:
        pass

    @abstractmethod
    def members_of_group(self, tenant_id: str, group: str) -> Set[str]:
        pass

    @abstractmethod
    def roles_of(self, tenant_id: str, user_id: str) -> Set[str]:
        pass

    def is_known_user(self, tenant_id: str, user_id: str) -> bool:
        return True


class InMemoryDirectory(ApproverDirectory):
    """Directory backed by dictionaries, for tests and embedded use"""

    def __init__(self):
        self._roles: Dict[Tuple[str, str], Set[str]] = defaultdict(set)
        self._groups: Dict[Tuple[str, str], Set[str]] = defaultdict(set)
        self._users: Dict[str, Set[str]] = defaultdict(set)
        self._lock = threading.RLock()

    def add_user(self, tenant_id: str, user_id: str,
                 roles: Iterable[str] = (), groups: Iterable[str] = ()) -> None:
        with self._lock:
            self._users[tenant_id].add(user_id)
            for role in roles:
                self._roles[(tenant_id, role)].add(user_id)
            for group in groups:
                self._groups[(tenant_id, group)].add(user_id)

    def remove_user(self, tenant_id: str, user_id: str) -> None:
        with self._lock:
            self._users[tenant_id].discard(user_id)
            for (tenant, _), members in list(self._roles.items()) + list(self._groups.items()):
                if tenant == tenant_id:
                    members.discard(user_id)

    def users_with_role(self, tenant_id: str, role: str) -> Set[str]:
        with self._lock:
            return set(self._roles.get((tenant_id, role), set()))

    def members_of_group(self, tenant_id: str, group: str) -> Set[str]:
        with self._lock:
            return set(self._groups.get((tenant_id, group), set()))

    def roles_of(self, tenant_id: str, user_id: str) -> Set[str]:
        with self._lock:
            return {
                role for (tenant, role), members in self._roles.items()
                if tenant == tenant_id and user_id in members
            }

    def is_known_user(self, tenant_id: str, user_id: str) -> bool:
        with self._lock:
            return user_id in self._users.get(tenant_id, set())


def resolve_approvers(spec: ApproverSpec, tenant_id: str,
                      directory: ApproverDirectory) -> Set[str]:
    """Identities that satisfy ``spec`` within ``tenant_id``"""
    if spec.kind == ApproverKind.ROLE:
        return directory.users_with_role(tenant_id, spec.value)
    if spec.kind == ApproverKind.GROUP:
        return directory.members_of_group(tenant_id, spec.value)
    if spec.kind == ApproverKind.USER:
        return {spec.value}
    raise ValueError(f"Unknown approver kind: {spec.kind}")
