"""
Role-Based Access Control Module

Roles and permissions for ledger operations. Authentication happens
upstream; a PrincipalProvider resolves an authenticated user id to a
Principal carrying its role.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from .exceptions import AuthorizationError


class Role(Enum):
    """Staff and customer roles"""
    USER = "USER"
    LOAN_OFFICER = "LOAN_OFFICER"
    RISK_ANALYST = "RISK_ANALYST"
    CUSTOMER_SERVICE = "CUSTOMER_SERVICE"
    FINANCE_MANAGER = "FINANCE_MANAGER"
    COMPLIANCE_OFFICER = "COMPLIANCE_OFFICER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class Permission(Enum):
    """Ledger permissions"""
    # Loans
    READ_LOANS = "read:loans"
    CREATE_LOANS = "create:loans"
    APPROVE_LOANS = "approve:loans"
    REJECT_LOANS = "reject:loans"

    # Payments
    READ_PAYMENTS = "read:payments"
    CREATE_PAYMENTS = "create:payments"
    PROCESS_PAYMENTS = "process:payments"

    # Virtual accounts
    READ_VIRTUAL_ACCOUNTS = "read:virtual_accounts"
    UPDATE_VIRTUAL_ACCOUNTS = "update:virtual_accounts"
    MANAGE_BALANCES = "manage:balances"

    # Reports
    READ_REPORTS = "read:reports"


_USER = frozenset({
    Permission.CREATE_LOANS,
    Permission.READ_LOANS,
    Permission.READ_PAYMENTS,
    Permission.CREATE_PAYMENTS,
    Permission.READ_VIRTUAL_ACCOUNTS,
})
_LOAN_OFFICER = _USER | {Permission.APPROVE_LOANS, Permission.REJECT_LOANS, Permission.READ_REPORTS}
_CUSTOMER_SERVICE = _USER | {Permission.READ_REPORTS}
_RISK_ANALYST = _LOAN_OFFICER
_FINANCE_MANAGER = _RISK_ANALYST | {
    Permission.MANAGE_BALANCES,
    Permission.PROCESS_PAYMENTS,
    Permission.UPDATE_VIRTUAL_ACCOUNTS,
}
_COMPLIANCE_OFFICER = _FINANCE_MANAGER
_ADMIN = _COMPLIANCE_OFFICER

ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.USER: _USER,
    Role.LOAN_OFFICER: _LOAN_OFFICER,
    Role.RISK_ANALYST: _RISK_ANALYST,
    Role.CUSTOMER_SERVICE: _CUSTOMER_SERVICE,
    Role.FINANCE_MANAGER: _FINANCE_MANAGER,
    Role.COMPLIANCE_OFFICER: _COMPLIANCE_OFFICER,
    Role.ADMIN: _ADMIN,
    Role.SUPER_ADMIN: frozenset(Permission),
}


@dataclass(frozen=True)
class Principal:
    """An authenticated caller"""
    user_id: str
    role: Role

    def has_permission(self, permission: Permission) -> bool:
        return permission in ROLE_PERMISSIONS[self.role]

    def require(self, permission: Permission) -> None:
        """
        Raises:
            AuthorizationError: the principal's role lacks ``permission``
        """
        if not self.has_permission(permission):
            raise AuthorizationError(
                f"User '{self.user_id}' with role {self.role.value} lacks permission {permission.value}",
                {"user_id": self.user_id, "role": self.role.value, "permission": permission.value}
            )


class PrincipalProvider(ABC):
    """Resolves an authenticated user id to a Principal"""

    @abstractmethod
    def get_principal(self, user_id: str) -> Principal:
        pass


class StaticPrincipalProvider(PrincipalProvider):
    """Role lookup from an in-memory mapping; unknown users get ``default_role``"""

    def __init__(self, roles: Optional[Dict[str, Role]] = None, default_role: Role = Role.USER):
        self.roles = dict(roles or {})
        self.default_role = default_role

    def assign_role(self, user_id: str, role: Role) -> None:
        self.roles[user_id] = role

    def get_principal(self, user_id: str) -> Principal:
        return Principal(user_id=user_id, role=self.roles.get(user_id, self.default_role))
