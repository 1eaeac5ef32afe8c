"""
Security guards for role-based and ownership-based access control.
"""

from typing import List
from fastapi import Depends
from ledger_backend.app.core.dependencies import get_current_user
from ledger_backend.app.core.exceptions import InsufficientPermissionsError
from ledger_backend.app.models.enums import UserRole
from ledger_backend.app.models.ledger_enums import AccountType

# Roles allowed to read any account
STAFF_ROLES = [UserRole.ADMIN, UserRole.OPERATOR]

# Participant role -> the only account type it may read
PARTICIPANT_ACCOUNT_TYPES = {
    UserRole.RESTAURANT: AccountType.RESTAURANT,
    UserRole.DELIVERY_AGENT: AccountType.DELIVERY_AGENT,
    UserRole.CLIENT: AccountType.CLIENT,
}


def token_role(current_user: dict) -> UserRole:
    try:
        return UserRole(current_user.get("role"))
    except ValueError:
        raise InsufficientPermissionsError("Invalid role in token")


def require_role(allowed_roles: List[UserRole]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.post("/confirmations")
        async def confirm(current_user: dict = Depends(require_role([UserRole.SERVICE]))):
            ...

    Raises:
        InsufficientPermissionsError (403) if the token role is not allowed
    """
    async def role_checker(current_user: dict = Depends(get_current_user)) -> dict:
        if token_role(current_user) not in allowed_roles:
            raise InsufficientPermissionsError(
                f"Access denied. Required role: {', '.join(r.value for r in allowed_roles)}",
                details={"role": current_user.get("role")}
            )
        return current_user

    return role_checker


def verify_account_access(account_type: AccountType, owner_ref: str, current_user: dict) -> bool:
    """
    Staff can read every account. Participants can read only the account
    of their own type whose owner ref matches the token.
    """
    try:
        user_role = token_role(current_user)
    except InsufficientPermissionsError:
        return False

    if user_role in STAFF_ROLES:
        return True

    expected_type = PARTICIPANT_ACCOUNT_TYPES.get(user_role)
    if expected_type is None:
        return False

    return expected_type == account_type and current_user.get("owner_ref") == owner_ref


class OwnershipGuard:
    """
    Ownership guard for ledger accounts.

    Usage:
        account = await LedgerStore(db).get_account(account_id)
        OwnershipGuard().enforce(account, current_user)
    """

    def enforce(self, account, current_user: dict, resource_name: str = "account"):
        if not verify_account_access(account.account_type, account.owner_ref, current_user):
            raise InsufficientPermissionsError(
                f"Access denied. You do not have permission to access this {resource_name}.",
                details={"account_id": account.id}
            )
