"""
User roles enumeration.

Defines the role types carried in access tokens.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ADMIN: Full access, including settlement runs
        OPERATOR: Finance operations (reports, flags, payout follow-up)
        SERVICE: Machine callers (order lifecycle and payout rail webhooks)
        RESTAURANT / DELIVERY_AGENT / CLIENT: Participants, own balance only
    """
    ADMIN = "ADMIN"
    OPERATOR = "OPERATOR"
    SERVICE = "SERVICE"
    RESTAURANT = "RESTAURANT"
    DELIVERY_AGENT = "DELIVERY_AGENT"
    CLIENT = "CLIENT"
