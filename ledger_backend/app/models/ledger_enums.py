"""
Ledger enumerations and posting rule tables.
"""

import enum


class AccountType(str, enum.Enum):
    """Ledger participant kinds."""
    CLIENT = "client"
    RESTAURANT = "restaurant"
    DELIVERY_AGENT = "delivery_agent"
    PLATFORM = "platform"


class TransactionType(str, enum.Enum):
    """Closed set of posting kinds."""
    ORDER_REVENUE = "ORDER_REVENUE"
    PLATFORM_COMMISSION = "PLATFORM_COMMISSION"
    DELIVERY_EARNING = "DELIVERY_EARNING"
    CASH_COLLECTED = "CASH_COLLECTED"
    SETTLEMENT_PAYMENT = "SETTLEMENT_PAYMENT"
    SETTLEMENT_RECEPTION = "SETTLEMENT_RECEPTION"
    RESTAURANT_PAYABLE = "RESTAURANT_PAYABLE"
    DELIVERY_PAYABLE = "DELIVERY_PAYABLE"
    PLATFORM_DELIVERY_MARGIN = "PLATFORM_DELIVERY_MARGIN"
    PLATFORM_NOT_DELIVERED_REFUND = "PLATFORM_NOT_DELIVERED_REFUND"
    CLIENT_DEBT = "CLIENT_DEBT"


class OrderEventType(str, enum.Enum):
    """Events sent by the order lifecycle service."""
    CREATED = "created"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class BatchEventType(str, enum.Enum):
    """Business events that produce a postings batch."""
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    SETTLEMENT = "SETTLEMENT"


class OrderLedgerStatus(str, enum.Enum):
    """Orchestrator state per order."""
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    CASH = "cash"


class ClientDebtPolicyName(str, enum.Enum):
    TRACK = "track"  # Failed capture becomes a CLIENT_DEBT receivable
    ABSORB = "absorb"  # Platform carries the loss, restaurant and agent still get paid


class SettlementStatus(str, enum.Enum):
    """Settlement status enumeration."""
    OPEN = "OPEN"  # Payout postings written, waiting for the payout rail
    PAID = "PAID"  # Payout rail confirmed the transfer


class PayoutStatus(str, enum.Enum):
    """Last known state of the payout rail transfer for a settlement."""
    NOT_REQUESTED = "NOT_REQUESTED"
    REQUESTED = "REQUESTED"
    REQUEST_ERROR = "REQUEST_ERROR"  # Call to the rail failed, nothing confirmed
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class PayoutConfirmationStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


ORDER_EVENT_BATCH_TYPES = {
    OrderEventType.DELIVERED: BatchEventType.DELIVERED,
    OrderEventType.CANCELLED: BatchEventType.CANCELLED,
    OrderEventType.REFUNDED: BatchEventType.REFUNDED,
}

# Which posting types each business event may emit
ALLOWED_TYPES_BY_EVENT = {
    BatchEventType.DELIVERED: frozenset({
        TransactionType.ORDER_REVENUE,
        TransactionType.PLATFORM_COMMISSION,
        TransactionType.DELIVERY_EARNING,
        TransactionType.RESTAURANT_PAYABLE,
        TransactionType.DELIVERY_PAYABLE,
        TransactionType.PLATFORM_DELIVERY_MARGIN,
        TransactionType.CASH_COLLECTED,
        TransactionType.CLIENT_DEBT,
    }),
    BatchEventType.CANCELLED: frozenset({TransactionType.PLATFORM_NOT_DELIVERED_REFUND}),
    BatchEventType.REFUNDED: frozenset({TransactionType.PLATFORM_NOT_DELIVERED_REFUND}),
    BatchEventType.SETTLEMENT: frozenset({
        TransactionType.SETTLEMENT_PAYMENT,
        TransactionType.SETTLEMENT_RECEPTION,
    }),
}

# Money the platform owes a participant until a settlement pays it out
PAYABLE_TYPES = frozenset({
    TransactionType.ORDER_REVENUE,
    TransactionType.PLATFORM_COMMISSION,
    TransactionType.DELIVERY_EARNING,
    TransactionType.CASH_COLLECTED,
    TransactionType.RESTAURANT_PAYABLE,
    TransactionType.DELIVERY_PAYABLE,
})

# Money a participant owes the platform
RECEIVABLE_TYPES = frozenset({TransactionType.CLIENT_DEBT})

# Payable class of each settleable account type
SETTLEABLE_TYPES_BY_ACCOUNT = {
    AccountType.RESTAURANT: PAYABLE_TYPES,
    AccountType.DELIVERY_AGENT: PAYABLE_TYPES,
    AccountType.CLIENT: RECEIVABLE_TYPES,
}

PLATFORM_OWNER_REF = "platform"
