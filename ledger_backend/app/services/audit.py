"""
Audit logging service for ledger events and operator actions.

Provides centralized audit records for compliance reviews.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from ledger_backend.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    # Orders
    ORDER_FLAGGED = "ORDER_FLAGGED"
    ORDER_FLAG_RESOLVED = "ORDER_FLAG_RESOLVED"
    BATCH_REJECTED = "BATCH_REJECTED"

    # Settlements
    SETTLEMENT_CREATED = "SETTLEMENT_CREATED"
    SETTLEMENT_PAID = "SETTLEMENT_PAID"
    PAYOUT_REQUESTED = "PAYOUT_REQUESTED"
    PAYOUT_REQUEST_ERROR = "PAYOUT_REQUEST_ERROR"
    PAYOUT_FAILED = "PAYOUT_FAILED"
    PAYOUT_RETRIED = "PAYOUT_RETRIED"


SYSTEM_ACTOR = "system"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_ref: Optional[str] = SYSTEM_ACTOR,
    target_type: Optional[str] = None,
    target_ref: Optional[Any] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Add an audit record to the current unit of work.

    The record is flushed, not committed: it lands together with the ledger
    change it describes, or not at all.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        actor_ref: Token subject of the operator, or "system"
        target_type: Kind of entity acted upon ("order", "settlement", ...)
        target_ref: Identifier of that entity
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_ref=actor_ref,
        action=action,
        target_type=target_type,
        target_ref=str(target_ref) if target_ref is not None else None,
        meta_data=metadata,
    )

    db.add(audit_log)
    await db.flush()

    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    target_type: Optional[str] = None,
    target_ref: Optional[Any] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering.

    Returns:
        List of AuditLog instances, most recent first
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if target_type:
        query = query.where(AuditLog.target_type == target_type)

    if target_ref is not None:
        query = query.where(AuditLog.target_ref == str(target_ref))

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return result.scalars().all()
