"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from ledger_backend.app.api.v1.endpoints import (
    order_events, payouts, ledger_reports,
    admin_settlements, admin_orders
)

router = APIRouter()

# Collaborator webhooks (order service, payout rail)
router.include_router(order_events.router)
router.include_router(payouts.router)

# Operational read views
router.include_router(ledger_reports.router)

# Admin endpoints
router.include_router(admin_settlements.router)
router.include_router(admin_orders.router)
