"""
Payout rail clients.

The rail moves money out of (or into) the platform for a settlement and
reports the result later through the payout confirmation webhook. A request
that fails here never marks a settlement paid.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from ledger_backend.app.core.config import settings
from ledger_backend.app.core.reliability import CircuitBreaker, CircuitOpenError, payout_circuit_breaker
from ledger_backend.app.models.ledger_enums import AccountType

logger = logging.getLogger("ledger.payouts")


class PayoutRequestError(Exception):
    """The rail could not accept the transfer request."""


@dataclass(frozen=True)
class PayoutRequest:
    settlement_id: int
    attempt: int
    account_id: int
    account_type: AccountType
    owner_ref: str
    amount: int

    @property
    def idempotency_key(self) -> str:
        # One transfer per attempt: a retry after a failure is a new transfer
        return f"settlement:{self.settlement_id}:attempt:{self.attempt}"

    @property
    def direction(self) -> str:
        """Positive totals are paid to the participant, negative ones collected."""
        return "payout" if self.amount > 0 else "collection"


class PayoutRail:
    """Base payout rail."""

    async def request_payout(self, request: PayoutRequest) -> Optional[str]:
        """Ask for the transfer; return the rail reference when one is issued."""
        raise NotImplementedError


class HttpPayoutRail(PayoutRail):
    """Payout rail reached over HTTP, guarded by a circuit breaker."""

    def __init__(
        self,
        base_url: str,
        timeout: float = None,
        breaker: CircuitBreaker = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = settings.payout_rail_timeout_seconds if timeout is None else timeout
        self.breaker = breaker or payout_circuit_breaker
        self.transport = transport

    async def _post(self, request: PayoutRequest) -> Optional[str]:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            response = await client.post(
                "/payouts",
                json={
                    "settlement_id": request.settlement_id,
                    "account_type": request.account_type.value,
                    "owner_ref": request.owner_ref,
                    "amount": abs(request.amount),
                    "direction": request.direction,
                },
                headers={"Idempotency-Key": request.idempotency_key},
            )
            response.raise_for_status()
            return response.json().get("reference")

    async def request_payout(self, request: PayoutRequest) -> Optional[str]:
        try:
            reference = await self.breaker.call(self._post, request)
        except CircuitOpenError as exc:
            logger.warning("Payout rail circuit open", extra={"settlement_id": request.settlement_id})
            raise PayoutRequestError("Payout rail circuit is open") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "Payout request failed",
                extra={"settlement_id": request.settlement_id, "attempt": request.attempt, "error": str(exc)}
            )
            raise PayoutRequestError(str(exc)) from exc

        logger.info(
            "Payout requested",
            extra={"settlement_id": request.settlement_id, "attempt": request.attempt, "reference": reference}
        )
        return reference


class ManualPayoutRail(PayoutRail):
    """No rail configured: operators transfer by hand and post the confirmation."""

    async def request_payout(self, request: PayoutRequest) -> Optional[str]:
        logger.warning(
            "Manual payout required",
            extra={
                "settlement_id": request.settlement_id,
                "account_type": request.account_type.value,
                "owner_ref": request.owner_ref,
                "amount": request.amount,
                "direction": request.direction,
            }
        )
        return None


def get_payout_rail() -> PayoutRail:
    """FastAPI dependency returning the configured payout rail."""
    if settings.payout_rail_url:
        return HttpPayoutRail(settings.payout_rail_url)
    return ManualPayoutRail()
