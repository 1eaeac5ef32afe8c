"""
Client debt policies.

Decide who carries an order whose card payment could not be captured.
"""

from ledger_backend.app.models.ledger_enums import ClientDebtPolicyName, PaymentMethod


class ClientDebtPolicy:
    """Base policy: subclasses decide whether a failed capture becomes CLIENT_DEBT."""

    name: ClientDebtPolicyName

    def records_debt(self, event) -> bool:
        raise NotImplementedError


class TrackClientDebt(ClientDebtPolicy):
    """The client owes the order total to the platform as a receivable."""

    name = ClientDebtPolicyName.TRACK

    def records_debt(self, event) -> bool:
        return event.payment_method == PaymentMethod.CARD and not event.payment_captured


class AbsorbClientDebt(ClientDebtPolicy):
    """The platform writes the amount off; the order is funded like a captured one."""

    name = ClientDebtPolicyName.ABSORB

    def records_debt(self, event) -> bool:
        return False


_POLICIES = {
    ClientDebtPolicyName.TRACK: TrackClientDebt,
    ClientDebtPolicyName.ABSORB: AbsorbClientDebt,
}


def get_client_debt_policy(name: str) -> ClientDebtPolicy:
    """Build the policy configured by name (CLIENT_DEBT_POLICY)."""
    try:
        return _POLICIES[ClientDebtPolicyName(name.lower())]()
    except ValueError:
        raise ValueError(
            f"Unknown client debt policy {name!r}, expected one of: "
            f"{', '.join(p.value for p in ClientDebtPolicyName)}"
        )
