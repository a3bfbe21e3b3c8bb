"""Platform and cancellation fee calculation.

Fees are deducted from a payout before it reaches its recipient:
  buyer pays 100 SOL at 3% -> 97 SOL to the seller + 3 SOL to the treasury.

Rules per contract kind:
  traditional  - fee on the buyer's payment only; the seller's security
                 deposit is returned in full
  milestone    - fee on each milestone release
  atomic swap  - fee on each party's amount independently; the treasury
                 receives both
  cancellation - fixed percentage of each refunded *confirmed* deposit

Every calculation conserves value: ``fee + net == gross`` exactly. Fees are
rounded down to the asset's smallest unit so rounding never takes more than
the stated percentage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN

from .constants import FeeDefaults
from .exceptions import ValidationError
from .results import ValidationReport

logger = logging.getLogger(__name__)

_HUNDRED = Decimal(100)
_ZERO = Decimal("0")


@dataclass(frozen=True)
class FeeCalculation:
    """Result of a single-amount fee calculation."""

    gross: Decimal
    fee: Decimal
    net: Decimal  # amount that goes to the recipient
    pct: Decimal
    fee_exempt: bool = False
    exempt_reason: str | None = None

    @property
    def fee_percentage(self) -> str:
        return f"{self.pct:.2f}%"


def _check_inputs(amount: Decimal, pct: Decimal) -> None:
    if amount < 0:
        raise ValidationError("Amount must not be negative", field="amount")
    if pct < 0 or pct > _HUNDRED:
        raise ValidationError("Fee percentage must be between 0 and 100", field="pct")


def platform_fee(
    amount: Decimal,
    pct: Decimal = FeeDefaults.PLATFORM_FEE_PCT,
    *,
    quantum: Decimal = FeeDefaults.DEFAULT_QUANTUM,
) -> FeeCalculation:
    """Split ``amount`` into fee and net at ``pct`` percent.

    Args:
        amount: Gross amount in asset units (e.g. 10.5 SOL)
        pct: Fee percentage, 0-100
        quantum: Smallest unit of the asset; the fee is rounded down to it

    Returns:
        FeeCalculation with ``fee + net == gross``
    """
    amount = Decimal(amount)
    pct = Decimal(pct)
    _check_inputs(amount, pct)

    if pct == 0:
        return FeeCalculation(amount, _ZERO, amount, pct, True, "fee_disabled")

    fee = (amount * pct / _HUNDRED).quantize(quantum, rounding=ROUND_DOWN)
    return FeeCalculation(gross=amount, fee=fee, net=amount - fee, pct=pct)


def cancellation_fee(
    amount: Decimal,
    *,
    confirmed: bool,
    pct: Decimal = FeeDefaults.CANCELLATION_FEE_PCT,
    quantum: Decimal = FeeDefaults.DEFAULT_QUANTUM,
) -> FeeCalculation:
    """Fee withheld from a refunded deposit. Unconfirmed deposits are never charged."""
    if not confirmed:
        amount = Decimal(amount)
        _check_inputs(amount, Decimal(pct))
        return FeeCalculation(amount, _ZERO, amount, Decimal(pct), True, "unconfirmed_deposit")
    return platform_fee(amount, pct, quantum=quantum)


@dataclass(frozen=True)
class TraditionalFeeSplit:
    """Payout of a completed traditional escrow."""

    buyer_payment: FeeCalculation
    seller_deposit_return: Decimal

    @property
    def seller_deposit_fee(self) -> Decimal:
        return _ZERO

    @property
    def seller_total(self) -> Decimal:
        return self.buyer_payment.net + self.seller_deposit_return

    @property
    def treasury_total(self) -> Decimal:
        return self.buyer_payment.fee

    @property
    def gross(self) -> Decimal:
        return self.buyer_payment.gross + self.seller_deposit_return


def traditional_fees(
    buyer_amount: Decimal,
    seller_deposit: Decimal,
    pct: Decimal = FeeDefaults.PLATFORM_FEE_PCT,
    *,
    quantum: Decimal = FeeDefaults.DEFAULT_QUANTUM,
) -> TraditionalFeeSplit:
    if seller_deposit < 0:
        raise ValidationError("Seller deposit must not be negative", field="seller_deposit")
    return TraditionalFeeSplit(
        buyer_payment=platform_fee(buyer_amount, pct, quantum=quantum),
        seller_deposit_return=Decimal(seller_deposit),
    )


@dataclass(frozen=True)
class SwapFeeSplit:
    """Fees for both legs of an atomic swap."""

    party_a: FeeCalculation
    party_b: FeeCalculation

    @property
    def treasury_total(self) -> Decimal:
        """Sum of both fees. Only meaningful as one figure when both legs share an asset."""
        return self.party_a.fee + self.party_b.fee


def atomic_swap_fees(
    amount_a: Decimal,
    amount_b: Decimal,
    pct: Decimal = FeeDefaults.PLATFORM_FEE_PCT,
    *,
    quantum_a: Decimal = FeeDefaults.DEFAULT_QUANTUM,
    quantum_b: Decimal = FeeDefaults.DEFAULT_QUANTUM,
) -> SwapFeeSplit:
    return SwapFeeSplit(
        party_a=platform_fee(amount_a, pct, quantum=quantum_a),
        party_b=platform_fee(amount_b, pct, quantum=quantum_b),
    )


def validate_fee_config(pct: Decimal) -> ValidationReport:
    """Check a platform fee percentage; 0% and >10% are allowed but flagged."""
    pct = Decimal(pct)
    errors: list[str] = []
    warnings: list[str] = []
    if pct < 0:
        errors.append("Fee percentage cannot be negative")
    elif pct > _HUNDRED:
        errors.append("Fee percentage cannot exceed 100%")
    elif pct == 0:
        warnings.append("Fee percentage is 0% - no fees will be collected")
    elif pct > FeeDefaults.HIGH_FEE_WARNING_PCT:
        warnings.append(f"Fee percentage {pct}% is unusually high (> {FeeDefaults.HIGH_FEE_WARNING_PCT}%)")
    return ValidationReport(valid=not errors, errors=tuple(errors), warnings=tuple(warnings))


@dataclass(frozen=True)
class FeePolicy:
    """Fee settings bound to one engine instance."""

    platform_pct: Decimal
    cancellation_pct: Decimal
    treasury_wallet: str
    unilateral_cancellation_fee: bool = False

    @classmethod
    def from_settings(cls, settings) -> "FeePolicy":
        report = validate_fee_config(settings.fee_pct)
        for warning in report.warnings:
            logger.warning(warning)
        if not settings.treasury_wallet:
            logger.warning("No treasury wallet configured; platform fees will stay in custody")
        return cls(
            platform_pct=settings.fee_pct,
            cancellation_pct=settings.cancellation_fee_pct,
            treasury_wallet=settings.treasury_wallet,
            unilateral_cancellation_fee=settings.unilateral_cancellation_fee,
        )

    def platform(self, amount: Decimal, quantum: Decimal) -> FeeCalculation:
        return platform_fee(amount, self.platform_pct, quantum=quantum)

    def traditional(self, buyer_amount: Decimal, seller_deposit: Decimal, quantum: Decimal) -> TraditionalFeeSplit:
        return traditional_fees(buyer_amount, seller_deposit, self.platform_pct, quantum=quantum)

    def swap(
        self, amount_a: Decimal, amount_b: Decimal, quantum_a: Decimal, quantum_b: Decimal
    ) -> SwapFeeSplit:
        return atomic_swap_fees(amount_a, amount_b, self.platform_pct, quantum_a=quantum_a, quantum_b=quantum_b)

    def cancellation(self, amount: Decimal, quantum: Decimal, *, confirmed: bool) -> FeeCalculation:
        return cancellation_fee(amount, confirmed=confirmed, pct=self.cancellation_pct, quantum=quantum)
