"""
Traditional escrow: the buyer pays, the seller posts a security deposit.

Funds are released only after both parties confirm the deal went through.
The seller then receives the buyer's payment net of the platform fee plus
their own deposit back, fee-free, in a single transaction.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from ..exceptions import AuthorizationError, StateConflictError
from ..models import (
    ActionType,
    Asset,
    EscrowContract,
    EscrowStatus,
    PartyRole,
    ReleaseType,
    Settlement,
    TimeoutType,
    TraditionalTerms,
)
from ..notifications import NotificationType
from .base import (
    EngineContext,
    payouts,
    positive_amount,
    require_status,
    transition,
    validate_parties,
)

logger = logging.getLogger(__name__)

RELEASE_EVENT = "release"


def _terms(contract: EscrowContract) -> TraditionalTerms:
    if not isinstance(contract.terms, TraditionalTerms):
        raise StateConflictError(
            f"Escrow {contract.id} is not a traditional escrow",
            expected="traditional",
            actual=contract.kind.value,
        )
    return contract.terms


class TraditionalEscrowEngine:
    """Dual-deposit, dual-confirmation escrow."""

    def __init__(self, ctx: EngineContext) -> None:
        self.ctx = ctx

    async def create(
        self,
        buyer_wallet: str,
        seller_wallet: str,
        buyer_amount: Decimal | str | int,
        seller_deposit: Decimal | str | int,
        asset: Asset,
        timeout_hours: int = 72,
        description: Optional[str] = None,
    ) -> EscrowContract:
        """
        Create a traditional escrow with its own custodial wallet.

        Args:
            buyer_wallet: Wallet paying for the goods or service
            seller_wallet: Wallet receiving the payment
            buyer_amount: Amount the buyer deposits
            seller_deposit: Security deposit the seller posts
            asset: Asset both deposits are made in
            timeout_hours: Hours the parties have to fund the escrow

        Returns:
            The persisted contract in ``created`` status

        Raises:
            ValidationError: Missing or identical wallets, non-positive amounts
        """
        validate_parties(buyer_wallet, seller_wallet)
        buyer_amount = positive_amount(buyer_amount, "buyer_amount", "Buyer amount")
        seller_deposit = positive_amount(seller_deposit, "seller_deposit", "Seller security deposit")

        terms = TraditionalTerms(buyer_amount=buyer_amount, seller_deposit=seller_deposit, asset=asset)
        contract = await self.ctx.open_contract(
            buyer_wallet, seller_wallet, terms, timeout_hours, TimeoutType.DEPOSIT, description,
        )

        await self.ctx.record(
            contract,
            buyer_wallet,
            ActionType.CREATED,
            "Traditional escrow created",
            {
                "buyer_amount": str(buyer_amount),
                "seller_deposit": str(seller_deposit),
                "token": asset.symbol,
                "timeout_hours": timeout_hours,
            },
        )
        self.ctx.notify(
            [buyer_wallet, seller_wallet],
            NotificationType.ESCROW_CREATED,
            contract,
            f"Escrow created: buyer deposits {buyer_amount} {asset.symbol}, "
            f"seller deposits {seller_deposit} {asset.symbol}",
            {"escrow_wallet": contract.escrow_wallet},
        )
        logger.info("Created traditional escrow %s", contract.id)
        return contract

    async def confirm(
        self, escrow_id: str, actor: str, notes: Optional[str] = None
    ) -> EscrowContract:
        """
        Record one party's confirmation; the second confirmation releases funds.

        Raises:
            StateConflictError: Escrow not fully funded, or the party already confirmed
            AuthorizationError: Actor is neither buyer nor seller
        """
        contract = await self.ctx.load_contract(escrow_id)
        terms = _terms(contract)
        require_status(
            contract, EscrowStatus.FULLY_FUNDED,
            message="Escrow must be fully funded before confirmation",
        )

        now = self.ctx.clock()
        match contract.role_of(actor):
            case PartyRole.BUYER:
                if terms.buyer_confirmed:
                    raise StateConflictError("Buyer has already confirmed", expected=False, actual=True)
                terms.buyer_confirmed = True
                terms.buyer_confirmed_at = now
                role = PartyRole.BUYER
            case PartyRole.SELLER:
                if terms.seller_confirmed:
                    raise StateConflictError("Seller has already confirmed", expected=False, actual=True)
                terms.seller_confirmed = True
                terms.seller_confirmed_at = now
                role = PartyRole.SELLER
            case _:
                raise AuthorizationError("Only buyer or seller can confirm", actor=actor)

        contract = await self.ctx.save_contract(contract)
        await self.ctx.record(
            contract, actor, ActionType.CONFIRMED,
            notes or f"{role.value} confirmed successful transaction",
        )

        terms = _terms(contract)
        if terms.buyer_confirmed and terms.seller_confirmed:
            return await self.release(escrow_id, actor)

        counterparty = contract.seller_wallet if role is PartyRole.BUYER else contract.buyer_wallet
        self.ctx.notify(
            counterparty,
            NotificationType.PARTY_CONFIRMED,
            contract,
            f"{role.value} has confirmed. Please confirm to release funds.",
        )
        return contract

    async def release(self, escrow_id: str, triggered_by: str) -> EscrowContract:
        """
        Pay out a fully confirmed escrow.

        The seller receives the buyer amount minus the platform fee plus the
        full security deposit; the fee goes to the treasury. Safe to call
        again after an ExternalFailure: the payout is keyed per escrow and is
        never sent twice.

        Raises:
            StateConflictError: Not fully funded, or not confirmed by both parties
        """
        contract = await self.ctx.load_contract(escrow_id)
        terms = _terms(contract)
        require_status(contract, EscrowStatus.FULLY_FUNDED)
        if not (terms.buyer_confirmed and terms.seller_confirmed):
            raise StateConflictError(
                "Both parties must confirm before release",
                expected="both_confirmed",
                actual="buyer_confirmed" if terms.buyer_confirmed else (
                    "seller_confirmed" if terms.seller_confirmed else "unconfirmed"
                ),
            )

        settlement = await self._pay_seller(contract, terms, triggered_by)

        contract = await self.ctx.load_contract(escrow_id)
        require_status(contract, EscrowStatus.FULLY_FUNDED)
        transition(contract, EscrowStatus.COMPLETED)
        contract.completed_at = self.ctx.clock()
        contract = await self.ctx.save_contract(contract)
        await self.ctx.resolve_timeouts(escrow_id, "completed")

        await self.ctx.record(
            contract,
            triggered_by,
            ActionType.RELEASED,
            "Funds released to seller",
            {
                "tx_ref": settlement.tx_ref,
                "seller_amount": str(settlement.amount_to(contract.seller_wallet)),
                "platform_fee": str(settlement.amount_to(self.ctx.fees.treasury_wallet)),
            },
        )
        self.ctx.notify(
            [contract.buyer_wallet, contract.seller_wallet],
            NotificationType.FUNDS_RELEASED,
            contract,
            "Funds have been released to the seller",
            {"tx_ref": settlement.tx_ref},
        )
        logger.info("Released traditional escrow %s in %s", escrow_id, settlement.tx_ref)
        return contract

    async def _pay_seller(
        self, contract: EscrowContract, terms: TraditionalTerms, actor: str
    ) -> Settlement:
        split = self.ctx.fees.traditional(terms.buyer_amount, terms.seller_deposit, terms.asset.quantum)
        transfers = payouts([
            (contract.seller_wallet, split.buyer_payment.net, ReleaseType.FULL_RELEASE),
            (contract.seller_wallet, split.seller_deposit_return, ReleaseType.SECURITY_DEPOSIT_RETURN),
            (self.ctx.fees.treasury_wallet, split.treasury_total, ReleaseType.PLATFORM_FEE),
        ])
        return await self.ctx.settle(
            contract, RELEASE_EVENT, ReleaseType.FULL_RELEASE, terms.asset, transfers, actor,
            allowed=(EscrowStatus.FULLY_FUNDED,),
        )
