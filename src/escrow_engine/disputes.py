"""
Dispute coordinator: freezes a contract on dispute, collects evidence and
applies an administrator's resolution.

A dispute moves the contract to ``disputed``, which every automatic release
path refuses, and targets either the whole contract or one milestone. Only
an administrator's resolution moves funds afterwards. Resolutions are
fee-free and conserve value: what the buyer side has in custody is paid out
exactly, and the seller's own deposit always goes back to the seller.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Collection, Optional

from .constants import DisputeLimits
from .exceptions import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from .models import (
    ActionType,
    AdminAction,
    Asset,
    AtomicSwapTerms,
    CancellationStatus,
    Dispute,
    DisputePriority,
    DisputeStatus,
    EscrowContract,
    EscrowStatus,
    Evidence,
    EvidenceType,
    MilestoneStatus,
    PartyRole,
    ReleaseType,
    ResolutionAction,
    TimeoutType,
    TransferInstruction,
    new_id,
    to_decimal,
)
from .notifications import NotificationType
from .engines.base import SWAP_EVENT, SWAP_LEG_A, SWAP_LEG_B, EngineContext, payouts, transition

logger = logging.getLogger(__name__)

_FILE_EVIDENCE = (EvidenceType.IMAGE, EvidenceType.DOCUMENT, EvidenceType.SCREENSHOT)


def _parse_enum(enum_cls, value, label: str, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"Invalid {label}. Must be one of: {choices}", field=field_name) from None


class DisputeCoordinator:
    """Raises, documents and resolves disputes."""

    def __init__(self, ctx: EngineContext, admin_wallets: Optional[Collection[str]] = None) -> None:
        self.ctx = ctx
        self.admin_wallets = frozenset(admin_wallets or ())

    # -- raising -------------------------------------------------------------

    async def raise_dispute(
        self,
        escrow_id: str,
        actor: str,
        reason: str,
        milestone_id: Optional[str] = None,
        description: Optional[str] = None,
        priority: DisputePriority | str = DisputePriority.NORMAL,
    ) -> Dispute:
        """
        Open a dispute and freeze the contract.

        Args:
            escrow_id: Contract under dispute
            actor: Buyer or seller raising it
            reason: Short reason, at least 10 characters
            milestone_id: Milestone the dispute is about, if any
            description: Longer free-form account
            priority: low, normal, high or urgent

        Raises:
            AuthorizationError: Actor is not a party
            ValidationError: Reason too short or unknown priority
            StateConflictError: Contract closed, a dispute already open for the
                same scope, a cancellation pending, or a payout in flight
        """
        contract = await self.ctx.load_contract(escrow_id)
        role = self.ctx.require_party(contract, actor, "raise disputes")

        reason = (reason or "").strip()
        if len(reason) < DisputeLimits.MIN_REASON_LENGTH:
            raise ValidationError(
                f"Dispute reason must be at least {DisputeLimits.MIN_REASON_LENGTH} characters",
                field="reason",
            )
        priority = _parse_enum(DisputePriority, priority, "priority", "priority")

        if contract.is_terminal:
            raise StateConflictError(
                f"Cannot dispute an escrow that is {contract.status.value}",
                actual=contract.status,
            )
        for existing in await self.ctx.store.list_disputes(escrow_id):
            if existing.is_open and existing.milestone_id == milestone_id:
                scope = "this milestone" if milestone_id else "this escrow"
                raise StateConflictError(f"A dispute is already open for {scope}")
        for request in await self.ctx.store.list_cancellations(escrow_id):
            if request.status in (CancellationStatus.PENDING, CancellationStatus.APPROVED):
                raise StateConflictError(
                    "Cannot raise a dispute while a cancellation request is pending",
                    actual=request.status,
                )
        if await self.ctx.settlement_in_flight(escrow_id):
            raise StateConflictError("Cannot raise a dispute while a payout is in progress")

        milestone = None
        if milestone_id is not None:
            milestone = await self.ctx.store.get_milestone(milestone_id)
            if milestone is None or milestone.escrow_id != escrow_id:
                raise NotFoundError("Milestone", milestone_id)
            if milestone.status is MilestoneStatus.RELEASED:
                raise StateConflictError(
                    "Released milestones cannot be disputed", actual=milestone.status
                )

        if contract.status is not EscrowStatus.DISPUTED:
            transition(contract, EscrowStatus.DISPUTED)
            contract = await self.ctx.save_contract(contract)
        if milestone is not None:
            milestone.status = MilestoneStatus.DISPUTED
            await self.ctx.store.update_milestone(milestone)

        dispute = Dispute(
            id=new_id("dsp"),
            escrow_id=escrow_id,
            raised_by=actor,
            party_role=role,
            reason=reason,
            milestone_id=milestone_id,
            description=description,
            priority=priority,
            created_at=self.ctx.clock(),
        )
        await self.ctx.store.insert_dispute(dispute)

        await self.ctx.resolve_timeouts(
            escrow_id, "disputed",
            [TimeoutType.DEPOSIT, TimeoutType.CONFIRMATION, TimeoutType.MILESTONE, TimeoutType.SWAP],
        )
        await self.ctx.schedule_timeout(escrow_id, TimeoutType.DISPUTE)

        await self.ctx.record(
            contract,
            actor,
            ActionType.DISPUTED,
            reason,
            {"dispute_id": dispute.id, "priority": priority.value},
            milestone_id=milestone_id,
        )
        counterparty = contract.seller_wallet if role is PartyRole.BUYER else contract.buyer_wallet
        self.ctx.notify(
            counterparty,
            NotificationType.DISPUTE_RAISED,
            contract,
            f"The {role.value} raised a dispute: {reason}",
            {"dispute_id": dispute.id},
        )
        logger.warning("Dispute %s raised on escrow %s by %s", dispute.id, escrow_id, role.value)
        return dispute

    async def get_disputes(self, escrow_id: str) -> list[Dispute]:
        return await self.ctx.store.list_disputes(escrow_id)

    async def open_admin_review(self, escrow_id: str, admin_wallet: str, reason: str) -> Dispute:
        """
        Freeze a contract escalated to admin review so it can be resolved.

        Returns the open contract-wide dispute if there already is one.
        """
        contract = await self.ctx.load_contract(escrow_id)
        self._require_admin(contract, admin_wallet)
        if contract.is_terminal:
            raise StateConflictError(
                f"Cannot review an escrow that is {contract.status.value}", actual=contract.status
            )
        for existing in await self.ctx.store.list_disputes(escrow_id):
            if existing.is_open and existing.milestone_id is None:
                return existing
        for request in await self.ctx.store.list_cancellations(escrow_id):
            if request.status in (CancellationStatus.PENDING, CancellationStatus.APPROVED):
                raise StateConflictError(
                    "Cannot open a review while a cancellation request is pending",
                    actual=request.status,
                )
        if await self.ctx.settlement_in_flight(escrow_id):
            raise StateConflictError("Cannot open a review while a payout is in progress")

        if contract.status is not EscrowStatus.DISPUTED:
            transition(contract, EscrowStatus.DISPUTED)
            contract = await self.ctx.save_contract(contract)
        dispute = Dispute(
            id=new_id("dsp"),
            escrow_id=escrow_id,
            raised_by=admin_wallet,
            party_role=PartyRole.ADMIN,
            reason=reason or "Administrative review",
            priority=DisputePriority.HIGH,
            created_at=self.ctx.clock(),
        )
        await self.ctx.store.insert_dispute(dispute)
        await self.ctx.resolve_timeouts(
            escrow_id, "admin_review",
            [TimeoutType.DEPOSIT, TimeoutType.CONFIRMATION, TimeoutType.MILESTONE, TimeoutType.SWAP],
        )
        await self.ctx.record(
            contract,
            admin_wallet,
            ActionType.ADMIN_ACTION,
            f"Admin review opened: {dispute.reason}",
            {"dispute_id": dispute.id},
        )
        self.ctx.notify(
            [contract.buyer_wallet, contract.seller_wallet],
            NotificationType.DISPUTE_RAISED,
            contract,
            "An administrator opened a review of this escrow",
            {"dispute_id": dispute.id},
        )
        return dispute

    # -- evidence ------------------------------------------------------------

    async def submit_evidence(
        self,
        escrow_id: str,
        submitted_by: str,
        evidence_type: EvidenceType | str,
        content: Optional[str] = None,
        file_url: Optional[str] = None,
        dispute_id: Optional[str] = None,
        milestone_id: Optional[str] = None,
    ) -> Evidence:
        evidence_type = _parse_enum(EvidenceType, evidence_type, "evidence type", "evidence_type")
        if evidence_type is EvidenceType.TEXT and not content:
            raise ValidationError("Text evidence requires content", field="content")
        if evidence_type in _FILE_EVIDENCE and not file_url:
            raise ValidationError(f"{evidence_type.value} evidence requires a file URL", field="file_url")
        if evidence_type is EvidenceType.LINK and not content:
            raise ValidationError("Link evidence requires content with the URL", field="content")

        contract = await self.ctx.load_contract(escrow_id)
        role = contract.role_of(submitted_by)
        if role is None:
            raise AuthorizationError("Only buyer or seller can submit evidence", actor=submitted_by)

        if dispute_id is not None:
            dispute = await self.ctx.store.get_dispute(dispute_id)
            if dispute is None or dispute.escrow_id != escrow_id:
                raise NotFoundError("Dispute", dispute_id)

        evidence = Evidence(
            id=new_id("evd"),
            escrow_id=escrow_id,
            submitted_by=submitted_by,
            party_role=role,
            evidence_type=evidence_type,
            content=content,
            file_url=file_url,
            dispute_id=dispute_id,
            milestone_id=milestone_id,
            created_at=self.ctx.clock(),
        )
        await self.ctx.store.insert_evidence(evidence)

        await self.ctx.record(
            contract,
            submitted_by,
            ActionType.SUBMITTED,
            f"Evidence submitted: {evidence_type.value}",
            {"evidence_id": evidence.id, "dispute_id": dispute_id},
            milestone_id=milestone_id,
        )
        counterparty = contract.seller_wallet if role is PartyRole.BUYER else contract.buyer_wallet
        self.ctx.notify(
            counterparty,
            NotificationType.EVIDENCE_SUBMITTED,
            contract,
            f"The {role.value} submitted {evidence_type.value} evidence",
            {"evidence_id": evidence.id},
        )
        return evidence

    async def list_evidence(self, escrow_id: str, dispute_id: Optional[str] = None) -> list[Evidence]:
        rows = await self.ctx.store.list_evidence(escrow_id)
        if dispute_id is not None:
            rows = [e for e in rows if e.dispute_id == dispute_id]
        return rows

    # -- admin resolution ----------------------------------------------------

    def _require_admin(self, contract: EscrowContract, admin_wallet: str) -> None:
        if not admin_wallet or contract.is_party(admin_wallet):
            raise AuthorizationError("Escrow parties cannot resolve disputes", actor=admin_wallet)
        if self.admin_wallets and admin_wallet not in self.admin_wallets:
            raise AuthorizationError("Only administrators can resolve disputes", actor=admin_wallet)

    async def resolve_dispute(
        self,
        dispute_id: str,
        admin_wallet: str,
        action: ResolutionAction | str,
        notes: str,
        amount_to_buyer: Optional[Decimal | str | int] = None,
        amount_to_seller: Optional[Decimal | str | int] = None,
    ) -> Dispute:
        """
        Apply an administrator's ruling and close the contract.

        ``release_to_seller`` pays the buyer side's funds in custody to the
        seller, ``refund_to_buyer`` returns them to the buyer, and
        ``partial_split`` divides them; the split must add up exactly to what
        is in custody. For atomic swaps, releasing completes every unpaid leg
        and refunding returns every unpaid leg to its depositor.

        Raises:
            AuthorizationError: Caller is not an administrator
            ValidationError: Notes length, unknown action, or a bad split
            StateConflictError: Dispute already resolved or contract not disputed
        """
        action = _parse_enum(ResolutionAction, action, "resolution action", "action")
        notes = (notes or "").strip()
        if len(notes) < DisputeLimits.MIN_RESOLUTION_NOTES_LENGTH:
            raise ValidationError(
                f"Resolution notes must be at least {DisputeLimits.MIN_RESOLUTION_NOTES_LENGTH} "
                "characters to provide sufficient explanation",
                field="notes",
            )
        if len(notes) > DisputeLimits.MAX_RESOLUTION_NOTES_LENGTH:
            raise ValidationError(
                f"Resolution notes cannot exceed {DisputeLimits.MAX_RESOLUTION_NOTES_LENGTH} characters",
                field="notes",
            )

        dispute = await self.ctx.store.get_dispute(dispute_id)
        if dispute is None:
            raise NotFoundError("Dispute", dispute_id)
        contract = await self.ctx.load_contract(dispute.escrow_id)
        self._require_admin(contract, admin_wallet)
        if not dispute.is_open:
            raise StateConflictError("Dispute is already resolved", actual=dispute.status)
        if contract.status is not EscrowStatus.DISPUTED:
            raise StateConflictError(
                "Escrow is not under dispute", expected=EscrowStatus.DISPUTED, actual=contract.status
            )

        if isinstance(contract.terms, AtomicSwapTerms):
            if action is ResolutionAction.PARTIAL_SPLIT:
                raise ValidationError("Partial split is not supported for atomic swaps", field="action")
            transfers, to_buyer, to_seller = await self._swap_resolution(contract, action)
        else:
            transfers, to_buyer, to_seller = await self._payout_resolution(
                contract, action, amount_to_buyer, amount_to_seller
            )

        tx_refs = await self._settle(contract, dispute.id, transfers, admin_wallet)

        if action is ResolutionAction.RELEASE_TO_SELLER:
            await self._release_open_milestones(contract, tx_refs)

        now = self.ctx.clock()
        await self.ctx.store.mark_admin_actions_resolved(contract.id)
        await self.ctx.store.insert_admin_action(
            AdminAction(
                id=new_id("adm"),
                escrow_id=contract.id,
                admin_wallet=admin_wallet,
                action="resolved_dispute",
                decision=action.value,
                notes=notes,
                dispute_id=dispute.id,
                amount_to_buyer=to_buyer,
                amount_to_seller=to_seller,
                tx_refs=tx_refs,
                resolved=True,
                created_at=now,
            )
        )

        dispute.status = DisputeStatus.RESOLVED
        dispute.resolution_action = action
        dispute.resolution_notes = notes
        dispute.resolved_by = admin_wallet
        dispute.resolved_at = now
        dispute.resolution_tx_refs = tx_refs
        dispute = await self.ctx.store.update_dispute(dispute)
        for other in await self.ctx.store.list_disputes(contract.id):
            if other.id != dispute.id and other.is_open:
                other.status = DisputeStatus.CLOSED
                other.resolution_notes = f"Closed by resolution of dispute {dispute.id}"
                other.resolved_at = now
                await self.ctx.store.update_dispute(other)

        contract = await self.ctx.load_contract(contract.id)
        if action is ResolutionAction.REFUND_TO_BUYER:
            transition(contract, EscrowStatus.REFUNDED, resolving_dispute=True)
        else:
            transition(contract, EscrowStatus.COMPLETED, resolving_dispute=True)
        contract.completed_at = now
        if isinstance(contract.terms, AtomicSwapTerms) and action is ResolutionAction.RELEASE_TO_SELLER:
            contract.terms.swap_executed = True
            contract.terms.swap_tx_refs = contract.terms.swap_tx_refs + tx_refs
            contract.terms.executed_at = now
        contract = await self.ctx.save_contract(contract)
        await self.ctx.resolve_timeouts(contract.id, "dispute_resolved")

        await self.ctx.record(
            contract,
            admin_wallet,
            ActionType.ADMIN_ACTION,
            f"Dispute resolved: {action.value}",
            {
                "dispute_id": dispute.id,
                "amount_to_buyer": str(to_buyer),
                "amount_to_seller": str(to_seller),
                "tx_refs": tx_refs,
            },
            milestone_id=dispute.milestone_id,
        )
        self.ctx.notify(
            [contract.buyer_wallet, contract.seller_wallet],
            NotificationType.DISPUTE_RESOLVED,
            contract,
            f"Dispute resolved by admin: {action.value.replace('_', ' ')}",
            {"dispute_id": dispute.id, "tx_refs": tx_refs},
        )
        logger.info("Dispute %s resolved with %s by %s", dispute.id, action.value, admin_wallet)
        return dispute

    async def _payout_resolution(
        self,
        contract: EscrowContract,
        action: ResolutionAction,
        amount_to_buyer: Optional[Decimal | str | int],
        amount_to_seller: Optional[Decimal | str | int],
    ) -> tuple[list[tuple[Asset, TransferInstruction]], Decimal, Decimal]:
        held = await self.ctx.held_funds(contract)
        asset = contract.terms.asset
        pool = held.get((PartyRole.BUYER, asset), Decimal("0"))
        seller_own = held.get((PartyRole.SELLER, asset), Decimal("0"))

        match action:
            case ResolutionAction.RELEASE_TO_SELLER:
                to_buyer, to_seller = Decimal("0"), pool
            case ResolutionAction.REFUND_TO_BUYER:
                to_buyer, to_seller = pool, Decimal("0")
            case ResolutionAction.PARTIAL_SPLIT:
                if amount_to_buyer is None or amount_to_seller is None:
                    raise ValidationError(
                        "Partial split requires amount_to_buyer and amount_to_seller", field="amount"
                    )
                to_buyer = to_decimal(amount_to_buyer, "amount_to_buyer")
                to_seller = to_decimal(amount_to_seller, "amount_to_seller")
                if to_buyer < 0 or to_seller < 0:
                    raise ValidationError("Split amounts must not be negative", field="amount")
                if to_buyer + to_seller != pool:
                    raise ValidationError(
                        f"Split amounts must add up to the escrowed amount of {pool} {asset.symbol}",
                        field="amount",
                    )

        transfers = payouts([
            (contract.buyer_wallet, to_buyer, ReleaseType.DISPUTE_RESOLUTION),
            (contract.seller_wallet, to_seller, ReleaseType.DISPUTE_RESOLUTION),
            (contract.seller_wallet, seller_own, ReleaseType.SECURITY_DEPOSIT_RETURN),
        ])
        return [(asset, t) for t in transfers], to_buyer, to_seller

    async def _swap_resolution(
        self, contract: EscrowContract, action: ResolutionAction
    ) -> tuple[list[tuple[Asset, TransferInstruction]], Decimal, Decimal]:
        terms = contract.terms
        if not isinstance(terms, AtomicSwapTerms):
            raise StateConflictError("Not an atomic swap escrow", expected="atomic_swap", actual=contract.kind.value)
        settled = await self.ctx.confirmed_swap_legs(contract.id)
        held = await self.ctx.held_funds(contract)
        release = action is ResolutionAction.RELEASE_TO_SELLER

        entries: list[tuple[Asset, TransferInstruction]] = []
        to_buyer = to_seller = Decimal("0")
        legs = (
            (PartyRole.BUYER, terms.asset_a, SWAP_LEG_A, contract.seller_wallet, contract.buyer_wallet),
            (PartyRole.SELLER, terms.asset_b, SWAP_LEG_B, contract.buyer_wallet, contract.seller_wallet),
        )
        for role, asset, leg_key, counterparty, depositor in legs:
            if leg_key in settled or SWAP_EVENT in settled:
                continue
            amount = held.get((role, asset), Decimal("0"))
            recipient = counterparty if release else depositor
            for t in payouts([(recipient, amount, ReleaseType.DISPUTE_RESOLUTION)]):
                entries.append((asset, t))
            if recipient == contract.buyer_wallet:
                to_buyer += amount
            else:
                to_seller += amount
        return entries, to_buyer, to_seller

    async def _settle(
        self,
        contract: EscrowContract,
        dispute_id: str,
        entries: list[tuple[Asset, TransferInstruction]],
        actor: str,
    ) -> list[str]:
        by_asset: dict[Asset, list[TransferInstruction]] = defaultdict(list)
        for asset, transfer in entries:
            by_asset[asset].append(transfer)
        tx_refs = []
        for asset, transfers in by_asset.items():
            settlement = await self.ctx.settle(
                contract,
                f"dispute:{dispute_id}:{asset.symbol}",
                ReleaseType.DISPUTE_RESOLUTION,
                asset,
                transfers,
                actor,
                allowed=(EscrowStatus.DISPUTED,),
            )
            if settlement.tx_ref:
                tx_refs.append(settlement.tx_ref)
        return tx_refs

    async def _release_open_milestones(self, contract: EscrowContract, tx_refs: list[str]) -> None:
        now = self.ctx.clock()
        for milestone in await self.ctx.store.list_milestones(contract.id):
            if milestone.status is MilestoneStatus.RELEASED:
                continue
            milestone.status = MilestoneStatus.RELEASED
            milestone.released_at = now
            milestone.tx_ref = tx_refs[0] if tx_refs else None
            await self.ctx.store.update_milestone(milestone)
