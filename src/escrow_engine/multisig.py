"""
Multi-signature wallet support for escrow parties.

Detects whether a party wallet is owned by a known multi-sig program and
tracks signature collection for transactions that need M-of-N approval.

Features:
- Provider registry keyed by owning program id
- Threshold validation (1 <= M <= N <= 20)
- Signature collection: pending -> partially_signed -> ready -> executed
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from .audit import AuditLog
from .constants import MultiSigLimits
from .exceptions import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from .ledger.signer import TransactionSigner
from .models import ActionType, MultiSigProvider, MultiSigStatus, MultiSigTransaction, new_id, utcnow
from .results import ValidationReport
from .store.base import EscrowStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderSpec:
    """Known multi-sig program."""
    provider: MultiSigProvider
    label: str
    assumed_threshold: Optional[int] = None
    assumed_signers: Optional[int] = None


def _squads(label: str) -> ProviderSpec:
    # account layout is not decoded; Squads vaults default to 2-of-3
    return ProviderSpec(
        MultiSigProvider.SQUADS,
        label,
        MultiSigLimits.SQUADS_ASSUMED_THRESHOLD,
        MultiSigLimits.SQUADS_ASSUMED_SIGNERS,
    )


# Owning program id -> provider
PROVIDER_REGISTRY: dict[str, ProviderSpec] = {
    "SMPLecH534NA9acpos4G6x7uf3LWbCAwZQE9e8ZekMu": _squads("squads_v3"),
    "SQDS4ep65T869zMMBKyuUq6aD6EgTu8psMjkvj52pCf": _squads("squads_v4"),
    "GokivDYuQXPZCWRkwMhdH2h91KpDQXBEmpgBgs55bnpH": ProviderSpec(MultiSigProvider.GOKI, "goki"),
    "MSPdQo5ZdrPh6rU1LsvUv5nRhAnj1mj6YQEqBUq8YwZ": ProviderSpec(MultiSigProvider.SERUM, "serum"),
}


@dataclass
class MultiSigWalletInfo:
    """Result of multi-sig detection for one address."""
    address: str
    is_multisig: bool
    provider: Optional[MultiSigProvider] = None
    threshold: Optional[int] = None
    total_signers: Optional[int] = None
    signers: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "is_multisig": self.is_multisig,
            "provider": self.provider.value if self.provider else None,
            "threshold": self.threshold,
            "total_signers": self.total_signers,
            "signers": list(self.signers),
            "metadata": dict(self.metadata),
        }


@dataclass
class SignEligibility:
    can_sign: bool
    reason: Optional[str] = None


def validate_threshold(threshold: int, total_signers: int) -> ValidationReport:
    """Check an M-of-N signature scheme."""
    errors = []
    if threshold < 1:
        errors.append("Threshold must be at least 1")
    elif threshold > total_signers:
        errors.append("Threshold cannot exceed total signers")
    if total_signers > MultiSigLimits.MAX_SIGNERS:
        errors.append(f"Maximum {MultiSigLimits.MAX_SIGNERS} signers supported")
    return ValidationReport(valid=not errors, errors=tuple(errors))


def _status_for(signatures: int, required: int) -> MultiSigStatus:
    if signatures == 0:
        return MultiSigStatus.PENDING
    if signatures < required:
        return MultiSigStatus.PARTIALLY_SIGNED
    return MultiSigStatus.READY


class MultiSigCoordinator:
    """Detects multi-sig party wallets and collects signatures."""

    def __init__(
        self,
        store: EscrowStore,
        signer: TransactionSigner,
        audit: AuditLog,
        registry: Optional[dict[str, ProviderSpec]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.signer = signer
        self.audit = audit
        self.registry = registry if registry is not None else PROVIDER_REGISTRY
        self.clock = clock

    # -- detection -----------------------------------------------------------

    async def detect(self, address: str) -> MultiSigWalletInfo:
        """
        Inspect the account owning ``address``.

        Args:
            address: Wallet address to inspect

        Returns:
            MultiSigWalletInfo; ``is_multisig`` is False for unknown owners
            and for addresses with no account on the ledger

        Raises:
            ExternalFailure: The ledger could not be reached
        """
        info = await self.signer.get_account_info(address)
        if info is None:
            return MultiSigWalletInfo(address=address, is_multisig=False)

        spec = self.registry.get(info.owner)
        if spec is None:
            return MultiSigWalletInfo(address=address, is_multisig=False)

        logger.info("Wallet %s is a %s multi-sig", address, spec.label)
        return MultiSigWalletInfo(
            address=address,
            is_multisig=True,
            provider=spec.provider,
            threshold=spec.assumed_threshold,
            total_signers=spec.assumed_signers,
            metadata={"program_id": info.owner, "program": spec.label, "data_length": info.data_length},
        )

    async def check_escrow_multisig(self, buyer_wallet: str, seller_wallet: str) -> dict[str, Any]:
        buyer, seller = await asyncio.gather(self.detect(buyer_wallet), self.detect(seller_wallet))
        return {
            "buyer_is_multisig": buyer.is_multisig,
            "seller_is_multisig": seller.is_multisig,
            "buyer_info": buyer if buyer.is_multisig else None,
            "seller_info": seller if seller.is_multisig else None,
        }

    # -- signature collection ------------------------------------------------

    async def create_transaction(
        self,
        escrow_id: str,
        wallet: str,
        provider: MultiSigProvider,
        required_signatures: int,
        authorized_signers: list[str],
        transaction_data: str = "",
    ) -> MultiSigTransaction:
        signers = list(dict.fromkeys(authorized_signers))
        report = validate_threshold(required_signatures, len(signers))
        if not report.valid:
            raise ValidationError("; ".join(report.errors), field="required_signatures")

        tx = MultiSigTransaction(
            id=new_id("msig"),
            escrow_id=escrow_id,
            wallet=wallet,
            provider=provider,
            required_signatures=required_signatures,
            authorized_signers=signers,
            transaction_data=transaction_data,
        )
        await self.store.insert_multisig(tx)
        await self._record(tx, wallet, ActionType.MULTISIG_CREATED)
        logger.info(
            "Multi-sig transaction %s created for escrow %s (%d of %d)",
            tx.id, escrow_id, required_signatures, len(signers),
        )
        return tx

    async def _load(self, tx_id: str) -> MultiSigTransaction:
        tx = await self.store.get_multisig(tx_id)
        if tx is None:
            raise NotFoundError("Multi-sig transaction", tx_id)
        return tx

    async def _record(self, tx: MultiSigTransaction, actor: str, action: ActionType) -> None:
        await self.audit.record(
            tx.escrow_id,
            actor,
            action,
            notes=f"Multi-sig transaction {tx.id} {tx.status.value}",
            metadata={
                "multisig_id": tx.id,
                "wallet": tx.wallet,
                "signatures": tx.current_signatures,
                "required_signatures": tx.required_signatures,
            },
        )

    async def sign(self, tx_id: str, signer_wallet: str) -> MultiSigTransaction:
        """
        Record one signature and recompute the status.

        Raises:
            NotFoundError: Unknown transaction
            AuthorizationError: Signer is not in the authorized set
            StateConflictError: Already signed by this wallet, or the
                transaction is executed or cancelled
        """
        tx = await self._load(tx_id)
        if tx.status in (MultiSigStatus.EXECUTED, MultiSigStatus.CANCELLED):
            raise StateConflictError(
                f"Transaction already {tx.status.value}",
                expected=[MultiSigStatus.PENDING.value, MultiSigStatus.PARTIALLY_SIGNED.value],
                actual=tx.status,
            )
        if signer_wallet not in tx.authorized_signers:
            raise AuthorizationError("Wallet not authorized to sign", actor=signer_wallet)
        if signer_wallet in tx.signed_by:
            raise StateConflictError("Wallet has already signed this transaction")

        tx.signed_by.append(signer_wallet)
        tx.status = _status_for(tx.current_signatures, tx.required_signatures)
        # a concurrent signer bumps the version and this write fails
        tx = await self.store.update_multisig(tx)
        await self._record(tx, signer_wallet, ActionType.MULTISIG_SIGNED)
        logger.info(
            "Multi-sig %s signed by %s (%d/%d, %s)",
            tx.id, signer_wallet, tx.current_signatures, tx.required_signatures, tx.status.value,
        )
        return tx

    async def can_wallet_sign(self, tx_id: str, wallet: str) -> SignEligibility:
        tx = await self.store.get_multisig(tx_id)
        if tx is None:
            return SignEligibility(False, "Transaction not found")
        if tx.status is MultiSigStatus.EXECUTED:
            return SignEligibility(False, "Transaction already executed")
        if tx.status is MultiSigStatus.CANCELLED:
            return SignEligibility(False, "Transaction cancelled")
        if wallet in tx.signed_by:
            return SignEligibility(False, "Already signed by this wallet")
        if wallet not in tx.authorized_signers:
            return SignEligibility(False, "Wallet not authorized to sign")
        return SignEligibility(True)

    async def is_ready(self, tx_id: str) -> bool:
        tx = await self.store.get_multisig(tx_id)
        return tx is not None and tx.status is MultiSigStatus.READY

    async def get_pending(self, escrow_id: str) -> list[MultiSigTransaction]:
        open_statuses = (MultiSigStatus.PENDING, MultiSigStatus.PARTIALLY_SIGNED, MultiSigStatus.READY)
        pending = [t for t in await self.store.list_multisig(escrow_id) if t.status in open_statuses]
        return sorted(pending, key=lambda t: t.created_at, reverse=True)

    async def mark_executed(
        self, tx_id: str, tx_ref: str, *, actor: Optional[str] = None
    ) -> MultiSigTransaction:
        """Record the on-chain execution of a fully signed transaction."""
        tx = await self._load(tx_id)
        if tx.status is not MultiSigStatus.READY:
            raise StateConflictError(
                f"Transaction needs {tx.required_signatures} signatures before execution, "
                f"has {tx.current_signatures}",
                expected=MultiSigStatus.READY,
                actual=tx.status,
            )
        tx.status = MultiSigStatus.EXECUTED
        tx.tx_ref = tx_ref
        tx.executed_at = self.clock()
        tx = await self.store.update_multisig(tx)
        await self._record(tx, actor or tx.wallet, ActionType.MULTISIG_EXECUTED)
        logger.info("Multi-sig %s executed (%s)", tx.id, tx_ref)
        return tx

    async def cancel(self, tx_id: str, *, actor: Optional[str] = None) -> MultiSigTransaction:
        tx = await self._load(tx_id)
        if tx.status in (MultiSigStatus.EXECUTED, MultiSigStatus.CANCELLED):
            raise StateConflictError(f"Transaction already {tx.status.value}", actual=tx.status)
        tx.status = MultiSigStatus.CANCELLED
        tx = await self.store.update_multisig(tx)
        await self._record(tx, actor or tx.wallet, ActionType.MULTISIG_CANCELLED)
        logger.info("Multi-sig %s cancelled", tx.id)
        return tx
