"""In-process ledger for development and tests.

Balances live in a dict; transactions are really signed with the custodial
keypair so tx refs behave like ledger signatures. Broadcasting the same
signed payload twice applies it once.
"""
from __future__ import annotations

import base64
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Optional, Sequence

import base58

from ..exceptions import LedgerRejectedError
from ..models import Asset, TransferInstruction, new_id
from .base import AccountInfo, SignedTransfer

if TYPE_CHECKING:
    from ..custody import Keypair

logger = logging.getLogger(__name__)


def _asset_key(asset: Asset) -> str:
    return asset.mint or "native"


@dataclass
class SimulatedTransaction:
    tx_ref: str
    sender: str
    asset_key: str
    transfers: list[tuple[str, Decimal]]
    confirmed: bool = False
    failed: bool = False


@dataclass
class SimulatedLedgerClient:
    """Dict-backed LedgerClient with failure injection."""

    auto_confirm: bool = True
    balances: defaultdict[tuple[str, str], Decimal] = field(
        default_factory=lambda: defaultdict(Decimal)
    )
    transactions: dict[str, SimulatedTransaction] = field(default_factory=dict)
    account_infos: dict[str, AccountInfo] = field(default_factory=dict)
    broadcast_count: int = 0
    _pending_failures: list[Exception] = field(default_factory=list)
    _nonce: int = 0

    # -- test helpers --------------------------------------------------------

    def credit(
        self,
        address: str,
        asset: Asset,
        amount: Decimal,
        *,
        sender: str = "external",
        confirmed: bool = True,
    ) -> str:
        """Simulate an inbound transfer; returns its tx ref."""
        tx_ref = base58.b58encode(new_id("dep").encode()).decode()
        self.balances[(address, _asset_key(asset))] += Decimal(amount)
        self.transactions[tx_ref] = SimulatedTransaction(
            tx_ref, sender, _asset_key(asset), [(address, Decimal(amount))], confirmed=confirmed
        )
        return tx_ref

    def balance_of(self, address: str, asset: Asset) -> Decimal:
        return self.balances[(address, _asset_key(asset))]

    def fail_next_broadcast(self, error: Exception) -> None:
        self._pending_failures.append(error)

    def settle(self, tx_ref: str) -> None:
        """Mark a pending transaction confirmed."""
        self.transactions[tx_ref].confirmed = True

    def register_account(self, address: str, info: AccountInfo) -> None:
        self.account_infos[address] = info

    # -- LedgerClient --------------------------------------------------------

    async def get_balance(self, address: str, asset: Asset) -> Decimal:
        return self.balance_of(address, asset)

    async def get_account_info(self, address: str) -> Optional[AccountInfo]:
        return self.account_infos.get(address)

    async def build_transfer(
        self,
        keypair: "Keypair",
        transfers: Sequence[TransferInstruction],
        asset: Asset,
    ) -> SignedTransfer:
        self._nonce += 1
        body = json.dumps({
            "sender": keypair.address,
            "asset": _asset_key(asset),
            "transfers": [[t.recipient, str(t.amount)] for t in transfers],
            "nonce": self._nonce,
        }).encode()
        signature = keypair.sign(body)
        return SignedTransfer(
            tx_ref=base58.b58encode(signature).decode(),
            payload=base64.b64encode(body).decode(),
        )

    async def broadcast(self, signed: SignedTransfer) -> str:
        self.broadcast_count += 1
        if self._pending_failures:
            raise self._pending_failures.pop(0)
        if signed.tx_ref in self.transactions:
            return signed.tx_ref

        body = json.loads(base64.b64decode(signed.payload))
        sender, asset_key = body["sender"], body["asset"]
        transfers = [(r, Decimal(a)) for r, a in body["transfers"]]
        total = sum((a for _, a in transfers), Decimal("0"))
        if self.balances[(sender, asset_key)] < total:
            raise LedgerRejectedError(
                f"Insufficient funds in {sender}: have {self.balances[(sender, asset_key)]}, need {total}",
                tx_ref=signed.tx_ref,
                operation="broadcast",
            )

        self.balances[(sender, asset_key)] -= total
        for recipient, amount in transfers:
            self.balances[(recipient, asset_key)] += amount
        self.transactions[signed.tx_ref] = SimulatedTransaction(
            signed.tx_ref, sender, asset_key, transfers, confirmed=self.auto_confirm
        )
        logger.debug("Simulated tx %s moved %s from %s", signed.tx_ref, total, sender)
        return signed.tx_ref

    async def confirm_transaction(self, tx_ref: str) -> bool:
        tx = self.transactions.get(tx_ref)
        if tx is None:
            return False
        if tx.failed:
            raise LedgerRejectedError("Transaction failed", tx_ref=tx_ref, operation="confirm")
        return tx.confirmed

    async def get_received_amount(
        self, tx_ref: str, recipient: str, asset: Asset
    ) -> Optional[Decimal]:
        tx = self.transactions.get(tx_ref)
        if tx is None:
            return None
        if tx.asset_key != _asset_key(asset) or tx.failed:
            return Decimal("0")
        return sum((a for r, a in tx.transfers if r == recipient), Decimal("0"))

    async def close(self) -> None:
        return None
