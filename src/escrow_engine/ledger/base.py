"""Ledger client interface consumed by the signer and deposit monitor."""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Optional, Protocol, Sequence

from ..models import Asset, TransferInstruction

if TYPE_CHECKING:
    from ..custody import Keypair


@dataclass(frozen=True, slots=True)
class AccountInfo:
    """On-ledger account metadata."""
    owner: str
    lamports: int
    data_length: int
    executable: bool = False


@dataclass(frozen=True, slots=True)
class SignedTransfer:
    """A signed, not necessarily broadcast, transaction.

    ``tx_ref`` is known before broadcast, and re-sending ``payload`` is
    idempotent on the ledger, which is what makes retries safe.
    """
    tx_ref: str
    payload: str = field(repr=False)


class LedgerClient(Protocol):
    async def get_balance(self, address: str, asset: Asset) -> Decimal: ...

    async def get_account_info(self, address: str) -> Optional[AccountInfo]: ...

    async def build_transfer(
        self,
        keypair: "Keypair",
        transfers: Sequence[TransferInstruction],
        asset: Asset,
    ) -> SignedTransfer: ...

    async def broadcast(self, signed: SignedTransfer) -> str: ...

    async def confirm_transaction(self, tx_ref: str) -> bool:
        """True once confirmed, False while unknown or pending.

        Raises LedgerRejectedError if the transaction failed on the ledger.
        """
        ...

    async def get_received_amount(
        self, tx_ref: str, recipient: str, asset: Asset
    ) -> Optional[Decimal]:
        """Amount ``recipient`` gained in ``tx_ref``, None if the tx is unknown."""
        ...

    async def close(self) -> None: ...
