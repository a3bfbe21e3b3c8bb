"""Ledger access: client interface, Solana RPC client, simulator and signer."""
from .base import AccountInfo, LedgerClient, SignedTransfer
from .signer import TransactionSigner
from .simulated import SimulatedLedgerClient
from .solana import SolanaLedgerClient, SolanaRPCError

__all__ = [
    "AccountInfo",
    "LedgerClient",
    "SignedTransfer",
    "SimulatedLedgerClient",
    "SolanaLedgerClient",
    "SolanaRPCError",
    "TransactionSigner",
]
