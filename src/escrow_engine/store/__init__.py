"""Persistence for escrow contracts and their owned records."""
from .base import EscrowStore
from .memory import InMemoryEscrowStore
from .postgres import PostgresEscrowStore

__all__ = ["EscrowStore", "InMemoryEscrowStore", "PostgresEscrowStore"]
