"""Ledger Store: persistent Orders, Payments and Refunds."""
from .base import DuplicateKeyError, LedgerError, LedgerSession, LedgerStore, OrderFilter
from .memory import InMemoryLedgerStore

__all__ = [
    "DuplicateKeyError",
    "InMemoryLedgerStore",
    "LedgerError",
    "LedgerSession",
    "LedgerStore",
    "OrderFilter",
]
