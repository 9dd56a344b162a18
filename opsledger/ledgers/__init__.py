"""Ledger adapters: the protocol and a simulated in-memory chain."""

from opsledger.ledgers.base import Ledger, LedgerEntry, TxState, TxStatus
from opsledger.ledgers.inmemory import InMemoryLedger

__all__ = ["Ledger", "LedgerEntry", "TxState", "TxStatus", "InMemoryLedger"]
