"""State persistence helpers for genesys."""
from __future__ import annotations

from .ledger import (
    DEFAULT_LEDGER_PATH,
    CleanOutcome,
    IAMLink,
    ImportResult,
    LedgerError,
    ResourceRecord,
    StateLedger,
)

__all__ = [
    "CleanOutcome",
    "DEFAULT_LEDGER_PATH",
    "IAMLink",
    "ImportResult",
    "LedgerError",
    "ResourceRecord",
    "StateLedger",
]
