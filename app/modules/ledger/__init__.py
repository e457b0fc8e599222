# Ledger module
from app.modules.ledger.models import LedgerEntry, EntryType, EntryStatus, EntryKind
from app.modules.ledger.engine import LedgerEngine, EntryFilters, EntryPage, PostResult, BalanceCheck
from app.modules.ledger.exceptions import LedgerError, TransientLedgerError

__all__ = [
    "LedgerEntry", "EntryType", "EntryStatus", "EntryKind",
    "LedgerEngine", "EntryFilters", "EntryPage", "PostResult", "BalanceCheck",
    "LedgerError", "TransientLedgerError"
]
