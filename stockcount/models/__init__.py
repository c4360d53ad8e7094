from stockcount.models.user import CountUser
from stockcount.models.count import (
    CountRound, CountItem, CountLogEntry,
    RoundStatus, RoundMode, FINAL_ROUND, ROUND_NUMBERS,
)
from stockcount.models.audit import AuditRecord, AuditMovement, AuditStatus

__all__ = [
    "CountUser",
    "CountRound",
    "CountItem",
    "CountLogEntry",
    "RoundStatus",
    "RoundMode",
    "FINAL_ROUND",
    "ROUND_NUMBERS",
    "AuditRecord",
    "AuditMovement",
    "AuditStatus",
]
