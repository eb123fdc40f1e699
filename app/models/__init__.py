# Models
from .stock_records import StockRecord, SyncSource
from .reservations import Reservation, ReservationStatus
from .audit_logs import AuditLogEntry, ChangeType
from .idempotency_keys import IdempotencyKey, IdempotencyStatus

__all__ = [
    "StockRecord",
    "SyncSource",
    "Reservation",
    "ReservationStatus",
    "AuditLogEntry",
    "ChangeType",
    "IdempotencyKey",
    "IdempotencyStatus",
]
