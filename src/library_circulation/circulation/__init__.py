"""
The circulation engine.

- ResourceLedger: copy counters of each book
- FineCalculator / FineLedger: overdue fines, penalties, payments and waivers
- LoanManager: checkout, check-in, renewal and the overdue sweep
- ReservationQueueManager: per-book FIFO queues and pickup holds
- CirculationEngine: wires the above around one session
- CirculationScheduler: runs the periodic jobs
"""

from .engine import CirculationEngine, engine_scope
from .fines import FineCalculator, FineLedger
from .ledger import ResourceLedger
from .loans import LoanManager
from .locks import BookLockRegistry, get_lock_registry
from .providers import (
    DatabaseNotifier,
    EntitlementProvider,
    LoggingNotifier,
    NotificationProvider,
    SubscriptionEntitlementProvider,
)
from .reservations import ReservationQueueManager
from .scheduler import CirculationScheduler

__all__ = [
    "BookLockRegistry",
    "CirculationEngine",
    "CirculationScheduler",
    "DatabaseNotifier",
    "EntitlementProvider",
    "FineCalculator",
    "FineLedger",
    "LoanManager",
    "LoggingNotifier",
    "NotificationProvider",
    "ReservationQueueManager",
    "ResourceLedger",
    "SubscriptionEntitlementProvider",
    "engine_scope",
    "get_lock_registry",
]
