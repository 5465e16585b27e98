from .catalog import CatalogService
from .comments import CommentService
from .lifecycle import LoanLifecycleEngine, ReturnOutcome
from .notifications import NotificationService
from .reports import ReportService
from .stock import StockLedger
from .waitlist import DispatchOutcome, DispatchResult, WaitlistDispatcher

__all__ = [
    "CatalogService",
    "CommentService",
    "DispatchOutcome",
    "DispatchResult",
    "LoanLifecycleEngine",
    "NotificationService",
    "ReportService",
    "ReturnOutcome",
    "StockLedger",
    "WaitlistDispatcher",
]
