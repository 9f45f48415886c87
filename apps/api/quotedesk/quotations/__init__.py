from quotedesk.quotations.api import router
from quotedesk.quotations.errors import (
    ConcurrencyConflictError,
    InvalidStateError,
    MessageNotFoundError,
    PermissionDeniedError,
    QuotationError,
    QuotationNotFoundError,
    QuotationValidationError,
)
from quotedesk.quotations.financials import compute_financial_summary, compute_financials, compute_tax_details
from quotedesk.quotations.models import Notification, Quotation, QuotationMessage
from quotedesk.quotations.service import QuotationService, quotation_service
from quotedesk.quotations.thread import ThreadService, thread_service

__all__ = [
    "router",
    "Quotation",
    "QuotationMessage",
    "Notification",
    "QuotationError",
    "QuotationNotFoundError",
    "MessageNotFoundError",
    "InvalidStateError",
    "QuotationValidationError",
    "ConcurrencyConflictError",
    "PermissionDeniedError",
    "compute_financials",
    "compute_financial_summary",
    "compute_tax_details",
    "QuotationService",
    "quotation_service",
    "ThreadService",
    "thread_service",
]
