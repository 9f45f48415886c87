from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status


class QuotationError(HTTPException):
    """Base for quotation workflow failures; routers map ``code`` into the error envelope."""

    code = "quotation_error"
    status_code_default = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: Any, *, details: Any = None) -> None:
        super().__init__(status_code=self.status_code_default, detail=detail)
        self.details = details


class QuotationNotFoundError(QuotationError):
    code = "not_found"
    status_code_default = status.HTTP_404_NOT_FOUND

    def __init__(self, quotation_id: Any) -> None:
        super().__init__("quotation not found", details={"quotation_id": str(quotation_id)})


class MessageNotFoundError(QuotationError):
    code = "not_found"
    status_code_default = status.HTTP_404_NOT_FOUND

    def __init__(self, message_ids: list[Any]) -> None:
        super().__init__("message not found", details={"message_ids": [str(item) for item in message_ids]})


class InvalidStateError(QuotationError):
    """Raised when the current status or thread status does not permit the operation."""

    code = "invalid_state"
    status_code_default = status.HTTP_409_CONFLICT


class QuotationValidationError(QuotationError):
    code = "validation_error"
    status_code_default = status.HTTP_422_UNPROCESSABLE_ENTITY


class ConcurrencyConflictError(QuotationError):
    code = "row_version_conflict"
    status_code_default = status.HTTP_409_CONFLICT

    def __init__(self, quotation_id: Any, operation: str) -> None:
        super().__init__(
            "row_version conflict",
            details={"quotation_id": str(quotation_id), "operation": operation},
        )


class PermissionDeniedError(QuotationError):
    code = "forbidden"
    status_code_default = status.HTTP_403_FORBIDDEN
