# errors.py
"""
Error taxonomy for the workflow engine.

Enrichment failures are recovered where they happen; "no matching transaction" is a
normal outcome and has no exception. Everything else surfaces to the caller.
"""
from typing import Any, Dict, Optional


class TradeFlowError(Exception):
    """
    Base exception for all TradeFlow errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional error details (dict)
    """

    def __init__(self, message: str, code: str = "TRADEFLOW_ERROR", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# --- Collaborator errors ---

class ExtractionError(TradeFlowError):
    """OCR or AI field extraction failed."""

    def __init__(self, message: str, document_id: str = None, details: Dict = None):
        super().__init__(message, "EXTRACTION_ERROR", details)
        self.document_id = document_id


class EnrichmentError(ExtractionError):
    """Entity extraction failed. Recovered locally; the workflow continues with empty entities."""

    def __init__(self, message: str, document_id: str = None, details: Dict = None):
        super().__init__(message, document_id, details)
        self.code = "ENRICHMENT_ERROR"


# --- Persistence errors ---

class PersistenceError(TradeFlowError):
    """Store operation failed."""

    def __init__(self, message: str, operation: str = None, code: str = "PERSISTENCE_ERROR", details: Dict = None):
        super().__init__(message, code, details)
        self.operation = operation


class ConcurrencyConflictError(PersistenceError):
    """The transaction changed between read and write."""

    def __init__(self, transaction_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Transaction {transaction_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            operation="save_transaction",
            code="CONCURRENCY_CONFLICT",
            details={"transaction_id": transaction_id, "expected_version": expected_version,
                     "actual_version": actual_version},
        )
        self.transaction_id = transaction_id


class DuplicateTransactionError(PersistenceError):
    def __init__(self, transaction_id: str, user_id: str):
        super().__init__(
            f"Transaction {transaction_id} already exists for user {user_id}",
            operation="create_transaction",
            code="DUPLICATE_TRANSACTION",
            details={"transaction_id": transaction_id},
        )
        self.transaction_id = transaction_id


# --- Workflow errors ---

class WorkflowValidationError(TradeFlowError):
    """Rejected before any mutation: unknown status, unprocessed document, bad template edit."""

    def __init__(self, message: str, field: str = None, details: Dict = None):
        super().__init__(message, "VALIDATION_ERROR", details)
        self.field = field


class TransientWorkflowError(TradeFlowError):
    """Concurrent writers kept conflicting; the caller may retry later."""

    def __init__(self, message: str, document_id: str = None, attempts: int = 0):
        super().__init__(message, "TRANSIENT_CONFLICT", {"document_id": document_id, "attempts": attempts})
        self.document_id = document_id
        self.attempts = attempts


# --- Not found ---

class NotFoundError(TradeFlowError):
    def __init__(self, message: str, code: str = "NOT_FOUND", details: Dict = None):
        super().__init__(message, code, details)


class TransactionNotFoundError(NotFoundError):
    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction not found: {transaction_id}", "TRANSACTION_NOT_FOUND",
                         {"transaction_id": transaction_id})
        self.transaction_id = transaction_id


class DocumentNotFoundError(NotFoundError):
    def __init__(self, document_id: str):
        super().__init__(f"Document not found: {document_id}", "DOCUMENT_NOT_FOUND",
                         {"document_id": document_id})
        self.document_id = document_id


class TemplateNotFoundError(NotFoundError):
    def __init__(self, template_id: str):
        super().__init__(f"Template not found: {template_id}", "TEMPLATE_NOT_FOUND",
                         {"template_id": template_id})
        self.template_id = template_id
