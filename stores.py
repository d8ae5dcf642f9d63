# stores.py
"""
Persistence boundary for documents, transactions and populated templates.

The in-memory stores are what the HTTP app and the tests run against. Every read
returns a deep copy, so mutating a returned model never touches stored state; all
writes go through the save/create methods.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from errors import ConcurrencyConflictError, DuplicateTransactionError, PersistenceError
from models import BusinessTransaction, PopulatedTemplate, ProcessedDocument
from utils import log


class DocumentStore(ABC):
    @abstractmethod
    async def get_document(self, document_id: str, user_id: str) -> Optional[ProcessedDocument]:
        ...

    @abstractmethod
    async def save_document(self, document: ProcessedDocument) -> ProcessedDocument:
        ...

    @abstractmethod
    async def list_documents(self, user_id: str, transaction_id: Optional[str] = None) -> List[ProcessedDocument]:
        ...


class TransactionStore(ABC):
    @abstractmethod
    async def get_transaction(self, transaction_id: str, user_id: str) -> Optional[BusinessTransaction]:
        ...

    @abstractmethod
    async def find_by_document(self, document_id: str, user_id: str) -> Optional[BusinessTransaction]:
        ...

    @abstractmethod
    async def list_transactions(self, user_id: str, open_only: bool = False) -> List[BusinessTransaction]:
        """Transactions of the user, most recently updated first."""

    @abstractmethod
    async def create_transaction(self, transaction: BusinessTransaction) -> BusinessTransaction:
        ...

    @abstractmethod
    async def save_transaction(self, transaction: BusinessTransaction, expected_version: int) -> BusinessTransaction:
        """Writes the transaction if the stored version still equals expected_version."""


class TemplateStore(ABC):
    @abstractmethod
    async def get_template(self, template_id: str) -> Optional[PopulatedTemplate]:
        ...

    @abstractmethod
    async def save_template(self, template: PopulatedTemplate) -> PopulatedTemplate:
        ...


class InMemoryDocumentStore(DocumentStore):
    def __init__(self):
        self._documents: Dict[str, ProcessedDocument] = {}
        self._lock = asyncio.Lock()

    async def get_document(self, document_id: str, user_id: str) -> Optional[ProcessedDocument]:
        async with self._lock:
            document = self._documents.get(document_id)
            if document is None or document.user_id != user_id:
                return None
            return document.model_copy(deep=True)

    async def save_document(self, document: ProcessedDocument) -> ProcessedDocument:
        async with self._lock:
            existing = self._documents.get(document.id)
            if existing is not None and existing.user_id != document.user_id:
                raise PersistenceError(f"Document {document.id} belongs to another user", operation="save_document")
            self._documents[document.id] = document.model_copy(deep=True)
            return document.model_copy(deep=True)

    async def list_documents(self, user_id: str, transaction_id: Optional[str] = None) -> List[ProcessedDocument]:
        async with self._lock:
            documents = [
                d.model_copy(deep=True) for d in self._documents.values()
                if d.user_id == user_id and (transaction_id is None or d.transaction_id == transaction_id)
            ]
        documents.sort(key=lambda d: d.uploaded_at)
        return documents


class InMemoryTransactionStore(TransactionStore):
    def __init__(self):
        self._transactions: Dict[Tuple[str, str], BusinessTransaction] = {}
        self._lock = asyncio.Lock()

    async def get_transaction(self, transaction_id: str, user_id: str) -> Optional[BusinessTransaction]:
        async with self._lock:
            transaction = self._transactions.get((user_id, transaction_id))
            return transaction.model_copy(deep=True) if transaction else None

    async def find_by_document(self, document_id: str, user_id: str) -> Optional[BusinessTransaction]:
        async with self._lock:
            for (owner, _), transaction in self._transactions.items():
                if owner == user_id and transaction.has_document(document_id):
                    return transaction.model_copy(deep=True)
        return None

    async def list_transactions(self, user_id: str, open_only: bool = False) -> List[BusinessTransaction]:
        async with self._lock:
            transactions = [
                t.model_copy(deep=True) for (owner, _), t in self._transactions.items()
                if owner == user_id and (t.is_open or not open_only)
            ]
        transactions.sort(key=lambda t: t.updated_at, reverse=True)
        return transactions

    async def create_transaction(self, transaction: BusinessTransaction) -> BusinessTransaction:
        key = (transaction.user_id, transaction.transaction_id)
        async with self._lock:
            if key in self._transactions:
                raise DuplicateTransactionError(transaction.transaction_id, transaction.user_id)
            stored = transaction.model_copy(deep=True)
            stored.version = 1
            self._transactions[key] = stored
            log.debug(f"Created transaction {transaction.transaction_id} for user {transaction.user_id}")
            return stored.model_copy(deep=True)

    async def save_transaction(self, transaction: BusinessTransaction, expected_version: int) -> BusinessTransaction:
        key = (transaction.user_id, transaction.transaction_id)
        async with self._lock:
            current = self._transactions.get(key)
            if current is None:
                raise PersistenceError(
                    f"Transaction {transaction.transaction_id} does not exist", operation="save_transaction"
                )
            if current.version != expected_version:
                raise ConcurrencyConflictError(transaction.transaction_id, expected_version, current.version)
            stored = transaction.model_copy(deep=True)
            stored.version = expected_version + 1
            self._transactions[key] = stored
            return stored.model_copy(deep=True)


class InMemoryTemplateStore(TemplateStore):
    def __init__(self):
        self._templates: Dict[str, PopulatedTemplate] = {}
        self._lock = asyncio.Lock()

    async def get_template(self, template_id: str) -> Optional[PopulatedTemplate]:
        async with self._lock:
            template = self._templates.get(template_id)
            return template.model_copy(deep=True) if template else None

    async def save_template(self, template: PopulatedTemplate) -> PopulatedTemplate:
        async with self._lock:
            self._templates[template.id] = template.model_copy(deep=True)
            return template.model_copy(deep=True)
