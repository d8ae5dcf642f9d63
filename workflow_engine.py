# workflow_engine.py
import re
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional, TypeVar

from config import settings
from errors import (
    ConcurrencyConflictError,
    DocumentNotFoundError,
    DuplicateTransactionError,
    TransactionNotFoundError,
    TransientWorkflowError,
    WorkflowValidationError,
)
from models import (
    BusinessTransaction,
    DocumentEntities,
    DocumentField,
    DocumentRole,
    DocumentStatus,
    DocumentType,
    FieldType,
    ProcessedDocument,
    StatusChange,
    StatusChangeSource,
    TransactionDocument,
    TransactionStats,
    TransactionStatus,
    utcnow,
)
from stores import DocumentStore, TransactionStore
from transaction_locator import TransactionLocator
from utils import convert_to_aed, detect_currency, key_matches, key_tokens, log, parse_amount
from workflow_state import WorkflowStateMachine

if TYPE_CHECKING:
    from processing import FieldExtractionService

T = TypeVar("T")

_ENTITY_ROLES = ("supplier", "customer", "trading_company", "consignee")
_ENTITY_ATTRIBUTES = ("name", "address", "contact", "email", "country")
_REFERENCE_CLEANUP = re.compile(r'[^A-Za-z0-9]+')


class WorkflowEngine:
    """
    Threads processed documents into business transactions.

    Each document is one unit of work: enrich entities if needed, locate or create the
    transaction, merge the document in, advance the state machine, persist with a
    version check. A conflicting concurrent write re-runs the evaluation from a fresh read.
    """

    def __init__(
        self,
        transactions: TransactionStore,
        documents: DocumentStore,
        field_extractor: Optional["FieldExtractionService"] = None,
        locator: Optional[TransactionLocator] = None,
        state_machine: Optional[WorkflowStateMachine] = None,
        max_conflict_retries: Optional[int] = None,
    ):
        self.transactions = transactions
        self.documents = documents
        self.field_extractor = field_extractor
        self.state_machine = state_machine or WorkflowStateMachine()
        self.locator = locator or TransactionLocator(transactions, state_machine=self.state_machine)
        self.max_conflict_retries = (
            settings.MAX_CONFLICT_RETRIES if max_conflict_retries is None else max_conflict_retries
        )

    # --- Document workflow ---

    async def process_document_workflow(self, doc: ProcessedDocument) -> BusinessTransaction:
        if doc.status != DocumentStatus.PROCESSED:
            raise WorkflowValidationError(
                f"Document {doc.id} is '{doc.status.value}'; only processed documents enter the workflow",
                field="status",
                details={"document_id": doc.id, "status": doc.status.value},
            )

        record = doc.model_copy(deep=True)
        entities = await self._ensure_entities(record)
        working = record.model_copy(update={"entities": entities})

        transaction = await self._with_conflict_retry(
            lambda: self._apply_document(working), f"document {doc.id}", doc.id
        )

        record.transaction_id = transaction.transaction_id
        await self.documents.save_document(record)
        return transaction

    async def process_stored_document(self, document_id: str, user_id: str) -> BusinessTransaction:
        doc = await self.documents.get_document(document_id, user_id)
        if doc is None:
            raise DocumentNotFoundError(document_id)
        return await self.process_document_workflow(doc)

    async def _ensure_entities(self, record: ProcessedDocument) -> DocumentEntities:
        """Entities to use for this run. Failures are logged and persisted on the record, never raised."""
        if record.entities is not None:
            return record.entities
        if self.field_extractor is None:
            log.warning(f"Document {record.id} has no entities and no extractor is configured")
            return DocumentEntities()

        try:
            entities = await self.field_extractor.extract_entities(record.fields, record.document_type)
        except Exception as e:
            log.warning(f"Entity extraction failed for document {record.id}; continuing without entities: {e}")
            record.enrichment_error = f"{type(e).__name__}: {e}"
            await self.documents.save_document(record)
            return DocumentEntities()

        record.entities = entities
        record.enrichment_error = None
        return entities

    async def _apply_document(self, doc: ProcessedDocument) -> BusinessTransaction:
        transaction_id = await self.locator.find_related_transaction(doc)
        if transaction_id is not None:
            transaction = await self.transactions.get_transaction(transaction_id, doc.user_id)
            if transaction is not None:
                return await self._update_existing(transaction, doc)
            log.warning(f"Transaction {transaction_id} vanished between lookup and read; creating a new one")
        return await self._create_new(doc)

    async def _update_existing(self, transaction: BusinessTransaction, doc: ProcessedDocument) -> BusinessTransaction:
        if transaction.has_document(doc.id):
            log.info(f"Document {doc.id} already part of transaction {transaction.transaction_id}; nothing to do")
            return transaction

        expected_version = transaction.version
        transaction.documents.append(self._transaction_document(doc))
        self.merge_entities(transaction.entities, doc.entities)
        self.apply_monetary_totals(transaction, doc.fields)

        next_status = self.state_machine.should_advance(transaction.current_step, doc.document_type)
        if next_status is not None:
            self.state_machine.transition(transaction, next_status, StatusChangeSource.AUTOMATIC, document_id=doc.id)
        else:
            transaction.updated_at = utcnow()
            log.info(
                f"Document {doc.id} ({doc.document_type.value}) added to {transaction.transaction_id}; "
                f"staying at {transaction.status.value}"
            )

        transaction.next_suggested_actions = self.state_machine.generate_suggestions(transaction)
        return await self.transactions.save_transaction(transaction, expected_version)

    async def _create_new(self, doc: ProcessedDocument) -> BusinessTransaction:
        created_at = utcnow()
        order_reference = self.order_reference_for(doc.fields)
        step = self.state_machine.initial_step_for(doc.document_type)

        transaction = BusinessTransaction(
            transaction_id=self._transaction_id(order_reference, created_at),
            user_id=doc.user_id,
            order_reference=order_reference,
            status=step.step_id,
            current_step=step,
            entities=(doc.entities or DocumentEntities()).model_copy(deep=True),
            documents=[self._transaction_document(doc)],
            currency=settings.DEFAULT_CURRENCY,
            status_history=[
                StatusChange(to_status=step.step_id, source=StatusChangeSource.CREATED,
                             document_id=doc.id, changed_at=created_at)
            ],
            created_at=created_at,
            updated_at=created_at,
        )
        self.apply_monetary_totals(transaction, doc.fields)
        transaction.next_suggested_actions = self.state_machine.generate_suggestions(transaction)

        created = await self.transactions.create_transaction(transaction)
        log.info(
            f"Created transaction {created.transaction_id} at {created.status.value} "
            f"from {doc.document_type.value} {doc.id}"
        )
        return created

    async def _with_conflict_retry(
        self, operation: Callable[[], Awaitable[T]], label: str, document_id: Optional[str] = None
    ) -> T:
        attempts = 0
        while True:
            try:
                return await operation()
            except (ConcurrencyConflictError, DuplicateTransactionError) as e:
                attempts += 1
                if attempts > self.max_conflict_retries:
                    log.error(f"Giving up on {label} after {attempts} conflicting attempts: {e}")
                    raise TransientWorkflowError(
                        f"Could not apply {label}: transaction kept changing concurrently",
                        document_id=document_id,
                        attempts=attempts,
                    ) from e
                log.warning(f"Write conflict on {label} (attempt {attempts}/{self.max_conflict_retries}); retrying")

    # --- Merge helpers ---

    @staticmethod
    def _transaction_document(doc: ProcessedDocument) -> TransactionDocument:
        return TransactionDocument(
            document_id=doc.id,
            document_type=doc.document_type,
            role=DocumentRole.SOURCE,
            uploaded_at=doc.uploaded_at,
            processed_at=doc.processed_at,
            status=doc.status,
        )

    @staticmethod
    def _transaction_id(order_reference: str, created_at) -> str:
        return f"{order_reference}-{created_at:%Y%m%d%H%M%S%f}"

    @staticmethod
    def order_reference_for(fields: List[DocumentField]) -> str:
        for group in settings.ORDER_REFERENCE_FIELD_KEYS:
            for field in fields:
                if not key_matches(field.key, [group]):
                    continue
                reference = _REFERENCE_CLEANUP.sub('-', field.value.strip()).strip('-').upper()
                if reference:
                    return reference
        return settings.DEFAULT_ORDER_REFERENCE

    @staticmethod
    def merge_entities(snapshot: DocumentEntities, incoming: Optional[DocumentEntities]) -> DocumentEntities:
        """
        Field-by-field merge into the snapshot. A stored value is replaced only by a non-empty value
        whose confidence is at least the stored confidence plus the overwrite margin; empty slots are
        always filled. The record's confidence follows the source of its name.
        """
        if incoming is None:
            return snapshot
        margin = settings.ENTITY_OVERWRITE_MARGIN

        for role in _ENTITY_ROLES:
            new = getattr(incoming, role)
            if new is None:
                continue
            old = getattr(snapshot, role)
            if old is None:
                setattr(snapshot, role, new.model_copy(deep=True))
                continue

            wins = new.confidence >= old.confidence + margin
            name_taken = False
            for attribute in _ENTITY_ATTRIBUTES:
                new_value = getattr(new, attribute)
                if not new_value or not str(new_value).strip():
                    continue
                old_value = getattr(old, attribute)
                if not old_value or not str(old_value).strip() or wins:
                    setattr(old, attribute, new_value)
                    if attribute == "name":
                        name_taken = True
            if name_taken:
                old.confidence = new.confidence
        return snapshot

    @staticmethod
    def apply_monetary_totals(transaction: BusinessTransaction, fields: List[DocumentField]) -> bool:
        """Sets currency and totals from the document's total-amount field. Returns False when there is none."""
        candidates = [f for f in fields if f.type == FieldType.CURRENCY and "total" in f.key.lower()]
        if not candidates:
            return False
        # Prefer a standalone 'total' token over keys like 'subtotal'
        total_field = max(candidates, key=lambda f: ("total" in key_tokens(f.key), f.confidence))

        amount = parse_amount(total_field.value)
        if amount is None:
            log.warning(f"Could not read an amount from '{total_field.key}': '{total_field.value}'")
            return False

        currency = detect_currency(total_field.value)
        if currency is None:
            currency_field = next((f for f in fields if key_matches(f.key, [["currency"]])), None)
            currency = detect_currency(currency_field.value) if currency_field else None
        currency = currency or settings.DEFAULT_CURRENCY

        total_aed, rate = convert_to_aed(amount, currency)
        transaction.total_amount = amount
        transaction.currency = currency
        transaction.total_amount_aed = total_aed
        transaction.exchange_rate = rate
        log.debug(f"Transaction {transaction.transaction_id} total {currency} {amount} (AED {total_aed})")
        return True

    # --- Query and command surface ---

    async def open_transaction(
        self,
        user_id: str,
        order_reference: Optional[str] = None,
        document_type: DocumentType = DocumentType.QUOTATION,
        currency: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> BusinessTransaction:
        """Creates an empty transaction up front; documents uploaded against its id then join it."""
        created_at = utcnow()
        reference = _REFERENCE_CLEANUP.sub('-', (order_reference or "").strip()).strip('-').upper()
        reference = reference or settings.DEFAULT_ORDER_REFERENCE
        step = self.state_machine.initial_step_for(document_type)
        transaction = BusinessTransaction(
            transaction_id=self._transaction_id(reference, created_at),
            user_id=user_id,
            order_reference=reference,
            status=step.step_id,
            current_step=step,
            currency=(currency or settings.DEFAULT_CURRENCY).upper(),
            notes=notes,
            status_history=[StatusChange(to_status=step.step_id, source=StatusChangeSource.CREATED,
                                         notes=notes, changed_at=created_at)],
            created_at=created_at,
            updated_at=created_at,
        )
        transaction.next_suggested_actions = self.state_machine.generate_suggestions(transaction)
        created = await self.transactions.create_transaction(transaction)
        log.info(f"Opened transaction {created.transaction_id} for user {user_id}")
        return created

    async def get_user_transactions(self, user_id: str) -> List[BusinessTransaction]:
        transactions = await self.transactions.list_transactions(user_id)
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions

    async def get_transaction(self, transaction_id: str, user_id: str) -> BusinessTransaction:
        transaction = await self.transactions.get_transaction(transaction_id, user_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        return transaction

    async def update_transaction_status(
        self, transaction_id: str, user_id: str, status, notes: Optional[str] = None
    ) -> BusinessTransaction:
        target: TransactionStatus = self.state_machine.parse_status(status)

        async def _override() -> BusinessTransaction:
            transaction = await self.get_transaction(transaction_id, user_id)
            expected_version = transaction.version
            self.state_machine.override_status(transaction, target, notes)
            transaction.next_suggested_actions = self.state_machine.generate_suggestions(transaction)
            return await self.transactions.save_transaction(transaction, expected_version)

        return await self._with_conflict_retry(_override, f"status override of {transaction_id}")

    async def get_transaction_documents(self, transaction_id: str, user_id: str) -> List[ProcessedDocument]:
        transaction = await self.get_transaction(transaction_id, user_id)
        documents = []
        for reference in transaction.documents:
            doc = await self.documents.get_document(reference.document_id, user_id)
            if doc is None:
                log.warning(f"Transaction {transaction_id} lists missing document {reference.document_id}")
                continue
            documents.append(doc)
        documents.sort(key=lambda d: d.uploaded_at)
        return documents

    async def get_transaction_stats(self, user_id: str) -> TransactionStats:
        stats = TransactionStats()
        for transaction in await self.transactions.list_transactions(user_id):
            stats.total += 1
            if transaction.status == TransactionStatus.COMPLETED:
                stats.completed += 1
            elif transaction.status == TransactionStatus.FAILED:
                stats.failed += 1
            else:
                stats.active += 1
            value = transaction.total_amount_aed
            if value is None:
                value = transaction.total_amount
            stats.total_value += value or 0.0
        stats.total_value = round(stats.total_value, 2)
        return stats
