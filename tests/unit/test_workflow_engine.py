"""
TradeFlow - Workflow Engine Tests
=================================
Document threading, merging, totals, concurrency and the query surface.
"""

from unittest.mock import AsyncMock

import pytest

from errors import (
    ConcurrencyConflictError,
    EnrichmentError,
    TransactionNotFoundError,
    TransientWorkflowError,
    WorkflowValidationError,
)
from models import (
    DocumentEntities,
    DocumentStatus,
    DocumentType,
    EntityRecord,
    FieldType,
    StatusChangeSource,
    TransactionStatus,
)
from stores import InMemoryTransactionStore
from workflow_engine import WorkflowEngine

D = DocumentType
S = TransactionStatus


def total(value, key="Total Amount"):
    return {"key": key, "value": value, "confidence": 0.92, "type": FieldType.CURRENCY}


class FlakyTransactionStore(InMemoryTransactionStore):
    """Fails the next `failures` saves with a version conflict."""

    def __init__(self, failures=0):
        super().__init__()
        self.failures = failures
        self.save_attempts = 0

    async def save_transaction(self, transaction, expected_version):
        self.save_attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConcurrencyConflictError(transaction.transaction_id, expected_version, expected_version + 1)
        return await super().save_transaction(transaction, expected_version)


class TestProcessDocumentWorkflow:
    """Tests for WorkflowEngine.process_document_workflow"""

    @pytest.mark.asyncio
    async def test_quotation_then_po_share_transaction(self, engine, make_document):
        """Test a PO from the quoting trading company joins the quotation and advances it"""
        quotation = make_document(D.QUOTATION, supplier="ABC Trading LLC")
        purchase_order = make_document(D.PURCHASE_ORDER, trading_company="ABC Trading")

        first = await engine.process_document_workflow(quotation)
        second = await engine.process_document_workflow(purchase_order)

        assert second.transaction_id == first.transaction_id
        assert second.status == S.PO_ISSUED
        assert [d.document_id for d in second.documents] == [quotation.id, purchase_order.id]
        assert second.status_history[-1].source == StatusChangeSource.AUTOMATIC
        assert second.status_history[-1].document_id == purchase_order.id

    @pytest.mark.asyncio
    async def test_same_parties_one_transaction_regardless_of_order(self, engine, transaction_store, make_document):
        """Test two related documents land in one transaction in either order"""
        for user_id, order in (("user-a", (D.QUOTATION, D.PURCHASE_ORDER)), ("user-b", (D.PURCHASE_ORDER, D.QUOTATION))):
            for doc_type in order:
                doc = make_document(doc_type, user_id=user_id, supplier="Gulf Steel", customer="Blue Ocean Foods")
                await engine.process_document_workflow(doc)

            transactions = await transaction_store.list_transactions(user_id)
            assert len(transactions) == 1
            assert len(transactions[0].documents) == 2
            assert transactions[0].status == S.PO_ISSUED

    @pytest.mark.asyncio
    async def test_unrelated_documents_start_separate_transactions(self, engine, transaction_store, make_document):
        await engine.process_document_workflow(make_document(D.QUOTATION, supplier="Gulf Steel"))
        await engine.process_document_workflow(make_document(D.QUOTATION, supplier="Emirates Paper Mills"))

        assert len(await transaction_store.list_transactions("user-1")) == 2

    @pytest.mark.asyncio
    async def test_reprocessing_is_idempotent(self, engine, make_document):
        """Test a linked document is not appended twice"""
        doc = make_document(D.QUOTATION, supplier="ABC Trading")

        first = await engine.process_document_workflow(doc)
        second = await engine.process_document_workflow(doc)

        assert second.transaction_id == first.transaction_id
        assert len(second.documents) == 1
        assert second.version == first.version

    @pytest.mark.asyncio
    async def test_invoice_total_converted_to_aed(self, engine, make_document):
        """Test 'USD 12,500.00' becomes 12500 USD and 46000 AED"""
        invoice = make_document(
            D.COMMERCIAL_INVOICE, supplier="ABC Trading", fields=[total("USD 12,500.00")]
        )

        transaction = await engine.process_document_workflow(invoice)

        assert transaction.total_amount == 12500
        assert transaction.currency == "USD"
        assert transaction.total_amount_aed == pytest.approx(46000)
        assert transaction.exchange_rate == pytest.approx(3.68)
        assert transaction.status == S.INVOICE_RECEIVED

    @pytest.mark.asyncio
    async def test_totals_update_on_later_document(self, engine, make_document):
        await engine.process_document_workflow(make_document(D.QUOTATION, supplier="ABC", fields=[total("€ 1,000")]))
        transaction = await engine.process_document_workflow(
            make_document(D.PURCHASE_ORDER, supplier="ABC", fields=[total("EUR 2,000.00", key="PO Total")])
        )

        assert transaction.total_amount == 2000
        assert transaction.currency == "EUR"
        assert transaction.total_amount_aed == pytest.approx(9100)

    @pytest.mark.asyncio
    async def test_rejects_unprocessed_document(self, engine, transaction_store, make_document):
        doc = make_document(D.QUOTATION, supplier="ABC", status=DocumentStatus.PROCESSING)

        with pytest.raises(WorkflowValidationError):
            await engine.process_document_workflow(doc)

        assert await transaction_store.list_transactions("user-1") == []

    @pytest.mark.asyncio
    async def test_links_document_to_transaction(self, engine, document_store, make_document):
        doc = make_document(D.QUOTATION, supplier="ABC")

        transaction = await engine.process_document_workflow(doc)

        stored = await document_store.get_document(doc.id, "user-1")
        assert stored.transaction_id == transaction.transaction_id

    @pytest.mark.asyncio
    async def test_order_reference_from_po_number(self, engine, make_document):
        doc = make_document(D.PURCHASE_ORDER, supplier="ABC", fields=[
            {"key": "PO Number", "value": "PO/7781", "confidence": 0.9, "type": FieldType.TEXT},
        ])

        transaction = await engine.process_document_workflow(doc)

        assert transaction.order_reference == "PO-7781"
        assert transaction.transaction_id.startswith("PO-7781-")

    @pytest.mark.asyncio
    async def test_new_transaction_has_suggestions(self, engine, make_document):
        transaction = await engine.process_document_workflow(make_document(D.QUOTATION, supplier="ABC"))

        assert "proceed_to_po_issued" in [s.action for s in transaction.next_suggested_actions]
        assert transaction.status_history[0].source == StatusChangeSource.CREATED


class TestEntityEnrichment:
    """Tests for entity extraction during the workflow"""

    @pytest.mark.asyncio
    async def test_enrichment_failure_is_recovered(self, transaction_store, document_store, make_document):
        """Test a failing entity extractor does not abort the workflow"""
        extractor = AsyncMock()
        extractor.extract_entities.side_effect = EnrichmentError("model timed out")
        engine = WorkflowEngine(transaction_store, document_store, field_extractor=extractor)
        doc = make_document(D.QUOTATION, with_entities=False)

        transaction = await engine.process_document_workflow(doc)

        stored = await document_store.get_document(doc.id, "user-1")
        assert stored.enrichment_error is not None
        assert stored.entities is None
        assert stored.transaction_id == transaction.transaction_id
        assert transaction.entities.present() == {}

    @pytest.mark.asyncio
    async def test_missing_entities_are_extracted(self, transaction_store, document_store, make_document):
        extractor = AsyncMock()
        extractor.extract_entities.return_value = DocumentEntities(
            supplier=EntityRecord(name="ABC Trading", confidence=0.8)
        )
        engine = WorkflowEngine(transaction_store, document_store, field_extractor=extractor)
        doc = make_document(D.QUOTATION, with_entities=False)

        transaction = await engine.process_document_workflow(doc)

        stored = await document_store.get_document(doc.id, "user-1")
        assert stored.entities.supplier.name == "ABC Trading"
        assert transaction.entities.supplier.name == "ABC Trading"
        extractor.extract_entities.assert_awaited_once()


class TestMergeEntities:
    """Tests for the field-by-field entity snapshot merge"""

    def test_lower_confidence_fills_gaps_only(self):
        snapshot = DocumentEntities(supplier=EntityRecord(name="ABC Trading LLC", confidence=0.9))
        incoming = DocumentEntities(supplier=EntityRecord(name="ABC Trdng", address="Deira, Dubai", confidence=0.5))

        WorkflowEngine.merge_entities(snapshot, incoming)

        assert snapshot.supplier.name == "ABC Trading LLC"
        assert snapshot.supplier.address == "Deira, Dubai"
        assert snapshot.supplier.confidence == 0.9

    def test_higher_or_equal_confidence_overwrites(self):
        snapshot = DocumentEntities(supplier=EntityRecord(name="ABC Trdng", address="Deira", confidence=0.6))
        incoming = DocumentEntities(supplier=EntityRecord(name="ABC Trading LLC", confidence=0.6))

        WorkflowEngine.merge_entities(snapshot, incoming)

        assert snapshot.supplier.name == "ABC Trading LLC"
        assert snapshot.supplier.address == "Deira"

    def test_empty_values_never_overwrite(self):
        snapshot = DocumentEntities(customer=EntityRecord(name="Blue Ocean Foods", confidence=0.4))
        incoming = DocumentEntities(customer=EntityRecord(name="  ", confidence=0.99))

        WorkflowEngine.merge_entities(snapshot, incoming)

        assert snapshot.customer.name == "Blue Ocean Foods"
        assert snapshot.customer.confidence == 0.4

    def test_new_role_is_added(self):
        snapshot = DocumentEntities()
        incoming = DocumentEntities(trading_company=EntityRecord(name="ABC Trading", confidence=0.7))

        WorkflowEngine.merge_entities(snapshot, incoming)

        assert snapshot.trading_company.name == "ABC Trading"


class TestConcurrency:
    """Tests for optimistic-concurrency retries"""

    @pytest.mark.asyncio
    async def test_conflict_is_retried(self, document_store, make_document):
        store = FlakyTransactionStore()
        engine = WorkflowEngine(store, document_store)
        await engine.process_document_workflow(make_document(D.QUOTATION, supplier="ABC"))

        store.failures = 1
        transaction = await engine.process_document_workflow(make_document(D.PURCHASE_ORDER, supplier="ABC"))

        assert store.save_attempts == 2
        assert transaction.status == S.PO_ISSUED
        assert len(transaction.documents) == 2

    @pytest.mark.asyncio
    async def test_persistent_conflict_raises_transient_error(self, document_store, make_document):
        store = FlakyTransactionStore()
        engine = WorkflowEngine(store, document_store, max_conflict_retries=2)
        await engine.process_document_workflow(make_document(D.QUOTATION, supplier="ABC"))

        store.failures = 10
        doc = make_document(D.PURCHASE_ORDER, supplier="ABC")
        with pytest.raises(TransientWorkflowError) as exc_info:
            await engine.process_document_workflow(doc)

        assert exc_info.value.attempts == 3
        assert exc_info.value.document_id == doc.id
        stored = (await store.list_transactions("user-1"))[0]
        assert stored.status == S.QUOTATION_RECEIVED


class TestQuerySurface:
    """Tests for transaction queries and manual commands"""

    @pytest.mark.asyncio
    async def test_get_transaction_not_found(self, engine, make_document):
        transaction = await engine.process_document_workflow(make_document(D.QUOTATION, supplier="ABC"))

        with pytest.raises(TransactionNotFoundError):
            await engine.get_transaction("missing", "user-1")
        with pytest.raises(TransactionNotFoundError):
            await engine.get_transaction(transaction.transaction_id, "user-2")

    @pytest.mark.asyncio
    async def test_manual_status_override(self, engine, make_document):
        transaction = await engine.process_document_workflow(make_document(D.QUOTATION, supplier="ABC"))

        updated = await engine.update_transaction_status(
            transaction.transaction_id, "user-1", "completed", notes="Settled offline"
        )

        assert updated.status == S.COMPLETED
        assert updated.status_override.previous_status == S.QUOTATION_RECEIVED
        assert updated.status_history[-1].source == StatusChangeSource.MANUAL
        assert updated.next_suggested_actions == []

    @pytest.mark.asyncio
    async def test_invalid_status_rejected_before_mutation(self, engine, make_document):
        transaction = await engine.process_document_workflow(make_document(D.QUOTATION, supplier="ABC"))

        with pytest.raises(WorkflowValidationError):
            await engine.update_transaction_status(transaction.transaction_id, "user-1", "shipped")

        unchanged = await engine.get_transaction(transaction.transaction_id, "user-1")
        assert unchanged.version == transaction.version

    @pytest.mark.asyncio
    async def test_open_transaction_collects_documents(self, engine, make_document):
        """Test documents uploaded against a pre-opened transaction join it"""
        opened = await engine.open_transaction("user-1", "Q-2024/001")
        doc = make_document(D.QUOTATION, supplier="ABC", transaction_id=opened.transaction_id)

        transaction = await engine.process_document_workflow(doc)

        assert opened.transaction_id.startswith("Q-2024-001-")
        assert transaction.transaction_id == opened.transaction_id
        assert [d.document_id for d in transaction.documents] == [doc.id]

    @pytest.mark.asyncio
    async def test_transaction_documents_in_upload_order(self, engine, make_document):
        first = make_document(D.QUOTATION, supplier="ABC")
        second = make_document(D.PURCHASE_ORDER, supplier="ABC")
        await engine.process_document_workflow(second)
        transaction = await engine.process_document_workflow(first)

        documents = await engine.get_transaction_documents(transaction.transaction_id, "user-1")

        assert [d.id for d in documents] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_user_transactions_newest_first(self, engine):
        await engine.open_transaction("user-1", "A")
        await engine.open_transaction("user-1", "B")
        await engine.open_transaction("user-2", "C")

        transactions = await engine.get_user_transactions("user-1")

        assert len(transactions) == 2
        created = [t.created_at for t in transactions]
        assert created == sorted(created, reverse=True)

    @pytest.mark.asyncio
    async def test_stats(self, engine, make_document):
        invoice = make_document(D.COMMERCIAL_INVOICE, supplier="ABC", fields=[total("USD 12,500.00")])
        await engine.process_document_workflow(invoice)
        closed = await engine.process_document_workflow(make_document(D.QUOTATION, supplier="Emirates Paper"))
        await engine.update_transaction_status(closed.transaction_id, "user-1", S.COMPLETED)

        stats = await engine.get_transaction_stats("user-1")

        assert stats.total == 2
        assert stats.completed == 1
        assert stats.active == 1
        assert stats.failed == 0
        assert stats.total_value == pytest.approx(46000)
