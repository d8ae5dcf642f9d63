"""
TradeFlow - Shared test fixtures
================================
Document/transaction factories and in-memory collaborators.
"""

import itertools
from datetime import timedelta
from typing import Dict, Optional

import pytest

from errors import ExtractionError
from models import (
    BusinessTransaction,
    DocumentEntities,
    DocumentField,
    DocumentStatus,
    DocumentType,
    EntityRecord,
    FieldExtractionResult,
    ProcessedDocument,
    TransactionDocument,
    utcnow,
)
from processing import DocumentIngestionPipeline, FieldExtractionService, TextExtractor
from stores import InMemoryDocumentStore, InMemoryTemplateStore, InMemoryTransactionStore
from template_populator import TemplatePopulator
from workflow_engine import WorkflowEngine
from workflow_state import WorkflowStateMachine


class FakeTextExtractor(TextExtractor):
    """Treats every upload as UTF-8 text; content starting with 'FAIL' raises."""

    async def extract_text(self, content: bytes, mime_type: str) -> str:
        text = content.decode("utf-8")
        if text.startswith("FAIL"):
            raise ExtractionError("OCR engine unavailable")
        return text


class FakeFieldExtractor(FieldExtractionService):
    """Returns canned extraction results keyed by the document text."""

    def __init__(self, results: Optional[Dict[str, FieldExtractionResult]] = None):
        self.results = results or {}
        self.entity_calls = 0

    async def extract_fields(self, text, document_type=None):
        if text not in self.results:
            raise ExtractionError(f"No canned result for '{text}'")
        return self.results[text].model_copy(deep=True)

    async def extract_entities(self, fields, document_type):
        self.entity_calls += 1
        return DocumentEntities()


def entities(supplier=None, customer=None, trading_company=None, confidence=0.9) -> DocumentEntities:
    def _record(name):
        return EntityRecord(name=name, confidence=confidence) if name else None

    return DocumentEntities(
        supplier=_record(supplier),
        customer=_record(customer),
        trading_company=_record(trading_company),
    )


@pytest.fixture
def make_document():
    counter = itertools.count(1)
    base_time = utcnow() - timedelta(hours=1)

    def _make(
        document_type: DocumentType,
        user_id: str = "user-1",
        fields=None,
        supplier: Optional[str] = None,
        customer: Optional[str] = None,
        trading_company: Optional[str] = None,
        entity_confidence: float = 0.9,
        with_entities: bool = True,
        status: DocumentStatus = DocumentStatus.PROCESSED,
        doc_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> ProcessedDocument:
        n = next(counter)
        stamp = base_time + timedelta(seconds=n)
        return ProcessedDocument(
            id=doc_id or f"doc-{n}",
            user_id=user_id,
            filename=f"{document_type.value}-{n}.pdf",
            mime_type="application/pdf",
            document_type=document_type,
            status=status,
            fields=[
                f if isinstance(f, DocumentField) else DocumentField(**f) for f in (fields or [])
            ],
            entities=entities(supplier, customer, trading_company, entity_confidence) if with_entities else None,
            transaction_id=transaction_id,
            uploaded_at=stamp,
            processed_at=stamp if status == DocumentStatus.PROCESSED else None,
        )

    return _make


@pytest.fixture
def make_transaction():
    machine = WorkflowStateMachine()
    counter = itertools.count(1)

    def _make(
        status=None,
        user_id: str = "user-1",
        document_types=(),
        supplier: Optional[str] = None,
        customer: Optional[str] = None,
        trading_company: Optional[str] = None,
        entity_confidence: float = 0.9,
        transaction_id: Optional[str] = None,
        updated_at=None,
    ) -> BusinessTransaction:
        n = next(counter)
        step = machine.step(status or "quotation_received")
        now = utcnow()
        return BusinessTransaction(
            transaction_id=transaction_id or f"TXN-{n}",
            user_id=user_id,
            order_reference="TXN",
            status=step.step_id,
            current_step=step,
            entities=entities(supplier, customer, trading_company, entity_confidence),
            documents=[
                TransactionDocument(
                    document_id=f"existing-{n}-{i}",
                    document_type=doc_type,
                    uploaded_at=now,
                    processed_at=now,
                    status=DocumentStatus.PROCESSED,
                )
                for i, doc_type in enumerate(document_types)
            ],
            created_at=now,
            updated_at=updated_at or now,
        )

    return _make


@pytest.fixture
def document_store():
    return InMemoryDocumentStore()


@pytest.fixture
def transaction_store():
    return InMemoryTransactionStore()


@pytest.fixture
def engine(transaction_store, document_store):
    return WorkflowEngine(transaction_store, document_store)


@pytest.fixture
def populator():
    return TemplatePopulator(templates=InMemoryTemplateStore())


@pytest.fixture
def fake_field_extractor():
    return FakeFieldExtractor()


@pytest.fixture
def pipeline(document_store, transaction_store, fake_field_extractor):
    engine = WorkflowEngine(transaction_store, document_store, field_extractor=fake_field_extractor)
    return DocumentIngestionPipeline(document_store, engine, FakeTextExtractor(), fake_field_extractor)
