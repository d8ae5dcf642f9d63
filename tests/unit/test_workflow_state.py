"""
TradeFlow - Workflow State Machine Tests
========================================
Step graph, advancement rules, suggestions and manual overrides.
"""

import pytest

from errors import WorkflowValidationError
from models import (
    DocumentType,
    StatusChangeSource,
    SuggestionPriority,
    TransactionStatus,
)
from workflow_state import WorkflowStateMachine

S = TransactionStatus
D = DocumentType


@pytest.fixture
def machine():
    return WorkflowStateMachine()


class TestShouldAdvance:
    """Tests for automatic advancement"""

    def test_purchase_order_after_quotation(self, machine):
        """Test a PO moves a quoted transaction to po_issued"""
        assert machine.should_advance(machine.step(S.QUOTATION_RECEIVED), D.PURCHASE_ORDER) == S.PO_ISSUED

    def test_document_of_current_step_stays(self, machine):
        """Test a second quotation leaves the step unchanged"""
        assert machine.should_advance(machine.step(S.QUOTATION_RECEIVED), D.QUOTATION) is None

    def test_no_step_skipping(self, machine):
        """Test a commercial invoice cannot jump a quoted transaction forward"""
        assert machine.should_advance(machine.step(S.QUOTATION_RECEIVED), D.COMMERCIAL_INVOICE) is None

    def test_proforma_after_po(self, machine):
        assert machine.should_advance(machine.step(S.PO_ISSUED), D.PROFORMA_INVOICE) == S.PROFORMA_RECEIVED

    def test_invoice_equivalent_to_commercial_invoice(self, machine):
        """Test a plain invoice satisfies the commercial-invoice entry requirement"""
        assert machine.should_advance(machine.step(S.PROFORMA_RECEIVED), D.INVOICE) == S.INVOICE_RECEIVED

    def test_terminal_steps_never_advance(self, machine):
        for status in (S.COMPLETED, S.FAILED):
            for doc_type in DocumentType:
                assert machine.should_advance(machine.step(status), doc_type) is None

    def test_never_regresses(self, machine):
        """Test every automatic transition moves forward in the lifecycle"""
        for status in TransactionStatus:
            step = machine.step(status)
            for doc_type in DocumentType:
                next_status = machine.should_advance(step, doc_type)
                if next_status is not None:
                    assert machine.is_forward(status, next_status)
                    assert next_status in step.expected_next_steps


class TestInitialStep:
    """Tests for the initial step of new transactions"""

    @pytest.mark.parametrize("doc_type, expected", [
        (D.QUOTATION, S.QUOTATION_RECEIVED),
        (D.PURCHASE_ORDER, S.PO_ISSUED),
        (D.PROFORMA_INVOICE, S.PROFORMA_RECEIVED),
        (D.INVOICE, S.INVOICE_RECEIVED),
        (D.COMMERCIAL_INVOICE, S.INVOICE_RECEIVED),
        (D.PACKING_LIST, S.QUOTATION_RECEIVED),
        (D.UNKNOWN, S.QUOTATION_RECEIVED),
    ])
    def test_initial_step_for(self, machine, doc_type, expected):
        assert machine.initial_step_for(doc_type).step_id == expected


class TestGenerateSuggestions:
    """Tests for suggested next actions"""

    def test_missing_required_document_is_high_priority(self, machine, make_transaction):
        """Test a missing entry document yields a high-priority upload suggestion"""
        transaction = make_transaction(S.QUOTATION_RECEIVED, supplier="ABC Trading")

        suggestions = machine.generate_suggestions(transaction)

        high = [s for s in suggestions if s.priority == SuggestionPriority.HIGH]
        assert [s.required_documents for s in high] == [[D.QUOTATION]]
        assert high[0].confidence == 0.5

    def test_every_open_step_missing_a_required_document_gets_a_suggestion(self, machine, make_transaction):
        for status in TransactionStatus:
            step = machine.step(status)
            if not step.required_documents or status in (S.COMPLETED, S.FAILED):
                continue
            transaction = make_transaction(status)
            assert len(machine.generate_suggestions(transaction)) >= 1

    def test_optional_and_next_step_suggestions(self, machine, make_transaction):
        """Test optional documents and next steps appear as medium suggestions"""
        transaction = make_transaction(S.QUOTATION_RECEIVED, document_types=[D.QUOTATION], supplier="ABC")

        suggestions = machine.generate_suggestions(transaction)
        actions = {s.action: s for s in suggestions}

        assert not [s for s in suggestions if s.priority == SuggestionPriority.HIGH]
        assert actions["attach_proforma_invoice"].priority == SuggestionPriority.MEDIUM
        assert actions["proceed_to_po_issued"].required_documents == [D.PURCHASE_ORDER]

    def test_step_without_entry_documents_asks_for_confirmation(self, machine, make_transaction):
        transaction = make_transaction(S.PAYMENT_MADE)

        actions = [s.action for s in machine.generate_suggestions(transaction)]

        assert actions == ["confirm_order_ready"]

    def test_low_confidence_entities_trigger_review(self, machine, make_transaction):
        """Test entities below 0.6 confidence add a low-priority review"""
        transaction = make_transaction(
            S.PO_ISSUED, document_types=[D.PURCHASE_ORDER], supplier="ABC", entity_confidence=0.4
        )

        review = [s for s in machine.generate_suggestions(transaction) if s.action == "review_entities"]

        assert len(review) == 1
        assert review[0].priority == SuggestionPriority.LOW
        assert review[0].confidence == pytest.approx(0.4)

    def test_completed_transaction_only_gets_review(self, machine, make_transaction):
        confident = make_transaction(S.COMPLETED, supplier="ABC", entity_confidence=0.95)
        doubtful = make_transaction(S.COMPLETED, supplier="ABC", entity_confidence=0.3)

        assert machine.generate_suggestions(confident) == []
        assert [s.action for s in machine.generate_suggestions(doubtful)] == ["review_entities"]


class TestOverrideStatus:
    """Tests for manual status overrides"""

    def test_override_can_move_backwards(self, machine, make_transaction):
        """Test an override bypasses the graph and is recorded"""
        transaction = make_transaction(S.PO_ISSUED)

        machine.override_status(transaction, "quotation_received", notes="PO cancelled")

        assert transaction.status == S.QUOTATION_RECEIVED
        assert transaction.current_step.step_id == S.QUOTATION_RECEIVED
        assert transaction.status_override.previous_status == S.PO_ISSUED
        assert transaction.status_override.notes == "PO cancelled"
        assert transaction.status_history[-1].source == StatusChangeSource.MANUAL

    def test_invalid_status_rejected_without_mutation(self, machine, make_transaction):
        transaction = make_transaction(S.PO_ISSUED)
        before = transaction.model_copy(deep=True)

        with pytest.raises(WorkflowValidationError) as exc_info:
            machine.override_status(transaction, "shipped")

        assert exc_info.value.code == "VALIDATION_ERROR"
        assert transaction == before
