# workflow_state.py
from typing import Dict, Iterable, List, Optional, Union

from config import settings
from errors import WorkflowValidationError
from models import (
    BusinessTransaction,
    DocumentType,
    StatusChange,
    StatusChangeSource,
    StatusOverride,
    SuggestionPriority,
    TransactionStatus,
    WorkflowStep,
    WorkflowSuggestion,
    utcnow,
)
from utils import log


class WorkflowStateMachine:
    """
    Static trade-finance lifecycle graph and the rules for moving along it.

    Automatic transitions only go forward, one expected next step at a time, and only
    when the new document is an entry document of that step. Manual overrides bypass
    the graph but are recorded in the transaction's history.
    """

    def __init__(
        self,
        steps: Optional[Dict[TransactionStatus, WorkflowStep]] = None,
        lifecycle_order: Optional[List[TransactionStatus]] = None,
        equivalent_types: Optional[Dict[DocumentType, List[DocumentType]]] = None,
    ):
        self.steps = steps if steps is not None else settings.WORKFLOW_STEPS
        self.lifecycle_order = lifecycle_order if lifecycle_order is not None else settings.LIFECYCLE_ORDER
        self.equivalent_types = (
            equivalent_types if equivalent_types is not None else settings.EQUIVALENT_DOCUMENT_TYPES
        )

    def step(self, step_id: Union[TransactionStatus, str]) -> WorkflowStep:
        status = self.parse_status(step_id)
        return self.steps[status].model_copy(deep=True)

    @staticmethod
    def parse_status(value: Union[TransactionStatus, str]) -> TransactionStatus:
        try:
            return TransactionStatus(value)
        except ValueError:
            allowed = ", ".join(s.value for s in TransactionStatus)
            raise WorkflowValidationError(
                f"Invalid transaction status '{value}'. Expected one of: {allowed}",
                field="status",
                details={"status": str(value)},
            )

    def initial_step_for(self, document_type: DocumentType) -> WorkflowStep:
        status = settings.INITIAL_STEP_BY_DOCUMENT_TYPE.get(document_type, settings.DEFAULT_INITIAL_STEP)
        return self.step(status)

    def satisfies(self, document_type: DocumentType, wanted: DocumentType) -> bool:
        return document_type == wanted or wanted in self.equivalent_types.get(document_type, [])

    def _satisfied_by_any(self, wanted: DocumentType, present: Iterable[DocumentType]) -> bool:
        return any(self.satisfies(doc_type, wanted) for doc_type in present)

    def is_forward(self, current: TransactionStatus, candidate: TransactionStatus) -> bool:
        if current not in self.lifecycle_order or candidate not in self.lifecycle_order:
            return False
        return self.lifecycle_order.index(candidate) > self.lifecycle_order.index(current)

    def should_advance(self, current_step: WorkflowStep, new_document_type: DocumentType) -> Optional[TransactionStatus]:
        """
        Returns the next step id the new document moves the transaction to, or None to stay put.
        The document must be a required document of one of the current step's expected next steps.
        """
        if any(self.satisfies(new_document_type, req) for req in current_step.required_documents):
            return None

        for next_id in current_step.expected_next_steps:
            next_step = self.steps.get(next_id)
            if next_step is None or not self.is_forward(current_step.step_id, next_id):
                continue
            if any(self.satisfies(new_document_type, req) for req in next_step.required_documents):
                return next_id
        return None

    def transition(
        self,
        transaction: BusinessTransaction,
        to_status: TransactionStatus,
        source: StatusChangeSource,
        document_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> BusinessTransaction:
        """Moves the transaction to to_status and records the change. Mutates and returns the transaction."""
        from_status = transaction.status
        transaction.status = to_status
        transaction.current_step = self.step(to_status)
        transaction.status_history.append(
            StatusChange(
                from_status=from_status,
                to_status=to_status,
                source=source,
                document_id=document_id,
                notes=notes,
            )
        )
        transaction.updated_at = utcnow()
        log.info(
            f"Transaction {transaction.transaction_id}: {from_status.value} -> {to_status.value} "
            f"({source.value}{', document ' + document_id if document_id else ''})"
        )
        return transaction

    def override_status(
        self,
        transaction: BusinessTransaction,
        status: Union[TransactionStatus, str],
        notes: Optional[str] = None,
    ) -> BusinessTransaction:
        """Forces the transaction to any status. Validated before anything is touched."""
        target = self.parse_status(status)
        previous = transaction.status
        transaction.status_override = StatusOverride(status=target, previous_status=previous, notes=notes)
        if notes:
            transaction.notes = notes
        self.transition(transaction, target, StatusChangeSource.MANUAL, notes=notes)
        log.warning(f"Manual status override on {transaction.transaction_id}: {previous.value} -> {target.value}")
        return transaction

    def generate_suggestions(self, transaction: BusinessTransaction) -> List[WorkflowSuggestion]:
        suggestions: List[WorkflowSuggestion] = []
        present = transaction.document_types()
        step = self.steps.get(transaction.status, transaction.current_step)
        default_confidence = settings.DEFAULT_SUGGESTION_CONFIDENCE

        if transaction.is_open:
            for required in step.required_documents:
                if self._satisfied_by_any(required, present):
                    continue
                suggestions.append(WorkflowSuggestion(
                    action=f"upload_{required.value}",
                    description=f"Upload the {_label(required)} required for '{step.name}'",
                    priority=SuggestionPriority.HIGH,
                    confidence=default_confidence,
                    required_documents=[required],
                ))

            for optional in step.optional_documents:
                if self._satisfied_by_any(optional, present):
                    continue
                suggestions.append(WorkflowSuggestion(
                    action=f"attach_{optional.value}",
                    description=f"Attach the {_label(optional)} to complete '{step.name}'",
                    priority=SuggestionPriority.MEDIUM,
                    confidence=default_confidence,
                    required_documents=[optional],
                ))

            for next_id in step.expected_next_steps:
                next_step = self.steps.get(next_id)
                if next_step is None:
                    continue
                if next_step.required_documents:
                    suggestions.append(WorkflowSuggestion(
                        action=f"proceed_to_{next_id.value}",
                        description=f"Upload {', '.join(_label(d) for d in next_step.required_documents)} "
                                    f"to move to '{next_step.name}'",
                        priority=SuggestionPriority.MEDIUM,
                        confidence=default_confidence,
                        required_documents=list(next_step.required_documents),
                    ))
                else:
                    suggestions.append(WorkflowSuggestion(
                        action=f"confirm_{next_id.value}",
                        description=f"Confirm '{next_step.name}' once it has happened",
                        priority=SuggestionPriority.MEDIUM,
                        confidence=default_confidence,
                    ))

        low_confidence = [
            record.confidence for record in transaction.entities.present().values()
            if record.confidence < settings.ENTITY_REVIEW_CONFIDENCE_THRESHOLD
        ]
        if low_confidence:
            suggestions.append(WorkflowSuggestion(
                action="review_entities",
                description="Review the extracted party details; some were read with low confidence",
                priority=SuggestionPriority.LOW,
                confidence=round(sum(low_confidence) / len(low_confidence), 4),
            ))
        return suggestions


def _label(document_type: DocumentType) -> str:
    return document_type.value.replace("_", " ")
