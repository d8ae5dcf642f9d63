# transaction_locator.py
from typing import Dict, List, Optional, Tuple

from config import settings
from entity_matching import EntityMatcher, FuzzyEntityMatcher
from models import BusinessTransaction, DocumentEntities, ProcessedDocument
from stores import TransactionStore
from utils import log
from workflow_state import WorkflowStateMachine


class TransactionLocator:
    """
    Finds the existing transaction an incoming document belongs to.

    Lookup order: a transaction already listing the document, the transaction the
    document names explicitly, then the user's open transactions (most recently
    updated first) whose entity snapshot matches one of the document's parties.
    Returning None means "start a new transaction"; it is not an error.
    """

    def __init__(
        self,
        transactions: TransactionStore,
        matcher: Optional[EntityMatcher] = None,
        state_machine: Optional[WorkflowStateMachine] = None,
        role_equivalents: Optional[Dict[str, List[str]]] = None,
    ):
        self.transactions = transactions
        self.matcher = matcher or FuzzyEntityMatcher()
        self.state_machine = state_machine or WorkflowStateMachine()
        self.role_equivalents = role_equivalents if role_equivalents is not None else settings.ENTITY_ROLE_EQUIVALENTS

    async def find_related_transaction(self, doc: ProcessedDocument) -> Optional[str]:
        existing = await self.transactions.find_by_document(doc.id, doc.user_id)
        if existing is not None:
            log.debug(f"Document {doc.id} already linked to transaction {existing.transaction_id}")
            return existing.transaction_id

        if doc.transaction_id:
            explicit = await self.transactions.get_transaction(doc.transaction_id, doc.user_id)
            if explicit is not None:
                log.info(f"Document {doc.id} names transaction {explicit.transaction_id}")
                return explicit.transaction_id
            log.warning(
                f"Document {doc.id} names unknown transaction {doc.transaction_id} for user {doc.user_id}; "
                f"falling back to entity matching"
            )

        entities = doc.entities or DocumentEntities()
        if not entities.present():
            log.info(f"Document {doc.id} carries no entities; no related transaction")
            return None

        for transaction in await self.transactions.list_transactions(doc.user_id, open_only=True):
            matched = self.matching_roles(entities, transaction)
            if not matched:
                continue
            reason = "entity match"
            if self._expected_by_step(doc, transaction):
                reason = "document expected by current step + entity match"
            log.info(
                f"Document {doc.id} related to transaction {transaction.transaction_id} "
                f"({reason}: {', '.join(f'{a}~{b}' for a, b in matched)})"
            )
            return transaction.transaction_id

        log.info(f"No related transaction for document {doc.id}; a new one will be created")
        return None

    def matching_roles(self, entities: DocumentEntities, transaction: BusinessTransaction) -> List[Tuple[str, str]]:
        """(document role, transaction role) pairs whose entities match."""
        document_parties = entities.present()
        transaction_parties = transaction.entities.present()
        pairs = []
        for doc_role, record in document_parties.items():
            for tx_role in self.role_equivalents.get(doc_role, []):
                if tx_role in transaction_parties and self.matcher.match(record, transaction_parties[tx_role]):
                    pairs.append((doc_role, tx_role))
        return pairs

    def _expected_by_step(self, doc: ProcessedDocument, transaction: BusinessTransaction) -> bool:
        step = transaction.current_step
        expected = list(step.required_documents) + list(step.optional_documents)
        for next_id in step.expected_next_steps:
            next_step = self.state_machine.steps.get(next_id)
            if next_step is not None:
                expected.extend(next_step.required_documents)
        return any(self.state_machine.satisfies(doc.document_type, wanted) for wanted in expected)
