# models.py
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Enumerations ---

class DocumentType(str, Enum):
    QUOTATION = "quotation"
    PURCHASE_ORDER = "purchase_order"
    PROFORMA_INVOICE = "proforma_invoice"
    INVOICE = "invoice"
    COMMERCIAL_INVOICE = "commercial_invoice"
    PACKING_LIST = "packing_list"
    BILL_OF_EXCHANGE = "bill_of_exchange"
    COVERING_LETTER = "covering_letter"
    TRANSPORT_DOCUMENT = "transport_document"
    UNKNOWN = "unknown"


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class FieldType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    CURRENCY = "currency"
    ADDRESS = "address"
    PHONE = "phone"
    EMAIL = "email"


class TransactionStatus(str, Enum):
    """Lifecycle steps, in lifecycle order. FAILED is terminal and sits outside the order."""
    QUOTATION_RECEIVED = "quotation_received"
    PO_ISSUED = "po_issued"
    PROFORMA_RECEIVED = "proforma_received"
    PAYMENT_MADE = "payment_made"
    ORDER_READY = "order_ready"
    INVOICE_RECEIVED = "invoice_received"
    TEMPLATES_GENERATED = "templates_generated"
    SUBMITTED_TO_BANK = "submitted_to_bank"
    PAYMENT_RECEIVED = "payment_received"
    COMPLETED = "completed"
    FAILED = "failed"


CLOSED_STATUSES = (TransactionStatus.COMPLETED, TransactionStatus.FAILED)


class DocumentRole(str, Enum):
    SOURCE = "source"
    GENERATED = "generated"
    RECEIVED = "received"


class SuggestionPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class StatusChangeSource(str, Enum):
    CREATED = "created"
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class BankVariant(str, Enum):
    BANK1 = "bank1"
    BANK2 = "bank2"
    BANK3 = "bank3"


class TemplateKind(str, Enum):
    COVERING_LETTER = "covering_letter"
    BILL_OF_EXCHANGE = "bill_of_exchange"


# --- Extracted document data ---

class DocumentField(BaseModel):
    """A single typed key/value pair produced by field extraction."""
    key: str
    value: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    type: FieldType = FieldType.TEXT


class EntityRecord(BaseModel):
    """A business party (supplier, customer, trading company, consignee) as read off a document."""
    name: str = ""
    address: Optional[str] = None
    contact: Optional[str] = None
    email: Optional[str] = None
    country: Optional[str] = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    @property
    def is_empty(self) -> bool:
        return not (self.name or "").strip()


class DocumentEntities(BaseModel):
    supplier: Optional[EntityRecord] = None
    customer: Optional[EntityRecord] = None
    trading_company: Optional[EntityRecord] = Field(default=None, alias="tradingCompany")
    consignee: Optional[EntityRecord] = None

    model_config = ConfigDict(populate_by_name=True)

    def present(self) -> Dict[str, EntityRecord]:
        """Role name -> record, for every role holding a non-empty name."""
        roles = {
            "supplier": self.supplier,
            "customer": self.customer,
            "trading_company": self.trading_company,
            "consignee": self.consignee,
        }
        return {role: record for role, record in roles.items() if record is not None and not record.is_empty}


class ProcessedDocument(BaseModel):
    id: str
    user_id: str
    filename: str = ""
    mime_type: Optional[str] = None
    document_type: DocumentType = DocumentType.UNKNOWN
    status: DocumentStatus = DocumentStatus.UPLOADED
    fields: List[DocumentField] = Field(default_factory=list)
    entities: Optional[DocumentEntities] = None  # None means "not yet extracted"
    transaction_id: Optional[str] = None
    uploaded_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    enrichment_error: Optional[str] = None


# --- Workflow ---

class WorkflowStep(BaseModel):
    """Static definition of one lifecycle step."""
    step_id: TransactionStatus
    name: str
    description: str
    required_documents: List[DocumentType] = Field(default_factory=list)
    optional_documents: List[DocumentType] = Field(default_factory=list)
    expected_next_steps: List[TransactionStatus] = Field(default_factory=list)


class TransactionDocument(BaseModel):
    document_id: str
    document_type: DocumentType
    role: DocumentRole = DocumentRole.SOURCE
    uploaded_at: datetime
    processed_at: Optional[datetime] = None
    status: DocumentStatus


class WorkflowSuggestion(BaseModel):
    action: str
    description: str
    priority: SuggestionPriority
    confidence: float = Field(..., ge=0.0, le=1.0)
    required_documents: List[DocumentType] = Field(default_factory=list)


class StatusChange(BaseModel):
    from_status: Optional[TransactionStatus] = None
    to_status: TransactionStatus
    source: StatusChangeSource
    document_id: Optional[str] = None
    notes: Optional[str] = None
    changed_at: datetime = Field(default_factory=utcnow)


class StatusOverride(BaseModel):
    status: TransactionStatus
    previous_status: TransactionStatus
    notes: Optional[str] = None
    overridden_at: datetime = Field(default_factory=utcnow)


class BusinessTransaction(BaseModel):
    """Aggregate root: one logical trade deal threading many documents."""
    transaction_id: str
    user_id: str
    order_reference: str
    status: TransactionStatus
    current_step: WorkflowStep
    entities: DocumentEntities = Field(default_factory=DocumentEntities)
    documents: List[TransactionDocument] = Field(default_factory=list)

    currency: str = "USD"
    total_amount: Optional[float] = None
    total_amount_aed: Optional[float] = None
    exchange_rate: Optional[float] = None

    next_suggested_actions: List[WorkflowSuggestion] = Field(default_factory=list)
    status_history: List[StatusChange] = Field(default_factory=list)
    status_override: Optional[StatusOverride] = None
    notes: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.status not in CLOSED_STATUSES

    def has_document(self, document_id: str) -> bool:
        return any(d.document_id == document_id for d in self.documents)

    def document_types(self) -> List[DocumentType]:
        return [d.document_type for d in self.documents]


class TransactionStats(BaseModel):
    total: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    total_value: float = 0.0


class FieldExtractionResult(BaseModel):
    """What the field extraction collaborator hands back for one document."""
    document_type: DocumentType = DocumentType.UNKNOWN
    classification_confidence: Optional[float] = None
    fields: List[DocumentField] = Field(default_factory=list)
    entities: Optional[DocumentEntities] = None


class IngestionResult(BaseModel):
    document: ProcessedDocument
    transaction: Optional[BusinessTransaction] = None


# --- Templates ---

class FieldMatchRule(BaseModel):
    """
    One way of finding a template value in a document.
    A field key matches when every token of any group appears among the key's tokens;
    an empty token list accepts any key. A key holding any exclude token never matches.
    Entity rules read document entities instead of fields.
    """
    tokens: List[List[str]] = Field(default_factory=list)
    exclude_tokens: List[str] = Field(default_factory=list)
    field_types: List[FieldType] = Field(default_factory=list)
    document_types: List[DocumentType] = Field(default_factory=list)
    entity_role: Optional[str] = None
    entity_attribute: str = "name"


class TemplateFieldDefinition(BaseModel):
    label: str
    type: str = "text"
    placeholder: str
    default_kind: str = "placeholder"  # placeholder | literal | today | reference
    default: Optional[str] = None
    rules: List[FieldMatchRule] = Field(default_factory=list)


class ResolvedValue(BaseModel):
    """A template value chosen from one of several candidate documents (or defaulted)."""
    key: str
    value: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    missing: bool = False
    source_document_id: Optional[str] = None
    source_document_type: Optional[DocumentType] = None
    source_field_key: Optional[str] = None


class EditableField(BaseModel):
    key: str
    label: str
    value: str
    type: str = "text"  # text | date | number | currency
    required: bool = True
    missing: bool = False
    placeholder: Optional[str] = None


class PopulatedTemplate(BaseModel):
    id: str
    kind: TemplateKind
    name: str
    bank_variant: BankVariant
    content: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    data_source: Dict[str, str] = Field(default_factory=dict)
    editable_fields: List[EditableField] = Field(default_factory=list)
    resolved_fields: Dict[str, ResolvedValue] = Field(default_factory=dict)
    transaction_id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# --- API request bodies ---

class CreateTransactionRequest(BaseModel):
    order_reference: Optional[str] = None
    document_type: DocumentType = DocumentType.QUOTATION
    currency: Optional[str] = None
    notes: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: str  # validated by the state machine so bad values get the workflow error body
    notes: Optional[str] = None


class TemplateGenerationRequest(BaseModel):
    bank_type: BankVariant = BankVariant.BANK1


class TemplateUpdateRequest(BaseModel):
    edits: Dict[str, str]


class TemplateDownloadRequest(BaseModel):
    template_ids: List[str] = Field(..., min_length=1)


class GeneratedDocument(BaseModel):
    filename: str
    content: str


# --- Pydantic Models for Gemini (Vertex AI) responses ---

class BaseVertexResponse(BaseModel):
    """Base model for responses that might contain errors."""
    error: Optional[str] = None
    raw_response: Optional[str] = None  # Raw text kept when JSON parsing fails


class ExtractedFieldData(BaseModel):
    value: Optional[Any] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    type: Optional[str] = None
    reasoning: str = ""


class VertexExtractionResult(BaseVertexResponse):
    """Structured result of a field extraction call, keyed by field name."""
    extracted_data: Optional[Dict[str, ExtractedFieldData]] = None


class VertexClassificationResponse(BaseVertexResponse):
    classified_type: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    reasoning: Optional[str] = None
    safety_ratings: Optional[Dict[str, str]] = None

    @field_validator('safety_ratings', mode='before')
    @classmethod
    def _convert_safety_ratings(cls, v):
        if v is None:
            return None
        if isinstance(v, str):
            import json
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return {"raw_string": v}
        if isinstance(v, dict):
            return {str(key): str(value) for key, value in v.items()}
        return {"unknown_format": str(v)}


class VertexEntityResponse(BaseVertexResponse):
    entities: Optional[DocumentEntities] = None


class VertexTextResponse(BaseVertexResponse):
    text: Optional[str] = None
