# config.py
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from models import (
    DocumentType,
    FieldMatchRule,
    FieldType,
    TemplateFieldDefinition,
    TransactionStatus,
    WorkflowStep,
)

# Load environment variables from a .env file if present
load_dotenv()

# --- Safety settings, kept as strings so they load cleanly from the environment ---
# Converted to google-genai SafetySetting objects in processing.py.
DEFAULT_SAFETY_SETTINGS: Dict[str, str] = {
    "HARM_CATEGORY_HATE_SPEECH": "BLOCK_NONE",
    "HARM_CATEGORY_DANGEROUS_CONTENT": "BLOCK_NONE",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT": "BLOCK_NONE",
    "HARM_CATEGORY_HARASSMENT": "BLOCK_NONE",
}


def _step(step_id, name, description, required=(), optional=(), next_steps=()) -> WorkflowStep:
    return WorkflowStep(
        step_id=step_id,
        name=name,
        description=description,
        required_documents=list(required),
        optional_documents=list(optional),
        expected_next_steps=list(next_steps),
    )


S = TransactionStatus
D = DocumentType

DEFAULT_WORKFLOW_STEPS: Dict[TransactionStatus, WorkflowStep] = {
    S.QUOTATION_RECEIVED: _step(
        S.QUOTATION_RECEIVED, "Quotation Received",
        "Supplier has provided pricing via quotation",
        required=[D.QUOTATION], optional=[D.PROFORMA_INVOICE],
        next_steps=[S.PO_ISSUED]),
    S.PO_ISSUED: _step(
        S.PO_ISSUED, "Purchase Order Issued",
        "Trading company has confirmed the purchase with the supplier",
        required=[D.PURCHASE_ORDER], optional=[D.QUOTATION],
        next_steps=[S.PROFORMA_RECEIVED, S.PAYMENT_MADE]),
    S.PROFORMA_RECEIVED: _step(
        S.PROFORMA_RECEIVED, "Proforma Invoice Received",
        "Supplier has issued a proforma invoice against the PO",
        required=[D.PROFORMA_INVOICE], optional=[D.PURCHASE_ORDER],
        next_steps=[S.PAYMENT_MADE, S.INVOICE_RECEIVED]),
    S.PAYMENT_MADE: _step(
        S.PAYMENT_MADE, "Payment Made",
        "Trading company has paid the supplier according to the payment terms",
        next_steps=[S.ORDER_READY]),
    S.ORDER_READY: _step(
        S.ORDER_READY, "Order Ready for Shipment",
        "Supplier has prepared the order for shipment",
        optional=[D.PACKING_LIST, D.TRANSPORT_DOCUMENT],
        next_steps=[S.INVOICE_RECEIVED]),
    S.INVOICE_RECEIVED: _step(
        S.INVOICE_RECEIVED, "Invoice and Documents Received",
        "Supplier has issued the commercial invoice and shipping documents",
        required=[D.COMMERCIAL_INVOICE], optional=[D.PACKING_LIST, D.TRANSPORT_DOCUMENT],
        next_steps=[S.TEMPLATES_GENERATED]),
    S.TEMPLATES_GENERATED: _step(
        S.TEMPLATES_GENERATED, "Bank Templates Generated",
        "Covering letter and bill of exchange are ready for the bank",
        required=[D.COVERING_LETTER], optional=[D.BILL_OF_EXCHANGE],
        next_steps=[S.SUBMITTED_TO_BANK]),
    S.SUBMITTED_TO_BANK: _step(
        S.SUBMITTED_TO_BANK, "Submitted to Bank",
        "Collection documents have been lodged with the bank",
        next_steps=[S.PAYMENT_RECEIVED]),
    S.PAYMENT_RECEIVED: _step(
        S.PAYMENT_RECEIVED, "Payment Received",
        "Bank has remitted the collection proceeds",
        next_steps=[S.COMPLETED]),
    S.COMPLETED: _step(
        S.COMPLETED, "Transaction Completed",
        "All documents received and the transaction is closed"),
    S.FAILED: _step(
        S.FAILED, "Transaction Failed",
        "Transaction was abandoned or could not be completed"),
}

_AMOUNT_TOKENS = [["total"], ["invoice", "amount"], ["amount", "due"]]
# Totals that are not money: 'Total Quantity', 'Total Gross Weight', 'Total Packages'
_NON_MONETARY_TOKENS = [
    "quantity", "qty", "weight", "kg", "kgs", "packages", "package", "pkgs", "cartons", "pcs",
    "pieces", "units", "volume", "cbm", "pallets",
]
_TRANSPORT_DOC_TOKENS = [
    ["bl", "number"], ["bl", "no"], ["bill", "lading"], ["awb", "no"], ["awb", "number"],
    ["airway", "bill"], ["transport", "document"], ["transport", "doc"],
]
_OTHER_SHIPPING_REFERENCES = ["container", "booking", "voyage", "seal", "vessel", "flight", "invoice", "po"]

DEFAULT_TEMPLATE_FIELDS: Dict[str, TemplateFieldDefinition] = {
    "invoiceNumber": TemplateFieldDefinition(
        label="Invoice Number", placeholder="[INVOICE NUMBER]",
        rules=[
            FieldMatchRule(tokens=[["invoice", "number"], ["invoice", "no"], ["inv", "no"]],
                           document_types=[D.COMMERCIAL_INVOICE, D.INVOICE]),
            FieldMatchRule(tokens=[["invoice", "number"], ["invoice", "no"], ["inv", "no"]]),
        ]),
    "invoiceDate": TemplateFieldDefinition(
        label="Invoice Date", type="date", placeholder="[INVOICE DATE]",
        rules=[
            FieldMatchRule(tokens=[["invoice", "date"], ["date"]], field_types=[FieldType.DATE],
                           document_types=[D.COMMERCIAL_INVOICE, D.INVOICE]),
            FieldMatchRule(tokens=[["invoice", "date"]]),
        ]),
    "invoiceAmount": TemplateFieldDefinition(
        label="Invoice Amount", type="currency", placeholder="[TOTAL AMOUNT]",
        rules=[
            FieldMatchRule(tokens=_AMOUNT_TOKENS, exclude_tokens=_NON_MONETARY_TOKENS,
                           field_types=[FieldType.CURRENCY],
                           document_types=[D.COMMERCIAL_INVOICE, D.INVOICE]),
            FieldMatchRule(tokens=_AMOUNT_TOKENS, exclude_tokens=_NON_MONETARY_TOKENS,
                           field_types=[FieldType.CURRENCY]),
            FieldMatchRule(tokens=_AMOUNT_TOKENS, exclude_tokens=_NON_MONETARY_TOKENS,
                           field_types=[FieldType.NUMBER],
                           document_types=[D.COMMERCIAL_INVOICE, D.INVOICE]),
        ]),
    "currency": TemplateFieldDefinition(
        label="Currency", placeholder="USD", default_kind="literal", default="USD",
        rules=[FieldMatchRule(tokens=[["currency"]])]),
    "transportDocNumber": TemplateFieldDefinition(
        label="Transport Document Number", placeholder="[TRANSPORT DOC NUMBER]",
        rules=[
            FieldMatchRule(tokens=_TRANSPORT_DOC_TOKENS, document_types=[D.TRANSPORT_DOCUMENT]),
            FieldMatchRule(tokens=_TRANSPORT_DOC_TOKENS),
            FieldMatchRule(tokens=[["number"], ["no"]], exclude_tokens=_OTHER_SHIPPING_REFERENCES,
                           document_types=[D.TRANSPORT_DOCUMENT]),
        ]),
    "transportDocDate": TemplateFieldDefinition(
        label="B/L Date", type="date", placeholder="[BL DATE]",
        rules=[
            FieldMatchRule(field_types=[FieldType.DATE], document_types=[D.TRANSPORT_DOCUMENT]),
            FieldMatchRule(tokens=[["bl", "date"], ["awb", "date"], ["shipment", "date"],
                                   ["on", "board"], ["date", "of", "shipment"]]),
        ]),
    "shippingTerms": TemplateFieldDefinition(
        label="Shipping Terms", placeholder="CFR", default_kind="literal", default="CFR",
        rules=[FieldMatchRule(tokens=[["shipping", "terms"], ["incoterms"], ["incoterm"],
                                      ["delivery", "terms"], ["trade", "terms"]])]),
    "paymentTerms": TemplateFieldDefinition(
        label="Payment Terms", placeholder="180 DAYS FROM BL DATE", default_kind="literal",
        default="180 DAYS FROM BL DATE",
        rules=[FieldMatchRule(tokens=[["payment", "terms"], ["terms", "of", "payment"]])]),
    "tenorDays": TemplateFieldDefinition(
        label="Tenor (Days)", type="number", placeholder="180", default_kind="literal", default="180",
        rules=[FieldMatchRule(tokens=[["tenor"], ["tenure"], ["usance"]])]),
    "referenceNumber": TemplateFieldDefinition(
        label="Reference Number", placeholder="TRADE-REF", default_kind="reference",
        rules=[FieldMatchRule(tokens=[["reference", "number"], ["reference", "no"], ["ref", "no"],
                                      ["our", "ref"]])]),
    "customerName": TemplateFieldDefinition(
        label="Customer Name", placeholder="[CUSTOMER NAME]",
        rules=[
            FieldMatchRule(entity_role="customer"),
            FieldMatchRule(tokens=[["buyer", "name"], ["customer", "name"]]),
        ]),
    "customerAddress": TemplateFieldDefinition(
        label="Customer Address", placeholder="[CUSTOMER ADDRESS]",
        rules=[
            FieldMatchRule(entity_role="customer", entity_attribute="address"),
            FieldMatchRule(tokens=[["buyer", "address"], ["customer", "address"]]),
        ]),
    "tradingCompanyName": TemplateFieldDefinition(
        label="Trading Company", placeholder="[TRADING COMPANY]",
        rules=[FieldMatchRule(entity_role="trading_company")]),
    "tradingCompanyAddress": TemplateFieldDefinition(
        label="Trading Company Address", placeholder="[TRADING COMPANY ADDRESS]",
        rules=[FieldMatchRule(entity_role="trading_company", entity_attribute="address")]),
}

COVERING_LETTER_BANK1 = """
COVERING LETTER - BANK 1 FORMAT

Date: {{DATE}}
Reference: {{REFERENCE_NUMBER}}

To: International Trade Department
[BANK NAME]

Dear Sirs,

We are pleased to submit the following collection documents for account of {{CUSTOMER_NAME}}, {{CUSTOMER_ADDRESS}}:

INVOICE DETAILS:
- Invoice Number: {{INVOICE_NUMBER}}
- Invoice Date: {{INVOICE_DATE}}
- Amount: {{CURRENCY}} {{TOTAL_AMOUNT}}

COLLECTION INSTRUCTIONS:
- Terms: {{PAYMENT_TERMS}}
- Present documents to drawee for acceptance/payment {{TENOR_DAYS}} days from B/L date
- Transport Document No: {{TRANSPORT_DOC_NUMBER}}
- B/L Date: {{BL_DATE}}
- Shipping Terms: {{SHIPPING_TERMS}}

DOCUMENTS ENCLOSED:
1. Commercial Invoice (Original + 2 copies)
2. Packing List (Original + 2 copies)
3. Bill of Exchange
4. Other documents as required

Please handle in accordance with UCP 600 latest revision.

Yours faithfully,
{{TRADING_COMPANY}}

Authorized Signature
""".strip()

COVERING_LETTER_BANK2 = """
BANK 2 COLLECTION LETTER FORMAT

Ref: {{REFERENCE_NUMBER}}
Date: {{DATE}}

International Collections Department
[BANK NAME]

COLLECTION INSTRUCTION

We hereby request you to handle the collection of the under mentioned draft/documents:

DRAWEE: {{CUSTOMER_NAME}}
        {{CUSTOMER_ADDRESS}}

DRAWER: {{TRADING_COMPANY}}

AMOUNT: {{CURRENCY}} {{TOTAL_AMOUNT}}
TENURE: {{TENOR_DAYS}} DAYS FROM B/L DATE {{BL_DATE}}
TRANSPORT DOCUMENT: {{TRANSPORT_DOC_NUMBER}}

INVOICE DETAILS:
Number: {{INVOICE_NUMBER}}
Date: {{INVOICE_DATE}}
Terms: {{PAYMENT_TERMS}}

INSTRUCTIONS:
- Documents against acceptance
- Present for acceptance and deliver against payment at maturity
- Advice fate by return

DOCUMENTS:
- Commercial Invoice (3 copies)
- Packing List (3 copies)
- Draft/Bill of Exchange

Thank you for your cooperation.

{{TRADING_COMPANY}}
Authorized Officer
""".strip()

COVERING_LETTER_BANK3 = """
TRADE FINANCE DEPARTMENT
COLLECTION INSTRUCTION

Reference: {{REFERENCE_NUMBER}}
Date: {{DATE}}

Dear Sirs,

Please find enclosed collection documents for the following transaction:

BUYER: {{CUSTOMER_NAME}}
       {{CUSTOMER_ADDRESS}}

SELLER: {{TRADING_COMPANY}}

COMMERCIAL DETAILS:
- Invoice No: {{INVOICE_NUMBER}} dated {{INVOICE_DATE}}
- Amount: {{CURRENCY}} {{TOTAL_AMOUNT}}
- Terms: {{PAYMENT_TERMS}}
- Tenor: {{TENOR_DAYS}} days from B/L date {{BL_DATE}}
- Transport Document: {{TRANSPORT_DOC_NUMBER}} ({{SHIPPING_TERMS}})

COLLECTION BASIS:
Documents Against Acceptance (D/A)

DOCUMENTS ATTACHED:
- Commercial Invoice (Original + copies)
- Packing List (Original + copies)
- Bill of Exchange

Please handle as per UCP 600 and confirm receipt.

Best regards,
{{TRADING_COMPANY}}
Trade Finance Department
""".strip()

BILL_OF_EXCHANGE = """
BILL OF EXCHANGE

Reference: {{REFERENCE_NUMBER}}
Place: _______________
Date: {{DATE}}

At {{TENOR_DAYS}} days sight of this FIRST of Exchange (Second of the same tenor and date being unpaid)

Pay to the order of ourselves the sum of {{CURRENCY}} {{TOTAL_AMOUNT}}

({{CURRENCY}} {{TOTAL_AMOUNT}} ONLY)

Value received and charge the same to account as advised.

To: {{CUSTOMER_NAME}}
    {{CUSTOMER_ADDRESS}}

For: {{TRADING_COMPANY}}
     {{TRADING_ADDRESS}}

Invoice No: {{INVOICE_NUMBER}}
Due Date: {{MATURITY_DATE}}

_________________________
Authorized Signature

ACCEPTANCE:

Accepted this _____ day of _________, 20___

_________________________
Signature of Drawee
""".strip()


class AppSettings(BaseSettings):
    """
    Centralized application settings managed by Pydantic.
    Loads from environment variables and .env file.
    """
    # --- Gemini on Vertex AI (field extraction collaborator) ---
    GOOGLE_CLOUD_PROJECT: str = Field(default="tradeflow-dev")
    LOCATION: str = Field(default="asia-south1")
    MODEL_NAME: str = Field(default="gemini-2.5-pro")
    GENAI_MAX_RETRIES: int = Field(default=5)

    # --- Supported File Types ---
    SUPPORTED_MIME_TYPES: Dict[str, str] = {
        "application/pdf": "PDF",
        "image/png": "PNG",
        "image/jpeg": "JPEG",
        "image/jpg": "JPEG",
        "text/plain": "TEXT",
    }

    # --- Safety Settings (category name -> threshold name) ---
    SAFETY_SETTINGS_CONFIG: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_SAFETY_SETTINGS))

    # --- Entity Matching ---
    # Thresholds are heuristic and need calibration against real documents.
    ENTITY_NAME_SIMILARITY_THRESHOLD: float = Field(default=0.85, ge=0.0, le=1.0)
    ENTITY_SUBSTRING_MIN_RATIO: float = Field(default=0.70, ge=0.0, le=1.0)
    LEGAL_SUFFIXES: List[str] = [
        "general trading", "trading", "ltd", "limited", "llc", "l l c", "inc", "incorporated",
        "co", "corp", "corporation", "company", "fze", "fzco", "fzc", "fz llc", "plc", "gmbh",
        "pvt", "private", "pte", "bv", "sa", "srl", "est", "establishment",
    ]
    # Document roles compared against each transaction role when threading documents.
    ENTITY_ROLE_EQUIVALENTS: Dict[str, List[str]] = {
        "supplier": ["supplier", "trading_company"],
        "trading_company": ["trading_company", "supplier"],
        "customer": ["customer"],
    }
    # A new entity field replaces a stored one when its confidence >= stored + margin.
    ENTITY_OVERWRITE_MARGIN: float = Field(default=0.0, ge=0.0, le=1.0)

    # --- Workflow ---
    WORKFLOW_STEPS: Dict[TransactionStatus, WorkflowStep] = Field(
        default_factory=lambda: dict(DEFAULT_WORKFLOW_STEPS)
    )
    LIFECYCLE_ORDER: List[TransactionStatus] = [
        S.QUOTATION_RECEIVED, S.PO_ISSUED, S.PROFORMA_RECEIVED, S.PAYMENT_MADE, S.ORDER_READY,
        S.INVOICE_RECEIVED, S.TEMPLATES_GENERATED, S.SUBMITTED_TO_BANK, S.PAYMENT_RECEIVED,
        S.COMPLETED,
    ]
    INITIAL_STEP_BY_DOCUMENT_TYPE: Dict[DocumentType, TransactionStatus] = {
        D.QUOTATION: S.QUOTATION_RECEIVED,
        D.PURCHASE_ORDER: S.PO_ISSUED,
        D.PROFORMA_INVOICE: S.PROFORMA_RECEIVED,
        D.INVOICE: S.INVOICE_RECEIVED,
        D.COMMERCIAL_INVOICE: S.INVOICE_RECEIVED,
    }
    DEFAULT_INITIAL_STEP: TransactionStatus = S.QUOTATION_RECEIVED
    EQUIVALENT_DOCUMENT_TYPES: Dict[DocumentType, List[DocumentType]] = {
        D.INVOICE: [D.COMMERCIAL_INVOICE],
        D.COMMERCIAL_INVOICE: [D.INVOICE],
    }
    ENTITY_REVIEW_CONFIDENCE_THRESHOLD: float = Field(default=0.6, ge=0.0, le=1.0)
    DEFAULT_SUGGESTION_CONFIDENCE: float = Field(default=0.5, ge=0.0, le=1.0)
    MAX_CONFLICT_RETRIES: int = Field(default=3, ge=0)
    # Field keys searched (in order) for the order reference of a new transaction.
    ORDER_REFERENCE_FIELD_KEYS: List[List[str]] = [
        ["po", "number"], ["po", "no"], ["purchase", "order", "number"], ["order", "number"],
        ["quotation", "number"], ["quote", "number"], ["reference", "number"], ["ref", "no"],
        ["invoice", "number"],
    ]
    DEFAULT_ORDER_REFERENCE: str = "TXN"

    # --- Currency (static rate table; no live lookups) ---
    DEFAULT_CURRENCY: str = "USD"
    CURRENCY_KEYWORDS: Dict[str, List[str]] = {
        "USD": ["usd", "$", "us dollar"],
        "EUR": ["eur", "€", "euro"],
        "AED": ["aed", "dh", "dhs", "dirham"],
    }
    AED_EXCHANGE_RATES: Dict[str, float] = {"USD": 3.68, "EUR": 4.55, "AED": 1.0}

    # --- Templates ---
    TEMPLATE_FIELDS: Dict[str, TemplateFieldDefinition] = Field(
        default_factory=lambda: dict(DEFAULT_TEMPLATE_FIELDS)
    )
    MISSING_FIELD_CONFIDENCE: float = Field(default=0.3, ge=0.0, le=1.0)
    MANUAL_FIELD_CONFIDENCE: float = Field(default=1.0, ge=0.0, le=1.0)
    DEFAULT_TENOR_DAYS: int = Field(default=180, ge=0)
    TEMPLATE_DATE_FORMAT: str = "%d/%m/%Y"
    TEMPLATE_LAYOUTS: Dict[str, str] = {
        "covering_letter:bank1": COVERING_LETTER_BANK1,
        "covering_letter:bank2": COVERING_LETTER_BANK2,
        "covering_letter:bank3": COVERING_LETTER_BANK3,
        "bill_of_exchange": BILL_OF_EXCHANGE,
    }
    # Layout placeholder -> resolved field key
    TEMPLATE_PLACEHOLDERS: Dict[str, str] = {
        "REFERENCE_NUMBER": "referenceNumber",
        "CUSTOMER_NAME": "customerName",
        "CUSTOMER_ADDRESS": "customerAddress",
        "INVOICE_NUMBER": "invoiceNumber",
        "INVOICE_DATE": "invoiceDate",
        "TOTAL_AMOUNT": "invoiceAmount",
        "CURRENCY": "currency",
        "PAYMENT_TERMS": "paymentTerms",
        "SHIPPING_TERMS": "shippingTerms",
        "TENOR_DAYS": "tenorDays",
        "BL_DATE": "transportDocDate",
        "TRANSPORT_DOC_NUMBER": "transportDocNumber",
        "TRADING_COMPANY": "tradingCompanyName",
        "TRADING_ADDRESS": "tradingCompanyAddress",
    }

    # --- Logging ---
    LOG_FILE_PATH_STR: str = Field(default="tradeflow.log")  # Store as string
    LOG_LEVEL: str = Field(default="INFO")

    # --- Prompt Templates ---
    TEXT_EXTRACTION_PROMPT: str = Field(default="""
You are an OCR engine for trade-finance documents. Transcribe ALL text visible in the
provided {num_pages} page(s), preserving reading order and line breaks. Do not summarize.

Respond with ONLY a JSON object of the form:
{{"text": "<full transcription>"}}
""")

    CLASSIFICATION_PROMPT_TEMPLATE: str = Field(default="""
You are an expert trade-finance document classifier. Classify the document text below into
exactly ONE of the following types:
{acceptable_types_str}

Document text:
---
{document_text}
---

Respond with ONLY a JSON object:
{{
  "classified_type": "<one of the types above>",
  "confidence": <float between 0.0 and 1.0>,
  "reasoning": "<one sentence>"
}}
""")

    EXTRACTION_PROMPT_TEMPLATE: str = Field(default="""
You are extracting structured fields from a '{doc_type}' trade-finance document.
Extract every identifiable business field (document numbers, dates, parties, amounts,
currency, payment terms, shipping terms, ports, transport document numbers).

Document text:
---
{document_text}
---

For each field return its value, a confidence between 0.0 and 1.0, its type (one of
text, number, date, currency, address, phone, email) and a short reasoning.
Keep currency amounts exactly as printed, including the currency code or symbol.

Respond with ONLY a JSON object:
{{
  "extracted_data": {{
    "invoice_number": {{"value": "INV-001", "confidence": 0.95, "type": "text", "reasoning": "Printed in header"}},
    "total_amount": {{"value": "USD 12,500.00", "confidence": 0.9, "type": "currency", "reasoning": "Grand total line"}}
  }}
}}
""")

    ENTITY_PROMPT_TEMPLATE: str = Field(default="""
Extract the business parties from this {doc_type} document:

{fields_text}

Identify the supplier, the trading company (buyer / importer), the end customer and the
consignee where present. Only include parties that are clearly identified.

Respond with ONLY a JSON object:
{{
  "entities": {{
    "supplier": {{"name": "", "address": "", "contact": "", "email": "", "country": "", "confidence": 0.0}},
    "tradingCompany": {{"name": "", "address": "", "contact": "", "email": "", "country": "", "confidence": 0.0}},
    "customer": {{"name": "", "address": "", "contact": "", "email": "", "country": "", "confidence": 0.0}},
    "consignee": {{"name": "", "address": "", "contact": "", "email": "", "country": "", "confidence": 0.0}}
  }}
}}
""")

    # --- Derived Path Properties ---
    @property
    def LOG_FILE(self) -> Path:
        return Path(self.LOG_FILE_PATH_STR)

    # Pydantic settings configuration
    model_config = SettingsConfigDict(
        env_file=".env",                # Load .env file
        env_file_encoding='utf-8',
        extra='ignore',                 # Ignore extra fields from environment
        case_sensitive=False,
        validate_default=True,
    )


# --- Instantiate settings ---
# This single 'settings' instance will be imported by other modules.
settings = AppSettings()
