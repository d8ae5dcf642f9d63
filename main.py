# main.py
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse

from errors import (
    ExtractionError,
    NotFoundError,
    TradeFlowError,
    TransientWorkflowError,
    WorkflowValidationError,
)
from models import (
    BusinessTransaction,
    CreateTransactionRequest,
    GeneratedDocument,
    IngestionResult,
    PopulatedTemplate,
    ProcessedDocument,
    StatusUpdateRequest,
    TemplateDownloadRequest,
    TemplateGenerationRequest,
    TemplateUpdateRequest,
    TransactionStats,
)
from processing import (
    DocumentIngestionPipeline,
    GeminiFieldExtractionService,
    GeminiTextExtractor,
    resolve_mime_type,
)
from stores import InMemoryDocumentStore, InMemoryTemplateStore, InMemoryTransactionStore
from template_populator import TemplatePopulator
from utils import log
from workflow_engine import WorkflowEngine

app = FastAPI(title="TradeFlow Workflow Service", version="1.0.0")

# --- Process-wide collaborators ---
document_store = InMemoryDocumentStore()
transaction_store = InMemoryTransactionStore()
template_store = InMemoryTemplateStore()
field_extractor = GeminiFieldExtractionService()
text_extractor = GeminiTextExtractor()
engine = WorkflowEngine(transaction_store, document_store, field_extractor=field_extractor)
pipeline = DocumentIngestionPipeline(document_store, engine, text_extractor, field_extractor)
populator = TemplatePopulator(templates=template_store)


def get_engine() -> WorkflowEngine:
    return engine


def get_pipeline() -> DocumentIngestionPipeline:
    return pipeline


def get_populator() -> TemplatePopulator:
    return populator


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity. Every route is scoped to it; there is no fallback user."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def _status_code_for(exc: TradeFlowError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, WorkflowValidationError):
        return 422
    if isinstance(exc, TransientWorkflowError):
        return 409
    if isinstance(exc, ExtractionError):
        return 502
    return 500


@app.exception_handler(TradeFlowError)
async def tradeflow_error_handler(request: Request, exc: TradeFlowError):
    status_code = _status_code_for(exc)
    if status_code >= 500:
        log.error(f"{request.method} {request.url.path} failed: {exc.code} - {exc.message}")
    else:
        log.info(f"{request.method} {request.url.path} rejected: {exc.code} - {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# --- Documents ---

@app.post("/documents", response_model=IngestionResult)
async def upload_document(
    file: UploadFile = File(...),
    transaction_id: Optional[str] = Form(default=None),
    user_id: str = Depends(get_user_id),
    pipeline: DocumentIngestionPipeline = Depends(get_pipeline),
    engine: WorkflowEngine = Depends(get_engine),
):
    """
    Accepts one trade document, extracts its fields and threads it into a transaction.
    Pass transaction_id to attach the document to a transaction opened beforehand.
    """
    if transaction_id:
        await engine.get_transaction(transaction_id, user_id)

    log.info(f"Received file: {file.filename}, Content-Type: {file.content_type}")
    try:
        content = await file.read()
    finally:
        await file.close()

    mime_type = resolve_mime_type(file.filename, file.content_type)
    return await pipeline.ingest(user_id, file.filename or "upload", content, mime_type, transaction_id)


@app.post("/documents/{document_id}/workflow", response_model=BusinessTransaction)
async def run_document_workflow(
    document_id: str,
    user_id: str = Depends(get_user_id),
    engine: WorkflowEngine = Depends(get_engine),
):
    """Re-runs the workflow for a stored document. Idempotent once the document is linked."""
    return await engine.process_stored_document(document_id, user_id)


# --- Transactions ---

@app.post("/transactions", response_model=BusinessTransaction, status_code=201)
async def create_transaction(
    body: CreateTransactionRequest,
    user_id: str = Depends(get_user_id),
    engine: WorkflowEngine = Depends(get_engine),
):
    return await engine.open_transaction(
        user_id, body.order_reference, document_type=body.document_type, currency=body.currency, notes=body.notes
    )


@app.get("/transactions", response_model=List[BusinessTransaction])
async def list_transactions(user_id: str = Depends(get_user_id), engine: WorkflowEngine = Depends(get_engine)):
    return await engine.get_user_transactions(user_id)


@app.get("/transactions/stats", response_model=TransactionStats)
async def transaction_stats(user_id: str = Depends(get_user_id), engine: WorkflowEngine = Depends(get_engine)):
    return await engine.get_transaction_stats(user_id)


@app.get("/transactions/{transaction_id}", response_model=BusinessTransaction)
async def get_transaction(
    transaction_id: str,
    user_id: str = Depends(get_user_id),
    engine: WorkflowEngine = Depends(get_engine),
):
    return await engine.get_transaction(transaction_id, user_id)


@app.patch("/transactions/{transaction_id}/status", response_model=BusinessTransaction)
async def update_transaction_status(
    transaction_id: str,
    body: StatusUpdateRequest,
    user_id: str = Depends(get_user_id),
    engine: WorkflowEngine = Depends(get_engine),
):
    """Manual override. Bypasses the state machine and is recorded in the status history."""
    return await engine.update_transaction_status(transaction_id, user_id, body.status, body.notes)


@app.get("/transactions/{transaction_id}/documents", response_model=List[ProcessedDocument])
async def get_transaction_documents(
    transaction_id: str,
    user_id: str = Depends(get_user_id),
    engine: WorkflowEngine = Depends(get_engine),
):
    return await engine.get_transaction_documents(transaction_id, user_id)


# --- Templates ---

@app.post("/transactions/{transaction_id}/templates", response_model=List[PopulatedTemplate])
async def generate_templates(
    transaction_id: str,
    body: Optional[TemplateGenerationRequest] = None,
    user_id: str = Depends(get_user_id),
    engine: WorkflowEngine = Depends(get_engine),
    populator: TemplatePopulator = Depends(get_populator),
):
    """Covering letter and bill of exchange populated from every document of the transaction."""
    body = body or TemplateGenerationRequest()
    documents = await engine.get_transaction_documents(transaction_id, user_id)
    return await populator.populate_templates_from_transaction(
        documents, body.bank_type, user_id=user_id, transaction_id=transaction_id
    )


@app.patch("/templates/{template_id}", response_model=PopulatedTemplate)
async def update_template(
    template_id: str,
    body: TemplateUpdateRequest,
    user_id: str = Depends(get_user_id),
    populator: TemplatePopulator = Depends(get_populator),
):
    return await populator.update_template_fields(template_id, body.edits, user_id)


@app.post("/templates/download", response_model=List[GeneratedDocument])
async def download_templates(
    body: TemplateDownloadRequest,
    user_id: str = Depends(get_user_id),
    populator: TemplatePopulator = Depends(get_populator),
):
    templates = [await populator.get_template(template_id, user_id) for template_id in body.template_ids]
    return populator.generate_final_documents(templates)


@app.get("/")
async def root():
    return {"message": "TradeFlow workflow service. Upload documents to /documents with an X-User-Id header."}

# --- To run the server (e.g., using uvicorn) ---
# uvicorn main:app --reload --host 0.0.0.0 --port 8000
