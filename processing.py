# processing.py
import asyncio
import mimetypes
import random
import uuid
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Type

import pydantic  # For pydantic.ValidationError
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

# Import the centralized settings object
from config import settings
from errors import EnrichmentError, ExtractionError
from models import (
    BaseVertexResponse,
    DocumentEntities,
    DocumentField,
    DocumentStatus,
    DocumentType,
    FieldExtractionResult,
    FieldType,
    IngestionResult,
    ProcessedDocument,
    VertexClassificationResponse,
    VertexEntityResponse,
    VertexExtractionResult,
    VertexTextResponse,
    utcnow,
)
from stores import DocumentStore
from utils import log
from workflow_engine import WorkflowEngine

RETRYABLE_STATUS_CODES = (429, 500, 503, 504)


# --- Collaborator interfaces ---

class TextExtractor(ABC):
    @abstractmethod
    async def extract_text(self, content: bytes, mime_type: str) -> str:
        ...


class FieldExtractionService(ABC):
    @abstractmethod
    async def extract_fields(self, text: str, document_type: Optional[DocumentType] = None) -> FieldExtractionResult:
        ...

    @abstractmethod
    async def extract_entities(self, fields: List[DocumentField], document_type: DocumentType) -> DocumentEntities:
        """Raises EnrichmentError when no entities could be read."""


# --- Helper Functions ---

def resolve_mime_type(filename: str, declared: Optional[str] = None) -> str:
    """MIME type of an upload: the declared one when specific, else guessed from the file name."""
    if declared and declared != "application/octet-stream":
        return declared
    mime_type, _ = mimetypes.guess_type(filename or "")
    if mime_type:
        return mime_type
    log.warning(f"Could not determine mime type for {filename}, defaulting to octet-stream")
    return "application/octet-stream"


def _generation_config() -> types.GenerateContentConfig:
    return types.GenerateContentConfig(
        safety_settings=[
            types.SafetySetting(category=category, threshold=threshold)
            for category, threshold in settings.SAFETY_SETTINGS_CONFIG.items()
        ],
        response_mime_type="application/json",
    )


async def _call_genai_with_retry(
    client: genai.Client,
    contents: List[Any],
    max_retries: Optional[int] = None,
    initial_delay: float = 1.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> types.GenerateContentResponse:
    """Calls Gemini generate_content with exponential backoff on quota and availability errors."""
    max_retries = settings.GENAI_MAX_RETRIES if max_retries is None else max_retries
    num_retries = 0
    delay = initial_delay
    while True:
        try:
            log.debug(f"Attempting Gemini API call (Attempt {num_retries + 1}/{max_retries + 1})")
            response = await client.aio.models.generate_content(
                model=settings.MODEL_NAME,
                contents=contents,
                config=_generation_config(),
            )
            log.debug(f"Gemini API call successful (Attempt {num_retries + 1}/{max_retries + 1})")
            return response
        except genai_errors.APIError as e:
            if e.code not in RETRYABLE_STATUS_CODES:
                log.error(f"Non-retryable error during Gemini API call: {type(e).__name__} - {e}")
                raise
            num_retries += 1
            if num_retries > max_retries:
                log.error(
                    f"Max retries ({max_retries}) exceeded for Gemini API call. "
                    f"Last error: {type(e).__name__} - {e}"
                )
                raise
            actual_delay = delay
            if jitter:
                actual_delay += random.uniform(0, delay * 0.25)
            log.warning(
                f"Gemini API call failed with {e.code} (Attempt {num_retries}/{max_retries}). "
                f"Retrying in {actual_delay:.2f} seconds..."
            )
            await asyncio.sleep(actual_delay)
            delay *= exponential_base


def _parse_genai_json_response(
    response: Any, context: str, model_type: Type[BaseVertexResponse]
) -> BaseVertexResponse:
    """
    Parses a JSON response from Gemini into a Pydantic model.
    Returns an instance of model_type with its error field populated if the content was
    blocked or parsing failed.
    """
    raw_json_text = ""
    try:
        candidates = getattr(response, "candidates", None)
        if candidates and (candidates[0].content is None or not candidates[0].content.parts):
            candidate = candidates[0]
            block_reason = str(candidate.finish_reason)
            safety_ratings_dict = {
                str(sr.category): str(sr.probability) for sr in (candidate.safety_ratings or [])
            }
            log.error(f"Content likely blocked for {context}. Reason: {block_reason}, Ratings: {safety_ratings_dict}")
            if model_type == VertexClassificationResponse:
                return VertexClassificationResponse(
                    error=f"Content Blocked: {block_reason}", safety_ratings=safety_ratings_dict
                )
            return model_type(error=f"Content Blocked: {block_reason}")

        if not getattr(response, "text", None):
            log.error(f"Received empty or invalid response object for {context}. Response: {response}")
            return model_type(error="Empty or invalid response object from Gemini")

        raw_json_text = response.text.strip()
        if raw_json_text.startswith("```json"):
            raw_json_text = raw_json_text[7:-3].strip()
        elif raw_json_text.startswith("```"):
            raw_json_text = raw_json_text[3:-3].strip()

        parsed_model = model_type.model_validate_json(raw_json_text)
        log.debug(f"Successfully parsed and validated JSON response for {context} into {model_type.__name__}")
        return parsed_model

    except pydantic.ValidationError as val_err:
        log.error(f"Pydantic validation failed for {context} with {model_type.__name__}. Error: {val_err}")
        log.error(f"Raw Gemini Response Text for {context}:\n{raw_json_text}")
        return model_type(error=f"Pydantic Validation Error: {val_err!s}", raw_response=raw_json_text)
    except AttributeError as attr_err:
        log.error(f"Attribute error parsing response for {context}. Error: {attr_err}. Response: {response}")
        return model_type(error=f"AttributeError parsing response: {attr_err!s}")


def _field_type(value: Optional[str]) -> FieldType:
    try:
        return FieldType((value or "text").lower())
    except ValueError:
        return FieldType.TEXT


class _GeminiClientMixin:
    """Creates the Vertex AI client on first use so importing this module needs no credentials."""

    def __init__(self, client: Optional[genai.Client] = None):
        self._client = client

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            log.info(
                f"Initializing Gemini on Vertex AI for project='{settings.GOOGLE_CLOUD_PROJECT}', "
                f"location='{settings.LOCATION}', model='{settings.MODEL_NAME}'"
            )
            self._client = genai.Client(
                vertexai=True, project=settings.GOOGLE_CLOUD_PROJECT, location=settings.LOCATION
            )
        return self._client


class GeminiTextExtractor(_GeminiClientMixin, TextExtractor):
    async def extract_text(self, content: bytes, mime_type: str) -> str:
        if mime_type not in settings.SUPPORTED_MIME_TYPES:
            raise ExtractionError(f"Unsupported file type: {mime_type}", details={"mime_type": mime_type})
        if mime_type == "text/plain":
            return content.decode("utf-8", errors="replace")

        context = f"OCR ({mime_type}, {len(content)} bytes)"
        prompt = settings.TEXT_EXTRACTION_PROMPT.format(num_pages=1)
        response = await _call_genai_with_retry(
            self.client, [prompt, types.Part.from_bytes(data=content, mime_type=mime_type)]
        )
        result = _parse_genai_json_response(response, context, VertexTextResponse)
        if result.error or not result.text:
            raise ExtractionError(f"Text extraction failed: {result.error or 'no text returned'}")
        log.info(f"Extracted {len(result.text)} characters of text for {context}")
        return result.text


class GeminiFieldExtractionService(_GeminiClientMixin, FieldExtractionService):
    async def classify(self, text: str) -> VertexClassificationResponse:
        acceptable_types_str = "\n".join(
            f"- {doc_type.value}" for doc_type in DocumentType if doc_type != DocumentType.UNKNOWN
        ) + f"\n- {DocumentType.UNKNOWN.value}"
        prompt = settings.CLASSIFICATION_PROMPT_TEMPLATE.format(
            acceptable_types_str=acceptable_types_str, document_text=text
        )
        response = await _call_genai_with_retry(self.client, [prompt])
        return _parse_genai_json_response(response, "Classification", VertexClassificationResponse)

    async def extract_fields(self, text: str, document_type: Optional[DocumentType] = None) -> FieldExtractionResult:
        result = FieldExtractionResult(document_type=document_type or DocumentType.UNKNOWN)
        if document_type is None or document_type == DocumentType.UNKNOWN:
            classification = await self.classify(text)
            if classification.error:
                raise ExtractionError(f"Classification failed: {classification.error}")
            try:
                result.document_type = DocumentType((classification.classified_type or "unknown").lower())
            except ValueError:
                log.warning(f"Model returned unsupported document type '{classification.classified_type}'")
                result.document_type = DocumentType.UNKNOWN
            result.classification_confidence = classification.confidence
            log.info(f"Classified document as {result.document_type.value} (confidence {classification.confidence})")

        context = f"Extraction ({result.document_type.value})"
        prompt = settings.EXTRACTION_PROMPT_TEMPLATE.format(doc_type=result.document_type.value, document_text=text)
        response = await _call_genai_with_retry(self.client, [prompt])
        extraction = _parse_genai_json_response(response, context, VertexExtractionResult)
        if extraction.error:
            raise ExtractionError(f"Field extraction failed: {extraction.error}")

        for key, data in (extraction.extracted_data or {}).items():
            if data.value is None or str(data.value).strip() == "":
                continue
            result.fields.append(DocumentField(
                key=key, value=str(data.value), confidence=data.confidence, type=_field_type(data.type)
            ))
        log.info(f"{context}: {len(result.fields)} fields")

        try:
            result.entities = await self.extract_entities(result.fields, result.document_type)
        except EnrichmentError as e:
            # Left unset so the workflow engine retries enrichment
            log.warning(f"Entity extraction deferred: {e}")
        return result

    async def extract_entities(self, fields: List[DocumentField], document_type: DocumentType) -> DocumentEntities:
        fields_text = "\n".join(f"- {f.key}: {f.value}" for f in fields)
        prompt = settings.ENTITY_PROMPT_TEMPLATE.format(doc_type=document_type.value, fields_text=fields_text)
        try:
            response = await _call_genai_with_retry(self.client, [prompt])
        except genai_errors.APIError as e:
            raise EnrichmentError(f"Gemini API error during entity extraction: {e}") from e
        parsed = _parse_genai_json_response(response, f"Entities ({document_type.value})", VertexEntityResponse)
        if parsed.error or parsed.entities is None:
            raise EnrichmentError(f"Entity extraction failed: {parsed.error or 'no entities returned'}")
        return parsed.entities


# --- Ingestion ---

class DocumentIngestionPipeline:
    """
    Upload -> processing -> text -> fields -> processed -> workflow.

    A collaborator failure leaves the document 'failed' with its error and touches no
    transaction.
    """

    def __init__(
        self,
        documents: DocumentStore,
        engine: WorkflowEngine,
        text_extractor: TextExtractor,
        field_extractor: FieldExtractionService,
    ):
        self.documents = documents
        self.engine = engine
        self.text_extractor = text_extractor
        self.field_extractor = field_extractor

    async def ingest(
        self,
        user_id: str,
        filename: str,
        content: bytes,
        mime_type: str,
        transaction_id: Optional[str] = None,
    ) -> IngestionResult:
        doc = ProcessedDocument(
            id=uuid.uuid4().hex,
            user_id=user_id,
            filename=filename,
            mime_type=mime_type,
            transaction_id=transaction_id,
        )
        await self.documents.save_document(doc)
        log.info(f"Received document {doc.id} ('{filename}', {mime_type}) for user {user_id}")

        doc.status = DocumentStatus.PROCESSING
        await self.documents.save_document(doc)
        try:
            text = await self.text_extractor.extract_text(content, mime_type)
            extraction = await self.field_extractor.extract_fields(text)
        except Exception as e:
            log.exception(f"Processing failed for document {doc.id} ('{filename}'): {e}")
            doc.status = DocumentStatus.FAILED
            doc.error = f"{type(e).__name__}: {e}"
            doc = await self.documents.save_document(doc)
            return IngestionResult(document=doc, transaction=None)

        doc.document_type = extraction.document_type
        doc.fields = extraction.fields
        doc.entities = extraction.entities
        doc.status = DocumentStatus.PROCESSED
        doc.processed_at = utcnow()
        await self.documents.save_document(doc)
        log.info(f"Document {doc.id} processed as {doc.document_type.value} with {len(doc.fields)} fields")

        transaction = await self.engine.process_document_workflow(doc)
        stored = await self.documents.get_document(doc.id, user_id)
        return IngestionResult(document=stored or doc, transaction=transaction)
