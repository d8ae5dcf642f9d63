# template_fields.py
import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from config import settings
from models import (
    DocumentStatus,
    FieldMatchRule,
    ProcessedDocument,
    ResolvedValue,
    TemplateFieldDefinition,
    utcnow,
)
from utils import (
    detect_currency,
    format_amount,
    format_date,
    key_matches,
    key_tokens,
    leading_integer,
    log,
    parse_amount,
)

_EPOCH = datetime.min
_DAYS_IN_TERMS = re.compile(r'(\d+)\s*DAYS?\b', re.IGNORECASE)


class TemplateFieldResolver:
    """
    Picks one value per template field from all of a transaction's documents.

    Each field has an ordered list of match rules; the first rule that yields any
    candidate decides the pool. Within the pool the highest field confidence wins and
    ties go to the most recently processed document. Fields nobody supplies are
    defaulted and flagged missing instead of failing the resolution.
    """

    def __init__(self, field_definitions: Optional[Dict[str, TemplateFieldDefinition]] = None):
        self.field_definitions = field_definitions if field_definitions is not None else settings.TEMPLATE_FIELDS

    def resolve(
        self, documents: Iterable[ProcessedDocument], required_keys: Optional[List[str]] = None
    ) -> Dict[str, ResolvedValue]:
        usable = [d for d in documents if d.status != DocumentStatus.FAILED]
        keys = list(required_keys) if required_keys is not None else list(self.field_definitions)
        resolved: Dict[str, ResolvedValue] = {}
        raw_amount: Optional[ResolvedValue] = None

        for key in keys:
            definition = self.field_definitions.get(key)
            if definition is None:
                log.warning(f"No template field definition for '{key}'; marking it missing")
                resolved[key] = ResolvedValue(
                    key=key, value=f"[{key.upper()}]", confidence=settings.MISSING_FIELD_CONFIDENCE, missing=True
                )
                continue

            best = self._best_candidate(key, definition, usable)
            if best is None:
                resolved[key] = self._default(key, definition)
                continue
            if definition.type == "currency":
                raw_amount = best.model_copy()
                amount = parse_amount(best.value)
                if amount is not None:
                    best.value = format_amount(amount)
            elif definition.type == "number":
                number = leading_integer(best.value)
                if number is not None:
                    best.value = str(number)
            resolved[key] = best

        tenor = resolved.get("tenorDays")
        terms = resolved.get("paymentTerms")
        if tenor is not None and tenor.missing and terms is not None and not terms.missing:
            resolved["tenorDays"] = self._tenor_from_terms(tenor, terms)

        currency = resolved.get("currency")
        if currency is not None:
            resolved["currency"] = self._normalize_currency(currency, raw_amount)

        missing = [k for k, v in resolved.items() if v.missing]
        if missing:
            log.info(f"Template fields defaulted for lack of a source: {', '.join(missing)}")
        return resolved

    def _best_candidate(
        self, key: str, definition: TemplateFieldDefinition, documents: List[ProcessedDocument]
    ) -> Optional[ResolvedValue]:
        for rule in definition.rules:
            candidates = self._candidates(key, rule, documents)
            if candidates:
                candidates.sort(key=lambda c: (c[0].confidence, c[1]), reverse=True)
                return candidates[0][0]
        return None

    @staticmethod
    def _candidates(
        key: str, rule: FieldMatchRule, documents: List[ProcessedDocument]
    ) -> List[Tuple[ResolvedValue, datetime]]:
        found = []
        for doc in documents:
            if rule.document_types and doc.document_type not in rule.document_types:
                continue
            recency = _as_naive(doc.processed_at or doc.uploaded_at)

            if rule.entity_role:
                if doc.entities is None:
                    continue
                record = doc.entities.present().get(rule.entity_role)
                value = getattr(record, rule.entity_attribute, None) if record else None
                if value and str(value).strip():
                    found.append((ResolvedValue(
                        key=key,
                        value=str(value).strip(),
                        confidence=record.confidence,
                        source_document_id=doc.id,
                        source_document_type=doc.document_type,
                        source_field_key=f"entities.{rule.entity_role}.{rule.entity_attribute}",
                    ), recency))
                continue

            for field in doc.fields:
                if rule.field_types and field.type not in rule.field_types:
                    continue
                if not field.value or not field.value.strip():
                    continue
                if rule.exclude_tokens and set(key_tokens(field.key)) & set(rule.exclude_tokens):
                    continue
                if key_matches(field.key, rule.tokens):
                    found.append((ResolvedValue(
                        key=key,
                        value=field.value.strip(),
                        confidence=field.confidence,
                        source_document_id=doc.id,
                        source_document_type=doc.document_type,
                        source_field_key=field.key,
                    ), recency))
        return found

    @staticmethod
    def _default(key: str, definition: TemplateFieldDefinition) -> ResolvedValue:
        if definition.default_kind == "literal":
            value = definition.default or definition.placeholder
        elif definition.default_kind == "today":
            value = format_date(utcnow())
        elif definition.default_kind == "reference":
            value = f"TRADE-REF-{utcnow():%Y%m%d%H%M%S}"
        else:
            value = definition.placeholder
        return ResolvedValue(key=key, value=value, confidence=settings.MISSING_FIELD_CONFIDENCE, missing=True)

    @staticmethod
    def _tenor_from_terms(tenor: ResolvedValue, terms: ResolvedValue) -> ResolvedValue:
        """'120 DAYS FROM BL DATE' supplies a tenor of 120 when no document states one."""
        match = _DAYS_IN_TERMS.search(terms.value)
        if match is None:
            return tenor
        return ResolvedValue(
            key=tenor.key,
            value=match.group(1),
            confidence=terms.confidence,
            source_document_id=terms.source_document_id,
            source_document_type=terms.source_document_type,
            source_field_key=terms.source_field_key,
        )

    @staticmethod
    def _normalize_currency(currency: ResolvedValue, raw_amount: Optional[ResolvedValue]) -> ResolvedValue:
        if not currency.missing:
            code = detect_currency(currency.value)
            if code:
                currency.value = code
            else:
                currency.value = currency.value.upper()
            return currency

        code = detect_currency(raw_amount.value) if raw_amount is not None else None
        if code is None:
            return currency
        return ResolvedValue(
            key=currency.key,
            value=code,
            confidence=raw_amount.confidence,
            source_document_id=raw_amount.source_document_id,
            source_document_type=raw_amount.source_document_type,
            source_field_key=raw_amount.source_field_key,
        )


def _as_naive(value: Optional[datetime]) -> datetime:
    if value is None:
        return _EPOCH
    return value.replace(tzinfo=None)
