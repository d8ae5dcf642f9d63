# template_populator.py
import re
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from config import settings
from errors import TemplateNotFoundError, WorkflowValidationError
from models import (
    BankVariant,
    EditableField,
    PopulatedTemplate,
    ProcessedDocument,
    ResolvedValue,
    TemplateKind,
    utcnow,
)
from stores import InMemoryTemplateStore, TemplateStore
from template_fields import TemplateFieldResolver
from utils import format_date, leading_integer, log

_PLACEHOLDER = re.compile(r'\{\{([A-Z_]+)\}\}')
_WHITESPACE = re.compile(r"\s+")

# Values computed at render time rather than read from documents
ISSUE_DATE_KEY = "issueDate"
MATURITY_DATE_KEY = "maturityDate"
_DERIVED_PLACEHOLDERS = {"DATE": ISSUE_DATE_KEY, "MATURITY_DATE": MATURITY_DATE_KEY}
_DERIVED_LABELS = {ISSUE_DATE_KEY: "Issue Date", MATURITY_DATE_KEY: "Maturity Date"}
_DERIVED_SOURCE = "derived"
_MANUAL_SOURCE = "manual"

_TEMPLATE_NAMES = {
    TemplateKind.COVERING_LETTER: "Covering Letter ({bank})",
    TemplateKind.BILL_OF_EXCHANGE: "Bill of Exchange",
}


class TemplatePopulator:
    """Renders resolved transaction values into the fixed bank layouts and keeps them editable."""

    def __init__(self, resolver: Optional[TemplateFieldResolver] = None, templates: Optional[TemplateStore] = None):
        self.resolver = resolver or TemplateFieldResolver()
        self.templates = templates or InMemoryTemplateStore()

    def populate(
        self,
        resolved: Dict[str, ResolvedValue],
        bank_variant: BankVariant = BankVariant.BANK1,
        kind: TemplateKind = TemplateKind.COVERING_LETTER,
        template_id: Optional[str] = None,
    ) -> PopulatedTemplate:
        """
        Substitutes resolved values into the layout for (kind, bank_variant).

        Confidence is the mean confidence of the document-backed values the layout uses;
        missing values count at their default confidence. Issue and maturity dates are
        substituted and editable but do not count.
        """
        bank_variant = BankVariant(bank_variant)
        kind = TemplateKind(kind)
        layout = settings.TEMPLATE_LAYOUTS[self._layout_key(kind, bank_variant)]
        values = {key: value.model_copy() for key, value in resolved.items()}
        self._fill_derived(values)

        used_keys: List[str] = []
        for placeholder in _PLACEHOLDER.findall(layout):
            key = _DERIVED_PLACEHOLDERS.get(placeholder) or settings.TEMPLATE_PLACEHOLDERS.get(placeholder)
            if key is None:
                log.warning(f"Layout placeholder '{placeholder}' has no field mapping; left as is")
                continue
            if key not in used_keys:
                used_keys.append(key)
            if key not in values:
                values[key] = self.resolver.resolve([], [key])[key]

        def _substitute(match: re.Match) -> str:
            placeholder = match.group(1)
            key = _DERIVED_PLACEHOLDERS.get(placeholder) or settings.TEMPLATE_PLACEHOLDERS.get(placeholder)
            if key is None:
                return match.group(0)
            return values[key].value

        content = _PLACEHOLDER.sub(_substitute, layout)

        scored = [values[k].confidence for k in used_keys if k not in _DERIVED_LABELS]
        confidence = round(sum(scored) / len(scored), 4) if scored else settings.MISSING_FIELD_CONFIDENCE

        template = PopulatedTemplate(
            id=template_id or f"{kind.value}-{bank_variant.value}-{uuid.uuid4().hex[:8]}",
            kind=kind,
            name=_TEMPLATE_NAMES[kind].format(bank=bank_variant.value.upper()),
            bank_variant=bank_variant,
            content=content,
            confidence=confidence,
            data_source={
                k: values[k].source_document_id for k in used_keys
                if values[k].source_document_id and not values[k].missing
            },
            editable_fields=[self._editable_field(values[k]) for k in used_keys],
            resolved_fields={k: values[k] for k in used_keys},
        )
        missing = [f.key for f in template.editable_fields if f.missing]
        log.info(
            f"Populated {template.name} ({template.id}) with confidence {confidence:.2f}"
            + (f"; missing: {', '.join(missing)}" if missing else "")
        )
        return template

    async def populate_templates_from_transaction(
        self,
        documents: List[ProcessedDocument],
        bank_type: BankVariant = BankVariant.BANK1,
        user_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> List[PopulatedTemplate]:
        """Covering letter and bill of exchange for one transaction's documents, cached for later edits."""
        resolved = self.resolver.resolve(documents)
        owner = documents[0] if documents else None
        user_id = user_id or (owner.user_id if owner else None)
        transaction_id = transaction_id or (owner.transaction_id if owner else None)
        populated = []
        for kind in (TemplateKind.COVERING_LETTER, TemplateKind.BILL_OF_EXCHANGE):
            template = self.populate(resolved, bank_type, kind)
            template.user_id = user_id
            template.transaction_id = transaction_id
            populated.append(await self.templates.save_template(template))
        return populated

    async def get_template(self, template_id: str, user_id: Optional[str] = None) -> PopulatedTemplate:
        template = await self.templates.get_template(template_id)
        if template is None or (user_id is not None and template.user_id not in (None, user_id)):
            raise TemplateNotFoundError(template_id)
        return template

    async def update_template_fields(
        self, template_id: str, edits: Dict[str, str], user_id: Optional[str] = None
    ) -> PopulatedTemplate:
        """Applies user edits and re-renders. Edited values are trusted fully and no longer missing."""
        template = await self.get_template(template_id, user_id)
        unknown = sorted(set(edits) - set(template.resolved_fields))
        if unknown:
            raise WorkflowValidationError(
                f"Template {template_id} has no editable field(s): {', '.join(unknown)}",
                field="edits",
                details={"unknown_fields": unknown, "editable_fields": sorted(template.resolved_fields)},
            )

        resolved = dict(template.resolved_fields)
        for key, value in edits.items():
            previous = resolved[key]
            resolved[key] = ResolvedValue(
                key=key,
                value=str(value),
                confidence=settings.MANUAL_FIELD_CONFIDENCE,
                missing=False,
                source_document_id=previous.source_document_id,
                source_document_type=previous.source_document_type,
                source_field_key=_MANUAL_SOURCE,
            )

        updated = self.populate(resolved, template.bank_variant, template.kind, template_id=template.id)
        updated.created_at = template.created_at
        updated.user_id = template.user_id
        updated.transaction_id = template.transaction_id
        log.info(f"Template {template_id} updated: {', '.join(sorted(edits))}")
        return await self.templates.save_template(updated)

    @staticmethod
    def generate_final_documents(templates: List[PopulatedTemplate]) -> List[Dict[str, str]]:
        return [
            {"filename": f"{_WHITESPACE.sub('_', t.name)}.txt", "content": t.content}
            for t in templates
        ]

    # --- Helpers ---

    @staticmethod
    def _layout_key(kind: TemplateKind, bank_variant: BankVariant) -> str:
        if kind == TemplateKind.COVERING_LETTER:
            return f"{kind.value}:{bank_variant.value}"
        return kind.value

    @staticmethod
    def _fill_derived(values: Dict[str, ResolvedValue]) -> None:
        """Issue date is today, maturity is issue date plus tenor, unless the user has set them."""
        issue = values.get(ISSUE_DATE_KEY)
        issue_date = utcnow()
        if issue is not None and issue.source_field_key == _MANUAL_SOURCE:
            try:
                issue_date = datetime.strptime(issue.value, settings.TEMPLATE_DATE_FORMAT)
            except ValueError:
                log.warning(f"Issue date '{issue.value}' is not in {settings.TEMPLATE_DATE_FORMAT}; maturity uses today")
        else:
            values[ISSUE_DATE_KEY] = ResolvedValue(
                key=ISSUE_DATE_KEY, value=format_date(issue_date), confidence=1.0, source_field_key=_DERIVED_SOURCE
            )

        tenor = values.get("tenorDays")
        days = settings.DEFAULT_TENOR_DAYS
        if tenor is not None:
            parsed = leading_integer(tenor.value)
            if parsed is None:
                log.warning(f"Tenor '{tenor.value}' has no day count; using {settings.DEFAULT_TENOR_DAYS} days")
            else:
                days = parsed
                tenor.value = str(parsed)

        maturity = values.get(MATURITY_DATE_KEY)
        if maturity is None or maturity.source_field_key == _DERIVED_SOURCE:
            values[MATURITY_DATE_KEY] = ResolvedValue(
                key=MATURITY_DATE_KEY,
                value=format_date(issue_date + timedelta(days=days)),
                confidence=1.0,
                source_field_key=_DERIVED_SOURCE,
            )

    @staticmethod
    def _editable_field(value: ResolvedValue) -> EditableField:
        if value.key in _DERIVED_LABELS:
            return EditableField(
                key=value.key, label=_DERIVED_LABELS[value.key], value=value.value, type="date", required=False
            )
        definition = settings.TEMPLATE_FIELDS.get(value.key)
        return EditableField(
            key=value.key,
            label=definition.label if definition else value.key,
            value=value.value,
            type=definition.type if definition else "text",
            required=True,
            missing=value.missing,
            placeholder=definition.placeholder if definition else None,
        )
