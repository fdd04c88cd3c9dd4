"""
Review merge layer.

A document's visible data is always derived: extraction fields overlaid with
reviewer edits, filtered to the effective category schema when the document
was reclassified. Nothing here mutates the extraction itself.
"""
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from packetflow.models.schemas import Document, DocumentStatus, MergedData
from packetflow.services.catalog import CategorySchema, DocumentCatalog

logger = logging.getLogger(__name__)

# Wire value a reviewer stores for "this field is not in the document"
NOT_IN_DOCUMENT_VALUE = "__NOT_IN_DOCUMENT__"
NOT_IN_DOCUMENT_LABEL = "Not in document"

META_FIELD_PREFIXES = ("reasoning___", "source___")


class FieldState(str, Enum):
    present = "present"
    not_in_document = "not_in_document"
    missing = "missing"


@dataclass(frozen=True)
class FieldValue:
    """A field value that keeps "absent by review" distinct from "missing"."""

    state: FieldState
    value: Any = None

    @classmethod
    def from_raw(cls, raw: Any) -> "FieldValue":
        if raw == NOT_IN_DOCUMENT_VALUE:
            return cls(FieldState.not_in_document)
        if is_empty(raw):
            return cls(FieldState.missing)
        return cls(FieldState.present, raw)

    @property
    def is_resolved(self) -> bool:
        return self.state != FieldState.missing

    def to_raw(self) -> Any:
        if self.state == FieldState.not_in_document:
            return NOT_IN_DOCUMENT_VALUE
        return self.value

    def display(self) -> Any:
        if self.state == FieldState.not_in_document:
            return NOT_IN_DOCUMENT_LABEL
        return self.value


def is_empty(value: Any) -> bool:
    if value is None or value == "":
        return True
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def resolve_category(document: Document) -> Optional[str]:
    """Effective category: a non-custom override wins over the classification."""
    override = document.category_override
    if override and not override.is_custom and override.id:
        return override.id
    if document.classification:
        return document.classification.category
    return None


def effective_schema(document: Document, catalog: DocumentCatalog) -> Optional[CategorySchema]:
    return catalog.get(resolve_category(document))


def _override_schema(document: Document, catalog: Optional[DocumentCatalog]) -> Optional[CategorySchema]:
    override = document.category_override
    if catalog is None or override is None or override.is_custom:
        return None
    return catalog.get(override.id)


def merge_extraction(document: Document, catalog: Optional[DocumentCatalog] = None) -> MergedData:
    """
    Overlay reviewer edits on the extracted fields.

    When a non-custom category override is set, every view is restricted to
    the override schema's fields. Deterministic and idempotent.
    """
    extraction = document.extraction
    original = dict(extraction.fields) if extraction else {}
    likelihoods = dict(extraction.likelihoods) if extraction else {}
    edited = dict(document.edited_fields)

    data = {**original, **edited}

    schema = _override_schema(document, catalog)
    if schema is not None:
        allowed = set(schema.field_keys)
        data = {k: v for k, v in data.items() if k in allowed}
        likelihoods = {k: v for k, v in likelihoods.items() if k in allowed}
        original = {k: v for k, v in original.items() if k in allowed}
        edited = {k: v for k, v in edited.items() if k in allowed}

    return MergedData(data=data, likelihoods=likelihoods, original_data=original, edited_fields=edited)


def sanitize_edited_fields(edited_fields: Dict[str, Any], document: Document,
                           catalog: DocumentCatalog) -> Dict[str, Any]:
    """Drop edits for keys outside the document's effective schema."""
    schema = effective_schema(document, catalog)
    if schema is None:
        return dict(edited_fields)
    allowed = set(schema.field_keys)
    dropped = [k for k in edited_fields if k not in allowed]
    if dropped:
        logger.info(f"Dropping {len(dropped)} edited fields outside schema '{schema.id}' for {document.id}")
    return {k: v for k, v in edited_fields.items() if k in allowed}


def display_data(merged: MergedData) -> Dict[str, Any]:
    """Merged data with the not-in-document marker rendered as its label."""
    return {k: FieldValue.from_raw(v).display() for k, v in merged.data.items()}


# Review accuracy: compares extracted values with reviewer-corrected values

class Outcome(str, Enum):
    correct = "correct"
    wrong_value = "wrong_value"
    miss = "miss"
    hallucination = "hallucination"
    correct_absent = "correct_absent"


class OutcomeCounts(BaseModel):
    correct: int = 0
    wrong_value: int = 0
    miss: int = 0
    hallucination: int = 0
    correct_absent: int = 0

    def add(self, outcome: Outcome) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)

    def merge(self, other: "OutcomeCounts") -> None:
        for outcome in Outcome:
            setattr(self, outcome.value, getattr(self, outcome.value) + getattr(other, outcome.value))

    @property
    def total(self) -> int:
        return self.correct + self.wrong_value + self.miss + self.hallucination + self.correct_absent

    def rates(self) -> Dict[str, Optional[float]]:
        present = self.correct + self.wrong_value + self.miss
        absent = self.hallucination + self.correct_absent
        return {
            "observed_present_accuracy": self.correct / present if present else None,
            "observed_miss_rate": self.miss / present if present else None,
            "observed_wrong_rate": self.wrong_value / present if present else None,
            "observed_hallucination_rate": self.hallucination / absent if absent else None,
        }


class FieldChange(BaseModel):
    field: str
    outcome: Outcome
    original: Any = None
    final: Any = None
    critical: bool = False


class ReviewAccuracy(BaseModel):
    document_id: str
    category: Optional[str]
    counts: OutcomeCounts = Field(default_factory=OutcomeCounts)
    critical_counts: OutcomeCounts = Field(default_factory=OutcomeCounts)
    changes: List[FieldChange] = Field(default_factory=list)

    @property
    def evaluated_field_count(self) -> int:
        return self.counts.total


def normalize_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return " ".join(value.split())
    if isinstance(value, list):
        return json.dumps([normalize_value(v) for v in value])
    if isinstance(value, dict):
        return json.dumps({k: normalize_value(value[k]) for k in sorted(value)})
    return str(value).strip()


def classify_field(original: Any, final: Any) -> Outcome:
    if final == NOT_IN_DOCUMENT_VALUE:
        return Outcome.correct_absent if is_empty(original) else Outcome.hallucination
    if is_empty(original) and not is_empty(final):
        return Outcome.miss
    if normalize_value(original) == normalize_value(final):
        return Outcome.correct
    return Outcome.wrong_value


def is_reclassified(document: Document) -> bool:
    override = document.category_override
    original = document.classification.category if document.classification else None
    if not override or not override.id or not original:
        return False
    return override.id != original


def compute_review_accuracy(document: Document, catalog: DocumentCatalog) -> Optional[ReviewAccuracy]:
    """
    Per-field audit of a reviewed document.

    Returns None for documents no reviewer touched and for reclassified
    documents, whose original extraction used a different schema.
    """
    if document.status != DocumentStatus.reviewed and not document.edited_fields:
        return None
    if is_reclassified(document):
        return None

    category = resolve_category(document)
    merged = merge_extraction(document, catalog)
    schema = catalog.get(category)
    keys: Iterable[str] = schema.field_keys if schema else merged.data.keys()
    critical = set(schema.critical_fields) if schema else set()

    accuracy = ReviewAccuracy(document_id=document.id, category=category)
    for key in keys:
        if key.startswith(META_FIELD_PREFIXES):
            continue
        original = merged.original_data.get(key)
        final = merged.data.get(key)
        if is_empty(original) and is_empty(final):
            continue
        outcome = classify_field(original, final)
        accuracy.counts.add(outcome)
        if key in critical:
            accuracy.critical_counts.add(outcome)
        if outcome != Outcome.correct:
            accuracy.changes.append(FieldChange(
                field=key, outcome=outcome, original=original, final=final, critical=key in critical,
            ))
    return accuracy


def aggregate_review_accuracy(documents: Iterable[Document], catalog: DocumentCatalog) -> Dict[str, Any]:
    counts = OutcomeCounts()
    critical = OutcomeCounts()
    evaluated = 0
    skipped_reclassified = 0
    for document in documents:
        if is_reclassified(document):
            skipped_reclassified += 1
            continue
        accuracy = compute_review_accuracy(document, catalog)
        if accuracy is None:
            continue
        evaluated += 1
        counts.merge(accuracy.counts)
        critical.merge(accuracy.critical_counts)

    return {
        "documents_evaluated": evaluated,
        "documents_reclassified": skipped_reclassified,
        "counts": counts.model_dump(),
        "rates": counts.rates(),
        "critical_counts": critical.model_dump(),
        "critical_rates": critical.rates(),
    }
