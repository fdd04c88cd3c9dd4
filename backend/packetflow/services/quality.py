"""
Per-document trust scoring and review routing.

Trust is a continuous 0-1 value built from extraction confidence, the share
of schema fields with a likelihood (coverage) and how many critical fields
are resolved (completeness). Reviewed documents are trusted fully;
documents flagged for review are capped so they always sort below clean ones.
"""
import math
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from packetflow.models.schemas import Document, DocumentStatus, ExtractionResult, TrustAssessment, TrustSummary
from packetflow.services.catalog import UNRECOGNIZED_CATEGORIES, DocumentCatalog, friendly_field_name
from packetflow.services.review import NOT_IN_DOCUMENT_VALUE, merge_extraction, resolve_category

REVIEW_CONFIDENCE_THRESHOLD = 0.75
LOW_FIELD_CONFIDENCE = 0.5
NEEDS_REVIEW_TRUST_CAP = 0.55
UNSCORED_BASE = 0.60


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def numeric_likelihoods(likelihoods: Dict[str, Any]) -> Dict[str, float]:
    return {
        k: float(v) for k, v in (likelihoods or {}).items()
        if isinstance(v, (int, float)) and not isinstance(v, bool)
    }


def extraction_confidence(result: ExtractionResult, n_consensus: int) -> Optional[float]:
    """Mean field likelihood. Only meaningful when several runs were compared."""
    if n_consensus <= 1:
        return None
    values = list(numeric_likelihoods(result.likelihoods).values())
    if not values:
        return None
    return sum(values) / len(values)


def is_field_empty(value: Any) -> bool:
    """Empty for completeness purposes. The not-in-document marker counts as resolved."""
    if value is None or value == "":
        return True
    if value == NOT_IN_DOCUMENT_VALUE:
        return False
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def compute_trust(document: Document, catalog: DocumentCatalog) -> TrustAssessment:
    is_reviewed = document.status == DocumentStatus.reviewed
    is_needs_review = document.needs_review or document.status == DocumentStatus.needs_review

    category = resolve_category(document)
    merged = merge_extraction(document, catalog)

    schema = catalog.get(category)
    schema_field_count = len(schema.fields) if schema else 0
    likelihood_count = len(numeric_likelihoods(merged.likelihoods))
    coverage = min(1.0, likelihood_count / schema_field_count) if schema_field_count > 0 else 0.0

    critical = schema.critical_fields if schema else []
    missing = sum(1 for key in critical if is_field_empty(merged.data.get(key)))
    completeness = 1 - missing / len(critical) if critical else 1.0

    confidence = document.extraction_confidence
    has_confidence = confidence is not None

    if is_reviewed:
        trust = 1.0
    else:
        base = 0.35 + 0.65 * confidence if has_confidence else UNSCORED_BASE
        coverage_factor = 0.70 + 0.30 * coverage
        completeness_factor = 0.60 + 0.40 * (1 - missing / max(1, len(critical)))
        trust = base * coverage_factor * completeness_factor
        if is_needs_review and trust > NEEDS_REVIEW_TRUST_CAP:
            trust = NEEDS_REVIEW_TRUST_CAP

    return TrustAssessment(
        trust=trust,
        score=_round_half_up(trust * 100),
        confidence_coverage=coverage,
        critical_completeness=completeness,
        is_reviewed=is_reviewed,
        is_needs_review=is_needs_review,
        is_unscored=not has_confidence and not is_reviewed,
    )


def aggregate_trust(documents: Iterable[Document], catalog: DocumentCatalog) -> TrustSummary:
    documents = list(documents)
    total = len(documents)
    if not total:
        return TrustSummary()

    sum_score = 0
    sum_scored_only = 0
    scored = 0
    sum_coverage = 0.0
    sum_completeness = 0.0
    reviewed = 0
    needs_review = 0
    unscored = 0

    for document in documents:
        result = compute_trust(document, catalog)
        sum_score += result.score
        sum_coverage += result.confidence_coverage or 0.0
        sum_completeness += result.critical_completeness
        if result.is_reviewed:
            reviewed += 1
        elif result.is_needs_review:
            needs_review += 1
        if result.is_unscored:
            unscored += 1
        else:
            scored += 1
            sum_scored_only += result.score

    return TrustSummary(
        quality_score=_round_half_up(sum_score / total),
        quality_score_scored_only=_round_half_up(sum_scored_only / scored) if scored else None,
        scored_count=scored,
        avg_confidence_coverage=sum_coverage / total,
        avg_critical_completeness=sum_completeness / total,
        reviewed=reviewed,
        needs_review=needs_review,
        unscored=unscored,
        total=total,
    )


class QualityTier(str, Enum):
    verified = "verified"
    high = "high"
    needs_attention = "needs_attention"
    unscored = "unscored"


def quality_tier(document: Document) -> QualityTier:
    """
    Coarse tier used by the summary counters.

    Flags exactly the documents `compute_trust` reports as needing review,
    so the two scorers never disagree on what to route to a human.
    """
    if document.status == DocumentStatus.reviewed:
        return QualityTier.verified
    if document.needs_review or document.status == DocumentStatus.needs_review:
        return QualityTier.needs_attention
    if document.extraction_confidence is None:
        return QualityTier.unscored
    return QualityTier.high


def aggregate_quality_tiers(documents: Iterable[Document]) -> Dict[str, int]:
    counts = {tier.value: 0 for tier in QualityTier}
    for document in documents:
        counts[quality_tier(document).value] += 1
    return counts


def assess_review(result: ExtractionResult, category: Optional[str], catalog: DocumentCatalog,
                  confidence_threshold: float = REVIEW_CONFIDENCE_THRESHOLD) -> List[str]:
    """Human-readable reasons a fresh extraction should be reviewed. Empty means none."""
    reasons: List[str] = []

    if category in UNRECOGNIZED_CATEGORIES:
        reasons.append("Unrecognized document type, identify and categorize manually")

    if result.requires_human_review:
        reasons.append("Possible OCR issues detected, check handwritten or faded text")

    likelihoods = numeric_likelihoods(result.likelihoods)
    if likelihoods:
        average = sum(likelihoods.values()) / len(likelihoods)
        if average < confidence_threshold:
            reasons.append(f"Overall extraction confidence is low ({average * 100:.0f}%), review all fields")

        low = [
            f"{friendly_field_name(k)} ({v * 100:.0f}%)"
            for k, v in likelihoods.items() if v < LOW_FIELD_CONFIDENCE
        ]
        if 0 < len(low) <= 3:
            reasons.append(f"Verify these uncertain fields: {', '.join(low)}")
        elif len(low) > 3:
            reasons.append(f"{len(low)} fields need verification due to low confidence")

    missing = [key for key in catalog.critical_fields(category) if is_field_empty(result.fields.get(key))]
    if missing:
        reasons.append(f"Missing required fields: {', '.join(friendly_field_name(k) for k in missing)}")

    return reasons
