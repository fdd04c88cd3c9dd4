"""Tests for trust scoring and review routing."""

import pytest

from packetflow.models.schemas import CategoryOverride, DocumentStatus, ExtractionResult
from packetflow.services.quality import (
    QualityTier,
    aggregate_quality_tiers,
    aggregate_trust,
    assess_review,
    compute_trust,
    extraction_confidence,
    is_field_empty,
    numeric_likelihoods,
    quality_tier,
)
from packetflow.services.review import NOT_IN_DOCUMENT_VALUE

COMPLETE_DEED = {
    "recording_date": "2024-01-02",
    "grantor_name": "Jane Seller",
    "grantee_name": "John Buyer",
    "sales_price": 250000,
}
FULL_LIKELIHOODS = {"recording_date": 0.9, "grantor_name": 0.9, "grantee_name": 0.9, "sales_price": 0.9}


class TestHelpers:
    def test_numeric_likelihoods_ignores_non_numbers(self):
        assert numeric_likelihoods({"a": 0.5, "b": "high", "c": None, "d": True, "e": 1}) == {"a": 0.5, "e": 1.0}

    def test_extraction_confidence_requires_consensus(self):
        result = ExtractionResult(likelihoods={"a": 0.8, "b": 0.6})
        assert extraction_confidence(result, 1) is None
        assert extraction_confidence(result, 3) == pytest.approx(0.7)
        assert extraction_confidence(ExtractionResult(), 3) is None

    def test_sentinel_is_not_empty(self):
        assert is_field_empty(None)
        assert is_field_empty("")
        assert is_field_empty([])
        assert not is_field_empty(NOT_IN_DOCUMENT_VALUE)
        assert not is_field_empty(0)


class TestComputeTrust:
    def test_full_document_with_confidence(self, catalog, make_document):
        document = make_document(fields=COMPLETE_DEED, likelihoods=FULL_LIKELIHOODS, extraction_confidence=0.9)
        result = compute_trust(document, catalog)

        # base 0.35 + 0.65 * 0.9 = 0.935, full coverage and completeness
        assert result.trust == pytest.approx(0.935)
        assert result.score == 94
        assert result.confidence_coverage == 1.0
        assert result.critical_completeness == 1.0
        assert not result.is_unscored

    def test_unscored_document_gets_neutral_base(self, catalog, make_document):
        document = make_document(fields=COMPLETE_DEED, likelihoods={})
        result = compute_trust(document, catalog)

        # 0.60 * 0.70 * 1.0
        assert result.trust == pytest.approx(0.42)
        assert result.score == 42
        assert result.is_unscored
        assert result.confidence_coverage == 0.0

    def test_missing_critical_fields_lower_trust(self, catalog, make_document):
        fields = {k: v for k, v in COMPLETE_DEED.items() if k != "grantor_name"}
        document = make_document(fields=fields, likelihoods=FULL_LIKELIHOODS, extraction_confidence=0.9)
        result = compute_trust(document, catalog)

        assert result.critical_completeness == 0.5
        assert result.trust == pytest.approx(0.935 * 1.0 * 0.8)

    def test_not_in_document_counts_as_resolved(self, catalog, make_document):
        fields = {**COMPLETE_DEED, "grantor_name": NOT_IN_DOCUMENT_VALUE}
        document = make_document(fields=fields, likelihoods=FULL_LIKELIHOODS, extraction_confidence=0.9)
        assert compute_trust(document, catalog).critical_completeness == 1.0

    def test_reviewed_is_fully_trusted(self, catalog, make_document):
        document = make_document(fields={}, likelihoods={}, status=DocumentStatus.reviewed,
                                 extraction_confidence=0.1)
        result = compute_trust(document, catalog)
        assert result.trust == 1.0
        assert result.score == 100
        assert not result.is_unscored

    def test_needs_review_is_capped(self, catalog, make_document):
        document = make_document(fields=COMPLETE_DEED, likelihoods=FULL_LIKELIHOODS, extraction_confidence=0.99,
                                 status=DocumentStatus.needs_review, needs_review=True)
        result = compute_trust(document, catalog)
        assert result.trust == 0.55
        assert result.score <= 55

    def test_is_deterministic(self, catalog, make_document):
        document = make_document(fields=COMPLETE_DEED, likelihoods={"grantor_name": 0.7}, extraction_confidence=0.7)
        assert compute_trust(document, catalog) == compute_trust(document, catalog)

    def test_uses_override_schema(self, catalog, make_document):
        document = make_document(fields=COMPLETE_DEED, likelihoods=FULL_LIKELIHOODS, extraction_confidence=0.9)
        document.category_override = CategoryOverride(id="tax_lien")
        result = compute_trust(document, catalog)

        # taxpayer_name is critical for tax liens and was never extracted
        assert result.critical_completeness == 0.0
        assert result.confidence_coverage == 0.0


class TestAggregates:
    def test_aggregate_trust(self, catalog, make_document):
        documents = [
            make_document(fields=COMPLETE_DEED, likelihoods=FULL_LIKELIHOODS, extraction_confidence=0.9),
            make_document(fields=COMPLETE_DEED),
            make_document(status=DocumentStatus.reviewed),
        ]
        summary = aggregate_trust(documents, catalog)

        assert summary.total == 3
        assert summary.reviewed == 1
        assert summary.unscored == 1
        assert summary.scored_count == 2
        assert summary.quality_score == round((94 + 42 + 100) / 3)
        assert summary.quality_score_scored_only == 97

    def test_aggregate_trust_empty(self, catalog):
        assert aggregate_trust([], catalog).total == 0

    def test_tiers_agree_with_trust_flags(self, catalog, make_document):
        documents = [
            make_document(status=DocumentStatus.reviewed),
            make_document(status=DocumentStatus.needs_review, needs_review=True, extraction_confidence=0.9),
            make_document(extraction_confidence=0.9),
            make_document(),
        ]
        tiers = [quality_tier(d) for d in documents]
        assert tiers == [QualityTier.verified, QualityTier.needs_attention, QualityTier.high, QualityTier.unscored]

        for document, tier in zip(documents, tiers):
            flagged = compute_trust(document, catalog).is_needs_review
            assert flagged == (tier == QualityTier.needs_attention)

        assert aggregate_quality_tiers(documents) == {
            "verified": 1, "high": 1, "needs_attention": 1, "unscored": 1,
        }


class TestAssessReview:
    def test_clean_extraction_has_no_reasons(self, catalog):
        result = ExtractionResult(fields=COMPLETE_DEED, likelihoods=FULL_LIKELIHOODS)
        assert assess_review(result, "recorded_transfer_deed", catalog, 0.7) == []

    def test_reasons_are_a_union(self, catalog):
        result = ExtractionResult(
            fields={"grantee_name": "John"},
            likelihoods={"grantee_name": 0.3, "sales_price": 0.4},
            requires_human_review=True,
        )
        reasons = assess_review(result, "recorded_transfer_deed", catalog, 0.7)

        assert len(reasons) == 4
        assert any("OCR" in r for r in reasons)
        assert any("confidence is low" in r for r in reasons)
        assert any(r.startswith("Verify these uncertain fields") for r in reasons)
        assert any(r.startswith("Missing required fields") for r in reasons)

    def test_many_low_fields_are_counted(self, catalog):
        likelihoods = {f"field_{i}": 0.2 for i in range(5)}
        result = ExtractionResult(fields=COMPLETE_DEED, likelihoods=likelihoods)
        reasons = assess_review(result, "recorded_transfer_deed", catalog, 0.1)
        assert "5 fields need verification due to low confidence" in reasons

    def test_unrecognized_category(self, catalog):
        result = ExtractionResult(fields={"document_title": "Affidavit"})
        reasons = assess_review(result, "other_recorded", catalog, 0.7)
        assert len(reasons) == 1
        assert "Unrecognized document type" in reasons[0]

    def test_threshold_is_configurable(self, catalog):
        result = ExtractionResult(fields=COMPLETE_DEED, likelihoods={k: 0.8 for k in FULL_LIKELIHOODS})
        assert assess_review(result, "recorded_transfer_deed", catalog, 0.7) == []
        assert len(assess_review(result, "recorded_transfer_deed", catalog, 0.85)) == 1

    def test_sentinel_satisfies_critical_field(self, catalog):
        fields = {**COMPLETE_DEED, "recording_date": NOT_IN_DOCUMENT_VALUE}
        result = ExtractionResult(fields=fields, likelihoods=FULL_LIKELIHOODS)
        assert assess_review(result, "recorded_transfer_deed", catalog, 0.7) == []
