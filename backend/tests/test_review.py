"""Tests for the review merge layer and reviewer accuracy metrics."""

from packetflow.models.schemas import CategoryOverride, DocumentStatus
from packetflow.services.review import (
    NOT_IN_DOCUMENT_LABEL,
    NOT_IN_DOCUMENT_VALUE,
    FieldState,
    FieldValue,
    Outcome,
    aggregate_review_accuracy,
    classify_field,
    compute_review_accuracy,
    display_data,
    is_reclassified,
    merge_extraction,
    normalize_value,
    resolve_category,
    sanitize_edited_fields,
)

DEED_FIELDS = {"recording_date": "2024-01-02", "grantor_name": "Jane Seller", "grantee_name": ""}


class TestFieldValue:
    def test_states(self):
        assert FieldValue.from_raw("Jane").state == FieldState.present
        assert FieldValue.from_raw(None).state == FieldState.missing
        assert FieldValue.from_raw("").state == FieldState.missing
        assert FieldValue.from_raw(NOT_IN_DOCUMENT_VALUE).state == FieldState.not_in_document

    def test_not_in_document_is_resolved_and_labelled(self):
        value = FieldValue.from_raw(NOT_IN_DOCUMENT_VALUE)
        assert value.is_resolved
        assert value.display() == NOT_IN_DOCUMENT_LABEL
        assert value.to_raw() == NOT_IN_DOCUMENT_VALUE
        assert not FieldValue.from_raw(None).is_resolved


class TestMerge:
    def test_edits_override_extraction(self, make_document):
        document = make_document(fields=DEED_FIELDS)
        document.edited_fields = {"grantee_name": "John Buyer"}

        merged = merge_extraction(document)

        assert merged.data["grantee_name"] == "John Buyer"
        assert merged.original_data["grantee_name"] == ""
        assert merged.edited_fields == {"grantee_name": "John Buyer"}

    def test_merge_is_idempotent(self, catalog, make_document):
        document = make_document(fields=DEED_FIELDS)
        document.edited_fields = {"grantor_name": "J. Seller"}
        assert merge_extraction(document, catalog) == merge_extraction(document, catalog)

    def test_override_restricts_to_target_schema(self, catalog, make_document):
        document = make_document(fields=DEED_FIELDS, likelihoods={"grantor_name": 0.9})
        document.edited_fields = {"grantor_name": "Edited", "taxpayer_name": "ACME"}
        document.category_override = CategoryOverride(id="tax_lien")

        merged = merge_extraction(document, catalog)

        allowed = set(catalog.get("tax_lien").field_keys)
        assert set(merged.data) <= allowed
        assert merged.data == {"taxpayer_name": "ACME"}
        assert merged.likelihoods == {}

    def test_custom_override_does_not_filter(self, catalog, make_document):
        document = make_document(fields=DEED_FIELDS)
        document.category_override = CategoryOverride(id="my_custom_type", is_custom=True)

        merged = merge_extraction(document, catalog)

        assert merged.data == DEED_FIELDS
        assert resolve_category(document) == "recorded_transfer_deed"

    def test_sanitize_drops_fields_outside_schema(self, catalog, make_document):
        document = make_document()
        document.category_override = CategoryOverride(id="tax_lien")
        edited = {"taxpayer_name": "ACME", "grantor_name": "stale"}
        assert sanitize_edited_fields(edited, document, catalog) == {"taxpayer_name": "ACME"}

    def test_display_renders_sentinel_label(self, make_document):
        document = make_document(fields={"grantor_name": NOT_IN_DOCUMENT_VALUE, "recording_date": "2024-01-02"})
        data = display_data(merge_extraction(document))
        assert data == {"grantor_name": NOT_IN_DOCUMENT_LABEL, "recording_date": "2024-01-02"}


class TestAccuracy:
    def test_classify_field(self):
        assert classify_field("Jane", "Jane") == Outcome.correct
        assert classify_field("Jane  Doe", "Jane Doe") == Outcome.correct
        assert classify_field("Jane", "Janet") == Outcome.wrong_value
        assert classify_field("", "Jane") == Outcome.miss
        assert classify_field("Jane", NOT_IN_DOCUMENT_VALUE) == Outcome.hallucination
        assert classify_field(None, NOT_IN_DOCUMENT_VALUE) == Outcome.correct_absent

    def test_normalize_value(self):
        assert normalize_value(None) == ""
        assert normalize_value(True) == "true"
        assert normalize_value(12.5) == "12.5"
        assert normalize_value({"b": 1, "a": " x  y "}) == normalize_value({"a": "x y", "b": 1})

    def test_untouched_document_has_no_accuracy(self, catalog, make_document):
        assert compute_review_accuracy(make_document(fields=DEED_FIELDS), catalog) is None

    def test_reviewed_document_accuracy(self, catalog, make_document):
        document = make_document(
            fields={**DEED_FIELDS, "sales_price": 100, "reasoning___grantor_name": "seen on page 1"},
            status=DocumentStatus.reviewed,
        )
        document.edited_fields = {
            "grantor_name": "Jane Q. Seller",
            "grantee_name": "John Buyer",
            "sales_price": NOT_IN_DOCUMENT_VALUE,
        }

        accuracy = compute_review_accuracy(document, catalog)

        assert accuracy.counts.correct == 1
        assert accuracy.counts.wrong_value == 1
        assert accuracy.counts.miss == 1
        assert accuracy.counts.hallucination == 1
        assert accuracy.critical_counts.correct == 1
        assert accuracy.critical_counts.wrong_value == 1
        assert {c.field for c in accuracy.changes} == {"grantor_name", "grantee_name", "sales_price"}
        assert accuracy.evaluated_field_count == 4

    def test_reclassified_documents_are_excluded(self, catalog, make_document):
        document = make_document(fields=DEED_FIELDS, status=DocumentStatus.reviewed)
        document.category_override = CategoryOverride(id="tax_lien")
        assert is_reclassified(document)
        assert compute_review_accuracy(document, catalog) is None

        summary = aggregate_review_accuracy([document], catalog)
        assert summary["documents_reclassified"] == 1
        assert summary["documents_evaluated"] == 0

    def test_aggregate_rates(self, catalog, make_document):
        first = make_document(fields=DEED_FIELDS, status=DocumentStatus.reviewed)
        second = make_document(fields=DEED_FIELDS, status=DocumentStatus.reviewed)
        second.edited_fields = {"grantor_name": "Someone Else"}

        summary = aggregate_review_accuracy([first, second], catalog)

        assert summary["documents_evaluated"] == 2
        assert summary["counts"]["correct"] == 3
        assert summary["counts"]["wrong_value"] == 1
        assert summary["rates"]["observed_present_accuracy"] == 0.75
        assert summary["rates"]["observed_hallucination_rate"] is None
