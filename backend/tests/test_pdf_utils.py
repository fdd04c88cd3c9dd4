"""Tests for PDF page counting and slicing."""

import io

from pypdf import PdfReader

from conftest import make_pdf

from packetflow.services.pdf_utils import count_pages, extract_pages


class TestPdfUtils:
    def test_count_pages(self):
        assert count_pages(make_pdf(3)) == 3

    def test_count_pages_unreadable(self):
        assert count_pages(b"not a pdf") is None

    def test_extract_subset(self):
        data = make_pdf(5)
        sliced = extract_pages(data, [4, 2, 2])
        assert len(PdfReader(io.BytesIO(sliced)).pages) == 2

    def test_out_of_range_pages_are_ignored(self):
        sliced = extract_pages(make_pdf(3), [3, 9])
        assert count_pages(sliced) == 1

    def test_full_selection_returns_original(self):
        data = make_pdf(2)
        assert extract_pages(data, [1, 2]) is data
        assert extract_pages(data, []) is data

    def test_unreadable_pdf_returns_original(self):
        assert extract_pages(b"garbage", [1]) == b"garbage"
