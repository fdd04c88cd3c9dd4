import io
import logging
from typing import Iterable, Optional

from pypdf import PdfReader, PdfWriter

logger = logging.getLogger(__name__)


def count_pages(data: bytes) -> Optional[int]:
    """Page count of a PDF, or None when it cannot be read."""
    try:
        reader = PdfReader(io.BytesIO(data))
        return len(reader.pages)
    except Exception as e:
        logger.warning(f"Could not read PDF page count: {e}")
        return None


def extract_pages(data: bytes, pages: Iterable[int]) -> bytes:
    """
    Build a new PDF containing only `pages` (1-based) of `data`.

    Returns the original bytes when the selection covers the whole file or
    when the PDF cannot be sliced, so a document can always be submitted.
    """
    selected = sorted(set(pages))
    if not selected:
        return data

    try:
        reader = PdfReader(io.BytesIO(data))
        total = len(reader.pages)
        wanted = [p for p in selected if 1 <= p <= total]
        if not wanted or len(wanted) == total:
            return data

        writer = PdfWriter()
        for page_number in wanted:
            writer.add_page(reader.pages[page_number - 1])
        output = io.BytesIO()
        writer.write(output)
        return output.getvalue()
    except Exception as e:
        logger.warning(f"Could not slice pages {selected[0]}-{selected[-1]}, sending full file: {e}")
        return data
