# =============================================================================
# PDF Text Extraction: Docling
# =============================================================================
#
# Turns a PDF into one markdown text blob plus a page count. The extracted
# text is what agent workers read (current document) and diff against
# (previous document), so headings and tables are kept as markdown.
#
# Docling loads ML models on first use. This module is only imported from
# the default document processor, inside the call that needs it, so the
# rest of docflow (and its tests) never pay that import.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from docling.datamodel.base_models import InputFormat
from docling.datamodel.pipeline_options import PdfPipelineOptions
from docling.document_converter import DocumentConverter, PdfFormatOption
from docling_core.types.doc.labels import DocItemLabel

logger = logging.getLogger(__name__)

_HEADING_LABELS = (DocItemLabel.SECTION_HEADER, DocItemLabel.TITLE)
_TEXT_LABELS = (
    DocItemLabel.TEXT,
    DocItemLabel.LIST_ITEM,
    DocItemLabel.CAPTION,
    DocItemLabel.FOOTNOTE,
)


@dataclass
class ExtractedText:
    """Text pulled out of one PDF."""

    text: str
    page_count: int
    filename: str


_converter: DocumentConverter | None = None


def _get_converter() -> DocumentConverter:
    """Lazily initialize and cache the Docling DocumentConverter."""
    global _converter
    if _converter is None:
        logger.info("Initializing Docling DocumentConverter (first use)...")
        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_table_structure = True
        pipeline_options.do_ocr = True
        _converter = DocumentConverter(
            format_options={
                InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options),
            }
        )
    return _converter


def extract_pdf_text(file_path: str) -> ExtractedText:
    """
    Extract markdown text from a PDF. Blocking; run it in a thread.

    Raises:
        FileNotFoundError: If the file does not exist.
        RuntimeError: If Docling fails to convert the document.
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"PDF not found: {file_path}")

    try:
        result = _get_converter().convert(str(path))
    except Exception as exc:
        raise RuntimeError(f"Docling failed to parse '{path.name}': {exc}") from exc

    blocks: list[str] = []
    pages: set[int] = set()

    for item, level in result.document.iterate_items():
        if getattr(item, "prov", None):
            pages.add(item.prov[0].page_no)

        label = getattr(item, "label", None)
        if label in _HEADING_LABELS:
            text = getattr(item, "text", "").strip()
            if text:
                blocks.append(f"{'#' * max(1, min(level, 6))} {text}")
        elif label == DocItemLabel.TABLE:
            table = _table_to_markdown(item)
            if table:
                blocks.append(table)
        elif label in _TEXT_LABELS:
            text = getattr(item, "text", "").strip()
            if text:
                blocks.append(text)

    page_count = max(pages) if pages else 0
    logger.info("Extracted '%s': %d blocks, %d pages", path.name, len(blocks), page_count)

    return ExtractedText(text="\n\n".join(blocks), page_count=page_count, filename=path.name)


def _table_to_markdown(table_item: object) -> str:
    try:
        if hasattr(table_item, "export_to_dataframe"):
            return table_item.export_to_dataframe().to_markdown(index=False)
    except Exception as exc:
        logger.warning("Table export to DataFrame failed: %s", exc)

    text = getattr(table_item, "text", "")
    return text.strip() if text else ""
