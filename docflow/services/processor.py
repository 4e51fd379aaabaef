# =============================================================================
# Document Processor: the Ingestion Queue's Collaborator
# =============================================================================
#
# The ingestion queue only knows the DocumentProcessor protocol:
#
#   validate(path, filename)  synchronous; raises InputValidationError
#   process(task)             async; returns a DocumentResult or raises
#
# PdfDocumentProcessor is the default implementation:
#   1. Extract markdown text with Docling (in a worker thread)
#   2. Write it to <extracted_text_dir>/<task id>.md
#   3. Ask the reasoning model for a summary, the document's real-world
#      date, and optional analysis scores in [-1, 1]
#
# A reply that cannot be parsed still yields a completed document: the
# raw reply becomes the summary and no date is inferred. An Upstream
# error propagates and the queue marks the task failed.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Protocol

from docflow.config import settings
from docflow.db.models import DocumentTask, utcnow
from docflow.errors import InputValidationError
from docflow.services.llm import LLMProvider, ask_model
from docflow.services.replies import parse_json_reply, parse_score

logger = logging.getLogger(__name__)

PDF_SIGNATURE = b"%PDF"

SUMMARY_SYSTEM_PROMPT = """You read corporate and financial documents and describe them.
Reply with a single JSON object and nothing else:
{
  "summary": "three to five sentences on what the document says",
  "inferred_timestamp": "YYYY-MM-DD date the document refers to or was issued, or null",
  "analysis_scores": {"<short_snake_case_name>": <decimal between -1 and 1>}
}
analysis_scores is optional; include it only for clear, quantifiable signals."""

# Characters of extracted text sent for summarisation
SUMMARY_INPUT_CHARS = 12000


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class DocumentResult:
    """Output contract of a processor: text reference, metadata, page count."""

    summary: str
    extracted_text_path: str
    page_count: int
    file_size: int
    processed_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class DocumentProcessor(Protocol):
    def validate(self, source_path: str, filename: str) -> None:
        ...

    async def process(self, task: DocumentTask) -> DocumentResult:
        ...


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_upload(
    source_path: str,
    filename: str,
    supported_extensions: list[str] | None = None,
) -> None:
    """
    Reject files the pipeline cannot process.

    Raises:
        InputValidationError: Unsupported extension, missing file, or a
            .pdf file without the %PDF signature.
    """
    extensions = [ext.lower() for ext in (supported_extensions or settings.supported_extensions)]
    suffix = Path(filename).suffix.lower()
    if suffix not in extensions:
        raise InputValidationError(
            f"Unsupported file type '{suffix or filename}'. Supported: {', '.join(extensions)}"
        )

    path = Path(source_path)
    if not path.is_file():
        raise InputValidationError(f"File not found: {source_path}")

    if suffix == ".pdf":
        with path.open("rb") as fh:
            if fh.read(len(PDF_SIGNATURE)) != PDF_SIGNATURE:
                raise InputValidationError(f"'{filename}' is not a valid PDF file")


# ---------------------------------------------------------------------------
# Default Implementation
# ---------------------------------------------------------------------------


class PdfDocumentProcessor:
    """Docling extraction followed by a model-written summary and date."""

    def __init__(
        self,
        llm: LLMProvider,
        extracted_text_dir: str | None = None,
        supported_extensions: list[str] | None = None,
    ) -> None:
        self._llm = llm
        self._output_dir = Path(extracted_text_dir or settings.extracted_text_dir)
        self._extensions = supported_extensions or settings.supported_extensions

    def validate(self, source_path: str, filename: str) -> None:
        validate_upload(source_path, filename, self._extensions)

    async def process(self, task: DocumentTask) -> DocumentResult:
        from docflow.services.parser import extract_pdf_text

        logger.info("[%s] Extracting text from %s", task.id, task.filename)
        extracted = await asyncio.to_thread(extract_pdf_text, task.source_path)
        if not extracted.text.strip():
            raise ValueError(f"No text could be extracted from '{task.filename}'")

        text_path = self._output_dir / f"{task.id}.md"
        await asyncio.to_thread(self._write_text, text_path, extracted.text)
        file_size = (await asyncio.to_thread(Path(task.source_path).stat)).st_size

        logger.info("[%s] Summarising %d chars", task.id, len(extracted.text))
        reply = await ask_model(
            self._llm,
            SUMMARY_SYSTEM_PROMPT,
            f"Filename: {task.filename}\n\n{extracted.text[:SUMMARY_INPUT_CHARS]}",
            label=f"summary:{task.id}",
        )
        summary, metadata = _read_summary_reply(reply)

        return DocumentResult(
            summary=summary,
            extracted_text_path=str(text_path),
            page_count=extracted.page_count,
            file_size=file_size,
            processed_at=utcnow().isoformat(),
            metadata=metadata,
        )

    @staticmethod
    def _write_text(path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")


def _read_summary_reply(reply: str) -> tuple[str, dict[str, Any]]:
    parsed = parse_json_reply(reply, required=("summary",))
    if not parsed.ok:
        logger.warning("Summary reply unparseable (%s); keeping raw text", parsed.error)
        return reply, {}

    metadata: dict[str, Any] = {}
    inferred = parsed.data.get("inferred_timestamp")
    if isinstance(inferred, str) and inferred.strip():
        metadata["inferred_timestamp"] = inferred.strip()

    scores = parsed.data.get("analysis_scores")
    if isinstance(scores, dict):
        valid = {name: parse_score(value) for name, value in scores.items()}
        metadata["analysis_scores"] = {k: v for k, v in valid.items() if v is not None}

    return str(parsed.data["summary"]), metadata
