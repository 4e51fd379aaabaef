# =============================================================================
# Best-Known Document Dates
# =============================================================================
# Documents are ordered by the most reliable date available:
#   1. the date inferred from the content at ingestion
#   2. the sorting timestamp assigned by the auto-reorder step
#   3. the upload time
# All dates are normalised to naive UTC so values from SQLite (naive) and
# freshly created records (aware) compare cleanly.
# =============================================================================

from __future__ import annotations

from datetime import datetime, timezone

from docflow.db.models import DocumentTask


def parse_date(value: object) -> datetime | None:
    """Parse an ISO date/datetime string (or datetime); None if unusable."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def inferred_timestamp(task: DocumentTask) -> str | None:
    metadata = (task.result or {}).get("metadata") or {}
    value = metadata.get("inferred_timestamp")
    return value if isinstance(value, str) and parse_date(value) else None


def best_known_date(task: DocumentTask) -> datetime:
    for candidate in (inferred_timestamp(task), task.sorting_timestamp):
        parsed = parse_date(candidate)
        if parsed is not None:
            return parsed
    return parse_date(task.created_at) or datetime.min


def best_known_timestamp(task: DocumentTask) -> str:
    """ISO string of best_known_date(), as stored on index entries."""
    return best_known_date(task).isoformat()
