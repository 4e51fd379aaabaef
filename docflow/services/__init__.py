# =============================================================================
# Services Package
# =============================================================================
# llm.py        providers + ask_model() (deadline, error mapping)
# replies.py    JSON-object extraction from model replies
# memory.py     bounded rolling memory with snapshots
# processor.py  document processor used by the ingestion queue
# parser.py     Docling PDF text extraction (imported lazily)
# dates.py      best-known document dates for chronological ordering
# =============================================================================
