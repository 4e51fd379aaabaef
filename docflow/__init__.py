# =============================================================================
# docflow: Document Ingestion and Multi-Agent Task Orchestration
# =============================================================================
# Ingests documents through a bounded background queue, then lets agents
# re-walk the processed documents in chronological order to produce
# derived artifacts (numeric indices, research articles, statement-change
# analyses), carrying state between steps in a bounded rolling memory.
#
# Package structure:
#   docflow/
#   ├── api/          → FastAPI route handlers (ingest, agents, indices)
#   ├── agents/       → Workers, agent queues, LangGraph orchestrators
#   ├── db/           → Async engine, ORM models, lockable store collections
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → LLM providers, reply parsing, memory, document processing
#   └── workers/      → Bounded ingestion queue (asyncio worker pool)
# =============================================================================
