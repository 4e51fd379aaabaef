# =============================================================================
# Background Workers
# =============================================================================
# The bounded ingestion queue: an asyncio worker pool that runs inside the
# application's event loop, started and stopped by the FastAPI lifespan.
# =============================================================================
