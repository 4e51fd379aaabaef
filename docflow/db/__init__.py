# =============================================================================
# Database Package
# =============================================================================
# Provides the async SQLAlchemy engine, ORM models, and the Store: one
# independently lockable collection per logical record kind.
#
# Key exports:
#   - Store: bundle of DocumentTaskCollection, AgentQueueCollection,
#            MemorySnapshotCollection, IndexEntryCollection
#   - Base: SQLAlchemy declarative base for ORM models
# =============================================================================
