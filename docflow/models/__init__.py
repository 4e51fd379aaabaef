# =============================================================================
# Models Package: Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the HTTP surface. These are separate from
# the SQLAlchemy tables in docflow/db/models.py so the wire contract and
# the storage layout can change independently.
# =============================================================================
