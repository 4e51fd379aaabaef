# =============================================================================
# API Package: FastAPI Route Handlers
# =============================================================================
# Each module defines an APIRouter for one feature:
#   - ingest.py: upload, task status, pause/resume, ordering, statistics
#   - agents.py: start runs, inspect tasks, restart/regenerate, memory
#   - indices.py: list, correct and count index entries
#   - deps.py: the shared Runtime dependency and domain → HTTP error mapping
# =============================================================================
