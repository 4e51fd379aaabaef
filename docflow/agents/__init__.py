# =============================================================================
# Agents Package
# =============================================================================
# Multi-agent re-walk of ingested documents:
#   workers.py       worker template + the four worker variants
#   queue.py         generic ordered, sequential, restartable task queue
#   orchestrator.py  LangGraph graph that builds a run (intent → fan-out)
#   registry.py      run keys → cached queues, background drains, recovery
#   prompts.py       instructions sent to the reasoning/writing models
# =============================================================================
