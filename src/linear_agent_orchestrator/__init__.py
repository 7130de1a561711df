"""Linear Agent Orchestrator.

Bridges Linear issue state changes to agent dispatches:
- webhook and poll ingestion paths funnel into one trigger ledger
- the ledger is an append-only JSONL file and the only dedup authority
- admitted triggers are handed to an execution subsystem, best-effort
"""

__version__ = "0.1.0"

from linear_agent_orchestrator.orchestrator.config import OrchestratorSettings

__all__ = ["__version__", "OrchestratorSettings"]
