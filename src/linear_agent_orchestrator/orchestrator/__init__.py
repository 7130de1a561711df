"""Core orchestrator components.

Provides:
- Settings loaded from .env
- Structured logging
- The trigger reconciliation core (signature, events, ledger, dispatch)
- A Linear GraphQL client for the poll path
- A small CLI surface
"""
