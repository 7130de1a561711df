"""Trigger reconciliation core.

- ``signature``: webhook HMAC verification
- ``events``: push/poll normalisation and document path extraction
- ``ledger``: append-only JSONL trigger ledger and its status machine
- ``dispatch``: best-effort direct dispatch with the ledger as durable fallback
- ``service`` / ``reconciler``: the ingestion pipeline and poll sweep
"""
