"""FastAPI app factory.

Endpoints are intentionally thin wrappers over the orchestrator services.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from linear_agent_orchestrator import __version__
from linear_agent_orchestrator.orchestrator.linear.client import LinearClient
from linear_agent_orchestrator.orchestrator.triggers.ledger import TriggerRecord, TriggerStatus
from linear_agent_orchestrator.orchestrator.triggers.reconciler import Reconciler
from linear_agent_orchestrator.orchestrator.triggers.service import PollReport, TriggerService
from linear_agent_orchestrator.orchestrator.triggers.signature import (
    LEGACY_SIGNATURE_HEADER,
    SIGNATURE_HEADER,
    verify_signature,
)
from linear_agent_orchestrator.server.config import ServerSettings
from linear_agent_orchestrator.server.models import LedgerSummary, PollResult, WebhookAck
from linear_agent_orchestrator.server.poll_runner import PollLoop

logger = logging.getLogger(__name__)


def _to_poll_result(report: PollReport) -> PollResult:
    return PollResult(
        nodes=len(report.nodes),
        triggered=report.triggered,
        deduplicated=report.deduplicated,
        errors=report.errors,
        error=report.error,
        skipped_reason=report.skipped_reason,
    )


def create_app(settings: ServerSettings | None = None) -> FastAPI:
    settings = settings or ServerSettings()

    service = TriggerService.from_settings(settings)
    linear = LinearClient(
        api_key=settings.linear_api_key,
        url=settings.linear_api_url,
        timeout=settings.http_timeout_seconds,
    )
    reconciler = Reconciler(
        service=service,
        linear=linear,
        team_id=settings.team_id,
        limit=settings.poll_limit,
        window_hours=settings.poll_window_hours,
    )
    poll_loop = PollLoop(
        reconciler=reconciler, interval_seconds=settings.auto_poll_interval_seconds
    )

    if not settings.webhook_secret:
        logger.warning("LINEAR_WEBHOOK_SECRET is not set; webhook deliveries will be rejected")

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if settings.auto_poll_enabled:
            poll_loop.start()
        try:
            yield
        finally:
            poll_loop.stop()
            linear.close()

    app = FastAPI(
        title="Linear Agent Orchestrator",
        version=__version__,
        description="Webhook + poll bridge from Linear state changes to agent dispatches.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    # Expose collaborators for request handlers and tests.
    app.state.settings = settings
    app.state.trigger_service = service
    app.state.reconciler = reconciler
    app.state.poll_loop = poll_loop

    @app.post("/webhooks/linear", response_model=WebhookAck)
    async def linear_webhook(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
        raw_body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER) or request.headers.get(
            LEGACY_SIGNATURE_HEADER
        )
        if not verify_signature(raw_body, signature, settings.webhook_secret):
            logger.warning(
                "Linear webhook: invalid signature",
                extra={"has_signature": bool(signature)},
            )
            return JSONResponse(
                status_code=401,
                content=WebhookAck(ok=False, error="invalid signature").model_dump(),
            )

        # Acknowledge now; ingestion runs after the response is sent.
        background_tasks.add_task(service.process_webhook_body, raw_body)
        return JSONResponse(status_code=200, content=WebhookAck(ok=True).model_dump())

    @app.get("/api/v1/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/v1/triggers", response_model=list[TriggerRecord])
    def list_triggers(status: TriggerStatus | None = None) -> list[TriggerRecord]:
        records = service.ledger.load()
        if status is not None:
            records = [r for r in records if r.status == status]
        return records

    @app.get("/api/v1/triggers/summary", response_model=LedgerSummary)
    def triggers_summary() -> LedgerSummary:
        return LedgerSummary.model_validate(service.ledger.summary())

    @app.get("/api/v1/triggers/{work_item_id}", response_model=TriggerRecord)
    def get_trigger(work_item_id: str) -> TriggerRecord:
        record = service.ledger.find_active(work_item_id)
        if record is None:
            raise HTTPException(status_code=404, detail="No active trigger for this work item")
        return record

    @app.post("/api/v1/poll", response_model=PollResult)
    def poll() -> PollResult:
        return _to_poll_result(reconciler.poll_once())

    return app
