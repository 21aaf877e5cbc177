from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
from typing import Any, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fieldrelay import __version__
from fieldrelay.core.audit import generate_request_id
from fieldrelay.core.config import Settings
from fieldrelay.core.conversation import ConversationEngine
from fieldrelay.core.errors import (
    FieldRelayError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from fieldrelay.core.logging_config import log_delivery, setup_logging
from fieldrelay.core.models import Integration, WorkerMapping
from fieldrelay.core.normalizer import normalize
from fieldrelay.core.notifier import NotificationDispatcher
from fieldrelay.core.rate_limit import RateLimiter
from fieldrelay.core.relay import TaskRelay
from fieldrelay.core.stats import StatsAggregator
from fieldrelay.core.store import IntegrationStore, WorkerTaskStore
from fieldrelay.core.tracking import location_detail, tracking_summary
from fieldrelay.integrations.telegram import TelegramAdapter

logger = logging.getLogger("fieldrelay.gateway")

_ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    PersistenceError: 500,
}

# Ingestion bodies larger than this are rejected before parsing
_MAX_BODY_BYTES = 200000


# ---- request models ----

class WorkerIn(BaseModel):
    chat_id: str
    external_id: str = ""
    external_name: str = ""


class CreateIntegrationRequest(BaseModel):
    name: str
    platform: str
    company_name: str = ""
    workers: List[WorkerIn] = []


def _integration_view(integration: Integration, settings: Settings) -> dict[str, Any]:
    return {
        "id": integration.integration_id,
        "connectId": integration.connect_id,
        "name": integration.name,
        "platform": integration.platform,
        "webhookUrl": settings.webhook_url(integration.connect_id),
        "companyName": integration.company_name,
        "isActive": integration.is_active,
        "workersCount": len(integration.active_workers()),
        "workers": [
            {
                "externalId": w.external_id,
                "externalName": w.external_name,
                "chatId": w.chat_id,
                "isActive": w.is_active,
            }
            for w in integration.workers
        ],
        "stats": integration.stats.to_dict(),
        "settings": integration.settings.to_dict(),
        "createdAt": integration.created_at.isoformat(),
    }


def create_app(settings: Optional[Settings] = None, transport: Any = None) -> FastAPI:
    """Build the app. *transport* overrides the Telegram adapter (used by tests)."""
    if settings is None:
        # Ensure .env is loaded before anything reads os.getenv
        load_dotenv(override=False)
        settings = Settings.from_env()
        setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)

    os.makedirs(settings.data_dir, exist_ok=True)

    tg_adapter: Optional[TelegramAdapter] = None
    if transport is None and settings.telegram_bot_token:
        tg_adapter = TelegramAdapter(settings.telegram_bot_token)
        transport = tg_adapter
    if transport is None:
        logger.warning("TELEGRAM_BOT_TOKEN not set; tasks will be stored but not delivered")

    integrations = IntegrationStore(
        store_path=os.path.join(settings.data_dir, "integrations.json"),
        max_per_owner=settings.max_integrations_per_owner,
    )
    tasks = WorkerTaskStore(store_path=os.path.join(settings.data_dir, "tasks.json"))
    stats = StatsAggregator(integrations)
    notifier = NotificationDispatcher(transport)
    relay = TaskRelay(tasks=tasks, stats=stats, transport=transport, data_dir=settings.data_dir)
    engine = ConversationEngine(
        integrations=integrations,
        tasks=tasks,
        stats=stats,
        notifier=notifier,
        transport=transport,
        data_dir=settings.data_dir,
    )
    rate_limiter = RateLimiter(
        max_calls=settings.ingest_rate_limit_calls,
        window_seconds=settings.ingest_rate_limit_seconds,
    )

    # ---- lifespan ----

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        if settings.telegram_polling and tg_adapter is not None:
            tg_adapter.start_polling(on_update=engine.handle_update)
            logger.info("Telegram polling started")
        yield
        if tg_adapter is not None:
            tg_adapter.stop_polling()

    app = FastAPI(title="fieldrelay", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.integrations = integrations
    app.state.tasks = tasks
    app.state.engine = engine
    app.state.relay = relay
    app.state.rate_limiter = rate_limiter

    @app.exception_handler(FieldRelayError)
    async def relay_error_handler(request: Request, exc: FieldRelayError) -> JSONResponse:
        status = next((code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 500)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content={"success": False, "error": str(exc)})

    # ---- shared helpers ----

    def _active_integration(connect_id: str) -> Integration:
        integration = integrations.get_by_connect_id(connect_id, active_only=True)
        if integration is None:
            raise NotFoundError("Integration not found or inactive")
        return integration

    def _owned_integration(integration_id: str, owner: Optional[str]) -> Integration:
        integration = integrations.get(integration_id)
        if integration is None or integration.owner_chat_id != owner:
            raise NotFoundError("Integration not found")
        return integration

    def _require_owner(owner: Optional[str]) -> str:
        if not owner:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return owner

    # ---- core routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    # ---- PM-tool ingestion ----

    @app.post("/integrations/{connect_id}")
    async def ingest(connect_id: str, request: Request) -> dict[str, Any]:
        if not rate_limiter.allow(connect_id):
            raise HTTPException(status_code=429, detail="rate limited")
        if request.headers.get("content-length") and int(request.headers["content-length"]) > _MAX_BODY_BYTES:
            raise HTTPException(status_code=413, detail="payload too large")
        integration = _active_integration(connect_id)
        rid = generate_request_id()

        try:
            body = await request.json()
        except ValueError as exc:
            log_delivery(connect_id, integration.platform, "invalid_json")
            raise ValidationError("Request body is not valid JSON") from exc

        task_data = normalize(integration.platform, body)
        if task_data is None:
            log_delivery(connect_id, integration.platform, "unparseable", payload_preview=body)
            raise ValidationError("Could not parse task from webhook")

        result = await run_in_threadpool(relay.relay, integration, task_data, request_id=rid)
        log_delivery(
            connect_id,
            integration.platform,
            "updated" if result.updated else "created",
            external_task_id=task_data.external_task_id,
            task_id=result.task_id,
        )
        if result.updated:
            return {
                "success": True,
                "message": "Task updated",
                "data": {"taskId": result.task_id, "sentTo": result.sent_to, "status": "updated"},
            }
        return {
            "success": True,
            "message": "Task sent to worker" if result.delivered else "Task stored; delivery failed",
            "data": {"taskId": result.task_id, "sentTo": result.sent_to},
        }

    @app.get("/integrations/{connect_id}")
    def verify_integration(connect_id: str) -> dict[str, Any]:
        integration = integrations.get_by_connect_id(connect_id, active_only=False)
        if integration is None:
            raise NotFoundError("Integration not found")
        return {
            "success": True,
            "data": {
                "name": integration.name,
                "platform": integration.platform,
                "isActive": integration.is_active,
                "workersCount": len(integration.workers),
                "stats": integration.stats.to_dict(),
            },
        }

    @app.get("/integrations/{connect_id}/tracking")
    def tracking(connect_id: str, completed: bool = False) -> dict[str, Any]:
        integration = _active_integration(connect_id)
        rows = tasks.list_for_integration(integration.integration_id)
        return {"success": True, "data": tracking_summary(integration, rows, include_completed=completed)}

    @app.get("/integrations/{connect_id}/tasks/{task_ref}/location")
    def task_location(connect_id: str, task_ref: str, history: bool = False, limit: int = 100) -> dict[str, Any]:
        integration = _active_integration(connect_id)
        task = tasks.find_in_integration(integration.integration_id, task_ref)
        if task is None:
            raise NotFoundError("Task not found")
        return {"success": True, "data": location_detail(task, include_history=history, history_limit=limit)}

    # ---- chat transport ----

    @app.post("/conversation")
    async def conversation(
        request: Request,
        x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
    ) -> dict[str, bool]:
        # Always acknowledge; Telegram retries anything else.
        if settings.telegram_webhook_secret and x_telegram_bot_api_secret_token != settings.telegram_webhook_secret:
            logger.warning("Dropping chat update with invalid secret token")
            return {"ok": True}
        try:
            update = await request.json()
        except ValueError:
            logger.warning("Dropping chat update with invalid JSON body")
            return {"ok": True}
        await run_in_threadpool(engine.handle_update, update)
        return {"ok": True}

    # ---- integration setup ----

    @app.post("/setup/integrations")
    def create_integration(
        req: CreateIntegrationRequest,
        x_owner_chat_id: Optional[str] = Header(default=None),
    ) -> dict[str, Any]:
        owner = _require_owner(x_owner_chat_id)
        integration = integrations.create(
            name=req.name,
            platform=req.platform,
            owner_chat_id=owner,
            company_name=req.company_name,
            workers=[
                WorkerMapping(chat_id=w.chat_id, external_id=w.external_id, external_name=w.external_name)
                for w in req.workers
            ],
        )
        return {
            "success": True,
            "message": "Integration created! Add this webhook URL to your PM tool.",
            "data": _integration_view(integration, settings),
        }

    @app.get("/setup/integrations")
    def list_integrations(x_owner_chat_id: Optional[str] = Header(default=None)) -> dict[str, Any]:
        owner = _require_owner(x_owner_chat_id)
        return {
            "success": True,
            "data": {"integrations": [_integration_view(i, settings) for i in integrations.list_for_owner(owner)]},
        }

    @app.post("/setup/integrations/{integration_id}/workers")
    def add_worker(
        integration_id: str,
        req: WorkerIn,
        x_owner_chat_id: Optional[str] = Header(default=None),
    ) -> dict[str, Any]:
        owner = _require_owner(x_owner_chat_id)
        _owned_integration(integration_id, owner)
        integration, created = integrations.add_worker(
            integration_id, req.chat_id, external_id=req.external_id, external_name=req.external_name,
        )
        return {
            "success": True,
            "message": "Worker added" if created else "Worker updated",
            "data": {"workersCount": len(integration.active_workers())},
        }

    @app.delete("/setup/integrations/{integration_id}/workers")
    def remove_worker(
        integration_id: str,
        chat_id: str,
        x_owner_chat_id: Optional[str] = Header(default=None),
    ) -> dict[str, Any]:
        owner = _require_owner(x_owner_chat_id)
        _owned_integration(integration_id, owner)
        integration = integrations.remove_worker(integration_id, chat_id)
        return {
            "success": True,
            "message": "Worker removed",
            "data": {"workersCount": len(integration.active_workers())},
        }

    return app
