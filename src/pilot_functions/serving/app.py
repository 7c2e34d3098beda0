"""FastAPI application exposing every function as ``POST /functions/v1/<name>``."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.concurrency import run_in_threadpool

from pilot_functions.billing import BillingService
from pilot_functions.config import settings
from pilot_functions.errors import FunctionError, InvalidRequestError
from pilot_functions.ingestion.cleanup import cleanup_orphans, delete_source
from pilot_functions.ingestion.continuation import drain_queue
from pilot_functions.ingestion.embedder import Embedder
from pilot_functions.ingestion.refresh import RefreshJob
from pilot_functions.ingestion.search import search_knowledge
from pilot_functions.ingestion.service import IngestionService
from pilot_functions.leads import LeadCaptureService, RequestContext
from pilot_functions.notifications.email import ResendClient
from pilot_functions.notifications.invitations import send_new_lead_email, send_team_invitation
from pilot_functions.notifications.push import PushMessage, PushSender
from pilot_functions.notifications.webhook import process_webhook
from pilot_functions.serving.deps import caller_id, get_embedder, get_resend
from pilot_functions.store import get_store
from pilot_functions.store.base import RowStoreBase
from pilot_functions.wordpress.scheduled import run_scheduled_sync
from pilot_functions.wordpress.service import WordPressSyncService

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Pilot Functions",
    version="0.1.0",
    description="Serverless functions behind the Pilot chat widget and CRM.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


# ── Error rendering ───────────────────────────────────────────────────
@app.exception_handler(FunctionError)
async def function_error_handler(request: Request, exc: FunctionError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Error in %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:])
    message = f"Invalid request: {field} {first.get('msg', '')}".strip()
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception on %s: %s", request.url.path, exc, exc_info=True)
    return JSONResponse(status_code=500, content={"error": str(exc)})


# ── Request / Response schemas ────────────────────────────────────────
class CamelModel(BaseModel):
    """Accepts the widget/dashboard camelCase keys as well as snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProcessSourceRequest(CamelModel):
    source_id: str | None = None
    resume: bool = False
    continue_batch: bool = Field(default=False, alias="continue")
    batch_id: str | None = None
    agent_id: str | None = None


class DrainQueueRequest(CamelModel):
    limit: int = 5


class SourceRequest(CamelModel):
    source_id: str | None = None


class OrphanCleanupRequest(CamelModel):
    agent_id: str | None = None


class SearchRequest(CamelModel):
    agent_id: str
    query: str
    match_threshold: float = 0.7
    match_count: int = 5


class WordPressRequest(CamelModel):
    action: str
    agent_id: str | None = None
    site_url: str | None = None
    endpoint: str | None = None
    community_endpoint: str | None = None
    home_endpoint: str | None = None
    community_sync_interval: str | None = None
    home_sync_interval: str | None = None
    delete_locations: bool = False
    modified_after: str | None = None


class LeadRequest(CamelModel):
    agent_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    custom_fields: dict[str, Any] | None = None
    form_load_time: int | None = Field(default=None, alias="_formLoadTime")


class TeamInvitationRequest(CamelModel):
    email: str | None = None
    invited_by: str | None = None
    company_name: str | None = None


class NewLeadEmailRequest(CamelModel):
    recipient_email: str | None = None
    lead_name: str | None = None
    lead_email: str | None = None
    lead_phone: str | None = None
    message: str | None = None
    lead_id: str | None = None


class PushRequest(BaseModel):
    user_id: str = ""
    title: str = ""
    body: str = ""
    url: str | None = None
    icon: str | None = None
    badge: str | None = None
    tag: str | None = None
    data: dict[str, Any] | None = None


class BillingRequest(BaseModel):
    action: str | None = None


# ── Dependencies ──────────────────────────────────────────────────────
def get_ingestion_service(store: RowStoreBase = Depends(get_store)) -> IngestionService:
    return IngestionService(store)


def get_wordpress_service(store: RowStoreBase = Depends(get_store)) -> WordPressSyncService:
    return WordPressSyncService(store)


def is_scheduled_call(
    authorization: str | None = Header(default=None),
    x_scheduled_sync: str | None = Header(default=None),
) -> bool:
    """``x-scheduled-sync: true`` only counts when sent with the service key."""
    key = settings.supabase_service_role_key
    return bool(key) and x_scheduled_sync == "true" and authorization == f"Bearer {key}"


def _function(name: str) -> str:
    return f"/functions/v1/{name}"


# ── Routes: health ────────────────────────────────────────────────────
@app.get("/health")
def health(store: RowStoreBase = Depends(get_store)) -> Any:
    """Liveness probe; 503 when the row store cannot be reached."""
    if not store.health_check():
        logger.warning("Health check failed: row store unreachable")
        return JSONResponse(status_code=503, content={"status": "unavailable"})
    return {"status": "ok"}


# ── Routes: knowledge ─────────────────────────────────────────────────
@app.post(_function("process-knowledge-source"))
def process_knowledge_source(
    request: ProcessSourceRequest,
    background: BackgroundTasks,
    service: IngestionService = Depends(get_ingestion_service),
) -> dict[str, Any]:
    """Ingest one source, expand a sitemap, or run the next batch slice."""
    return service.process(
        request.source_id,
        resume=request.resume,
        continue_batch=request.continue_batch,
        batch_id=request.batch_id,
        agent_id=request.agent_id,
        background=background,
    )


@app.post(_function("process-ingestion-queue"))
def process_ingestion_queue(
    request: DrainQueueRequest | None = None,
    service: IngestionService = Depends(get_ingestion_service),
) -> dict[str, Any]:
    """Cron: run queued sitemap batch slices."""
    return drain_queue(service.store, service.runner, limit=(request or DrainQueueRequest()).limit)


@app.post(_function("refresh-knowledge-sources"))
def refresh_knowledge_sources(
    request: SourceRequest | None = None,
    service: IngestionService = Depends(get_ingestion_service),
) -> dict[str, Any]:
    """Cron (or manual with ``sourceId``): re-fetch due sources."""
    return RefreshJob(service).run((request or SourceRequest()).source_id)


@app.post(_function("search-knowledge"))
def search_knowledge_route(
    request: SearchRequest,
    store: RowStoreBase = Depends(get_store),
    embedder: Embedder = Depends(get_embedder),
) -> dict[str, Any]:
    hits = search_knowledge(
        store,
        embedder,
        request.agent_id,
        request.query,
        match_threshold=request.match_threshold,
        match_count=request.match_count,
    )
    return {"results": [hit.model_dump(by_alias=True) for hit in hits], "count": len(hits)}


@app.post(_function("delete-knowledge-source"))
def delete_knowledge_source(request: SourceRequest, store: RowStoreBase = Depends(get_store)) -> dict[str, Any]:
    if not request.source_id:
        raise InvalidRequestError("sourceId is required")
    return {"success": True, **delete_source(store, request.source_id)}


@app.post(_function("cleanup-knowledge-orphans"))
def cleanup_knowledge_orphans(
    request: OrphanCleanupRequest | None = None, store: RowStoreBase = Depends(get_store)
) -> dict[str, Any]:
    return {"success": True, **cleanup_orphans(store, (request or OrphanCleanupRequest()).agent_id)}


# ── Routes: WordPress ─────────────────────────────────────────────────
@app.post(_function("sync-wordpress-communities"))
def sync_wordpress_communities(
    request: WordPressRequest,
    caller: str | None = Depends(caller_id),
    scheduled: bool = Depends(is_scheduled_call),
    service: WordPressSyncService = Depends(get_wordpress_service),
) -> JSONResponse:
    payload, status = service.communities(
        request.action,
        request.agent_id,
        caller_id=caller,
        scheduled=scheduled,
        site_url=request.site_url,
        endpoint=request.endpoint,
        community_endpoint=request.community_endpoint,
        home_endpoint=request.home_endpoint,
        community_sync_interval=request.community_sync_interval,
        home_sync_interval=request.home_sync_interval,
        delete_locations=request.delete_locations,
        modified_after=request.modified_after,
    )
    return JSONResponse(status_code=status, content=payload)


@app.post(_function("sync-wordpress-homes"))
def sync_wordpress_homes(
    request: WordPressRequest,
    caller: str | None = Depends(caller_id),
    scheduled: bool = Depends(is_scheduled_call),
    service: WordPressSyncService = Depends(get_wordpress_service),
) -> JSONResponse:
    payload, status = service.homes(
        request.action,
        request.agent_id,
        caller_id=caller,
        scheduled=scheduled,
        site_url=request.site_url,
        endpoint=request.endpoint or request.home_endpoint,
        modified_after=request.modified_after,
    )
    return JSONResponse(status_code=status, content=payload)


@app.post(_function("scheduled-wordpress-sync"))
def scheduled_wordpress_sync(service: WordPressSyncService = Depends(get_wordpress_service)) -> dict[str, Any]:
    """Cron: sync every agent whose interval has elapsed."""
    return run_scheduled_sync(service)


# ── Routes: leads & notifications ─────────────────────────────────────
@app.post(_function("create-widget-lead"))
def create_widget_lead(
    request: LeadRequest, http_request: Request, store: RowStoreBase = Depends(get_store)
) -> dict[str, Any]:
    return LeadCaptureService(store).create(
        request.agent_id,
        request.first_name,
        request.last_name,
        request.email,
        custom_fields=request.custom_fields,
        form_load_time=request.form_load_time,
        context=RequestContext.from_headers(http_request.headers),
    )


@app.post(_function("send-team-invitation"))
def send_team_invitation_route(
    request: TeamInvitationRequest,
    caller: str | None = Depends(caller_id),
    store: RowStoreBase = Depends(get_store),
    resend: ResendClient = Depends(get_resend),
) -> dict[str, Any]:
    return send_team_invitation(
        store, resend, request.email, request.invited_by, request.company_name, caller_id=caller
    )


@app.post(_function("send-new-lead-email"))
def send_new_lead_email_route(
    request: NewLeadEmailRequest,
    caller: str | None = Depends(caller_id),
    store: RowStoreBase = Depends(get_store),
    resend: ResendClient = Depends(get_resend),
) -> dict[str, Any]:
    return send_new_lead_email(
        store,
        resend,
        request.recipient_email,
        request.lead_name,
        request.lead_id,
        lead_email=request.lead_email,
        lead_phone=request.lead_phone,
        message=request.message,
        caller_id=caller,
    )


@app.post(_function("resend-webhook"))
async def resend_webhook(request: Request, store: RowStoreBase = Depends(get_store)) -> dict[str, Any]:
    """Delivery events; the raw body is needed for signature checks."""
    body = await request.body()
    return await run_in_threadpool(process_webhook, store, settings.resend_webhook_secret, request.headers, body)


@app.post(_function("send-push-notification"))
def send_push_notification(request: PushRequest, store: RowStoreBase = Depends(get_store)) -> dict[str, Any]:
    return PushSender(store).send(PushMessage(**request.model_dump()))


# ── Routes: admin ─────────────────────────────────────────────────────
@app.post(_function("admin-stripe-sync"))
def admin_stripe_sync(
    request: BillingRequest,
    caller: str | None = Depends(caller_id),
    store: RowStoreBase = Depends(get_store),
) -> dict[str, Any]:
    return BillingService(store).handle(request.action, caller)
