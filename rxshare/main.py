"""FastAPI application exposing prescription sharing and identity linking."""

from __future__ import annotations

import asyncio
import os
import re
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from structlog.contextvars import bind_contextvars, unbind_contextvars

from rxshare import accounts
from rxshare.config import get_settings
from rxshare.db.engine import get_session_factory, init_schema, session_scope, translate_store_errors
from rxshare.errors import ForbiddenError, InvalidRequestError, NotFoundError, ShareError
from rxshare.identity import AccountIdentity, guest
from rxshare.logging_config import configure_logging
from rxshare.metrics import REQUEST_COUNTER, REQUEST_LATENCY
from rxshare.notifier import owner_topic, patient_topic
from rxshare.schemas import LinkRequest, LoginRequest, PrescriptionCreate, RegisterRequest
from rxshare.security import (
    create_access_token,
    get_current_account,
    optional_account,
    require_role,
    ws_authenticate,
)
from rxshare.service import ShareService
from rxshare.ws_changes import ChangeWebSocketManager

load_dotenv()
configure_logging()

logger = structlog.get_logger(__name__)

_TRACE_ID_CTX: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
_PATH_PARAM_RE = re.compile(r"/(?:[0-9]+|[0-9a-fA-F]{8,}|[A-Za-z0-9_-]{43})(?=/|$)")

_SERVICE: Optional[ShareService] = None


def get_service() -> ShareService:
    """Return the process-wide :class:`ShareService`."""

    global _SERVICE
    if _SERVICE is None:
        _SERVICE = ShareService.from_settings(get_settings(), get_session_factory())
    return _SERVICE


def current_trace_id() -> Optional[str]:
    return _TRACE_ID_CTX.get()


def _normalise_path_for_metrics(path: str) -> str:
    """Reduce high-cardinality segments in request paths for metrics labels."""

    if not path:
        return "/"
    return _PATH_PARAM_RE.sub("/:param", path)


def _error_body(code: Any, message: str, details: Any = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"success": False, "error": error, "traceId": current_trace_id()}


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised indirectly in integration
    logger.info("lifespan_startup")
    init_schema()
    start_ts = time.time()
    try:
        yield
    finally:
        logger.info("lifespan_shutdown_complete", uptime=time.time() - start_ts)


app = FastAPI(title="RxShare API", lifespan=lifespan)


@app.middleware("http")
async def track_http_metrics(request: Request, call_next):
    """Emit Prometheus counters and histograms for each request."""

    start = time.perf_counter()
    normalised = _normalise_path_for_metrics(request.url.path)
    try:
        response = await call_next(request)
    except Exception:
        REQUEST_COUNTER.labels(request.method, normalised, "500").inc()
        REQUEST_LATENCY.labels(request.method, normalised).observe(time.perf_counter() - start)
        raise
    REQUEST_COUNTER.labels(request.method, normalised, str(response.status_code)).inc()
    REQUEST_LATENCY.labels(request.method, normalised).observe(time.perf_counter() - start)
    return response


@app.middleware("http")
async def inject_trace_id(request: Request, call_next):
    """Attach or propagate a trace identifier for each request."""

    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
    token = _TRACE_ID_CTX.set(trace_id)
    bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
    request.state.trace_id = trace_id
    response = None
    try:
        response = await call_next(request)
        return response
    except Exception:
        logger.exception("request_failed", path=request.url.path, method=request.method)
        raise
    finally:
        if response is not None:
            response.headers["X-Trace-Id"] = trace_id
        unbind_contextvars("trace_id", "path", "method")
        _TRACE_ID_CTX.reset(token)


@app.exception_handler(ShareError)
async def share_error_handler(request: Request, exc: ShareError) -> JSONResponse:
    """Render sharing failures into the standard error envelope."""

    payload = exc.to_payload()
    logger.info("share_error", code=exc.code, status=exc.status_code)
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(payload["code"], payload["message"], payload.get("details")),
        headers=headers,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.status_code, str(exc.detail)),
        headers=dict(exc.headers or {}),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in error.get("loc", ())[1:]), "message": error.get("msg")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body(InvalidRequestError.code, InvalidRequestError.default_message, errors),
    )


def _account_payload(account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "name": account.name,
        "mobile": account.contact,
        "role": account.role,
        "email": account.email,
    }


@app.post("/api/accounts/register", status_code=status.HTTP_201_CREATED)
def register(model: RegisterRequest, service: ShareService = Depends(get_service)) -> Dict[str, Any]:
    """Create an account and return an access token for it."""

    with translate_store_errors("register"):
        with session_scope(service.session_factory) as session:
            account = accounts.register_account(
                session,
                name=model.name,
                contact=model.contact,
                password=model.password,
                role=model.role,
                email=model.email,
                qualification=model.qualification,
                registration=model.registration,
            )
            body = _account_payload(account)
            token = create_access_token(account)
    return {"access_token": token, "token_type": "bearer", "account": body}


@app.post("/login")
def login(model: LoginRequest, service: ShareService = Depends(get_service)) -> Dict[str, Any]:
    """Validate credentials and return a JWT on success."""

    with translate_store_errors("login"):
        with session_scope(service.session_factory) as session:
            account = accounts.authenticate(session, model.contact, model.password, model.role)
            if account is None:
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail="Invalid credentials",
                )
            body = _account_payload(account)
            token = create_access_token(account)
    return {"access_token": token, "token_type": "bearer", "account": body}


@app.post("/api/records", status_code=status.HTTP_201_CREATED)
def create_prescription(
    model: PrescriptionCreate,
    clinician: AccountIdentity = Depends(require_role(accounts.ROLE_CLINICIAN)),
    service: ShareService = Depends(get_service),
) -> Dict[str, Any]:
    """Create a prescription and issue its share link."""

    return service.create_prescription(clinician, model).to_payload()


@app.post("/api/records/{record_id}/reshare", status_code=status.HTTP_201_CREATED)
def reshare_prescription(
    record_id: str,
    clinician: AccountIdentity = Depends(require_role(accounts.ROLE_CLINICIAN)),
    service: ShareService = Depends(get_service),
) -> Dict[str, Any]:
    return service.reshare(record_id, clinician).to_payload()


@app.get("/api/records")
def list_prescriptions(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    contact: Optional[str] = Query(default=None, alias="mobile"),
    clinician: AccountIdentity = Depends(require_role(accounts.ROLE_CLINICIAN)),
    service: ShareService = Depends(get_service),
) -> Dict[str, Any]:
    """List the caller's prescriptions, optionally filtered by status or patient number."""

    if contact:
        items = service.records_for_contact(clinician, contact)
    else:
        items = service.list_records(clinician, status=status_filter)
    return {"records": items, "count": len(items)}


@app.get("/api/records/{record_id}")
def get_prescription(
    record_id: str,
    caller: AccountIdentity = Depends(get_current_account),
    service: ShareService = Depends(get_service),
) -> Dict[str, Any]:
    return service.resolve_by_owner(record_id, caller).to_payload()


@app.get("/api/patients/me/records")
def my_records(
    patient: AccountIdentity = Depends(require_role(accounts.ROLE_PATIENT)),
    service: ShareService = Depends(get_service),
) -> Dict[str, Any]:
    return service.patient_records(patient)


@app.get("/api/share/{token}")
def view_shared_prescription(token: str, service: ShareService = Depends(get_service)) -> Dict[str, Any]:
    """Resolve a share token to its prescription."""

    return service.resolve(token).to_payload()


@app.get("/api/share/{token}/qr")
def shared_prescription_qr(token: str, service: ShareService = Depends(get_service)) -> Dict[str, Any]:
    return service.share_qr(token)


@app.post("/api/share/{token}/link")
def link_shared_prescription(
    token: str,
    model: Optional[LinkRequest] = Body(default=None),
    caller: Optional[AccountIdentity] = Depends(optional_account),
    service: ShareService = Depends(get_service),
) -> Dict[str, Any]:
    """Claim a shared prescription for an account, or open it as a guest."""

    if caller is not None:
        identity = caller
    elif model is not None and model.identity is not None:
        identity = guest(model.identity.name, model.identity.contact)
    else:
        raise InvalidRequestError("Sign in or provide a guest name and mobile number.", field="identity")
    return service.link(token, identity).raise_for_status().to_payload()


@app.get("/metrics", response_model=None)
def metrics() -> Response:
    """Prometheus exposition."""

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


async def _authorise_topic(service: ShareService, caller: AccountIdentity, topic: str) -> bool:
    scope, _, key = topic.partition(":")
    if not key:
        return False
    if scope == "owner":
        return topic == owner_topic(caller.account_id)
    if scope == "patient":
        return topic == patient_topic(caller.account_id)
    if scope == "record":
        try:
            await asyncio.to_thread(service.resolve_by_owner, key, caller)
        except (ForbiddenError, NotFoundError):
            return False
        return True
    return False


@app.websocket("/ws/changes")
async def ws_changes(websocket: WebSocket, service: ShareService = Depends(get_service)) -> None:
    """Change events for one topic.

    Query parameters: ``topic`` (``record:<id>``, ``owner:<id>`` or
    ``patient:<id>``), optional ``since`` (last event id seen) and ``token``
    when no ``Authorization`` header can be sent.
    """

    caller = await ws_authenticate(websocket)
    topic = websocket.query_params.get("topic") or ""
    since_raw = websocket.query_params.get("since") or ""
    since = int(since_raw) if since_raw.isdigit() else None
    if (since_raw and since is None) or not await _authorise_topic(service, caller, topic):
        logger.info("changes_ws_rejected", topic=topic, account_id=caller.account_id)
        await websocket.close(code=1008)
        return
    manager = ChangeWebSocketManager(service.feed, service.replay)
    await manager.handle(websocket, topic, since)


def run() -> None:
    """Serve the API with uvicorn (``rxshare-api`` console script)."""

    import uvicorn

    uvicorn.run(
        "rxshare.main:app",
        host=os.getenv("RXSHARE_HOST", "127.0.0.1"),
        port=int(os.getenv("RXSHARE_PORT", "8000")),
        log_level=get_settings().log_level.lower(),
    )


__all__ = ["app", "get_service", "run"]
