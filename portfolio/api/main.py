"""
Backend element store API.

Owner sessions read and write their portfolio elements; requests without a
session are guests and only see the public portfolio and share links.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .schemas import (
    LoginRequest,
    SessionResponse,
    UpsertRequest,
    UpsertResponse,
    BulkUpsertRequest,
    BulkUpsertResponse,
    ElementResponse,
    ElementListResponse,
    DeleteResponse,
    BackupResponse,
    BackupListResponse,
    AuditEntryResponse,
    AuditListResponse,
    ShareCreateRequest,
    ShareResponse,
    ShareListResponse,
    ShareValidationResponse,
    SharedContentResponse,
    HealthResponse,
    ErrorResponse,
)
from ..core import auth, shares
from ..core.auth import Principal
from ..core.config import CORS_ORIGINS, SHARE_PATH, SITE_ORIGIN, VERSION, debug_enabled, validate_config
from ..core.dao import (
    upsert_element,
    get_elements,
    bulk_upsert,
    soft_delete_element,
    list_backups,
    get_backup,
    list_audit_log,
    count_elements,
)
from ..core.db import health_check, init_db
from ..core.errors import (
    BackendError,
    BackupError,
    PermissionDenied,
    PortfolioError,
    Unauthenticated,
    ValidationFailed,
)
from ..core.links import build_share_url
from ..core.realtime import change_feed
from ..core.schema import ShareLink
from util.logging import logger

REALTIME_KEEPALIVE_SEC = 15.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    for issue in validate_config():
        logger.warning(f"Configuration issue: {issue}")
    owner = auth.ensure_owner_account()
    if owner:
        logger.info(f"Portfolio owner account ready: {owner.username}")
    yield


# Initialize the FastAPI application
app = FastAPI(
    title="Portfolio Sync API",
    version=VERSION,
    description="Owner-scoped element store with backups, audit log, share links and realtime change feed",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Error mapping ---

ERROR_STATUS = (
    (Unauthenticated, 401, "UNAUTHENTICATED"),
    (PermissionDenied, 403, "PERMISSION_DENIED"),
    (ValidationFailed, 422, "VALIDATION_ERROR"),
    (BackupError, 500, "BACKUP_ERROR"),
    (BackendError, 500, "BACKEND_ERROR"),
)


@app.exception_handler(PortfolioError)
async def portfolio_error_handler(request: Request, exc: PortfolioError):
    status_code, error_type = 500, "BACKEND_ERROR"
    for exc_class, code, name in ERROR_STATUS:
        if isinstance(exc, exc_class):
            status_code, error_type = code, name
            break

    if status_code >= 500:
        logger.error(f"{error_type} on {request.method} {request.url.path}: {exc}")

    body = ErrorResponse(error_type=error_type, message=str(exc), errors=getattr(exc, "errors", []))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        errors.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))

    logger.log_validation_error(request.url.path, errors)
    body = ErrorResponse(error_type="VALIDATION_ERROR", message="Request validation failed", errors=errors)
    return JSONResponse(status_code=422, content=body.model_dump())


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle all unhandled exceptions."""
    logging.error(f"Unhandled exception: {exc}")
    content = {"error_type": "INTERNAL_ERROR", "message": "Internal server error", "errors": []}
    if debug_enabled():
        content["debug"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# --- Session dependencies ---

def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_principal(authorization: Optional[str] = Header(None)) -> Optional[Principal]:
    """Principal for the bearer token, or None for guests."""
    return auth.get_principal(_bearer_token(authorization))


def require_session(principal: Optional[Principal] = Depends(get_current_principal)) -> Principal:
    if principal is None:
        raise Unauthenticated()
    return principal


def require_owner(principal: Principal = Depends(require_session)) -> Principal:
    if not principal.is_owner:
        raise PermissionDenied()
    return principal


def _share_response(share: ShareLink) -> ShareResponse:
    data = share.to_dict()
    data.pop("owner_id")
    return ShareResponse(**data, url=build_share_url(SITE_ORIGIN, SHARE_PATH, share.share_id))


# --- Health ---

@app.get("/health", response_model=HealthResponse)
def health_check_endpoint():
    """Check system health."""
    db_health = health_check()
    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        element_count=count_elements() if db_health else 0,
    )


# --- Auth ---

@app.post("/auth/login", response_model=SessionResponse)
def login_endpoint(request: LoginRequest):
    session = auth.authenticate(request.username, request.password)
    return SessionResponse(
        token=session.token,
        user_id=session.principal.user_id,
        username=session.principal.username,
        role=session.principal.role,
        expires_at=session.expires_at,
    )


@app.post("/auth/logout", response_model=DeleteResponse)
def logout_endpoint(authorization: Optional[str] = Header(None)):
    token = _bearer_token(authorization)
    if not token:
        raise Unauthenticated()
    return DeleteResponse(success=auth.revoke_session(token))


@app.get("/auth/session", response_model=SessionResponse)
def session_endpoint(principal: Principal = Depends(require_session)):
    return SessionResponse(user_id=principal.user_id, username=principal.username, role=principal.role)


# --- Element store ---

@app.post("/rpc/upsert", response_model=UpsertResponse)
def upsert_endpoint(request: UpsertRequest, principal: Principal = Depends(require_owner)):
    """Insert or update one element; returns the stored (sanitized) value."""
    record, previous_value = upsert_element(
        principal.user_id, request.element_type, request.element_id, request.value, request.metadata
    )
    return UpsertResponse(element=ElementResponse(**record.to_dict()), previous_value=previous_value)


@app.post("/rpc/bulk_upsert", response_model=BulkUpsertResponse)
def bulk_upsert_endpoint(request: BulkUpsertRequest, principal: Principal = Depends(require_owner)):
    """Apply updates one by one; failures are reported per item, earlier items stay applied."""
    saved_count, errors = bulk_upsert(principal.user_id, request.updates)
    return BulkUpsertResponse(saved_count=saved_count, errors=errors)


@app.get("/rpc/get", response_model=ElementListResponse)
def get_endpoint(element_type: Optional[str] = None, element_id: Optional[str] = None,
                 principal: Principal = Depends(require_session)):
    """Active rows for the caller; omitted filters mean all rows."""
    records = get_elements(principal.user_id, element_type, element_id)
    return ElementListResponse(elements=[ElementResponse(**r.to_dict()) for r in records])


@app.get("/public/elements", response_model=ElementListResponse)
def public_elements_endpoint(element_type: Optional[str] = None):
    """Read-only guest view of the portfolio owner's content."""
    owner_id = auth.get_portfolio_owner_id()
    if not owner_id:
        return ElementListResponse(elements=[])
    records = get_elements(owner_id, element_type)
    return ElementListResponse(elements=[ElementResponse(**r.to_dict()) for r in records])


@app.delete("/elements/{element_type}/{element_id}", response_model=DeleteResponse)
def delete_element_endpoint(element_type: str, element_id: str, principal: Principal = Depends(require_owner)):
    return DeleteResponse(success=soft_delete_element(principal.user_id, element_type, element_id))


# --- Audit and backups ---

@app.get("/audit", response_model=AuditListResponse)
def audit_endpoint(limit: int = 50, principal: Principal = Depends(require_owner)):
    entries = list_audit_log(principal.user_id, limit)
    return AuditListResponse(entries=[
        AuditEntryResponse(
            id=e.id,
            table_name=e.table_name,
            record_id=e.record_id,
            action=e.action,
            old_data=e.old_data,
            new_data=e.new_data,
            changed_fields=e.changed_fields,
            created_at=e.created_at,
        )
        for e in entries
    ])


def _backup_response(backup) -> BackupResponse:
    return BackupResponse(
        id=backup.id,
        original_id=backup.original_id,
        element_type=backup.element_type,
        element_id=backup.element_id,
        value=backup.value,
        backup_reason=backup.backup_reason,
        created_at=backup.created_at,
    )


@app.get("/backups", response_model=BackupListResponse)
def list_backups_endpoint(element_type: Optional[str] = None, element_id: Optional[str] = None,
                          limit: int = 50, principal: Principal = Depends(require_owner)):
    backups = list_backups(principal.user_id, element_type, element_id, limit)
    return BackupListResponse(backups=[_backup_response(b) for b in backups])


@app.get("/backups/{backup_id}", response_model=BackupResponse)
def get_backup_endpoint(backup_id: int, principal: Principal = Depends(require_owner)):
    backup = get_backup(principal.user_id, backup_id)
    if not backup:
        raise HTTPException(status_code=404, detail="Backup not found")
    return _backup_response(backup)


# --- Share links ---

@app.post("/shares", response_model=ShareResponse)
def create_share_endpoint(request: ShareCreateRequest, principal: Principal = Depends(require_owner)):
    share = shares.create_share_link(
        principal.user_id,
        request.target_type,
        request.target_id,
        expires_in_days=request.expires_in_days,
        permissions=request.permissions,
        password=request.password,
    )
    return _share_response(share)


@app.get("/shares", response_model=ShareListResponse)
def list_shares_endpoint(target_id: Optional[str] = None, principal: Principal = Depends(require_owner)):
    return ShareListResponse(shares=[_share_response(s) for s in shares.list_share_links(principal.user_id, target_id)])


@app.delete("/shares/{share_id}", response_model=DeleteResponse)
def revoke_share_endpoint(share_id: str, principal: Principal = Depends(require_owner)):
    return DeleteResponse(success=shares.revoke_share_link(principal.user_id, share_id))


@app.get("/shares/{share_id}/validate", response_model=ShareValidationResponse)
def validate_share_endpoint(share_id: str):
    """Pure validity check; does not count as an access."""
    return ShareValidationResponse(share_id=share_id, valid=shares.is_share_valid(share_id))


@app.get("/shares/{share_id}/content", response_model=SharedContentResponse)
def shared_content_endpoint(share_id: str, password: Optional[str] = None):
    """Open shared content without a session; records the access."""
    content = shares.open_shared_content(share_id, password)
    return SharedContentResponse(
        share=_share_response(content["share"]),
        value=content["value"],
        updated_at=content["updated_at"],
    )


# --- Realtime ---

async def _change_stream(request: Request, subscription):
    try:
        yield ": connected\n\n"
        while True:
            if await request.is_disconnected():
                break
            try:
                notification = await asyncio.wait_for(subscription.queue.get(), timeout=REALTIME_KEEPALIVE_SEC)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield f"event: change\ndata: {json.dumps(notification, default=str)}\n\n"
    finally:
        change_feed.unsubscribe(subscription)


@app.get("/realtime")
async def realtime_endpoint(request: Request, prefix: Optional[str] = None,
                            principal: Optional[Principal] = Depends(get_current_principal)):
    """Server-sent events for element changes; guests follow the public portfolio."""
    owner_id = principal.user_id if principal else await asyncio.to_thread(auth.get_portfolio_owner_id)
    if owner_id is None:
        raise HTTPException(status_code=404, detail="No portfolio to follow")

    subscription = change_feed.subscribe(owner_id=owner_id, prefix=prefix)
    return StreamingResponse(
        _change_stream(request, subscription),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
