"""FastAPI endpoints for keygate."""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CollectorRegistry
from pydantic import BaseModel, Field, StrictInt, StrictStr
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from .. import __version__
from ..admin import AdminService, KeyGenerator
from ..config import GatewayConfig
from ..credentials import Credential
from ..errors import GatewayError, ValidationError, render_error
from ..gate import AdmissionContext, AdmissionGate, key_prefix
from ..health import HealthChecker, HealthStatus, create_store_check
from ..monitoring.metrics import GatewayMetrics, MetricsMiddleware
from ..observability import RequestContext
from ..resolver import resolve_key, source_from_request
from ..storage import CredentialStore, create_store
from .metrics import router as metrics_router

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("keygate.access")


class CreateKeyRequest(BaseModel):
    owner: Optional[StrictStr] = None
    limit: Optional[StrictInt] = None
    expires_in_days: Optional[StrictInt] = Field(default=None, alias="expiresInDays")
    role: Optional[StrictStr] = None


class RawCreateKeyRequest(CreateKeyRequest):
    key: Optional[StrictStr] = None


class UpdateKeyRequest(BaseModel):
    limit: Optional[StrictInt] = None
    used: Optional[StrictInt] = None
    status: Optional[StrictStr] = None


def serialize(credentials: List[Credential]) -> List[Dict[str, Any]]:
    return [c.to_dict() for c in credentials]


# =============================================================================
# DEPENDENCIES
# =============================================================================


async def require_api_key(request: Request) -> AdmissionContext:
    """Admit the request against its API key and attach the credential context."""
    source = await source_from_request(request)
    gate: AdmissionGate = request.app.state.gate
    context = await run_in_threadpool(gate.admit, resolve_key(source))
    request.state.credential = context
    return context


async def require_admin(request: Request) -> Credential:
    """Require an admin credential; never meters."""
    source = await source_from_request(request)
    gate: AdmissionGate = request.app.state.gate
    credential = await run_in_threadpool(gate.authorize_admin, resolve_key(source))
    request.state.credential = credential
    return credential


def get_admin_service(request: Request) -> AdminService:
    return request.app.state.admin


def include_metered_router(app: FastAPI, router: APIRouter, prefix: str = "/api") -> None:
    """Mount an integration router behind the Admission Gate."""
    app.include_router(router, prefix=prefix, dependencies=[Depends(require_api_key)])


# =============================================================================
# MIDDLEWARE
# =============================================================================


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind an X-Request-Id to every request and write one access log line."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        token = RequestContext.start(request.headers.get("x-request-id"))
        request_id = RequestContext.get_request_id()
        start = time.perf_counter()
        try:
            response = await call_next(request)
            duration_ms = (time.perf_counter() - start) * 1000
            credential = getattr(request.state, "credential", None)
            access_logger.info(
                "%s %s | status: %d | duration: %.1fms | key: %s",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                key_prefix(credential.key if credential else None),
            )
            response.headers["X-Request-Id"] = request_id
            return response
        finally:
            RequestContext.end(token)


# =============================================================================
# ROUTES
# =============================================================================

health_router = APIRouter()
usage_router = APIRouter()
admin_router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


@health_router.get("/health")
async def health(request: Request):
    checker: HealthChecker = request.app.state.health
    await checker.run_all_checks()
    summary = checker.get_summary()
    status_code = 503 if checker.get_overall_status() == HealthStatus.UNHEALTHY else 200
    return JSONResponse(status_code=status_code, content={"version": __version__, **summary})


@health_router.get("/health/live")
async def liveness():
    return {"status": "alive"}


@health_router.get("/health/ready")
async def readiness(request: Request):
    checker: HealthChecker = request.app.state.health
    await checker.run_all_checks()
    if checker.get_overall_status() == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content={"status": "not_ready"})
    return {"status": "ready"}


@usage_router.get("/usage")
async def usage(context: AdmissionContext = Depends(require_api_key)) -> Dict:
    """Report the caller's quota after this (metered) request."""
    return {
        "success": True,
        "owner": context.owner,
        "used": context.used,
        "limit": context.limit,
        "remaining": context.remaining,
    }


@admin_router.get("/api/keys")
def list_keys(admin: AdminService = Depends(get_admin_service)) -> Dict:
    result = admin.list_with_stats()
    stats = result["stats"]
    return {
        "success": True,
        "keys": serialize(result["keys"]),
        "stats": {
            **stats,
            "keys_near_limit": serialize(stats["keys_near_limit"]),
            "recent_activity": serialize(stats["recent_activity"]),
        },
    }


@admin_router.post("/api/keys")
def create_key(
    body: Optional[CreateKeyRequest] = None,
    admin: AdminService = Depends(get_admin_service),
) -> Dict:
    body = body or CreateKeyRequest()
    credential = admin.create(body.owner, body.limit, expires_in_days=body.expires_in_days, role=body.role)
    return {
        "success": True,
        "message": "Key criada com sucesso",
        "key": credential.key,
        "data": credential.to_dict(),
    }


@admin_router.put("/api/keys/{key}")
def update_key(
    key: str,
    body: Optional[UpdateKeyRequest] = None,
    admin: AdminService = Depends(get_admin_service),
) -> Dict:
    changes = body.model_dump(exclude_none=True) if body else {}
    credential = admin.update(key, changes)
    return {"success": True, "message": "Key atualizada", "key": credential.to_dict()}


@admin_router.delete("/api/keys/{key}")
def delete_key(key: str, admin: AdminService = Depends(get_admin_service)) -> Dict:
    admin.delete(key)
    return {"success": True, "message": "Key removida"}


@admin_router.post("/api/keys/{key}/reset")
def reset_key(key: str, admin: AdminService = Depends(get_admin_service)) -> Dict:
    credential = admin.reset_usage(key)
    return {"success": True, "message": "Uso resetado", "key": credential.to_dict()}


@admin_router.post("/keys")
def create_raw_key(
    body: Optional[RawCreateKeyRequest] = None,
    admin: AdminService = Depends(get_admin_service),
) -> Dict:
    """Issue a credential under a caller-chosen key."""
    body = body or RawCreateKeyRequest()
    credential = admin.create_raw(
        body.key,
        body.limit,
        owner=body.owner or "unknown",
        expires_in_days=body.expires_in_days,
        role=body.role,
    )
    return {
        "success": True,
        "message": "Key criada",
        "key": credential.key,
        "data": credential.to_dict(),
    }


# =============================================================================
# ERROR RENDERING
# =============================================================================


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    status_code, body = render_error(exc)
    return JSONResponse(status_code=status_code, content=body)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [{"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg", "")} for e in exc.errors()]
    return await gateway_error_handler(request, ValidationError(details={"errors": errors}))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code, body = render_error(exc)
    return JSONResponse(status_code=status_code, content=body)


# =============================================================================
# APPLICATION FACTORY
# =============================================================================


def create_app(
    config: Optional[GatewayConfig] = None,
    store: Optional[CredentialStore] = None,
    registry: Optional[CollectorRegistry] = None,
) -> FastAPI:
    """Build the gateway application.

    The store is constructed once here (unless injected) and shared by the
    Admission Gate, the Admin Surface and the health check through
    ``app.state``.
    """
    config = config or GatewayConfig.load()
    config.validate()

    metrics = None
    if config.observability.metrics_enabled:
        metrics = GatewayMetrics(registry=registry or CollectorRegistry())

    if store is None:
        store = create_store(config.store.path, on_read_error=config.store.on_read_error, metrics=metrics)

    admin = AdminService(
        store,
        key_generator=KeyGenerator(prefix=config.security.key_prefix, length=config.security.key_length),
        near_limit_ratio=config.security.near_limit_ratio,
        metrics=metrics,
    )
    health_checker = HealthChecker()
    health_checker.register_check("credential_store", create_store_check(store))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        security = config.security
        if security.bootstrap_admin_key:
            created = admin.ensure_admin(
                security.bootstrap_admin_key,
                owner=security.bootstrap_admin_owner,
                limit=security.bootstrap_admin_limit,
            )
            if created:
                logger.info("Seeded bootstrap admin key %s", key_prefix(security.bootstrap_admin_key))
        logger.info("keygate started (store: %s)", store.location)
        yield
        logger.info("keygate stopped")

    app = FastAPI(title="keygate", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.store = store
    app.state.gate = AdmissionGate(store, metrics=metrics)
    app.state.admin = admin
    app.state.metrics = metrics
    app.state.health = health_checker

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)
    if metrics is not None:
        app.add_middleware(MetricsMiddleware, metrics=metrics)

    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(health_router)
    if metrics is not None:
        app.include_router(metrics_router)
    app.include_router(admin_router)
    include_metered_router(app, usage_router)

    return app
