"""
FastAPI routes for cached account data.
Identity is resolved upstream; the gateway forwards tenant and user ids.
"""

import time
import traceback
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from accounts import __version__
from accounts.cache.service import AccountCache, is_entitlement_expired
from accounts.cache.single_flight import single_flight
from accounts.clients.base import UpstreamError
from accounts.clients.crm import empty_profile
from accounts.utils.logging import get_logger, log_context

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["Accounts API"])


# ===================
# Pydantic Models
# ===================

class AuthContext(BaseModel):
    """Tenant and user resolved for the request."""
    tenant_id: str
    user_id: str
    # Identity provider claims, used when no profile is cached
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    def fallback_profile(self) -> Optional[dict[str, Any]]:
        if not (self.email or self.first_name or self.last_name):
            return None
        return empty_profile(firstName=self.first_name, lastName=self.last_name, email=self.email)


class ProfileUpdate(BaseModel):
    """Editable profile fields, all optional."""
    model_config = ConfigDict(extra="forbid")

    firstName: Optional[str] = Field(default=None, max_length=255)
    lastName: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=64)
    company: Optional[str] = Field(default=None, max_length=255)
    street: Optional[str] = Field(default=None, max_length=255)
    city: Optional[str] = Field(default=None, max_length=255)
    postalCode: Optional[str] = Field(default=None, max_length=32)
    country: Optional[str] = Field(default=None, max_length=2)
    vatId: Optional[str] = Field(default=None, max_length=64)


# ===================
# Dependencies
# ===================

async def get_auth_context(
    x_tenant_id: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
    x_user_first_name: Optional[str] = Header(default=None),
    x_user_last_name: Optional[str] = Header(default=None),
) -> AuthContext:
    if not x_tenant_id:
        raise HTTPException(status_code=400, detail="No active tenant")
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return AuthContext(
        tenant_id=x_tenant_id,
        user_id=x_user_id,
        email=x_user_email,
        first_name=x_user_first_name,
        last_name=x_user_last_name,
    )


def get_account_cache(request: Request) -> AccountCache:
    return request.app.state.account_cache


# ===================
# Routes
# ===================

@router.get("/profile")
async def get_profile(
    auth: AuthContext = Depends(get_auth_context),
    cache: AccountCache = Depends(get_account_cache),
) -> dict[str, Any]:
    """Get user profile (CRM, through the local cache)."""
    with log_context(tenant_id=auth.tenant_id, user_id=auth.user_id):
        return await cache.get_profile(auth.tenant_id, auth.user_id, fallback=auth.fallback_profile())


@router.patch("/profile")
async def update_profile(
    body: ProfileUpdate,
    auth: AuthContext = Depends(get_auth_context),
    cache: AccountCache = Depends(get_account_cache),
) -> dict[str, Any]:
    """Update user profile in the CRM and refresh the cached copy."""
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    try:
        return await cache.update_profile(auth.tenant_id, auth.user_id, changes)
    except UpstreamError as e:
        logger.error("Profile update failed", service=e.service, error=str(e))
        raise HTTPException(status_code=502, detail="Failed to update profile in CRM")


@router.get("/billing/subscription")
async def get_subscription(
    auth: AuthContext = Depends(get_auth_context),
    cache: AccountCache = Depends(get_account_cache),
) -> dict[str, Any]:
    """Get current subscription."""
    with log_context(tenant_id=auth.tenant_id, user_id=auth.user_id):
        subscription = await cache.get_subscription(auth.tenant_id, auth.user_id)
    return {"subscription": subscription}


@router.get("/billing/invoices")
async def get_invoices(
    auth: AuthContext = Depends(get_auth_context),
    cache: AccountCache = Depends(get_account_cache),
) -> dict[str, Any]:
    with log_context(tenant_id=auth.tenant_id, user_id=auth.user_id):
        invoices = await cache.get_invoices(auth.tenant_id, auth.user_id)
    return {"invoices": invoices or []}


@router.get("/entitlements")
async def get_entitlements(
    auth: AuthContext = Depends(get_auth_context),
    cache: AccountCache = Depends(get_account_cache),
) -> dict[str, Any]:
    """Get user entitlements, grouped by type."""
    with log_context(tenant_id=auth.tenant_id, user_id=auth.user_id):
        entitlements = await cache.get_entitlements(auth.tenant_id, auth.user_id)

    grouped = {
        "courseAccess": [e for e in entitlements if e.get("type") == "course_access"],
        "featureFlags": [e for e in entitlements if e.get("type") == "feature_flag"],
        "resourceLimits": [e for e in entitlements if e.get("type") == "resource_limit"],
    }
    return {"entitlements": entitlements, "grouped": grouped, "total": len(entitlements)}


@router.get("/entitlements/{resource_id}")
async def check_entitlement(
    resource_id: str,
    auth: AuthContext = Depends(get_auth_context),
    cache: AccountCache = Depends(get_account_cache),
) -> dict[str, Any]:
    """Check access to a single resource."""
    with log_context(tenant_id=auth.tenant_id, user_id=auth.user_id):
        entitlement = await cache.find_entitlement(auth.tenant_id, auth.user_id, resource_id)

    if entitlement is None:
        return {"hasAccess": False, "entitlement": None}

    expired = is_entitlement_expired(entitlement)
    return {"hasAccess": not expired, "entitlement": entitlement, "isExpired": expired}


@router.get("/health")
async def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "version": __version__,
        "inflight_refreshes": len(single_flight),
    }


# ===================
# App Factory
# ===================

def create_api_app(account_cache: Optional[AccountCache] = None) -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title="Accounts API",
        description="Cached account data for the dashboard",
        version=__version__,
    )
    app.state.account_cache = account_cache or AccountCache()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logs duration and sets X-Response-Time
    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time"] = f"{elapsed_ms:.1f}ms"
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(elapsed_ms, 1),
        )
        return response

    # Store failures and other unhandled errors end up here
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
            traceback=traceback.format_exc(),
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "detail": "An unexpected error occurred. Please try again.",
            },
        )

    app.include_router(router)
    return app
