# app/transport/security.py
"""
Request-level security for the job API.

- Caller identity: authentication happens upstream (API gateway / auth
  service), which forwards the verified user as ``X-User-Id`` and
  ``X-User-Role``.  This module only parses and checks those headers.
- Metrics protection: bearer token when METRICS_TOKEN is set, otherwise
  internal networks only.
- Security response headers and production-safe error messages.
"""
import hmac
import ipaddress
import uuid
from dataclasses import dataclass
from functools import lru_cache

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.core.jobs.domain import UserRole
from app.infra.logging_config import get_logger, mask_id
from app.infra.pg_job_repo_async import is_uuid

logger = get_logger(__name__)

metrics_bearer_scheme = HTTPBearer(
    scheme_name="Metrics Token",
    description="Enter your metrics token (without 'Bearer ' prefix)",
    auto_error=False,
)


# ============================================================================
# CALLER IDENTITY
# ============================================================================

@dataclass(frozen=True)
class Caller:
    user_id: str
    role: UserRole


def require_caller(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Caller:
    """Dependency: the authenticated caller forwarded by the gateway.

    User ids are UUIDs (the profiles primary key) and are returned in
    canonical form so they compare equal to ids read back from storage.
    """
    user_id = (x_user_id or "").strip()
    if not user_id or not is_uuid(user_id):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    user_id = str(uuid.UUID(user_id))

    try:
        role = UserRole((x_user_role or "").strip().lower())
    except ValueError:
        logger.warning(
            f"Rejected caller with unknown role: user={mask_id(user_id)}",
            extra={"user_id": user_id},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unknown user role",
        ) from None

    return Caller(user_id=user_id, role=role)


def require_role(role: UserRole):
    """Dependency factory: caller must have ``role``."""

    def _check(caller: Caller = Depends(require_caller)) -> Caller:
        if caller.role != role:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Only {role.value}s can perform this action",
            )
        return caller

    return _check


# ============================================================================
# INTERNAL NETWORK / METRICS
# ============================================================================

@lru_cache(maxsize=1)
def _get_internal_networks() -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    networks = []
    for cidr in settings.internal_networks.split(","):
        cidr = cidr.strip()
        if not cidr:
            continue
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError as e:
            logger.warning(f"Invalid CIDR in INTERNAL_NETWORKS: {cidr} - {e}")
    return networks


def _get_client_ip(request: Request) -> str:
    """Client IP; X-Forwarded-For is honoured only with TRUST_PROXY_HEADERS."""
    client_ip = request.client.host if request.client else "unknown"

    if settings.trust_proxy_headers:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            client_ip = forwarded_for.split(",")[0].strip()

    return client_ip


def _is_internal_ip(ip_str: str) -> bool:
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(ip in network for network in _get_internal_networks())


def require_internal_network(request: Request):
    client_ip = _get_client_ip(request)
    if _is_internal_ip(client_ip):
        return

    logger.warning(
        f"Access denied from non-internal IP: {client_ip}",
        extra={"client_ip": client_ip},
    )
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def require_metrics_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer_scheme),
):
    """
    Dependency for /metrics.

    With METRICS_TOKEN set a matching bearer token is required; without it
    only internal networks are allowed.
    """
    if settings.metrics_token:
        if not credentials:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required",
                headers={"WWW-Authenticate": "Bearer"},
            )
        if not hmac.compare_digest(credentials.credentials, settings.metrics_token):
            logger.warning("Invalid metrics token attempt")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return

    require_internal_network(request)


# ============================================================================
# RESPONSE HARDENING
# ============================================================================

class SecurityHeaders:
    """OWASP REST security headers for JSON API responses."""

    @staticmethod
    def add_security_headers(response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store"

        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        if "Server" in response.headers:
            del response.headers["Server"]

        return response


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """Detailed messages in dev, generic ones in production."""
    if not is_production:
        return str(error)

    generic_messages = {
        "ValueError": "Invalid input",
        "KeyError": "Invalid request",
        "ConnectionError": "Service temporarily unavailable",
        "TimeoutError": "Request timeout",
    }
    return generic_messages.get(type(error).__name__, "An error occurred")
