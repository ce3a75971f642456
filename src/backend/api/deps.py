"""
Shared dependencies for API endpoints.

Includes:
- Client IP extraction (proxy aware)
- Access to the per-process screening components on ``app.state``
- RequestContext assembly
"""

from typing import Optional

from fastapi import HTTPException, Request, status

from models.screening import RequestContext
from repositories.provider import LinkRepositoryProtocol
from schemas.screening import AccessRequest
from services.access_decision import AccessDecisionEngine
from services.fraud_detection import ScreeningComponents
from services.quality_control import QualityControlService

# =============================================================================
# Helper Functions
# =============================================================================


def get_client_ip(request: Request) -> str:
    """Extract real client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take first IP (original client)
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def build_request_context(
    request: Request,
    link_uid: Optional[str] = None,
    body: Optional[AccessRequest] = None,
) -> RequestContext:
    """Snapshot the connection and the client-submitted data for one evaluation."""
    body = body or AccessRequest()
    return RequestContext(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent", ""),
        link_uid=link_uid,
        form_fields=body.form_fields,
        answers=tuple(body.answers),
        device=body.device,
        trace=body.trace,
        challenge=body.challenge,
        captcha_token=body.captcha_token,
        honeypot_session_id=body.honeypot_session_id,
    )


# =============================================================================
# Application State
# =============================================================================


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Screening service is not initialized",
        )
    return value


def get_components(request: Request) -> ScreeningComponents:
    return _state(request, "components")


def get_link_repository(request: Request) -> LinkRepositoryProtocol:
    return _state(request, "link_repository")


def get_decision_engine(request: Request) -> AccessDecisionEngine:
    return _state(request, "decision_engine")


def get_quality_control(request: Request) -> QualityControlService:
    return _state(request, "quality_control")
