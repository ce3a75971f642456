"""
Caller IP check endpoint.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from api.deps import build_request_context, get_components
from models.screening import SignalKind
from schemas.screening import IPCheckResponse
from services.fraud_detection import ScreeningComponents

router = APIRouter()


@router.get("/ip-check", response_model=IPCheckResponse)
async def ip_check(
    request: Request,
    components: Annotated[ScreeningComponents, Depends(get_components)],
) -> IPCheckResponse:
    """Geolocation and VPN/proxy/Tor verdict for the calling IP."""
    context = build_request_context(request)
    security = await components.screening.screen(context, kinds={SignalKind.GEO, SignalKind.VPN})
    return IPCheckResponse(
        ip=context.ip_address,
        geo_location=security.geo_location,
        vpn_detection=security.vpn_detection,
        threat_level=security.threat_level,
        flags=security.flags,
    )
