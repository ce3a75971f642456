"""
Response quality-control endpoint.
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from api.deps import get_quality_control
from services.quality_control import QualityCheckInput, QualityControlService, QualityReport

router = APIRouter()


@router.post("/analyze", response_model=QualityReport)
async def analyze_submission(
    submission: QualityCheckInput,
    quality_control: Annotated[QualityControlService, Depends(get_quality_control)],
) -> QualityReport:
    """
    Run the post-submission checks on a completed survey.

    Covers email domains, honeypot fields, flatlining, AI-written text,
    client behavior counters and completion speed.
    """
    return await quality_control.analyze(submission)
