"""
Pipeline Status API

    GET /status - broker connection, resolved network, debounce and
                  acquisition counters, enabled providers
"""
import logging

from fastapi import APIRouter, Depends

from mvwatch.schemas.status import PipelineStatusResponse
from mvwatch.services.pipeline import Pipeline, get_pipeline

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/status",
    tags=["status"]
)


@router.get("", response_model=PipelineStatusResponse)
async def get_status(pipeline: Pipeline = Depends(get_pipeline)) -> PipelineStatusResponse:
    """Current state of the ingestion pipeline"""
    return pipeline.status()
