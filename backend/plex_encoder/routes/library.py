"""Library scan API endpoints."""
import logging
from fastapi import APIRouter, HTTPException
from plex_encoder.config import settings
from plex_encoder.exceptions import InvalidLibraryPathError
from plex_encoder.models.schemas import ScanRequest, ScanResult
from plex_encoder.services.discovery import discovery_engine

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/scan", response_model=ScanResult)
async def scan_library(request: ScanRequest):
    """
    Scan a library directory, start watching it and queue new jobs.

    Args:
        request: Library root, defaults to LIBRARY_ROOT

    Returns:
        Scan counters including per-file errors
    """
    try:
        return await discovery_engine.scan(request.path or settings.LIBRARY_ROOT)
    except InvalidLibraryPathError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error scanning library: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/watch")
async def get_watch():
    """Return the library root currently being watched."""
    return {"root": discovery_engine.watched_root}
