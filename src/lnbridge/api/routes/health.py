"""Health check endpoints."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "lnbridge"}


@router.get("/health/detailed")
async def detailed_health(request: Request):
    """Detailed health check with configuration info."""
    state = request.app.state
    return {
        "status": "healthy",
        "service": "lnbridge",
        "version": "0.1.0",
        "backends": {
            "lightning": state.lightning.name,
            "settlement": state.settlement.name,
        },
        "active_watchers": state.swap_service.active_watchers,
        "config": state.settings.get_safe_dict(),
    }
