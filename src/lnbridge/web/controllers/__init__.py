"""HTTP controllers."""

from lnbridge.web.controllers.lightning import router as lightning_router

__all__ = ["lightning_router"]
