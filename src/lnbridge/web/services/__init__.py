"""Web services."""

from lnbridge.web.services.swap_service import SwapService

__all__ = ["SwapService"]
