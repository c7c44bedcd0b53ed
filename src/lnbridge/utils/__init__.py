"""Utility modules for lnbridge."""

from lnbridge.utils.locks import LockTimeoutError, get_swap_lock, swap_lock

__all__ = ["LockTimeoutError", "get_swap_lock", "swap_lock"]
