"""Applying planned mutations to the board."""

from boardsync.dispatch.executor import DispatchExecutor
from boardsync.dispatch.rate_limit import CallResult, EntityTagStore, RateLimitManager

__all__ = ["CallResult", "DispatchExecutor", "EntityTagStore", "RateLimitManager"]
