"""Routers package for the messaging API."""

from .messages import router as messages_router

__all__ = ["messages_router"]
