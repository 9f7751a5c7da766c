"""
Error taxonomy for the messaging service.

Every error carries a stable ``code`` and an HTTP ``status_code`` so the
request/response path and the realtime path can translate the same
exception into their own payloads.
"""

from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base exception for messaging errors"""
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "message": self.message,
            "code": self.code,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(ChatError):
    """Malformed input: length, enum or id-format violations"""
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(ChatError):
    """Missing, invalid or expired credential"""
    status_code = 401
    code = "AUTHENTICATION_ERROR"


class ForbiddenError(ChatError):
    """Caller is not allowed to perform the operation"""
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(ChatError):
    """Unknown user, message or conversation"""
    status_code = 404
    code = "NOT_FOUND"


class UnsupportedError(ChatError):
    """Operation reserved for group conversations"""
    status_code = 501
    code = "UNSUPPORTED"


class InternalError(ChatError):
    """Unexpected store or transport failure"""
    status_code = 500
    code = "INTERNAL_ERROR"
