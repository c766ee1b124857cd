"""Custom exceptions for the digest ingestion pipeline."""

from typing import Optional, Dict, Any


class ReauthenticationRequired(Exception):
    """Raised when a credential is rejected and the run must stop.

    Callers catch this base class to prompt the user to sign in again.
    """

    service = "unknown"

    def __init__(self, message: str, status_code: Optional[int] = None, user_id: Optional[str] = None):
        self.status_code = status_code
        self.user_id = user_id
        self.message = message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "error": "reauthentication_required",
            "service": self.service,
            "status_code": self.status_code,
            "user_id": self.user_id,
            "message": self.message
        }


class MailboxAuthenticationError(ReauthenticationRequired):
    """Raised when the mailbox rejects the access token."""

    service = "mailbox"


class LlmAuthenticationError(ReauthenticationRequired):
    """Raised when the LLM provider rejects the configured credential."""

    service = "llm"


class MailboxError(Exception):
    """Raised for mailbox transport failures that are not authentication failures."""

    def __init__(self, operation: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        self.operation = operation
        self.status_code = status_code
        self.detail = detail
        self.message = f"Mailbox {operation} failed"
        if status_code is not None:
            self.message += f" with status {status_code}"
        if detail:
            self.message += f": {detail}"
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "error": "mailbox_error",
            "operation": self.operation,
            "status_code": self.status_code,
            "message": self.message
        }


class LlmConfigurationError(Exception):
    """Raised when the LLM client cannot be used because it is not configured."""

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        self.message = f"LLM provider '{provider}' is not configured: {reason}"
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "error": "llm_not_configured",
            "provider": self.provider,
            "reason": self.reason,
            "message": self.message
        }


class OcrEngineError(Exception):
    """Raised when the OCR engine cannot be initialized."""


class OcrError(Exception):
    """Raised when image bytes cannot be decoded for recognition."""
