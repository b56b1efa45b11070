"""Error taxonomy for chatstream.

Every failure a caller can observe is a ChatStreamError carrying a stable
``code``. Stream failures (TransportError, DecodeError) are terminal: once
raised, the stream yields nothing further.
"""

from __future__ import annotations

from typing import Optional


class ChatStreamError(Exception):
    """Structured error with code, status_code, retryable flag."""

    code = "internal_error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        if code is not None:
            self.code = code
        self.status_code = status_code
        self.retryable = retryable

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": str(self),
            "status_code": self.status_code,
            "retryable": self.retryable,
        }


class TransportError(ChatStreamError):
    """Connection failure, timeout, or undecodable bytes on the wire."""

    code = "network_error"


class DecodeError(ChatStreamError):
    """A complete frame whose payload is not a valid chat completion chunk."""

    code = "decode_error"


class ProviderError(ChatStreamError):
    """Non-200 response. ``body`` holds the full error body text."""

    code = "provider_error"

    def __init__(
        self,
        message: str,
        body: str = "",
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message, status_code=status_code, retryable=retryable)
        self.body = body

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["body"] = self.body
        return data
