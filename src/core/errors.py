"""Error types shared by the core and provider adapters."""

from __future__ import annotations

from typing import Any, Mapping, Optional

# Recorded on a channel when a provider fails without a known error key.
GENERIC_ERROR_KEY = "chat_integration.channel_exception"


class ProviderError(Exception):
    """Known delivery failure reported by a provider.

    The error_key is stored verbatim on the channel so operators can see
    provider health. A ProviderError without a key is treated like any other
    unexpected exception.
    """

    def __init__(
        self,
        error_key: Optional[str] = None,
        info: Optional[Mapping[str, Any]] = None,
        message: Optional[str] = None,
    ) -> None:
        self.error_key = error_key
        self.info = dict(info or {})
        super().__init__(message or error_key or "provider error")


class ConfigurationError(ValueError):
    """Raised when rule or channel configuration is invalid."""
