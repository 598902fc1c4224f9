from __future__ import annotations


class SyncEngineError(Exception):
    def __init__(self, detail: str, *, chain_id: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.chain_id = chain_id


class TransientNetworkError(SyncEngineError):
    """RPC or HTTP call failed; callers may retry."""


class ConfigurationError(SyncEngineError):
    """Missing sync configuration or provider for a chain. Never retried."""


class ExternalServiceDegradation(SyncEngineError):
    """Price oracle or explorer unavailable; the last known value is kept."""


class DataValidationError(SyncEngineError):
    """External payload or on-chain data did not match the expected shape."""
