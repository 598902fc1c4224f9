from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from .errors import ExternalServiceDegradation, TransientNetworkError
from .retry import BackoffPolicy, retry_async

LOGGER = logging.getLogger('solver.settlement_sync.http')

TOO_MANY_REQUESTS = 429


def _is_retryable_status(status: int) -> bool:
    return status == TOO_MANY_REQUESTS or status >= 500


def _is_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, ExternalServiceDegradation)


class JsonHttpClient:
    def __init__(self, session: aiohttp.ClientSession) -> None:
        self.session = session

    async def get_json(
        self,
        url: str,
        *,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        policy: BackoffPolicy | None = None,
        label: str = ''
    ) -> Any:
        async def call() -> Any:
            async with self.session.get(url, params=params, headers=headers) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    detail = f'{label or url} returned status={resp.status} body={body[:200]}'
                    if _is_retryable_status(resp.status):
                        raise TransientNetworkError(detail)
                    raise ExternalServiceDegradation(detail)
                return await resp.json(content_type=None)

        try:
            if policy is None:
                return await call()
            return await retry_async(call, policy, label=label or url, should_retry=_is_retryable)
        except (TransientNetworkError, ExternalServiceDegradation):
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise TransientNetworkError(f'{label or url} request failed: {exc}') from exc
