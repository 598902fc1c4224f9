from __future__ import annotations

import asyncio
import logging

from .chain_client import ChainClient, LogEntry, LogFilter
from .chain_registry import ChainConfig
from .errors import TransientNetworkError
from .retry import Sleep, retry_async

LOGGER = logging.getLogger('solver.settlement_sync.log_fetcher')

DEFAULT_CHUNK_SIZE = 2000


class ChainLogFetcher:
    """Fetches a block range of logs, degrading to fixed-size chunks.

    The single-shot request is always tried first. Only when the provider
    rejects it is ``[from_block, head]`` walked in ``chunk_size`` windows, each
    retried with the chain's linear backoff. A chunk that exhausts its attempts
    aborts the whole fetch; partial results are never returned.
    """

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE, sleep: Sleep = asyncio.sleep) -> None:
        self.chunk_size = max(1, chunk_size)
        self._sleep = sleep

    async def fetch_logs(
        self,
        client: ChainClient,
        chain: ChainConfig,
        log_filter: LogFilter,
        from_block: int,
        to_block: int
    ) -> list[LogEntry]:
        try:
            return await client.get_logs(log_filter, from_block, to_block)
        except Exception as exc:
            LOGGER.warning(
                'single-shot get_logs failed chain=%s from=%s to=%s error=%s; switching to chunks of %s',
                chain.name,
                from_block,
                to_block,
                exc,
                self.chunk_size
            )

        try:
            head = await client.block_number()
        except Exception as exc:
            raise TransientNetworkError(
                f'could not resolve chain head for {chain.name}: {exc}',
                chain_id=chain.domain
            ) from exc

        policy = chain.retry_policy()
        logs: list[LogEntry] = []
        for start in range(from_block, head + 1, self.chunk_size):
            end = min(start + self.chunk_size - 1, head)
            try:
                chunk = await retry_async(
                    lambda start=start, end=end: client.get_logs(log_filter, start, end),
                    policy,
                    label=f'{chain.name} get_logs {start}-{end}',
                    sleep=self._sleep
                )
            except Exception as exc:
                raise TransientNetworkError(
                    f'get_logs failed for {chain.name} blocks {start}-{end} after {policy.max_attempts} attempts: {exc}',
                    chain_id=chain.domain
                ) from exc
            logs.extend(chunk)
            LOGGER.debug('chunk fetched chain=%s from=%s to=%s logs=%s', chain.name, start, end, len(chunk))

        LOGGER.info('chunked get_logs complete chain=%s from=%s to=%s logs=%s', chain.name, from_block, head, len(logs))
        return logs
