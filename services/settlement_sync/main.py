from __future__ import annotations

import argparse
import asyncio
import logging
import os

import aiohttp

from .chain_registry import ChainConfig, chain_by_domain, load_chains
from .config import Settings, get_settings
from .engine import SyncEngine
from .errors import ConfigurationError
from .http_client import JsonHttpClient
from .store import SyncStore

LOGGER = logging.getLogger('solver.settlement_sync.main')

PIPELINES = ('settlements', 'gas', 'all')


def _select_chains(chains: list[ChainConfig], raw: str) -> list[ChainConfig]:
    if not raw.strip():
        return chains
    selected: list[ChainConfig] = []
    for part in raw.split(','):
        part = part.strip()
        if not part:
            continue
        try:
            domain = int(part)
        except ValueError as exc:
            raise ConfigurationError(f'invalid chain id {part!r}') from exc
        selected.append(chain_by_domain(chains, domain))
    return selected


async def run(settings: Settings, pipeline: str, chains: list[ChainConfig]) -> None:
    store = await SyncStore.connect(settings.postgres_dsn)
    timeout = aiohttp.ClientTimeout(total=settings.http_timeout_seconds)
    failures: list[Exception] = []
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            engine = SyncEngine(settings, store, JsonHttpClient(session))

            names: list[str] = []
            tasks = []
            if pipeline in ('settlements', 'all'):
                names.append('settlements')
                tasks.append(engine.run_settlement_sync(chains))
            if pipeline in ('gas', 'all'):
                names.append('gas')
                tasks.append(engine.run_gas_sync(chains))

            # Pipelines are independent; one failing must not cancel the other.
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for name, result in zip(names, results):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    LOGGER.error(
                        'pipeline failed pipeline=%s error=%s',
                        name,
                        result,
                        exc_info=(type(result), result, result.__traceback__)
                    )
                    failures.append(result)
                    continue
                LOGGER.info('run report pipeline=%s report=%s', name, result)
    finally:
        await store.close()

    if failures:
        raise failures[0]


def main() -> None:
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )

    parser = argparse.ArgumentParser(description='One-shot settlement and gas sync across configured chains')
    parser.add_argument('--pipeline', choices=PIPELINES, default='all', help='Which pipeline to run')
    parser.add_argument('--chains', default='', help='Comma-separated chain ids (default: all configured)')
    args = parser.parse_args()

    settings = get_settings()
    chains = _select_chains(load_chains(), args.chains)
    LOGGER.info('service=%s pipeline=%s chains=%s', settings.service_name, args.pipeline, [chain.domain for chain in chains])
    asyncio.run(run(settings, args.pipeline, chains))


if __name__ == '__main__':
    main()
