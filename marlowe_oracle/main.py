"""
Marlowe Oracle Service — CLI entry point.

Usage:
    mos config.json
    mos config.json --once --dry-run
    python -m marlowe_oracle.main config.json --verbose
"""

import argparse
import asyncio
import logging
import sys

import httpx
from dotenv import load_dotenv

from .apply import ApplyService
from .config import MOSConfig, MOSEnv, load_config, parse_mos_env
from .errors import ConfigurationError, ScanError
from .feed import get_apply_inputs, resolve_prices
from .runtime import RuntimeClient
from .scan import get_active_contracts
from .tx import build_and_submit
from .utils import SecretMaskingFilter
from .wallet import BlockfrostWallet, MaestroWallet, Wallet

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

PROVIDERS = {"blockfrost": BlockfrostWallet, "maestro": MaestroWallet}


def make_wallet(client: httpx.AsyncClient, env: MOSEnv) -> Wallet:
    wallet_cls = PROVIDERS[env.provider]
    return wallet_cls(client, env.provider_url, env.provider_api_key, env.address, env.sign_tx_url, env.network)


async def run_cycle(
    config: MOSConfig,
    env: MOSEnv,
    client: httpx.AsyncClient,
    runtime: RuntimeClient,
    wallet: Wallet,
    apply_service: ApplyService,
    dry_run: bool = False,
) -> list[str]:
    """One pass: scan → resolve → feed → build/submit."""

    # 1. Find answerable choices
    requests = await get_active_contracts(runtime, config, wallet)
    if not requests:
        return []

    # 2. One price per distinct choice name, for this cycle only
    prices = await resolve_prices(
        (r.choice_id.choice_name for r in requests),
        config.resolve_methods,
        wallet,
        client,
        env.coingecko_url,
    )

    # 3. Join requests with prices
    apply_requests = await get_apply_inputs(requests, prices, wallet.address)
    logger.info("%d of %d requests ready to apply", len(apply_requests), len(requests))

    # 4. Build, balance, sign, submit
    return await build_and_submit(apply_requests, runtime, wallet, apply_service, config, dry_run=dry_run)


async def run(config: MOSConfig, env: MOSEnv, once: bool = False, dry_run: bool = False) -> None:
    async with httpx.AsyncClient() as client:
        runtime = RuntimeClient(client, env.marlowe_runtime_url)
        if not await runtime.healthcheck():
            raise ConfigurationError("InvalidRuntime", f"Marlowe Runtime at {env.marlowe_runtime_url} is not healthy")

        wallet = make_wallet(client, env)
        apply_service = ApplyService(client, env.apply_url)
        logger.info("Oracle service started for %s on %s via %s", env.address, env.network, env.provider)

        while True:
            try:
                tx_ids = await run_cycle(config, env, client, runtime, wallet, apply_service, dry_run)
                logger.info("Cycle complete: %d transactions submitted %s", len(tx_ids), tx_ids)
            except ScanError as e:
                if e.fatal:
                    raise
                logger.error("Scan failed: %s", e)
            except Exception:
                logger.exception("Cycle failed")

            if once:
                return
            await asyncio.sleep(config.delay_seconds)


def main() -> None:
    parser = argparse.ArgumentParser(description="Marlowe Oracle Service: answers Marlowe choices with price feeds")
    parser.add_argument("config", help="Path to the JSON service config")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--dry-run", action="store_true", help="Build and balance without signing or submitting")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    load_dotenv()

    try:
        env = parse_mos_env()
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    masking = SecretMaskingFilter(env.secrets())
    for handler in logging.getLogger().handlers:
        handler.addFilter(masking)

    try:
        asyncio.run(run(config, env, once=args.once, dry_run=args.dry_run))
    except (ConfigurationError, ScanError) as e:
        logger.error("Fatal: %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Stopped")


if __name__ == "__main__":
    main()
