"""
Lazarus Watchtower - main entry point

Builds every component from the environment, wires them together and
starts the server. One file to understand how everything connects.

    heartbeat store  <- created here, closed at shutdown
    ledger client    <- web3 (SOURCE_RPC_URL set) or in-process ledger (local mode)
    relay            <- POST /heartbeat
    subscription     <- ledger events -> relay.apply_event
    executor/scanner <- hourly sweep + POST /liquidation/check
    destination      <- pending bridges vs vault Deposited events

Usage:
    python main.py
"""

import os
import re
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (private keys) from all log output."""
    _PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub('[REDACTED]', formatted)
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("lazarus.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from eth_account import Account

from api.server import create_app
from lazarus.chain import ChainLedgerClient, ChainVaultReader, LedgerClient
from lazarus.config import WatchtowerConfig
from lazarus.deployment import deploy_local
from lazarus.destination import DestinationMonitor, local_vault_deposits
from lazarus.heartbeat_store import HeartbeatStore
from lazarus.liquidator import LiquidationExecutor
from lazarus.relay import HeartbeatRelay
from lazarus.routes import LiFiRouteSource, RouteProvider
from lazarus.scanner import InactivityScanner
from lazarus.subscription import LedgerEventSubscription

DESTINATION_CHECK_SECONDS = 300


# ============================================================
# WIRING
# ============================================================

@dataclass
class Components:
    config: WatchtowerConfig
    store: HeartbeatStore
    client: LedgerClient
    routes: RouteProvider
    relay: HeartbeatRelay
    subscription: LedgerEventSubscription
    executor: LiquidationExecutor
    scanner: InactivityScanner
    destination: Optional[DestinationMonitor]


def build_components(config: WatchtowerConfig) -> Components:
    """Construct everything. No background task is started here."""
    Path(config.heartbeat_db_path).parent.mkdir(parents=True, exist_ok=True)
    store = HeartbeatStore(config.heartbeat_db_path)
    destination: Optional[DestinationMonitor] = None

    if config.local_mode:
        signer = Account.from_key(config.private_key).address if config.private_key else Account.create().address
        deployment = deploy_local(signer.lower(), config.destination_token, config.destination_chain_id)
        client: LedgerClient = deployment.client
        # The in-process bridge only understands stub payloads.
        routes = RouteProvider(source=None, production=False, allow_stub=True)
        destination = DestinationMonitor(local_vault_deposits(deployment.vault))
        logger.warning("LOCAL MODE: in-process ledger, stub routes. Nothing here touches a chain.")
    else:
        client = ChainLedgerClient(
            config.source_rpc_url, config.ledger_address, config.private_key, config.source_chain_id
        )
        routes = RouteProvider(
            source=LiFiRouteSource(config.lifi_api_url),
            production=config.is_production,
            allow_stub=config.allow_stub_routes,
        )
        if config.destination_rpc_url and config.vault_address:
            reader = ChainVaultReader(config.destination_rpc_url, config.vault_address)
            # Destination cursor starts at its own head; START_BLOCK refers to the source chain
            destination = DestinationMonitor(reader.fetch_deposits)

    relay = HeartbeatRelay(
        store,
        client,
        chain_id=config.source_chain_id,
        onchain_sync_seconds=config.onchain_ping_sync_seconds,
        tx_timeout=config.tx_confirmation_timeout_seconds,
    )
    from_block = 0 if config.local_mode else config.start_block
    if from_block is None:
        logger.warning("START_BLOCK not set: following ledger events from the current head only")
    subscription = LedgerEventSubscription(
        client, relay.apply_event, poll_seconds=config.event_poll_seconds, from_block=from_block
    )
    executor = LiquidationExecutor(
        client,
        routes,
        store,
        config.supported_tokens,
        source_chain_id=config.source_chain_id,
        destination_chain_id=config.destination_chain_id,
        destination_token=config.destination_token,
        confirmation_timeout=config.tx_confirmation_timeout_seconds,
        slippage=config.route_slippage,
        destination_monitor=destination,
    )
    scanner = InactivityScanner(
        store,
        executor,
        interval_seconds=config.scan_interval_seconds,
        max_concurrency=config.max_concurrent_liquidations,
    )
    return Components(
        config=config,
        store=store,
        client=client,
        routes=routes,
        relay=relay,
        subscription=subscription,
        executor=executor,
        scanner=scanner,
        destination=destination,
    )


async def _destination_loop(monitor: DestinationMonitor):
    while True:
        await asyncio.sleep(DESTINATION_CHECK_SECONDS)
        confirmed, stuck = await monitor.run_check()
        if confirmed or stuck:
            logger.info(f"Destination check: {len(confirmed)} confirmed, {len(stuck)} possibly stuck")


# ============================================================
# LIFESPAN
# ============================================================

def make_lifespan(components: Components):
    @asynccontextmanager
    async def lifespan(app):
        """Startup and shutdown."""
        logger.info("=" * 60)
        logger.info("Lazarus watchtower starting...")
        for key, value in components.config.describe().items():
            logger.info(f"  {key}: {value}")
        logger.info(f"  monitored users: {len(components.store)}")
        logger.info("=" * 60)

        components.subscription.start()
        components.scanner.start()
        destination_task = None
        if components.destination is not None:
            destination_task = asyncio.create_task(_destination_loop(components.destination))

        yield

        # Shutdown: no new ticks, let running work finish, then close the store
        logger.info("Watchtower shutting down...")
        await components.scanner.stop()
        await components.subscription.stop()
        if destination_task is not None:
            destination_task.cancel()
            try:
                await destination_task
            except asyncio.CancelledError:
                pass
        await components.relay.drain()
        await components.routes.close()
        components.store.close()
        logger.info("Goodbye.")

    return lifespan


def create_watchtower_app(config: Optional[WatchtowerConfig] = None):
    """Create the fully wired FastAPI app."""
    config = config or WatchtowerConfig.from_env()
    components = build_components(config)
    app = create_app(
        store=components.store,
        relay=components.relay,
        scanner=components.scanner,
        destination_monitor=components.destination,
        cors_origins=config.cors_origins,
    )
    # Replace the default lifespan with ours
    app.router.lifespan_context = make_lifespan(components)
    app.state.components = components
    return app


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    config = WatchtowerConfig.from_env()
    logger.info(f"Starting watchtower on {config.host}:{config.port}")
    uvicorn.run(
        create_watchtower_app(config),
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
