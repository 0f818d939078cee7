from __future__ import annotations

import asyncio
import logging
import os
import random
import signal
import sys

from cult_sim.chain.ledger import GatewayLedgerClient
from cult_sim.config.settings import AppSettings
from cult_sim.db.connection import DBClient
from cult_sim.db.repository import CultRepository
from cult_sim.engine import AgentScheduler
from cult_sim.llm.ollama_adapter import OllamaAdapter
from cult_sim.utils.errors import BootstrapError


async def run(settings: AppSettings) -> int:
    logger = logging.getLogger("cult_sim.entrypoint")
    rng = random.Random(settings.scheduler.seed)
    db = DBClient(settings.db)
    repo = CultRepository(db)
    ledger = GatewayLedgerClient(settings.ledger)
    llm = OllamaAdapter(settings.ollama, rng=rng)
    scheduler = AgentScheduler(settings, repo, ledger, llm, rng=rng)

    try:
        agents = await scheduler.bootstrap()
    except BootstrapError as exc:
        logger.critical("Startup aborted: %s", exc)
        await ledger.close()
        db.close()
        return 1

    logger.info(
        "Loaded agents=%d model=%s ledger=%s seed=%s",
        len(agents),
        settings.ollama.llm_model,
        settings.ledger.gateway_url,
        settings.scheduler.seed,
    )

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    try:
        await scheduler.start_all()
        await shutdown.wait()
        logger.info("Shutdown requested; waiting for in-flight cycles")
    finally:
        await scheduler.close()
        await ledger.close()
        db.close()
    return 0


def main() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    settings = AppSettings.from_env()
    sys.exit(asyncio.run(run(settings)))


if __name__ == "__main__":
    main()
