"""CLI entrypoint for the payment keeper."""
from __future__ import annotations

import logging
import signal
import sys
import threading

from pydantic import ValidationError

from .api import create_app, run_api
from .chain import ChainClient
from .config import KeeperSettings, load_settings
from .executor import PaymentExecutor
from .health import HealthMonitor
from .journal import ExecutionJournal
from .ledger_store import LedgerStore
from .pending import PendingReleaseStore
from .processor import KeeperLoop
from .signer import SignerError

EXIT_CONFIG_ERROR = 2


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
        stream=sys.stdout,
    )


def build_loop(settings: KeeperSettings, chain: ChainClient) -> KeeperLoop:
    store = LedgerStore.from_settings(settings)
    executor = PaymentExecutor.from_settings(
        settings,
        chain,
        store,
        pending=PendingReleaseStore(settings.pending_releases_path),
        journal=ExecutionJournal(settings.journal_path),
    )
    health = HealthMonitor.from_settings(settings, chain, store)
    return KeeperLoop(settings, store, executor, health)


def main() -> int:
    configure_logging()
    logger = logging.getLogger(__name__)

    try:
        settings = load_settings()
    except ValidationError as exc:
        logger.error("Invalid keeper configuration: %s", exc)
        return EXIT_CONFIG_ERROR

    if not settings.keeper_dry_run and not settings.has_operator_key:
        logger.error("KEEPER_PRIVATE_KEY or a keystore is required when KEEPER_DRY_RUN is false")
        return EXIT_CONFIG_ERROR

    try:
        chain = ChainClient.from_settings(settings)
    except SignerError as exc:
        logger.error("Failed to load operator key: %s", exc)
        return EXIT_CONFIG_ERROR

    logger.info(
        "Starting payment keeper (network=%s chain_id=%s operator=%s dry_run=%s)",
        settings.network or "any",
        settings.chain_id,
        chain.operator_address,
        settings.keeper_dry_run,
    )

    loop = build_loop(settings, chain)

    if settings.api_enabled:
        app = create_app(loop, loop.health)
        api_thread = threading.Thread(
            target=run_api,
            name="keeper-api",
            args=(app, settings),
            daemon=True,
        )
        api_thread.start()
        logger.info("HTTP API available at http://%s:%s", settings.api_host, settings.api_port)

    def _shutdown(signum, _frame) -> None:
        logger.info("Received %s; stopping keeper", signal.Signals(signum).name)
        loop.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    loop.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
