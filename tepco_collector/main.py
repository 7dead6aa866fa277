"""Main entry point for the TEPCO Collector service."""

import asyncio
import logging
import signal
import sys
from datetime import timedelta
from typing import Optional

from .authenticator import BrowserAuthenticator
from .config import Settings, settings
from .credentials import CredentialManager
from .database import initialize_schema
from .jobs import CollectionJobs
from .reconciliation import ReconciliationEngine
from .repository import CollectionLogRepository, UsageRepository
from .scheduler import Scheduler, register_jobs
from .tepco_client import TepcoClient
from .token_store import TokenStore

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("tepco-collector")


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)]
    )


class CollectorService:
    """Wires the collector components together and runs the scheduler."""

    def __init__(
        self,
        config: Settings,
        collector: TepcoClient,
        credentials: CredentialManager,
        repository: UsageRepository,
        log_repository: CollectionLogRepository,
        engine: ReconciliationEngine,
        jobs: CollectionJobs,
        scheduler: Optional[Scheduler] = None,
    ):
        self.config = config
        self.collector = collector
        self.credentials = credentials
        self.repository = repository
        self.log_repository = log_repository
        self.engine = engine
        self.jobs = jobs
        self.scheduler = scheduler
        self._stopped = asyncio.Event()

    @classmethod
    def build(cls, config: Settings = settings, authenticator=None, transport=None) -> "CollectorService":
        """Create the service from settings.

        Args:
            config: Application settings
            authenticator: Login implementation; defaults to the Playwright browser login
            transport: Optional httpx transport for the TEPCO API client
        """
        authenticator = authenticator or BrowserAuthenticator(
            login_url=config.tepco_login_url,
            top_url=config.tepco_top_url,
            headless=config.browser_headless,
            navigation_timeout_ms=config.browser_navigation_timeout_ms,
            token_wait_s=config.browser_token_wait_s,
        )
        collector = TepcoClient(
            contract_num=config.tepco_contract_num,
            account_id=config.tepco_account_id,
            contract_class=config.tepco_contract_class,
            base_url=config.tepco_api_base,
            timeout=config.tepco_request_timeout,
            transport=transport,
        )
        credentials = CredentialManager(
            token_store=TokenStore(config.db_path),
            authenticator=authenticator,
            username=config.tepco_username,
            password=config.tepco_password,
            token_lifetime=timedelta(hours=config.token_lifetime_hours),
        )
        repository = UsageRepository(config.db_path)
        log_repository = CollectionLogRepository(config.db_path)
        engine = ReconciliationEngine(repository, collector)
        jobs = CollectionJobs(
            credentials=credentials,
            collector=collector,
            engine=engine,
            repository=repository,
            log_repository=log_repository,
            tz=config.tz,
            reconciliation_window_days=config.reconciliation_window_days,
            log_retention_days=config.log_retention_days,
            log_retention_enabled=config.log_retention_enabled,
        )
        scheduler = None
        if config.scheduler_enabled:
            scheduler = register_jobs(Scheduler(config.tz), jobs, config)

        return cls(config, collector, credentials, repository, log_repository, engine, jobs, scheduler)

    async def start(self):
        """Prepare storage and start the scheduled jobs.

        Raises:
            ConfigurationError: If the TEPCO contract settings are missing
            StorageError: If the database cannot be initialized
        """
        logger.info("=" * 60)
        logger.info("TEPCO Usage Collector Service")
        logger.info("=" * 60)

        self.config.require_contract()
        initialize_schema(self.config.db_path)
        logger.info(f"Using database at {self.config.db_path}")

        if not self.credentials.credentials_configured:
            logger.warning("TEPCO credentials not configured, collection will fail until they are set")

        await self.collector.connect()

        if self.scheduler:
            self.scheduler.start()
            logger.info("Scheduler started")
        else:
            logger.info("Scheduler disabled (set ENABLE_SCHEDULER=true to enable)")

    async def stop(self):
        """Stop the scheduler and close clients."""
        logger.info("Stopping collector service...")
        if self.scheduler:
            await self.scheduler.stop()
        await self.collector.close()
        self._stopped.set()
        logger.info("Collector service stopped")

    async def wait_stopped(self):
        await self._stopped.wait()


async def main():
    """Main entry point."""
    configure_logging(settings.log_level)
    service = CollectorService.build(settings)

    # Handle shutdown signals
    loop = asyncio.get_event_loop()

    def shutdown_handler():
        logger.info("Shutdown signal received")
        asyncio.create_task(service.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await service.start()
        await service.wait_stopped()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await service.stop()


if __name__ == "__main__":
    asyncio.run(main())
