"""
payrecon process wiring

Builds the gateway client, transaction store and payment service once per
process and hands the service to the surrounding application.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
import logging

import httpx

from .config import Settings, settings as default_settings
from .db.init_db import create_engine, create_session_factory, initialize_database
from .services.gateway_client import GatewayClient
from .services.payment_service import PaymentService
from .services.transaction_store import TransactionStore

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@asynccontextmanager
async def lifespan(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> AsyncIterator[PaymentService]:
    """
    Payment service lifespan manager.

    - Startup: configure logging, create tables, open the HTTP client,
      probe the gateway
    - Shutdown: close the HTTP client, dispose the engine

    Args:
        settings: Process settings (defaults to environment)
        transport: Optional httpx transport, e.g. an ASGI mock gateway
    """
    settings = settings or default_settings
    configure_logging(settings)
    logger.info("Starting payrecon...")

    engine = create_engine(settings)
    try:
        await initialize_database(engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        await engine.dispose()
        raise

    http_client = httpx.AsyncClient(transport=transport, timeout=settings.gateway_timeout_seconds)

    try:
        gateway = GatewayClient(http_client, settings)
        store = TransactionStore(create_session_factory(engine))
        service = PaymentService(gateway, store, settings)

        if await gateway.health_check():
            logger.info("Payment gateway reachable")
        else:
            logger.warning("Payment gateway health check failed, continuing")

        logger.info("Startup complete")
        yield service
    finally:
        logger.info("Shutting down payrecon...")
        await http_client.aclose()
        await engine.dispose()
