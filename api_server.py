"""
FastAPI server for the escrow payment service.
Run with: uvicorn api_server:app --host 0.0.0.0 --port 8000
"""

import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))

from fastapi import FastAPI  # noqa: E402

from config import Config  # noqa: E402
from database import create_tables  # noqa: E402
from jobs.scheduler import PaymentScheduler  # noqa: E402
from routes import bridge, health, payments, strategies  # noqa: E402
from services.container import ServiceContainer, get_container  # noqa: E402

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logging.getLogger('apscheduler').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(
    container: Optional[ServiceContainer] = None,
    create_schema: bool = True,
    run_background_jobs: bool = Config.ENABLE_SCHEDULER,
) -> FastAPI:
    """Build the API; tests pass their own container and switch off background work"""

    @asynccontextmanager
    async def lifespan(app_instance: FastAPI):
        services = container or get_container()
        if create_schema and not create_tables():
            logger.error("Database tables could not be created, requests will fail")
        scheduler = None
        if run_background_jobs:
            Config.log_environment_config()
            await services.start()
            scheduler = PaymentScheduler(services)
            scheduler.start()
        logger.info("Escrow payment API ready")
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.stop()
                await services.stop()
            logger.info("Escrow payment API shut down")

    application = FastAPI(title="Yield Escrow Payments", version="1.0.0", lifespan=lifespan)
    application.include_router(payments.router)
    application.include_router(bridge.router)
    application.include_router(strategies.router)
    application.include_router(health.router)
    if container is not None:
        application.dependency_overrides[get_container] = lambda: container
    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api_server:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
