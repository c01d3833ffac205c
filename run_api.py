"""
Run the Accounts API server.

Usage:
  python run_api.py
"""

import os

import uvicorn

from accounts.api import create_api_app
from accounts.config import settings
from accounts.db.database import close_db, init_db
from accounts.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def main():
    """Run the API server."""
    setup_logging(settings.log_level)
    app = create_api_app()

    @app.on_event("startup")
    async def on_startup():
        await init_db(settings.database_url)

    @app.on_event("shutdown")
    async def on_shutdown():
        cache = app.state.account_cache
        await cache.crm.close()
        await cache.payments.close()
        await close_db()

    port = int(os.environ.get("PORT", os.environ.get("API_PORT", 8000)))
    host = os.environ.get("API_HOST", "0.0.0.0")

    logger.info("Starting Accounts API", host=host, port=port, mock_upstreams=settings.mock_external_services)

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
