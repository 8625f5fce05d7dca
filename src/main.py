"""
FastAPI service for the Credit Metering Service.

This service provides a REST API for:
- Credit balances (cached and authoritative)
- Pre-flight usage guard checks
- Metered operations with post-hoc reconciliation
- Audited administrative adjustments and monthly resets

Usage:
    uvicorn src.main:app --reload --host 0.0.0.0 --port 8001
"""

import logging
import os

from dotenv import load_dotenv

# Load environment variables before importing anything else
load_dotenv()

log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from src.api import create_app

app = create_app()

logger.info("Credit Metering Service initialized")
logger.info("API documentation available at /docs and /redoc")


if __name__ == "__main__":
    import uvicorn

    from src.utils.env_utils import parse_bool_env, parse_int_env

    host = os.getenv("API_HOST", "0.0.0.0")
    port = parse_int_env("API_PORT", 8001)
    reload = parse_bool_env("DEBUG", False)

    logger.info(f"Starting server on {host}:{port}")

    uvicorn.run(
        "src.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level.lower(),
    )
