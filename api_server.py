#!/usr/bin/env python
"""
FastAPI server for the license billing engine
"""
import sys
import logging
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Add src to path
sys.path.insert(0, str(Path(__file__).parent / "src"))

from license_billing.app import create_app  # noqa: E402
from license_billing.config import config  # noqa: E402

app = create_app()


if __name__ == "__main__":
    import uvicorn

    logger = logging.getLogger(__name__)
    logger.info(f"Starting license billing API server on port {config.PORT}")
    logger.info(f"Health check endpoint: http://0.0.0.0:{config.PORT}/health")

    try:
        uvicorn.run(
            app,
            host="0.0.0.0",
            port=config.PORT,
            log_config=None,
            access_log=True,
        )
    except Exception as e:
        logger.error(f"Failed to start server: {e}", exc_info=True)
        sys.exit(1)
