"""
Start Strikeflow API Server

Run the signal ingestion and position management REST API on port 8010.
Settings come from the environment (and a .env file when present).
"""

import logging
import os
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

# Ensure logs directory exists
Path("logs").mkdir(exist_ok=True)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler('logs/strikeflow_api.log')
    ]
)

logger = logging.getLogger(__name__)


def main():
    """Start Strikeflow API server"""
    load_dotenv()

    host = os.getenv("STRIKEFLOW_HOST", "127.0.0.1")
    port = int(os.getenv("STRIKEFLOW_PORT", "8010"))

    logger.info("=" * 80)
    logger.info("STRIKEFLOW API")
    logger.info("=" * 80)
    logger.info(f"Environment: {os.getenv('STRIKEFLOW_ENV', 'development')}")
    logger.info(f"Starting server on http://{host}:{port}")
    logger.info(f"Swagger UI: http://{host}:{port}/docs")
    logger.info("=" * 80)

    try:
        uvicorn.run(
            "strikeflow.pipeline.api:app",
            host=host,
            port=port,
            log_level="info",
            reload=False
        )
    except KeyboardInterrupt:
        logger.info("\nShutting down Strikeflow API...")
    except Exception as e:
        logger.error(f"Failed to start server: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
