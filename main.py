"""
PDF Extract Service — Main Entry Point
======================================
Starts the Flask-based extraction microservice.

Usage:
    python main.py                    # Default: 0.0.0.0:5000
    python main.py --port 8000        # Custom port
    python main.py --debug            # Debug mode
"""

import argparse
import logging

from pdf_extract.config import LOG_DATEFMT, LOG_FORMAT
from pdf_extract.server import app, create_app

logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    datefmt=LOG_DATEFMT,
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="PDF Extract Service")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host")
    parser.add_argument("--port", type=int, default=5000, help="Bind port")
    parser.add_argument("--debug", action="store_true", help="Debug mode")
    args = parser.parse_args()

    # create_app() reads the extraction config from the environment
    create_app()
    config = app.config["EXTRACTION_CONFIG"]
    if not config.api_key:
        logger.warning("OPENAI_API_KEY is not set; extraction requests will fail")

    logger.info(
        f"Model: {config.model}, concurrency: {config.concurrency}, "
        f"page timeout: {config.page_timeout_s:.0f}s"
    )
    logger.info(f"Starting server on {args.host}:{args.port}")
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
