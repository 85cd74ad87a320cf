#!/usr/bin/env python3
"""
Banking Core Entry Point

Starts the FastAPI server with the banking core.
"""

import sys

import uvicorn

from banking_core.api import create_app
from banking_core.config import get_config
from banking_core.logging_config import setup_logging
from banking_core.system import BankingSystem


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    system = BankingSystem(config)
    logger.info(f"API available at http://{config.api_host}:{config.api_port}")

    try:
        uvicorn.run(create_app(system), host=config.api_host, port=config.api_port, log_level="info")
    except KeyboardInterrupt:
        logger.info("Shutting down banking core")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
    finally:
        system.close()
