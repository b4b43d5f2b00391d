#!/usr/bin/env python3
"""
Expense Workflow Engine Entry Point

Starts the FastAPI server and, when enabled, the SLA escalation scheduler.
"""

import sys

import uvicorn

from expense_workflow.api import create_app
from expense_workflow.config import get_config
from expense_workflow.logging_config import setup_logging


def main() -> None:
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format)

    logger.info(f"Starting expense workflow engine on {config.api_host}:{config.api_port}")
    logger.info(f"Storage: {config.database_url}")
    if config.scheduler_enabled:
        logger.info(f"SLA scheduler every {config.scheduler_tick_seconds}s")

    try:
        app = create_app()
        uvicorn.run(app, host=config.api_host, port=config.api_port, log_level=config.log_level.lower())
    except KeyboardInterrupt:
        logger.info("Shutting down expense workflow engine")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
