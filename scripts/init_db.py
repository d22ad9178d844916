#!/usr/bin/env python3
"""Create the engine's tables and indexes using the environment configuration.

Equivalent to ``automation-engine db init`` followed by ``db migrate``.
"""

import sys

from sqlalchemy.exc import SQLAlchemyError

from automation_engine.config import load_config, validate_config
from automation_engine.core.exceptions import WorkflowEngineError
from automation_engine.core.logging import setup_logging_from_config
from automation_engine.startup import run_database_command


def main():
    config = load_config()
    logger = setup_logging_from_config(config)
    try:
        validate_config(config)
        for command in ("init", "migrate"):
            run_database_command(command, config)
    except (WorkflowEngineError, SQLAlchemyError, OSError) as e:
        logger.error(f"Database initialization failed: {e}")
        sys.exit(1)
    logger.info(f"Database ready at {config.database_url}")


if __name__ == "__main__":
    main()
