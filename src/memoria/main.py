"""Memoria entry point."""

import logging
import sys

from dotenv import find_dotenv, load_dotenv

from .cli import run_cli
from .config import MemoriaConfig, load_config

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(config: MemoriaConfig) -> logging.Logger:
    """Send memoria logs to stderr and to agent.log in the memory directory.

    Calling it again replaces the handlers installed by a previous call.
    """
    level = logging.getLevelName(config.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logger = logging.getLogger("memoria")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)

    try:
        config.memory_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(config.log_path, encoding="utf-8")
    except OSError as e:
        logger.warning("File logging disabled (%s): %s", config.log_path, e)
    else:
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    load_dotenv(find_dotenv(usecwd=True))
    config = load_config()
    configure_logging(config)
    sys.exit(run_cli(argv, config))


if __name__ == "__main__":
    main()
