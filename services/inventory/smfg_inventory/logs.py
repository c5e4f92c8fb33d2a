"""
Inventory Service — logging set-up

Configures the root logger once at startup. Every module logs through
`logging.getLogger(__name__)`.
"""

import logging

TEXT_FORMAT = "%(asctime)s %(levelname)-5s %(name)s: %(message)s"
KV_FORMAT = "time=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)r"


def configure_logging(level: str = "INFO", text: bool = False) -> None:
    """Set the root level and format; an unknown level falls back to INFO."""
    resolved = logging.getLevelName(level.upper())
    unknown = not isinstance(resolved, int)
    logging.basicConfig(
        level=logging.INFO if unknown else resolved,
        format=TEXT_FORMAT if text else KV_FORMAT,
        force=True,
    )
    logger = logging.getLogger(__name__)
    if unknown:
        logger.warning("Unknown log level %r, defaulting to INFO", level)
    logger.info("Log level set to %s", logging.getLevelName(logging.getLogger().level))
