"""Process-wide logging setup.

Modules obtain loggers with ``logging.getLogger(__name__)``; the CLI calls
configure_logging() once at startup. The chart name is always part of the
message so interleaved output from parallel chart jobs stays readable.
"""

import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"


def configure_logging(level: str | int = "INFO") -> None:
    """Install a single stream handler on the root logger.

    Args:
        level: Level name (``"debug"``, ``"INFO"``...) or numeric level.

    Raises:
        ValueError: If ``level`` is not a known level name.
    """
    if isinstance(level, str):
        numeric = logging.getLevelName(level.upper())
        if not isinstance(numeric, int):
            raise ValueError(f"Unknown log level: {level}")
        level = numeric

    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
