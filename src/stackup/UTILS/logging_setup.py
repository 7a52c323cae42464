"""CLI logging setup: plain %(message)s output, with levels shown for warnings and errors."""

import logging
import sys


class _LevelPrefixFormatter(logging.Formatter):
    def format(self, record):
        message = super().format(record)
        if record.levelno >= logging.WARNING:
            return f"{record.levelname}: {message}"
        return message


def setup_cli_logging(level="INFO"):
    """Configure the root logger for CLI commands.

    INFO output reads like print(); DEBUG adds the logger name.
    """
    root = logging.getLogger()
    root.setLevel(level.upper() if isinstance(level, str) else level)
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    fmt = "%(name)s: %(message)s" if root.level <= logging.DEBUG else "%(message)s"
    handler.setFormatter(_LevelPrefixFormatter(fmt))
    root.addHandler(handler)
    # Docker SDK request logging is noise at INFO
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)
