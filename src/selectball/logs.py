from __future__ import annotations

import logging
from typing import Any

LOG_FORMAT = "[%(levelname)s] %(message)s"

_LEVELS = (logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG)


def verbosity_level(verbosity: int) -> int:
    """Map a verbosity selector (0 error, 1 warning, 2 info, 3+ debug) to a logging level."""
    return _LEVELS[min(max(int(verbosity), 0), len(_LEVELS) - 1)]


class RunLogger(logging.LoggerAdapter):
    """
    Logger adapter carrying the verbosity of one run.

    Records below the run level are dropped here instead of changing the level
    of the shared module logger, so two runs never affect each other.
    """

    def __init__(self, logger: logging.Logger, verbosity: int = 0, extra: dict[str, Any] | None = None) -> None:
        super().__init__(logger, extra or {})
        self.run_level = verbosity_level(verbosity)

    def isEnabledFor(self, level: int) -> bool:  # noqa: N802
        return level >= self.run_level and self.logger.isEnabledFor(level)

