"""
Logging configuration.

The packaged `config/logging.yaml` defines handlers/formatters; the level comes from
`app.log_level` (`DELIVERYTRACK_LOG_LEVEL`) unless the caller passes one explicitly.
"""

from __future__ import annotations

import copy
import logging.config

from deliverytrack.config.settings import get_logging_config, get_settings


def configure_logging(level: str | None = None) -> None:
    """Apply the YAML logging config with `level` (or the configured level) everywhere."""
    config = copy.deepcopy(get_logging_config())
    effective = (level or get_settings().app.log_level).upper()

    config.setdefault("root", {})["level"] = effective
    for handler in config.get("handlers", {}).values():
        handler["level"] = effective

    logging.config.dictConfig(config)
