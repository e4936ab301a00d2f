# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Logging setup for strata.
"""
import logging
import sys
from typing import Optional

ROOT_LOGGER = "strata"


class StructuredFormatter(logging.Formatter):
    """Appends ``key=value`` pairs passed through ``extra={"fields": {...}}``."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        fields = getattr(record, "fields", None)
        if fields:
            message += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        return message


def configure_logging(level: str = "INFO",
                      format_string: Optional[str] = None,
                      structured: bool = False) -> None:
    """
    Installs a single stderr handler on the ``strata`` logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        format_string: Custom format string.
        structured: Include timestamps and extra fields.
    """
    if format_string is None:
        if structured:
            format_string = "%(asctime)s %(levelname)s %(name)s %(message)s"
        else:
            format_string = "%(message)s"

    handler = logging.StreamHandler(sys.stderr)
    formatter_cls = StructuredFormatter if structured else logging.Formatter
    handler.setFormatter(formatter_cls(format_string))

    logger = logging.getLogger(ROOT_LOGGER)
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")
    logger.setLevel(numeric)
    logger.handlers = [handler]
    logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Returns a logger below the ``strata`` namespace."""
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
