#!/usr/bin/env python
#
# Copyright (c) 2024-2025, Ryan Galloway (ryan@rsgalloway.com)
#
# Redistribution and use in source and binary forms, with or without
# modification, are permitted provided that the following conditions are met:
#
#  - Redistributions of source code must retain the above copyright notice,
#    this list of conditions and the following disclaimer.
#
#  - Redistributions in binary form must reproduce the above copyright notice,
#    this list of conditions and the following disclaimer in the documentation
#    and/or other materials provided with the distribution.
#
#  - Neither the name of the software nor the names of its contributors
#    may be used to endorse or promote products derived from this software
#    without specific prior written permission.
#
# THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS IS"
# AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED TO, THE
# IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR PURPOSE
# ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT HOLDER OR CONTRIBUTORS BE
# LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL, EXEMPLARY, OR
# CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED TO, PROCUREMENT OF
# SUBSTITUTE GOODS OR SERVICES; LOSS OF USE, DATA, OR PROFITS; OR BUSINESS
# INTERRUPTION) HOWEVER CAUSED AND ON ANY THEORY OF LIABILITY, WHETHER IN
# CONTRACT, STRICT LIABILITY, OR TORT (INCLUDING NEGLIGENCE OR OTHERWISE)
# ARISING IN ANY WAY OUT OF THE USE OF THIS SOFTWARE, EVEN IF ADVISED OF THE
# POSSIBILITY OF SUCH DAMAGE.
#

__doc__ = """
Contains logging functions and classes.
"""

import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Union

from imagecache import config

log = logging.getLogger(config.LOG_NAME)

# fix for ValueErrors raised by python's logging module
LOG_LEVEL_MAP = {
    0: "NOTSET",
    10: "DEBUG",
    20: "INFO",
    30: "WARNING",
    40: "ERROR",
    50: "CRITICAL",
}
VALID_LOG_LEVELS = LOG_LEVEL_MAP.values()

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def normalize_level(level: Union[int, str]) -> str:
    """Returns a level name logging accepts, falling back to the default.

    :param level: level name or number.
    :return: level name.
    """
    if isinstance(level, int):
        return LOG_LEVEL_MAP.get(level, config.LOG_LEVEL_DEFAULT)
    if isinstance(level, str) and level.isdigit():
        return LOG_LEVEL_MAP.get(int(level), config.LOG_LEVEL_DEFAULT)
    if isinstance(level, str) and level.upper() in VALID_LOG_LEVELS:
        return level.upper()
    return config.LOG_LEVEL_DEFAULT


LOG_LEVEL = normalize_level(config.LOG_LEVEL)

log.setLevel(LOG_LEVEL)
log.addHandler(logging.NullHandler())


class DryRunFilter(logging.Filter):
    """Filter that removes log records when in dry run mode."""

    def __init__(self, dryrun: bool = False):
        """Initialize the filter.

        :param dryrun: dry run flag.
        """
        super().__init__()
        self.dryrun = dryrun

    def filter(self, record: logging.LogRecord):
        """Filter the log record.

        :param record: log record.
        :return: True if the record should be logged, False otherwise.
        """
        return not self.dryrun


def setup_stream_handler(level: str = LOG_LEVEL):
    """Adds a new stream handler, replacing a previous one.

    :param level: log level.
    :return: handler.
    """
    for h in list(log.handlers):
        if h.get_name() == log.name and type(h) is logging.StreamHandler:
            log.removeHandler(h)

    handler = logging.StreamHandler()
    handler.set_name(log.name)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    log.addHandler(handler)
    return handler


def setup_file_handler(
    maxBytes: int = config.LOG_MAX_BYTES,
    backupCount: int = config.LOG_BACKUP_COUNT,
    level: str = LOG_LEVEL,
    logdir: str = config.LOG_DIR,
    dryrun: bool = False,
):
    """Adds a new rotating file handler, replacing a previous one.

    :param maxBytes: max bytes per file.
    :param backupCount: number of backup files.
    :param level: log level.
    :param logdir: directory to store the log files.
    :param dryrun: dry run flag.
    :return: handler.
    """
    for h in list(log.handlers):
        if isinstance(h, RotatingFileHandler):
            log.removeHandler(h)
            h.close()

    os.makedirs(logdir, exist_ok=True)
    log_file = os.path.join(logdir, "imagecache.log")

    handler = RotatingFileHandler(
        log_file, maxBytes=maxBytes, backupCount=backupCount
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    # dry runs do not end up in the persistent log
    handler.addFilter(DryRunFilter(dryrun))

    log.addHandler(handler)
    return handler


def setup_logging(level: Union[int, str] = LOG_LEVEL, dryrun: bool = False):
    """Setup log handlers.

    :param level: log level.
    :param dryrun: dry run flag.
    """
    level = normalize_level(level)
    log.setLevel(level)
    setup_stream_handler(level)

    if not dryrun:
        try:
            setup_file_handler(level=level)
        except OSError as err:
            log.warning("cannot write log file: %s", err)
