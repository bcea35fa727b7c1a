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
Contains the per artifact kind counters handed to the metrics collaborator.
"""

import os
import threading
from typing import Dict

from imagecache import config


def cache_size(root: str) -> int:
    """Returns the total size in bytes of all files below `root`."""
    size = 0
    for dirpath, _, files in os.walk(root):
        for f in files:
            size += os.path.getsize(os.path.join(dirpath, f))
    return size


def cache_file_count(root: str) -> int:
    """Returns the number of cached artifacts below `root`, not counting
    checksum files."""
    count = 0
    for _, _, files in os.walk(root):
        count += sum(1 for f in files if not f.endswith(config.CHECKSUM_EXT))
    return count


class Collector(object):
    """Counters of one artifact kind. Safe to update from the file server
    threads while a sync is running."""

    def __init__(self, kind: str, root: str):
        self.kind = kind
        self.root = root
        self._lock = threading.Lock()
        self.catalog_count = 0
        self.unsynced_count = 0
        self.downloaded_bytes = 0
        self.downloaded_files = 0
        self.cache_misses = 0
        self.cache_downloads = 0

    def set_catalog_count(self, n: int) -> None:
        with self._lock:
            self.catalog_count = n

    def set_unsynced_count(self, n: int) -> None:
        with self._lock:
            self.unsynced_count = n

    def add_downloaded_bytes(self, n: int) -> None:
        with self._lock:
            self.downloaded_bytes += n

    def increment_downloaded_files(self) -> None:
        with self._lock:
            self.downloaded_files += 1

    def increment_cache_miss(self) -> None:
        with self._lock:
            self.cache_misses += 1

    def increment_cache_downloads(self) -> None:
        with self._lock:
            self.cache_downloads += 1

    def cache_size(self) -> int:
        return cache_size(self.root)

    def cache_file_count(self) -> int:
        return cache_file_count(self.root)

    def snapshot(self) -> Dict[str, int]:
        """Returns the current counter values."""
        with self._lock:
            return {
                "catalog_count": self.catalog_count,
                "unsynced_count": self.unsynced_count,
                "downloaded_bytes": self.downloaded_bytes,
                "downloaded_files": self.downloaded_files,
                "cache_misses": self.cache_misses,
                "cache_downloads": self.cache_downloads,
            }
