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
Contains default config and settings.
"""

import os
from dataclasses import dataclass, field
from typing import List

from imagecache import util

# environment variable prefix for all settings
ENV_PREFIX = "IMAGECACHE_"


def getenv(name: str, default: str = None) -> str:
    """Returns the value of the prefixed environment variable `name`."""
    return os.getenv(ENV_PREFIX + name, default)


# default cache settings
CACHE_ROOT = getenv("CACHE_ROOT", "/var/lib/imagecache")
CATALOG_ENDPOINT = getenv("CATALOG_ENDPOINT", "")
IMAGE_STORE = getenv("IMAGE_STORE", "https://images.metal-stack.io")
IMAGE_BUCKET = getenv("IMAGE_STORE_BUCKET", "images")
MIN_IMAGES_PER_NAME = int(getenv("MIN_IMAGES_PER_NAME", "3"))
MAX_IMAGES_PER_NAME = int(getenv("MAX_IMAGES_PER_NAME", "-1"))
MAX_CACHE_SIZE = getenv("MAX_CACHE_SIZE", "10G")
EXCLUDE_PATHS = [
    p for p in getenv("EXCLUDES", "/pull_requests/").split(",") if p.strip()
]
EXPIRATION_GRACE_DAYS = int(getenv("EXPIRATION_GRACE_PERIOD", "0"))
SYNC_INTERVAL = float(getenv("SYNC_INTERVAL", "600"))
KERNEL_CACHE_ENABLED = getenv("ENABLE_KERNEL_CACHE", "1") not in ("0", "false")
BOOT_IMAGE_CACHE_ENABLED = getenv("ENABLE_BOOT_IMAGE_CACHE", "1") not in (
    "0",
    "false",
)

# cache layout
DIR_IMAGES = "images"
DIR_KERNELS = "kernels"
DIR_BOOT_IMAGES = "boot-images"
DIR_TMP = "tmp"
TMP_DOWNLOAD_NAME = "download"
CHECKSUM_EXT = ".md5"

# remote settings
HTTP_TIMEOUT = float(getenv("HTTP_TIMEOUT", "30"))
CHUNK_SIZE = 1024 * 1024
S3_REGION = "dummy"
S3_MAX_ATTEMPTS = 3

# logging settings
LOG_NAME = "imagecache"
LOG_DIR = getenv("LOG_DIR", os.path.expanduser("~/log/imagecache"))
LOG_LEVEL_DEFAULT = "INFO"
LOG_LEVEL = getenv("LOG_LEVEL", LOG_LEVEL_DEFAULT)
LOG_MAX_BYTES = 1_000_000
LOG_BACKUP_COUNT = 5
DRYRUN_MESSAGE = "NOTICE: Dry run (no downloads or deletions will be made)"


class ConfigError(Exception):
    """Raised when the configuration is invalid."""

    pass


@dataclass
class Config:
    """Settings for one imagecache process, threaded through every component."""

    cache_root: str = CACHE_ROOT
    catalog_endpoint: str = CATALOG_ENDPOINT
    image_store: str = IMAGE_STORE
    image_bucket: str = IMAGE_BUCKET
    min_images_per_name: int = MIN_IMAGES_PER_NAME
    max_images_per_name: int = MAX_IMAGES_PER_NAME
    max_cache_size: int = field(default_factory=lambda: util.parse_size(MAX_CACHE_SIZE))
    exclude_paths: List[str] = field(default_factory=lambda: list(EXCLUDE_PATHS))
    expiration_grace_days: int = EXPIRATION_GRACE_DAYS
    dry_run: bool = False
    kernel_cache_enabled: bool = KERNEL_CACHE_ENABLED
    boot_image_cache_enabled: bool = BOOT_IMAGE_CACHE_ENABLED
    sync_interval: float = SYNC_INTERVAL
    progress: bool = True

    @property
    def image_root(self) -> str:
        return os.path.join(self.cache_root, DIR_IMAGES)

    @property
    def kernel_root(self) -> str:
        return os.path.join(self.cache_root, DIR_KERNELS)

    @property
    def boot_image_root(self) -> str:
        return os.path.join(self.cache_root, DIR_BOOT_IMAGES)

    @property
    def tmp_path(self) -> str:
        return os.path.join(self.cache_root, DIR_TMP)

    def validate(self) -> None:
        """Validates the settings.

        :raises ConfigError: If a setting is missing or out of range.
        """
        if not self.catalog_endpoint:
            raise ConfigError("catalog endpoint must be set")
        if not self.image_store:
            raise ConfigError("image store must be set")
        if not self.image_bucket:
            raise ConfigError("image store bucket must be set")
        if not os.path.isdir(self.cache_root):
            raise ConfigError(f"cache root path is not a directory: {self.cache_root}")
        if self.min_images_per_name < 1:
            raise ConfigError("minimum images per name must be at least 1")
        if self.max_cache_size < 0:
            raise ConfigError("maximum cache size must not be negative")
        if self.expiration_grace_days < 0:
            raise ConfigError("expiration grace period must not be negative")
        if self.sync_interval <= 0:
            raise ConfigError("sync interval must be positive")
