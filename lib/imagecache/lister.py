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
Contains the functions and classes that determine which artifacts should be
held in the cache.
"""

import logging
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from imagecache import util
from imagecache.catalog import CatalogClient, CatalogError
from imagecache.config import CHECKSUM_EXT, Config
from imagecache.entity import RemoteBootImage, RemoteImage, RemoteKernel
from imagecache.logger import log as root_log
from imagecache.remote import RemoteError, Transport
from imagecache.stats import Collector


class ListError(Exception):
    """Raised when the candidates of an artifact kind cannot be enumerated."""

    pass


class ReduceError(Exception):
    """Raised when no eviction group has more than the minimum of images."""

    pass


def sort_images(images: List[RemoteImage]) -> List[RemoteImage]:
    """Returns `images` sorted by os name, then ascending version."""
    return sorted(images, key=lambda i: (i.os_name, i.version, i.sub_path))


def eviction_key(image: RemoteImage) -> str:
    """Returns the eviction group of an image, e.g. "ubuntu-20.04"."""
    return f"{image.os_name}-{image.major_minor}"


def cap_images(
    images: List[RemoteImage], max_per_name: int
) -> Tuple[List[RemoteImage], int]:
    """Keeps the newest `max_per_name` images of every os name and major.minor
    variant.

    :param images: Eligible images.
    :param max_per_name: Maximum images per variant, unlimited if <= 0.
    :return: Tuple of (kept images sorted by name and version, total size).
    """
    variants: Dict[str, Dict[str, List[RemoteImage]]] = {}
    for image in images:
        variants.setdefault(image.os_name, {}).setdefault(
            image.major_minor, []
        ).append(image)

    size = 0
    kept = []
    for os_name in sorted(variants):
        for mm in sorted(variants[os_name]):
            versions = sorted(
                variants[os_name][mm], key=lambda i: i.version, reverse=True
            )
            if max_per_name > 0:
                versions = versions[:max_per_name]
            for image in versions:
                size += image.size
                kept.append(image)

    return sort_images(kept), size


def reduce_images(
    images: List[RemoteImage], size: int, min_per_name: int
) -> Tuple[List[RemoteImage], int, RemoteImage]:
    """Evicts the oldest image of the biggest eviction group. Ties go to the
    group whose key sorts first.

    :param images: Images sorted by name and version.
    :param size: Total size of `images`.
    :param min_per_name: Minimum images to keep per eviction group.
    :raises ReduceError: If no group has more than `min_per_name` images.
    :return: Tuple of (remaining images, remaining size, evicted image).
    """
    groups: Dict[str, List[RemoteImage]] = OrderedDict()
    for image in sort_images(images):
        groups.setdefault(eviction_key(image), []).append(image)

    biggest = None
    current_biggest = 0
    for key in sorted(groups):
        amount = len(groups[key])
        if amount > min_per_name and amount > current_biggest:
            current_biggest = amount
            biggest = key

    if biggest is None:
        raise ReduceError("can not reduce any further")

    evicted = groups[biggest].pop(0)

    result = []
    for members in groups.values():
        result.extend(members)

    return sort_images(result), size - evicted.size, evicted


def select_images(
    images: List[RemoteImage],
    min_per_name: int,
    max_per_name: int,
    max_cache_size: int,
    logger: logging.Logger = None,
) -> Tuple[List[RemoteImage], int]:
    """Selects the images to hold in the cache: at most `max_per_name` per
    variant, then evicting the oldest images of the biggest groups until the
    total size is below `max_cache_size` or every group is at its minimum.

    :param images: Eligible images.
    :param min_per_name: Minimum images per eviction group.
    :param max_per_name: Maximum images per variant, unlimited if <= 0.
    :param max_cache_size: Size budget in bytes.
    :param logger: Optional logger.
    :return: Tuple of (selected images sorted by name and version, total size).
    """
    logger = logger or root_log
    selected, size = cap_images(images, max_per_name)

    while size >= max_cache_size:
        try:
            selected, size, evicted = reduce_images(selected, size, min_per_name)
        except ReduceError:
            logger.warning(
                "cannot reduce anymore images (all at minimum size), "
                "exceeding maximum cache size of %s with %s",
                util.human_size(max_cache_size),
                util.human_size(size),
            )
            break
        logger.debug("evicting image %s to meet cache size", evicted.sub_path)

    return selected, size


class Lister(object):
    """Determines the artifacts of each kind that should be cached."""

    def __init__(
        self,
        config: Config,
        catalog: CatalogClient,
        transport: Transport,
        image_collector: Optional[Collector] = None,
        logger: logging.Logger = None,
        clock: Callable[[], datetime] = None,
    ):
        """Initializes the lister.

        :param config: Cache settings.
        :param catalog: Catalog client.
        :param transport: Remote clients and stop signal.
        :param image_collector: Optional counters of the image kind.
        :param logger: Optional logger.
        :param clock: Optional function returning the current time.
        """
        self.config = config
        self.catalog = catalog
        self.transport = transport
        self.image_collector = image_collector
        self.log = logger or root_log.getChild("lister")
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def is_excluded(self, url: str) -> bool:
        return util.is_excluded(url, self.config.exclude_paths)

    def is_expired(self, expiration_date: Optional[datetime]) -> bool:
        """Returns True if `expiration_date` is further in the past than the
        grace period allows."""
        if expiration_date is None:
            return False
        grace = timedelta(days=self.config.expiration_grace_days)
        return self.clock() - expiration_date > grace

    def determine_image_sync_list(self) -> Tuple[List[RemoteImage], int]:
        """Determines the os images to cache.

        :raises ListError: If the catalog or the object store cannot be listed.
        :return: Tuple of (images sorted by name and version, total size).
        """
        try:
            objects = self.transport.store.list_objects(self.config.image_bucket)
        except RemoteError as e:
            raise ListError(f"error listing images in s3: {e}") from e

        try:
            catalog_images = self.catalog.list_images()
        except CatalogError as e:
            raise ListError(f"error listing images: {e}") from e

        if self.image_collector:
            self.image_collector.set_catalog_count(len(catalog_images))

        candidates = []
        seen = set()
        for img in catalog_images:
            if not img.url:
                self.log.error("image has no url, skipping: %s", img.id)
                continue
            if self.is_excluded(img.url):
                self.log.debug("skipping image with exclude URL: %s", img.id)
                continue

            if self.is_expired(img.expiration_date):
                self.log.debug("not considering expired image, skipping: %s", img.id)
                continue

            try:
                os_name, version = util.parse_os_and_version(img.id)
            except util.VersionError as e:
                self.log.error("could not extract os and version, skipping: %s", e)
                continue

            try:
                bucket_key = util.url_sub_path(img.url)
            except ValueError as e:
                self.log.error("image url is invalid, skipping %s: %s", img.id, e)
                continue

            image_object = objects.get(bucket_key)
            if image_object is None:
                self.log.error(
                    "image is not contained in global image store, skipping: %s (%s)",
                    img.id,
                    bucket_key,
                )
                continue

            checksum_object = objects.get(bucket_key + CHECKSUM_EXT)
            if checksum_object is None:
                self.log.error(
                    "image md5 is not contained in global image store, skipping: %s (%s)",
                    img.id,
                    bucket_key,
                )
                continue

            if bucket_key in seen:
                self.log.debug("image path already listed, skipping: %s", img.id)
                continue
            seen.add(bucket_key)

            candidates.append(
                RemoteImage(
                    os_name=os_name,
                    version=version,
                    catalog_id=img.id,
                    url=img.url,
                    bucket_name=self.config.image_bucket,
                    bucket_key=bucket_key,
                    image_object=image_object,
                    checksum_object=checksum_object,
                    expiration_date=img.expiration_date,
                )
            )

        images, size = select_images(
            candidates,
            self.config.min_images_per_name,
            self.config.max_images_per_name,
            self.config.max_cache_size,
            logger=self.log,
        )

        if self.image_collector:
            self.image_collector.set_unsynced_count(len(catalog_images) - len(images))

        self.log.info(
            "gathered images to sync: %d (%s)", len(images), util.human_size(size)
        )
        return images, size

    def _boot_urls(self, attr: str) -> List[str]:
        """Returns the unique boot config urls `attr` of all partitions."""
        try:
            partitions = self.catalog.list_partitions()
        except CatalogError as e:
            raise ListError(f"error listing partitions: {e}") from e

        urls = []
        for p in partitions:
            if p.boot_config is None:
                continue
            url = getattr(p.boot_config, attr)
            if url and url not in urls:
                urls.append(url)
        return urls

    def _download_size(self, url: str, what: str) -> int:
        try:
            return self.transport.http.content_length(url)
        except RemoteError as e:
            self.log.warning("unable to determine %s download size: %s", what, e)
            return 0

    def determine_kernel_sync_list(self) -> List[RemoteKernel]:
        """Determines the PXE kernels to cache.

        :raises ListError: If the partitions cannot be listed.
        :return: List of kernels.
        """
        result = []
        paths = set()
        for url in self._boot_urls("kernel_url"):
            if self.is_excluded(url):
                self.log.debug("skipping kernel with exclude URL: %s", url)
                continue

            try:
                sub_path = util.url_sub_path(url)
            except ValueError as e:
                self.log.error("kernel url is invalid, skipping: %s", e)
                continue

            if sub_path in paths:
                self.log.warning("kernel path already listed, skipping: %s", url)
                continue

            size = self._download_size(url, "kernel")
            result.append(RemoteKernel(path=sub_path, url=url, length=size))
            paths.add(sub_path)

        return result

    def determine_boot_image_sync_list(self) -> List[RemoteBootImage]:
        """Determines the boot images to cache. Boot images without an md5 sum
        file next to them are skipped.

        :raises ListError: If the partitions cannot be listed.
        :return: List of boot images.
        """
        result = []
        paths = set()
        for url in self._boot_urls("image_url"):
            if self.is_excluded(url):
                self.log.debug("skipping boot image with exclude URL: %s", url)
                continue

            try:
                sub_path = util.url_sub_path(url)
            except ValueError as e:
                self.log.error("boot image url is invalid, skipping: %s", e)
                continue

            if sub_path in paths:
                self.log.warning("boot image path already listed, skipping: %s", url)
                continue

            image = RemoteBootImage(
                path=sub_path, url=url, length=self._download_size(url, "boot image")
            )

            try:
                self.transport.http.content_length(image.checksum_url)
            except RemoteError as e:
                self.log.error(
                    "boot image md5 does not exist, skipping %s: %s",
                    image.checksum_url,
                    e,
                )
                continue

            result.append(image)
            paths.add(sub_path)

        return result
