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
Contains the cache entity classes: the artifacts that can live in the cache.
"""

import io
from dataclasses import dataclass, field
from datetime import datetime
from typing import BinaryIO, Optional

from packaging.version import Version

from imagecache import config, util
from imagecache.remote import ObjectInfo, RemoteError, Transport


class CacheEntity(object):
    """Base class of all cacheable artifacts. Entities are identified by their
    sub path relative to the cache root of their kind."""

    has_checksum = False

    @property
    def name(self) -> str:
        raise NotImplementedError

    @property
    def sub_path(self) -> str:
        raise NotImplementedError

    @property
    def size(self) -> int:
        raise NotImplementedError

    @property
    def checksum_sub_path(self) -> str:
        return self.sub_path + config.CHECKSUM_EXT

    def download(self, target: BinaryIO, transport: Transport) -> int:
        """Streams the artifact into `target`.

        :param target: Binary file-like object.
        :param transport: Remote clients and stop signal.
        :raises RemoteError: If the download fails.
        :return: Number of bytes written.
        """
        raise NotImplementedError

    def download_checksum(
        self, transport: Transport, target: Optional[BinaryIO] = None
    ) -> str:
        """Fetches the checksum of the artifact. Without a target the checksum
        is returned, otherwise the checksum file is streamed into `target` and
        an empty string is returned.

        :param transport: Remote clients and stop signal.
        :param target: Optional binary file-like object.
        :raises RemoteError: If the checksum cannot be fetched.
        :return: Checksum or empty string.
        """
        return ""


def _read_checksum(fetch, sub_path: str) -> str:
    buf = io.BytesIO()
    fetch(buf)
    try:
        return util.parse_checksum(buf.getvalue().decode("utf-8", "replace"))
    except ValueError as e:
        raise RemoteError(f"invalid checksum of {sub_path}: {e}")


@dataclass
class RemoteImage(CacheEntity):
    """An os image stored in the object store and registered in the catalog."""

    os_name: str
    version: Version
    catalog_id: str
    url: str
    bucket_name: str
    bucket_key: str
    image_object: ObjectInfo
    checksum_object: ObjectInfo
    expiration_date: Optional[datetime] = None

    has_checksum = True

    @property
    def name(self) -> str:
        return self.catalog_id

    @property
    def sub_path(self) -> str:
        return self.bucket_key

    @property
    def size(self) -> int:
        return self.image_object.size

    @property
    def major_minor(self) -> str:
        return util.major_minor(self.version)

    def download(self, target: BinaryIO, transport: Transport) -> int:
        try:
            return transport.store.get_object(
                self.bucket_name, self.bucket_key, target, transport.stop
            )
        except RemoteError as e:
            raise RemoteError(f"image download error: {e}") from e

    def download_checksum(
        self, transport: Transport, target: Optional[BinaryIO] = None
    ) -> str:
        def fetch(writer):
            try:
                transport.store.get_object(
                    self.bucket_name, self.checksum_object.key, writer, transport.stop
                )
            except RemoteError as e:
                raise RemoteError(
                    f"error downloading checksum of image {self.bucket_key}: {e}"
                ) from e

        if target is not None:
            fetch(target)
            return ""
        return _read_checksum(fetch, self.sub_path)


@dataclass
class RemoteKernel(CacheEntity):
    """A PXE boot kernel referenced by a partition boot configuration."""

    path: str
    url: str
    length: int = 0

    @property
    def name(self) -> str:
        return util.semver_or_url(self.url)

    @property
    def sub_path(self) -> str:
        return self.path

    @property
    def size(self) -> int:
        return self.length

    def download(self, target: BinaryIO, transport: Transport) -> int:
        try:
            return transport.http.get(self.url, target, transport.stop)
        except RemoteError as e:
            raise RemoteError(f"kernel download error: {e}") from e


@dataclass
class RemoteBootImage(RemoteKernel):
    """An initrd boot image referenced by a partition boot configuration. Boot
    images come with an md5 sum file next to them."""

    has_checksum = True

    @property
    def checksum_url(self) -> str:
        return self.url + config.CHECKSUM_EXT

    def download(self, target: BinaryIO, transport: Transport) -> int:
        try:
            return transport.http.get(self.url, target, transport.stop)
        except RemoteError as e:
            raise RemoteError(f"boot image download error: {e}") from e

    def download_checksum(
        self, transport: Transport, target: Optional[BinaryIO] = None
    ) -> str:
        def fetch(writer):
            try:
                transport.http.get(self.checksum_url, writer, transport.stop)
            except RemoteError as e:
                raise RemoteError(f"boot image md5 download error: {e}") from e

        if target is not None:
            fetch(target)
            return ""
        return _read_checksum(fetch, self.sub_path)


@dataclass
class LocalFile(CacheEntity):
    """A file found in the cache directory."""

    file_name: str
    path: str
    length: int = field(default=0)

    @property
    def name(self) -> str:
        return self.file_name

    @property
    def sub_path(self) -> str:
        return self.path

    @property
    def size(self) -> int:
        return self.length

    def download(self, target: BinaryIO, transport: Transport) -> int:
        raise RemoteError("not implemented on local file")
