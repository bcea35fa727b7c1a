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
Contains the object store and http origin clients used to fetch artifacts.
"""

import threading
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Iterable, Optional

import boto3
import requests
from botocore import UNSIGNED
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from imagecache import config


class RemoteError(Exception):
    """Raised when a remote object cannot be listed or fetched."""

    pass


class Cancelled(RemoteError):
    """Raised when a transfer is aborted by the stop signal."""

    pass


@dataclass
class ObjectInfo:
    """An object listed in the object store."""

    key: str
    size: int = 0


def copy_chunks(
    chunks: Iterable[bytes], writer: BinaryIO, stop: Optional[threading.Event]
) -> int:
    """Writes `chunks` to `writer`, checking the stop signal between chunks.

    :param chunks: Iterable of byte chunks.
    :param writer: Binary file-like object.
    :param stop: Optional stop signal.
    :raises Cancelled: If the stop signal is set during the transfer.
    :return: Number of bytes written.
    """
    n = 0
    for chunk in chunks:
        if stop is not None and stop.is_set():
            raise Cancelled("transfer cancelled")
        if not chunk:
            continue
        writer.write(chunk)
        n += len(chunk)
    return n


class ObjectStore(object):
    """Anonymous client for an S3 compatible object store."""

    def __init__(self, endpoint: str, client=None):
        """Initializes the object store client.

        :param endpoint: Endpoint url of the object store.
        :param client: Optional preconfigured boto3 s3 client.
        """
        self.endpoint = endpoint
        if client is None:
            client = boto3.client(
                "s3",
                endpoint_url=endpoint,
                region_name=config.S3_REGION,
                config=BotoConfig(
                    signature_version=UNSIGNED,
                    retries={"max_attempts": config.S3_MAX_ATTEMPTS, "mode": "standard"},
                ),
            )
        self.client = client

    def list_objects(self, bucket: str) -> Dict[str, ObjectInfo]:
        """Lists all objects of `bucket` keyed by object key.

        :param bucket: Bucket name.
        :raises RemoteError: If the bucket cannot be listed.
        :return: Dict of key -> ObjectInfo.
        """
        result = {}
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket):
                for obj in page.get("Contents", []):
                    result[obj["Key"]] = ObjectInfo(obj["Key"], int(obj.get("Size", 0)))
        except (BotoCoreError, ClientError) as e:
            raise RemoteError(f"cannot list s3 objects: {e}")
        return result

    def get_object(
        self,
        bucket: str,
        key: str,
        writer: BinaryIO,
        stop: Optional[threading.Event] = None,
    ) -> int:
        """Streams the object `key` into `writer`.

        :param bucket: Bucket name.
        :param key: Object key.
        :param writer: Binary file-like object.
        :param stop: Optional stop signal.
        :raises RemoteError: If the object cannot be fetched.
        :return: Number of bytes written.
        """
        try:
            resp = self.client.get_object(Bucket=bucket, Key=key)
            body = resp["Body"]
            try:
                return copy_chunks(
                    iter(lambda: body.read(config.CHUNK_SIZE), b""), writer, stop
                )
            finally:
                body.close()
        except (BotoCoreError, ClientError) as e:
            raise RemoteError(f"cannot download s3 object {key}: {e}")


class HttpOrigin(object):
    """Fetches artifacts served over plain http."""

    def __init__(self, session: requests.Session = None, timeout: float = None):
        self.session = session or requests.Session()
        self.timeout = timeout or config.HTTP_TIMEOUT

    def content_length(self, url: str) -> int:
        """Returns the size of the file at `url` using a HEAD request.

        :param url: File url.
        :raises RemoteError: If the request fails or reports no valid size.
        :return: Size in bytes.
        """
        try:
            resp = self.session.head(url, allow_redirects=True, timeout=self.timeout)
        except requests.RequestException as e:
            raise RemoteError(f"head request to {url} failed: {e}")
        try:
            if resp.status_code != 200:
                raise RemoteError(f"head request to url did not return OK: {url}")
            try:
                return int(resp.headers.get("Content-Length"))
            except (TypeError, ValueError) as e:
                raise RemoteError(
                    f"content-length header value could not be converted to integer: {e}"
                )
        finally:
            resp.close()

    def get(
        self, url: str, writer: BinaryIO, stop: Optional[threading.Event] = None
    ) -> int:
        """Streams the file at `url` into `writer`.

        :param url: File url.
        :param writer: Binary file-like object.
        :param stop: Optional stop signal.
        :raises RemoteError: If the download fails.
        :return: Number of bytes written.
        """
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as resp:
                resp.raise_for_status()
                return copy_chunks(
                    resp.iter_content(chunk_size=config.CHUNK_SIZE), writer, stop
                )
        except requests.RequestException as e:
            raise RemoteError(f"download of {url} failed: {e}")


@dataclass
class Transport:
    """Bundles the remote clients and the stop signal shared by all transfers."""

    store: ObjectStore
    http: HttpOrigin
    stop: threading.Event = field(default_factory=threading.Event)
