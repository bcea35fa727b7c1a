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
Contains in-memory fakes of the catalog, the object store and the http origin.
"""

import hashlib
import io
import threading

import pytest
import requests

from imagecache.catalog import BootConfig, CatalogError, CatalogImage, Partition
from imagecache.config import Config
from imagecache.remote import ObjectInfo, RemoteError, Transport, copy_chunks

BUCKET = "images"
STORE = "https://images.example.com"


def md5sum_file(data: bytes, name: str = "img.tar") -> bytes:
    """Returns the contents of an md5 sum file for `data`."""
    return f"{hashlib.md5(data).hexdigest()}  {name}\n".encode()


def make_response(status=200, data=b"", headers=None, url="https://example.com/f"):
    """Returns a requests response reading its body from `data`."""
    resp = requests.Response()
    resp.status_code = status
    resp.url = url
    resp.reason = "OK" if status == 200 else "Not Found"
    resp.headers.update(headers or {})
    resp.raw = io.BytesIO(data)
    return resp


class FakeSession(object):
    """requests session answering from a dict of (method, url) -> response
    factory."""

    def __init__(self, responses=None, error=None):
        self.responses = responses or {}
        self.error = error
        self.calls = []

    def _respond(self, method, url):
        self.calls.append((method, url))
        if self.error:
            raise self.error
        return self.responses[(method, url)]()

    def head(self, url, **kwargs):
        return self._respond("HEAD", url)

    def get(self, url, **kwargs):
        return self._respond("GET", url)


class FakeStore(object):
    """Object store holding objects in memory."""

    def __init__(self, objects=None, sizes=None):
        self.objects = dict(objects or {})
        self.sizes = dict(sizes or {})
        self.failing = set()
        self.list_error = None
        self.fetched = []

    def put(self, key: str, data: bytes, size: int = None):
        self.objects[key] = data
        if size is not None:
            self.sizes[key] = size

    def list_objects(self, bucket):
        if self.list_error:
            raise RemoteError(self.list_error)
        return {
            k: ObjectInfo(k, self.sizes.get(k, len(v))) for k, v in self.objects.items()
        }

    def get_object(self, bucket, key, writer, stop=None):
        self.fetched.append(key)
        if key in self.failing or key not in self.objects:
            raise RemoteError(f"no such key: {key}")
        data = self.objects[key]
        return copy_chunks([data[i : i + 4] for i in range(0, len(data), 4)], writer, stop)


class FakeHttp(object):
    """Http origin serving files from memory."""

    def __init__(self, files=None):
        self.files = dict(files or {})
        self.head_failing = set()
        self.get_failing = set()
        self.fetched = []

    def content_length(self, url):
        if url in self.head_failing or url not in self.files:
            raise RemoteError(f"head request to url did not return OK: {url}")
        return len(self.files[url])

    def get(self, url, writer, stop=None):
        self.fetched.append(url)
        if url in self.get_failing or url not in self.files:
            raise RemoteError(f"download of {url} failed: 404")
        return copy_chunks([self.files[url]], writer, stop)


class FakeCatalog(object):
    """Catalog returning fixed images and partitions."""

    def __init__(self, images=None, partitions=None):
        self.images = list(images or [])
        self.partitions = list(partitions or [])
        self.error = None

    def add_image(self, image_id, url, expiration_date=None):
        self.images.append(CatalogImage(image_id, url, expiration_date))

    def add_partition(self, pid, kernel_url="", image_url=""):
        self.partitions.append(Partition(pid, BootConfig(kernel_url, image_url)))

    def list_images(self):
        if self.error:
            raise CatalogError(self.error)
        return list(self.images)

    def list_partitions(self):
        if self.error:
            raise CatalogError(self.error)
        return list(self.partitions)


@pytest.fixture
def cache_config(tmp_path):
    root = tmp_path / "cache"
    root.mkdir()
    return Config(
        cache_root=str(root),
        catalog_endpoint="https://catalog.example.com",
        image_store=STORE,
        image_bucket=BUCKET,
        min_images_per_name=1,
        max_images_per_name=-1,
        max_cache_size=10 * 1000**3,
        exclude_paths=["/pull_requests/"],
        expiration_grace_days=0,
        progress=False,
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def transport(store, http):
    return Transport(store=store, http=http, stop=threading.Event())
