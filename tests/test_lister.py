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
Contains tests for the lister module.
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from conftest import STORE, md5sum_file

from imagecache import util
from imagecache.catalog import Partition
from imagecache.entity import RemoteBootImage, RemoteImage, RemoteKernel
from imagecache.lister import (
    Lister,
    ListError,
    ReduceError,
    cap_images,
    reduce_images,
    select_images,
)
from imagecache.remote import ObjectInfo
from imagecache.stats import Collector

GiB = 1024**3
NOW = datetime(2020, 6, 1, tzinfo=timezone.utc)


def remote_image(image_id: str, size: int = GiB) -> RemoteImage:
    os_name, version = util.parse_os_and_version(image_id)
    key = f"{os_name}/{util.major_minor(version)}/{version}/img.tar.lz4"
    return RemoteImage(
        os_name=os_name,
        version=version,
        catalog_id=image_id,
        url=f"{STORE}/{key}",
        bucket_name="images",
        bucket_key=key,
        image_object=ObjectInfo(key, size),
        checksum_object=ObjectInfo(key + ".md5", 32),
    )


def ids(images):
    return [i.catalog_id for i in images]


def register(catalog, store, image_id, path, size=GiB, md5=True, **kwargs):
    """Registers an image in the catalog and puts it into the store."""
    catalog.add_image(image_id, f"{STORE}/{path}", **kwargs)
    store.put(path, b"x", size=size)
    if md5:
        store.put(path + ".md5", md5sum_file(b"x"))


@pytest.fixture
def lister(cache_config, catalog, transport):
    return Lister(cache_config, catalog, transport, clock=lambda: NOW)


def test_budget_evicts_oldest():
    """Two 4 GiB images of one variant with a 6 GiB budget keep the newest."""
    images = [
        remote_image("ubuntu-19.04.20200101", 4 * GiB),
        remote_image("ubuntu-19.04.20200201", 4 * GiB),
    ]

    selected, size = select_images(images, 1, 10, 6 * GiB)

    assert ids(selected) == ["ubuntu-19.04.20200201"]
    assert size == 4 * GiB


def test_cap_keeps_newest_per_variant():
    images = [
        remote_image("ubuntu-20.04.20200101"),
        remote_image("ubuntu-20.04.20200301"),
        remote_image("ubuntu-20.04.20200201"),
        remote_image("ubuntu-19.10.20200101"),
    ]

    kept, size = cap_images(images, 2)

    assert ids(kept) == [
        "ubuntu-19.10.20200101",
        "ubuntu-20.04.20200201",
        "ubuntu-20.04.20200301",
    ]
    assert size == 3 * GiB


def test_cap_unlimited():
    images = [remote_image(f"debian-10.0.2020010{i}") for i in range(1, 6)]

    for max_per_name in (0, -1):
        kept, size = cap_images(images, max_per_name)
        assert len(kept) == 5
        assert size == 5 * GiB


def test_reduce_breaks_ties_by_group_key():
    """The first group in key order wins when groups are equally big."""
    images = [
        remote_image("ubuntu-20.04.20200101"),
        remote_image("ubuntu-20.04.20200201"),
        remote_image("centos-7.0.20200101"),
        remote_image("centos-7.0.20200201"),
    ]
    images, size = cap_images(images, -1)

    images, size, evicted = reduce_images(images, size, 1)
    assert evicted.catalog_id == "centos-7.0.20200101"
    assert size == 3 * GiB

    images, size, evicted = reduce_images(images, size, 1)
    assert evicted.catalog_id == "ubuntu-20.04.20200101"
    assert ids(images) == ["centos-7.0.20200201", "ubuntu-20.04.20200201"]


def test_reduce_prefers_biggest_group():
    images = [
        remote_image("centos-7.0.20200101"),
        remote_image("centos-7.0.20200201"),
        remote_image("ubuntu-20.04.20200101"),
        remote_image("ubuntu-20.04.20200201"),
        remote_image("ubuntu-20.04.20200301"),
    ]
    images, size = cap_images(images, -1)

    _, _, evicted = reduce_images(images, size, 1)

    assert evicted.catalog_id == "ubuntu-20.04.20200101"


def test_reduce_stops_at_minimum():
    images, size = cap_images(
        [remote_image("ubuntu-20.04.20200101"), remote_image("centos-7.0.20200101")],
        -1,
    )

    with pytest.raises(ReduceError):
        reduce_images(images, size, 1)


def test_select_exceeds_budget_at_minimum(caplog):
    """When every group is at its minimum the set stays over budget."""
    images = [
        remote_image("ubuntu-20.04.20200101", 4 * GiB),
        remote_image("ubuntu-20.04.20200201", 4 * GiB),
        remote_image("ubuntu-20.04.20200301", 4 * GiB),
    ]

    with caplog.at_level(logging.WARNING, logger="imagecache"):
        selected, size = select_images(images, 2, -1, 6 * GiB)

    assert ids(selected) == ["ubuntu-20.04.20200201", "ubuntu-20.04.20200301"]
    assert size == 8 * GiB
    assert "cannot reduce anymore images" in caplog.text


def test_select_reduces_below_budget():
    """The selected size ends strictly below the budget."""
    images = [remote_image(f"ubuntu-20.04.2020010{i}") for i in range(1, 5)]

    selected, size = select_images(images, 1, -1, 2 * GiB)

    assert ids(selected) == ["ubuntu-20.04.20200104"]
    assert size == GiB


def test_select_under_budget_keeps_all():
    images = [remote_image(f"ubuntu-20.04.2020010{i}") for i in range(1, 4)]

    selected, size = select_images(images, 1, -1, 10 * GiB)

    assert len(selected) == 3
    assert size == 3 * GiB


def test_determine_image_sync_list(cache_config, catalog, store, transport):
    collector = Collector("images", cache_config.image_root)
    lister = Lister(
        cache_config, catalog, transport, image_collector=collector, clock=lambda: NOW
    )
    register(catalog, store, "ubuntu-20.04.20200101", "ubuntu/20.04/20200101/img.tar.lz4")
    register(catalog, store, "ubuntu-20.04.20200201", "ubuntu/20.04/20200201/img.tar.lz4")
    register(
        catalog,
        store,
        "ubuntu-20.04.20200301",
        "pull_requests/42/ubuntu/20.04/img.tar.lz4",
    )
    register(catalog, store, "firewall-2.0.20200101", "firewall/2.0/img.tar.lz4", md5=False)
    catalog.add_image("centos-7.0.20200101", f"{STORE}/centos/7.0/img.tar.lz4")
    catalog.add_image("ubuntu-latest", f"{STORE}/ubuntu/latest/img.tar.lz4")

    images, size = lister.determine_image_sync_list()

    assert ids(images) == ["ubuntu-20.04.20200101", "ubuntu-20.04.20200201"]
    assert size == 2 * GiB
    assert images[0].sub_path == "ubuntu/20.04/20200101/img.tar.lz4"
    assert images[0].checksum_object.key == "ubuntu/20.04/20200101/img.tar.lz4.md5"
    assert collector.catalog_count == 6
    assert collector.unsynced_count == 4


def test_determine_image_sync_list_skips_duplicate_paths(lister, catalog, store):
    register(catalog, store, "ubuntu-20.04.20200101", "ubuntu/20.04/img.tar.lz4")
    catalog.add_image("ubuntu-20.04.20200102", f"{STORE}/ubuntu/20.04/img.tar.lz4")

    images, _ = lister.determine_image_sync_list()

    assert ids(images) == ["ubuntu-20.04.20200101"]


def test_determine_image_sync_list_skips_missing_url(lister, catalog, store, caplog):
    register(catalog, store, "ubuntu-20.04.20200101", "ubuntu/20.04/img.tar.lz4")
    catalog.add_image("ubuntu-20.04.20200201", "")

    with caplog.at_level(logging.ERROR, logger="imagecache"):
        images, _ = lister.determine_image_sync_list()

    assert ids(images) == ["ubuntu-20.04.20200101"]
    assert "image has no url, skipping: ubuntu-20.04.20200201" in caplog.text


def test_determine_image_sync_list_expiration(cache_config, catalog, store, transport):
    register(
        catalog,
        store,
        "ubuntu-20.04.20200101",
        "ubuntu/20.04/20200101/img.tar.lz4",
        expiration_date=NOW - timedelta(days=2),
    )
    register(
        catalog,
        store,
        "ubuntu-20.04.20200201",
        "ubuntu/20.04/20200201/img.tar.lz4",
        expiration_date=NOW + timedelta(days=2),
    )

    lister = Lister(cache_config, catalog, transport, clock=lambda: NOW)
    images, _ = lister.determine_image_sync_list()
    assert ids(images) == ["ubuntu-20.04.20200201"]

    cache_config.expiration_grace_days = 3
    lister = Lister(cache_config, catalog, transport, clock=lambda: NOW)
    images, _ = lister.determine_image_sync_list()
    assert ids(images) == ["ubuntu-20.04.20200101", "ubuntu-20.04.20200201"]


def test_determine_image_sync_list_applies_budget(cache_config, lister, catalog, store):
    cache_config.max_cache_size = 6 * GiB
    register(
        catalog, store, "ubuntu-19.04.20200101", "ubuntu/19.04/20200101/img.tar", 4 * GiB
    )
    register(
        catalog, store, "ubuntu-19.04.20200201", "ubuntu/19.04/20200201/img.tar", 4 * GiB
    )

    images, size = lister.determine_image_sync_list()

    assert ids(images) == ["ubuntu-19.04.20200201"]
    assert size == 4 * GiB


def test_determine_image_sync_list_errors(lister, catalog, store):
    store.list_error = "connection refused"
    with pytest.raises(ListError):
        lister.determine_image_sync_list()

    store.list_error = None
    catalog.error = "503 service unavailable"
    with pytest.raises(ListError):
        lister.determine_image_sync_list()


def test_determine_kernel_sync_list(lister, catalog, http, caplog):
    kernel = "https://images.example.com/metal-kernel/v5.10.1/metal-kernel"
    mirror = "https://mirror.example.com/metal-kernel/v5.10.1/metal-kernel"
    unknown = "https://images.example.com/metal-kernel/v5.11.0/metal-kernel"
    http.files[kernel] = b"kernel"
    catalog.add_partition("p1", kernel_url=kernel)
    catalog.add_partition("p2", kernel_url=kernel)
    catalog.add_partition("p3", kernel_url=mirror)
    catalog.add_partition("p4", kernel_url=unknown)
    catalog.add_partition("p5", kernel_url=f"{STORE}/pull_requests/1/metal-kernel")
    catalog.partitions.append(Partition("p6"))

    with caplog.at_level(logging.WARNING, logger="imagecache"):
        kernels = lister.determine_kernel_sync_list()

    assert kernels == [
        RemoteKernel(path="metal-kernel/v5.10.1/metal-kernel", url=kernel, length=6),
        RemoteKernel(path="metal-kernel/v5.11.0/metal-kernel", url=unknown, length=0),
    ]
    assert kernels[0].name == "5.10.1"
    assert "kernel path already listed" in caplog.text
    assert "unable to determine kernel download size" in caplog.text


def test_determine_boot_image_sync_list(lister, catalog, http):
    good = "https://images.example.com/metal-hammer/initrd.img.lz4"
    no_md5 = "https://images.example.com/metal-hammer/v0.9/initrd.img.lz4"
    http.files[good] = b"initrd"
    http.files[good + ".md5"] = md5sum_file(b"initrd")
    http.files[no_md5] = b"initrd"
    catalog.add_partition("p1", image_url=good)
    catalog.add_partition("p2", image_url=no_md5)

    images = lister.determine_boot_image_sync_list()

    assert images == [
        RemoteBootImage(path="metal-hammer/initrd.img.lz4", url=good, length=6)
    ]
    assert images[0].checksum_url == good + ".md5"


def test_determine_boot_list_errors(lister, catalog):
    catalog.error = "timeout"
    with pytest.raises(ListError):
        lister.determine_kernel_sync_list()
    with pytest.raises(ListError):
        lister.determine_boot_image_sync_list()
