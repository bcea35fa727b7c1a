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
Contains the client for the remote image and partition catalog.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

import requests

from imagecache import config
from imagecache.logger import log


class CatalogError(Exception):
    """Raised when the catalog cannot be queried."""

    pass


@dataclass
class CatalogImage:
    """An os image registered in the catalog."""

    id: str
    url: str
    expiration_date: Optional[datetime] = None


@dataclass
class BootConfig:
    """Boot configuration of a partition."""

    kernel_url: str = ""
    image_url: str = ""


@dataclass
class Partition:
    """A partition registered in the catalog."""

    id: str
    boot_config: Optional[BootConfig] = None


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parses an ISO-8601 timestamp, returning an aware datetime in UTC.

    :param value: Timestamp string or None.
    :raises ValueError: If the timestamp is invalid.
    :return: datetime or None.
    """
    if not value:
        return None
    if not isinstance(value, str):
        raise ValueError(f"expected a timestamp string, got {value!r}")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class CatalogClient(object):
    """Reads images and partitions from the catalog api."""

    def __init__(
        self, endpoint: str, session: requests.Session = None, timeout: float = None
    ):
        self.endpoint = endpoint.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout or config.HTTP_TIMEOUT

    def _get(self, path: str) -> list:
        url = f"{self.endpoint}{path}"
        try:
            resp = self.session.get(url, timeout=self.timeout)
            resp.raise_for_status()
            payload = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise CatalogError(f"error querying {url}: {e}")
        if not isinstance(payload, list):
            raise CatalogError(f"unexpected response from {url}: expected a list")
        return payload

    def list_images(self) -> List[CatalogImage]:
        """Lists all images of the catalog.

        :raises CatalogError: If the catalog cannot be queried.
        :return: List of CatalogImage.
        """
        result = []
        for item in self._get("/v1/image"):
            image_id = item.get("id") or ""
            try:
                expiration = parse_datetime(item.get("expirationDate"))
            except ValueError as e:
                log.warning(
                    "invalid expiration date of image %s, skipping: %s", image_id, e
                )
                continue
            result.append(
                CatalogImage(
                    id=image_id,
                    url=item.get("url") or "",
                    expiration_date=expiration,
                )
            )
        return result

    def list_partitions(self) -> List[Partition]:
        """Lists all partitions of the catalog.

        :raises CatalogError: If the catalog cannot be queried.
        :return: List of Partition.
        """
        result = []
        for item in self._get("/v1/partition"):
            boot = item.get("bootconfig")
            boot_config = None
            if boot:
                boot_config = BootConfig(
                    kernel_url=boot.get("kernelurl", "") or "",
                    image_url=boot.get("imageurl", "") or "",
                )
            result.append(Partition(id=item.get("id") or "", boot_config=boot_config))
        return result
