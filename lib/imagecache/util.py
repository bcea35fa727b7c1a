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
Contains utility functions for versions, sizes, checksums and paths.
"""

import hashlib
import os
import re
from typing import List, Tuple
from urllib.parse import urlparse

from packaging.version import InvalidVersion, Version

# decimal size units, as used by the image store tooling
SIZE_UNITS = ["B", "kB", "MB", "GB", "TB", "PB"]
SIZE_MULTIPLIERS = {
    "": 1,
    "k": 1000,
    "m": 1000**2,
    "g": 1000**3,
    "t": 1000**4,
    "p": 1000**5,
}
SIZE_REGEX = re.compile(r"^(\d+(?:\.\d+)?)\s*([kmgtp]?)(?:i?b)?$", re.IGNORECASE)


class VersionError(ValueError):
    """Raised when an image id does not carry a usable version."""

    pass


def parse_size(size: str) -> int:
    """Parses a human readable size like "10G" or "512MB" into bytes.

    :param size: Size string or plain number of bytes.
    :raises ValueError: If the size cannot be parsed.
    :return: Size in bytes.
    """
    if isinstance(size, int):
        return size
    match = SIZE_REGEX.match(str(size).strip())
    if not match:
        raise ValueError(f"invalid size: {size!r}")
    number, unit = match.groups()
    return int(float(number) * SIZE_MULTIPLIERS[unit.lower()])


def human_size(size: float) -> str:
    """Returns a human readable representation of `size` bytes, e.g. 4.295GB."""
    i = 0
    size = float(size)
    while size >= 1000.0 and i < len(SIZE_UNITS) - 1:
        size /= 1000.0
        i += 1
    return "%.4g%s" % (size, SIZE_UNITS[i])


def parse_semver(text: str) -> Version:
    """Parses a semantic version of at most three numeric components, as in
    "19.04" or "20.04.20200408". PEP 440 extras such as epochs, pre, post,
    dev or local segments are rejected.

    :param text: Version string.
    :raises InvalidVersion: If `text` is not a semantic version.
    :return: Version.
    """
    version = Version(text)
    if (
        version.epoch
        or version.pre is not None
        or version.post is not None
        or version.dev is not None
        or version.local is not None
        or len(version.release) > 3
    ):
        raise InvalidVersion(f"not a semantic version: {text!r}")
    return version


def parse_os_and_version(image_id: str) -> Tuple[str, Version]:
    """Parses an image id into the os name and its version. The last part
    must be the version:

        ubuntu-19.04                 os: ubuntu        version: 19.04
        ubuntu-19.04.20200408        os: ubuntu        version: 19.04.20200408
        ubuntu-small-19.04.20200408  os: ubuntu-small  version: 19.04.20200408

    :param image_id: The image id.
    :raises VersionError: If the id does not contain a version.
    :return: Tuple of (os name, version).
    """
    parts = image_id.split("-")
    if len(parts) < 2:
        raise VersionError(f"image does not contain a version: {image_id}")
    os_name = "-".join(parts[:-1])
    try:
        version = parse_semver(parts[-1])
    except InvalidVersion as e:
        raise VersionError(f"invalid version in image id {image_id}: {e}")
    return os_name, version


def major_minor(version: Version) -> str:
    """Returns the "{major}.{minor}" bucket of a version."""
    return f"{version.major}.{version.minor}"


def semver_or_url(url: str) -> str:
    """Returns the first path segment of `url` that parses as a version,
    otherwise the url itself.

    :param url: Artifact url.
    :return: Version string or url.
    """
    for part in url.split("/"):
        if part.startswith("v"):
            part = part[1:]
        if not part:
            continue
        try:
            return str(parse_semver(part))
        except InvalidVersion:
            continue
    return url


def url_sub_path(url: str) -> str:
    """Returns the path of `url` without its leading slash.

    :param url: Artifact url.
    :raises ValueError: If the url is invalid or has no path.
    :return: Relative path.
    """
    path = urlparse(url).path
    if path.startswith("/"):
        path = path[1:]
    if not path:
        raise ValueError(f"url has no path: {url}")
    return path


def is_excluded(url: str, excludes: List[str]) -> bool:
    """Returns True if `url` contains any of the `excludes` substrings."""
    return any(exclude in url for exclude in excludes)


def parse_checksum(text: str) -> str:
    """Extracts the checksum from the contents of an md5 sum file, which
    look like "<hex>  <filename>".

    :param text: Checksum file contents.
    :raises ValueError: If no checksum can be found.
    :return: Hex digest.
    """
    checksum = text.split(" ")[0].strip()
    if not checksum:
        raise ValueError("md5 sum file has unexpected format")
    return checksum


def md5_file(path: str, chunk_size: int = 1024 * 1024) -> str:
    """Returns the hex md5 digest of the file at `path`."""
    md5 = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            md5.update(chunk)
    return md5.hexdigest()


def join_sub_path(root: str, sub_path: str) -> str:
    """Joins a posix style `sub_path` onto `root`."""
    return os.path.join(root, *sub_path.split("/"))


def ensure_dir(path: str) -> None:
    """Ensures that directory `path` exists."""
    os.makedirs(path, exist_ok=True)


def atomic_replace(src_tmp: str, dst: str) -> None:
    """Atomically replaces dst with src_tmp.

    :param src_tmp: Temporary source file path.
    :param dst: Destination file path.
    """
    os.replace(src_tmp, dst)
