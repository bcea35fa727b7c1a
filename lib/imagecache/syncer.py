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
Contains the functions and classes that reconcile a cache directory with the
list of artifacts it should hold.
"""

import contextlib
import logging
import os
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator, List, Optional, Tuple

from tqdm import tqdm

from imagecache import config as settings
from imagecache import util
from imagecache.config import Config
from imagecache.entity import CacheEntity, LocalFile
from imagecache.logger import log as root_log
from imagecache.remote import RemoteError, Transport
from imagecache.stats import Collector

ACTION_DELETE = "delete"
ACTION_KEEP = "keep"
ACTION_DOWNLOAD = "download"


class SyncError(Exception):
    """Raised when a cache directory cannot be brought in sync."""

    pass


@dataclass
class PlanRow:
    """One line of a sync plan."""

    id: str
    path: str
    size: int
    action: str


@dataclass
class SyncPlan:
    """The entities to delete, keep and download for one cache root."""

    root: str
    remove: List[CacheEntity] = field(default_factory=list)
    keep: List[CacheEntity] = field(default_factory=list)
    add: List[CacheEntity] = field(default_factory=list)

    @property
    def cache_size(self) -> int:
        """Size of the cache root once the plan has been applied."""
        return sum(e.size for e in self.keep) + sum(e.size for e in self.add)

    def rows(self) -> List[PlanRow]:
        rows = [PlanRow("", e.sub_path, e.size, ACTION_DELETE) for e in self.remove]
        rows += [PlanRow(e.name, e.sub_path, e.size, ACTION_KEEP) for e in self.keep]
        rows += [PlanRow(e.name, e.sub_path, e.size, ACTION_DOWNLOAD) for e in self.add]
        return rows


def _raise(err: OSError) -> None:
    raise err


def current_file_index(root: str) -> List[LocalFile]:
    """Lists the files in `root`, leaving out checksum files.

    :param root: Cache root of one artifact kind.
    :raises OSError: If the directory tree cannot be read.
    :return: List of LocalFile sorted by sub path.
    """
    result = []
    if not os.path.isdir(root):
        return result

    for dirpath, dirs, files in os.walk(root, onerror=_raise):
        dirs.sort()
        for name in sorted(files):
            if name.endswith(settings.CHECKSUM_EXT):
                continue
            path = os.path.join(dirpath, name)
            sub_path = os.path.relpath(path, root).replace(os.sep, "/")
            result.append(LocalFile(name, sub_path, os.path.getsize(path)))

    return sorted(result, key=lambda f: f.sub_path)


def define_diff(
    root: str,
    current: List[CacheEntity],
    wanted: List[CacheEntity],
    transport: Transport,
    logger: logging.Logger = None,
) -> Tuple[List[CacheEntity], List[CacheEntity], List[CacheEntity]]:
    """Compares the files in the cache with the wanted entities. Existing
    files are verified against the remote checksum where one exists.

    An entity whose remote checksum cannot be fetched is neither kept nor
    added in this cycle.

    :param root: Cache root of one artifact kind.
    :param current: Files currently in the cache.
    :param wanted: Entities that should be in the cache.
    :param transport: Remote clients and stop signal.
    :param logger: Optional logger.
    :raises SyncError: If a local file cannot be hashed.
    :return: Tuple of (remove, keep, add).
    """
    logger = logger or root_log
    remove, keep, add = [], [], []

    on_disk = {e.sub_path: e for e in current}
    wanted_paths = set()

    for entity in wanted:
        wanted_paths.add(entity.sub_path)
        existing = on_disk.get(entity.sub_path)

        if existing is None:
            add.append(entity)
            continue

        if not entity.has_checksum:
            keep.append(entity)
            continue

        try:
            expected = entity.download_checksum(transport)
        except RemoteError as e:
            logger.error("error downloading checksum of %s: %s", entity.sub_path, e)
            continue

        try:
            actual = util.md5_file(util.join_sub_path(root, existing.sub_path))
        except OSError as e:
            raise SyncError(f"error calculating hash sum of local file: {e}") from e

        if actual != expected:
            logger.info(
                "found %s with invalid hash sum, schedule new download",
                entity.sub_path,
            )
            add.append(entity)
        else:
            keep.append(entity)

    for entity in current:
        if entity.sub_path not in wanted_paths:
            remove.append(entity)

    return remove, keep, add


def clean_empty_dirs(root: str) -> int:
    """Removes empty directories below `root`, bottom-up, so that directories
    only holding empty directories are removed as well. `root` itself is kept.

    :param root: Cache root of one artifact kind.
    :raises OSError: If a directory cannot be listed or removed.
    :return: Number of removed directories.
    """
    removed = 0
    if not os.path.isdir(root):
        return removed

    for dirpath, _, _ in os.walk(root, topdown=False, onerror=_raise):
        if dirpath == root:
            continue
        if not os.listdir(dirpath):
            os.rmdir(dirpath)
            removed += 1

    return removed


class Syncer(object):
    """Downloads, verifies and removes cache entities below a cache root."""

    def __init__(
        self,
        config: Config,
        transport: Transport,
        logger: logging.Logger = None,
    ):
        """Initializes the syncer.

        :param config: Cache settings.
        :param transport: Remote clients and stop signal.
        :param logger: Optional logger.
        """
        self.config = config
        self.transport = transport
        self.log = logger or root_log.getChild("syncer")

    @property
    def tmp_file(self) -> str:
        # downloads run one at a time, so one scratch file suffices
        return os.path.join(self.config.tmp_path, settings.TMP_DOWNLOAD_NAME)

    def sync(
        self,
        root: str,
        entities: List[CacheEntity],
        collector: Optional[Collector] = None,
    ) -> SyncPlan:
        """Brings `root` in sync with `entities`: deletes files that are not
        wanted anymore, downloads missing or corrupt ones and removes empty
        directories afterwards.

        :param root: Cache root of one artifact kind.
        :param entities: Entities that should be in the cache.
        :param collector: Optional counters of the artifact kind.
        :raises SyncError: If the cache cannot be indexed, a download fails
            or the directory cleanup fails.
        :return: The sync plan.
        """
        try:
            current = current_file_index(root)
        except OSError as e:
            raise SyncError(f"error creating file index: {e}") from e

        remove, keep, add = define_diff(
            root, current, entities, self.transport, logger=self.log
        )
        plan = SyncPlan(root, remove, keep, add)

        self.print_sync_plan(plan)

        if self.config.dry_run:
            self.log.info(settings.DRYRUN_MESSAGE)
            return plan

        for entity in plan.remove:
            self.remove(root, entity)

        failure = None
        for entity in plan.add:
            try:
                self.download(root, entity, collector)
            except SyncError as e:
                failure = SyncError(
                    f"error downloading {entity.sub_path}, retrying in next sync schedule: {e}"
                )
                break

        try:
            removed = clean_empty_dirs(root)
        except OSError as e:
            raise SyncError(f"error cleaning up empty directories: {e}") from e
        if removed:
            self.log.debug("removed %d empty directories from %s", removed, root)

        if failure is not None:
            raise failure

        return plan

    @contextlib.contextmanager
    def _progress(self, f: BinaryIO, entity: CacheEntity) -> Iterator[BinaryIO]:
        with tqdm.wrapattr(
            f,
            "write",
            total=entity.size or None,
            desc=f"[downloading {entity.name}]",
            leave=False,
            disable=not self.config.progress,
        ) as writer:
            yield writer

    def download(
        self, root: str, entity: CacheEntity, collector: Optional[Collector] = None
    ) -> int:
        """Downloads `entity` into a scratch file and moves it into place, so
        that the target path never holds a partial file. The checksum file is
        written next to it afterwards.

        :param root: Cache root of one artifact kind.
        :param entity: Entity to download.
        :param collector: Optional counters of the artifact kind.
        :raises SyncError: If the download fails.
        :return: Number of bytes downloaded.
        """
        target = util.join_sub_path(root, entity.sub_path)
        tmp_file = self.tmp_file

        self.log.info("downloading %s to %s", entity.sub_path, target)
        try:
            util.ensure_dir(os.path.dirname(tmp_file))
            with open(tmp_file, "wb") as f, self._progress(f, entity) as writer:
                n = entity.download(writer, self.transport)
            util.ensure_dir(os.path.dirname(target))
            util.atomic_replace(tmp_file, target)
        except (RemoteError, OSError) as e:
            raise SyncError(f"download error: {e}") from e
        finally:
            self._discard(tmp_file)

        if collector:
            collector.add_downloaded_bytes(n)
            collector.increment_downloaded_files()

        if entity.has_checksum:
            checksum_target = target + settings.CHECKSUM_EXT
            self.log.info("downloading md5 checksum of %s", entity.sub_path)
            try:
                with open(checksum_target, "wb") as f:
                    entity.download_checksum(self.transport, f)
            except (RemoteError, OSError) as e:
                self._discard(checksum_target)
                raise SyncError(f"md5 download error: {e}") from e

        return n

    def _discard(self, path: str) -> None:
        """Removes a leftover partial file, logging failures."""
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            self.log.warning("error removing partial file %s: %s", path, e)

    def remove(self, root: str, entity: CacheEntity) -> bool:
        """Removes `entity` and its checksum file from `root`. Failures are
        logged, the file will be removed in the next sync.

        :param root: Cache root of one artifact kind.
        :param entity: Entity to remove.
        :return: True if everything was removed.
        """
        path = util.join_sub_path(root, entity.sub_path)
        ok = True

        self.log.info("removing %s from disk", entity.sub_path)
        try:
            os.remove(path)
        except OSError as e:
            self.log.error("error deleting %s: %s", entity.sub_path, e)
            ok = False

        checksum_path = path + settings.CHECKSUM_EXT
        if os.path.exists(checksum_path):
            try:
                os.remove(checksum_path)
            except OSError as e:
                self.log.error("error deleting md5 file of %s: %s", entity.sub_path, e)
                ok = False

        return ok

    def print_sync_plan(self, plan: SyncPlan) -> None:
        """Logs the sync plan, one line per entity."""
        self.log.info(
            "sync plan for %s: %d entities, cache size after sync %s",
            plan.root,
            len(plan.keep) + len(plan.add),
            util.human_size(plan.cache_size),
        )
        for row in plan.rows():
            self.log.info(
                "%-8s %s %s %s",
                row.action,
                row.path,
                util.human_size(row.size),
                row.id,
            )
