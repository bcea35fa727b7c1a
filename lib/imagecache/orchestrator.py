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
Contains the sync cycle that runs every artifact kind through the lister and
the syncer, and the scheduler that triggers it.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from imagecache.config import Config
from imagecache.lister import Lister, ListError
from imagecache.logger import log as root_log
from imagecache.stats import Collector
from imagecache.syncer import SyncError, Syncer, SyncPlan

KIND_IMAGES = "images"
KIND_KERNELS = "kernels"
KIND_BOOT_IMAGES = "boot-images"


class SyncErrors(Exception):
    """Raised after a sync cycle in which one or more artifact kinds failed."""

    def __init__(self, errors: List[Exception]):
        self.errors = list(errors)
        super().__init__(
            "errors occurred during sync: " + "; ".join(str(e) for e in self.errors)
        )


class CacheSync(object):
    """Runs sync cycles over all enabled artifact kinds. Only one cycle runs
    at a time."""

    def __init__(
        self,
        config: Config,
        lister: Lister,
        syncer: Syncer,
        collectors: Optional[Dict[str, Collector]] = None,
        logger: logging.Logger = None,
    ):
        """Initializes the sync.

        :param config: Cache settings.
        :param lister: Determines the entities to cache.
        :param syncer: Applies the entities to the cache roots.
        :param collectors: Optional counters keyed by artifact kind.
        :param logger: Optional logger.
        """
        self.config = config
        self.lister = lister
        self.syncer = syncer
        self.collectors = collectors or {}
        self.log = logger or root_log.getChild("sync")
        self._running = threading.Lock()
        self.last_plans: Dict[str, SyncPlan] = {}

    def kinds(self) -> List[tuple]:
        """Returns (kind, cache root, list function) of every artifact kind.
        The kernel and boot image enable flags only gate serving, each kind
        is always synced.
        """
        return [
            (
                KIND_IMAGES,
                self.config.image_root,
                lambda: self.lister.determine_image_sync_list()[0],
            ),
            (
                KIND_KERNELS,
                self.config.kernel_root,
                self.lister.determine_kernel_sync_list,
            ),
            (
                KIND_BOOT_IMAGES,
                self.config.boot_image_root,
                self.lister.determine_boot_image_sync_list,
            ),
        ]

    def sync_kind(self, kind: str, root: str, determine: Callable) -> SyncPlan:
        """Runs one artifact kind through listing and syncing.

        :raises ListError: If the kind cannot be enumerated.
        :raises SyncError: If the cache root cannot be synced.
        :return: The applied sync plan.
        """
        entities = determine()
        self.log.info("syncing %d %s into %s", len(entities), kind, root)
        return self.syncer.sync(root, entities, self.collectors.get(kind))

    def run_sync(self) -> Dict[str, SyncPlan]:
        """Runs one sync cycle. A failing kind does not keep the other kinds
        from being synced; all failures are raised together at the end.

        :raises SyncErrors: If any artifact kind failed.
        :return: Dict of kind -> applied sync plan.
        """
        errors = []
        plans = {}
        for kind, root, determine in self.kinds():
            try:
                plans[kind] = self.sync_kind(kind, root, determine)
            except ListError as e:
                errors.append(ListError(f"cannot gather {kind}: {e}"))
            except SyncError as e:
                errors.append(SyncError(f"error during {kind} sync: {e}"))
            except Exception as e:
                self.log.exception("unexpected error during %s sync", kind)
                errors.append(SyncError(f"unexpected error during {kind} sync: {e}"))

        self.last_plans = plans
        if errors:
            raise SyncErrors(errors)
        return plans

    def run_once(self) -> bool:
        """Runs a sync cycle unless one is still running.

        :return: False if the cycle was skipped or failed, True otherwise.
        """
        if not self._running.acquire(blocking=False):
            self.log.info("skipping sync, previous sync is still running")
            return False

        t0 = time.time()
        try:
            self.run_sync()
        except SyncErrors as e:
            self.log.error("error during sync: %s", e)
            return False
        finally:
            self._running.release()
            self.log.debug("sync done in %.2fs", time.time() - t0)

        return True


class Scheduler(object):
    """Triggers sync cycles in a fixed interval until stopped. Each trigger
    runs in its own thread, triggers that overlap a running cycle are
    skipped."""

    def __init__(
        self,
        sync: CacheSync,
        interval: float,
        stop: threading.Event,
        logger: logging.Logger = None,
    ):
        self.sync = sync
        self.interval = interval
        self.stop = stop
        self.log = logger or root_log.getChild("scheduler")
        self.threads: List[threading.Thread] = []

    def trigger(self) -> threading.Thread:
        """Starts a sync cycle in a new thread."""
        t = threading.Thread(target=self.sync.run_once, name="imagecache-sync")
        t.daemon = True
        t.start()
        self.threads = [th for th in self.threads if th.is_alive()] + [t]
        return t

    def run(self) -> None:
        """Runs an initial sync and then one every interval, blocking until
        the stop signal is set."""
        self.log.info("starting image cache sync every %ss", self.interval)
        self.trigger()
        while not self.stop.wait(self.interval):
            self.trigger()
            self.log.info("scheduling next sync in %ss", self.interval)

        self.log.info("received stop signal, shutting down...")
        for t in self.threads:
            t.join()
