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
Command line interface for imagecache: keeps a local cache of os images,
PXE kernels and boot images in sync with the remote catalog.

Usage:

    $ imagecache --catalog-endpoint URL [OPTIONS]
"""

import argparse
import signal
import sys
import threading

from imagecache import config, util
from imagecache.catalog import CatalogClient
from imagecache.config import Config, ConfigError
from imagecache.lister import Lister
from imagecache.logger import log, setup_logging
from imagecache.orchestrator import (
    KIND_BOOT_IMAGES,
    KIND_IMAGES,
    KIND_KERNELS,
    CacheSync,
    Scheduler,
)
from imagecache.remote import HttpOrigin, ObjectStore, Transport
from imagecache.stats import Collector
from imagecache.syncer import Syncer


def build_parser() -> argparse.ArgumentParser:
    """Returns the argument parser, defaults are taken from the config."""
    from imagecache import __version__

    parser = argparse.ArgumentParser(
        description=__doc__, formatter_class=argparse.RawTextHelpFormatter
    )
    parser.add_argument(
        "--cache-root",
        metavar="DIR",
        default=config.CACHE_ROOT,
        help="root directory of the cache (default %(default)s)",
    )
    parser.add_argument(
        "--catalog-endpoint",
        metavar="URL",
        default=config.CATALOG_ENDPOINT,
        help="endpoint of the image and partition catalog",
    )
    parser.add_argument(
        "--image-store",
        metavar="URL",
        default=config.IMAGE_STORE,
        help="url of the s3 compatible image store (default %(default)s)",
    )
    parser.add_argument(
        "--image-store-bucket",
        metavar="BUCKET",
        default=config.IMAGE_BUCKET,
        help="bucket of the image store (default %(default)s)",
    )
    parser.add_argument(
        "--min-images-per-name",
        metavar="N",
        type=int,
        default=config.MIN_IMAGES_PER_NAME,
        help="minimum images to keep per os name and major.minor (default %(default)s)",
    )
    parser.add_argument(
        "--max-images-per-name",
        metavar="N",
        type=int,
        default=config.MAX_IMAGES_PER_NAME,
        help="maximum images to keep per os name and major.minor, <= 0 is unlimited",
    )
    parser.add_argument(
        "--max-cache-size",
        metavar="SIZE",
        default=config.MAX_CACHE_SIZE,
        help="maximum size of the image cache, e.g. 10G (default %(default)s)",
    )
    parser.add_argument(
        "--excludes",
        metavar="SUBSTR",
        action="append",
        help="skip artifacts whose url contains SUBSTR (repeatable)",
    )
    parser.add_argument(
        "--expiration-grace-period",
        metavar="DAYS",
        type=int,
        default=config.EXPIRATION_GRACE_DAYS,
        help="days to keep images past their expiration date (default %(default)s)",
    )
    parser.add_argument(
        "--interval",
        metavar="SECONDS",
        type=float,
        default=config.SYNC_INTERVAL,
        help="seconds between sync cycles (default %(default)s)",
    )
    parser.add_argument(
        "--no-kernel-cache",
        action="store_true",
        help="do not serve cached PXE kernels (they are still synced)",
    )
    parser.add_argument(
        "--no-boot-image-cache",
        action="store_true",
        help="do not serve cached boot images (they are still synced)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="run a single sync cycle and exit",
    )
    parser.add_argument(
        "-d",
        "--dryrun",
        action="store_true",
        help="do a dry run, no downloads or deletions will be performed",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="do not show download progress bars",
    )
    parser.add_argument(
        "--log-level",
        metavar="LEVEL",
        default=config.LOG_LEVEL,
        help="log level (default %(default)s)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"imagecache {__version__}",
    )
    return parser


def parse_args(argv=None):
    """Parse command line arguments."""
    return build_parser().parse_args(argv)


def make_config(args) -> Config:
    """Builds the config from parsed arguments.

    :param args: Parsed arguments.
    :raises ConfigError: If a value cannot be parsed or is out of range.
    :return: Validated Config.
    """
    try:
        max_cache_size = util.parse_size(args.max_cache_size)
    except ValueError as e:
        raise ConfigError(f"invalid maximum cache size: {e}")

    excludes = args.excludes if args.excludes is not None else config.EXCLUDE_PATHS

    cfg = Config(
        cache_root=args.cache_root,
        catalog_endpoint=args.catalog_endpoint,
        image_store=args.image_store,
        image_bucket=args.image_store_bucket,
        min_images_per_name=args.min_images_per_name,
        max_images_per_name=args.max_images_per_name,
        max_cache_size=max_cache_size,
        exclude_paths=list(excludes),
        expiration_grace_days=args.expiration_grace_period,
        dry_run=args.dryrun,
        kernel_cache_enabled=not args.no_kernel_cache,
        boot_image_cache_enabled=not args.no_boot_image_cache,
        sync_interval=args.interval,
        progress=not args.no_progress,
    )
    cfg.validate()
    return cfg


def make_sync(cfg: Config, stop: threading.Event = None) -> CacheSync:
    """Wires the remote clients, lister and syncer into a CacheSync.

    :param cfg: Validated config.
    :param stop: Optional stop signal shared by all transfers.
    :return: CacheSync.
    """
    transport = Transport(
        store=ObjectStore(cfg.image_store),
        http=HttpOrigin(),
        stop=stop or threading.Event(),
    )
    collectors = {
        KIND_IMAGES: Collector(KIND_IMAGES, cfg.image_root),
        KIND_KERNELS: Collector(KIND_KERNELS, cfg.kernel_root),
        KIND_BOOT_IMAGES: Collector(KIND_BOOT_IMAGES, cfg.boot_image_root),
    }
    lister = Lister(
        cfg,
        CatalogClient(cfg.catalog_endpoint),
        transport,
        image_collector=collectors[KIND_IMAGES],
    )
    return CacheSync(cfg, lister, Syncer(cfg, transport), collectors)


def main(argv=None):
    """Main thread."""

    args = parse_args(argv)

    # set up logging handlers
    setup_logging(level=args.log_level, dryrun=args.dryrun)

    try:
        cfg = make_config(args)
    except ConfigError as e:
        log.error("invalid configuration: %s", e)
        return 1

    if not cfg.kernel_cache_enabled:
        log.info("kernel cache serving disabled, kernels are still synced")
    if not cfg.boot_image_cache_enabled:
        log.info("boot image cache serving disabled, boot images are still synced")

    stop = threading.Event()

    def handle_signal(signum, frame):
        log.info("received signal %s, stopping...", signum)
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    sync = make_sync(cfg, stop)

    if args.once:
        if sync.run_once():
            return 0
        return 1

    Scheduler(sync, cfg.sync_interval, stop).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
