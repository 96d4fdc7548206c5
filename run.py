import argparse
import asyncio
import os
import sys

import sentry_sdk

import generalconfig as gconf
from webpconverter import util
from webpconverter.encoder import EncodeParams
from webpconverter.scheduler import Scheduler

"""
WebP Converter: turns a file or a folder (full) of images into WebP.

Output ends up in a webp_converter_output folder next to every source.
"""

EXIT_OK = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_BAD_PATH = 2
EXIT_INTERRUPTED = 130


def build_parser():
    defaults = gconf.defaults
    parser = argparse.ArgumentParser(prog="webp-converter",
                                     description="Batch convert images to WebP.")
    parser.add_argument("-p", "--path", help="file or directory to convert (asked for if missing)")
    parser.add_argument("-r", "--recursive", action=argparse.BooleanOptionalAction,
                        default=defaults.get("recursive", gconf.DEFAULT_RECURSIVE),
                        help="descend into subdirectories")
    parser.add_argument("-q", "--quality", type=float,
                        default=defaults.get("quality", gconf.DEFAULT_QUALITY),
                        help="WebP quality, 0-100")
    parser.add_argument("-l", "--lossless", action=argparse.BooleanOptionalAction,
                        default=defaults.get("lossless", gconf.DEFAULT_LOSSLESS),
                        help="lossless mode, ignored below quality 100 or with a compression factor")
    parser.add_argument("-c", "--compression-factor", type=float, default=None,
                        help="divide the source size by this to get a target size, 0 for no target "
                             "(default 2.0 for directories, 0.0 for a single file)")
    parser.add_argument("--resize", action=argparse.BooleanOptionalAction,
                        default=defaults.get("resize", gconf.DEFAULT_RESIZE),
                        help="let a copy scaled down to 700px compete with the original")
    parser.add_argument("--psnr", type=float, default=defaults.get("psnr", gconf.DEFAULT_PSNR),
                        help="target PSNR")
    parser.add_argument("-w", "--workers", type=int, default=gconf.workers,
                        help="number of parallel jobs (default: all cores but one)")
    parser.add_argument("--version", action="version", version=gconf.VERSION)
    return parser


def normalise_path(path: str) -> str:
    path = path.strip().strip('"').strip("'")
    if os.sep == "/":
        # Pasted shell escaped paths & windows style separators
        path = path.replace("\\ ", " ").replace("\\", "/")
    return os.path.expanduser(path)


def prompt_for_path() -> str:
    util.logger.info("Please provide a directory path:")
    return input("> ")


def build_params(args, single_file: bool) -> EncodeParams:
    compression_factor = args.compression_factor
    if compression_factor is None:
        if single_file:
            compression_factor = gconf.SINGLE_FILE_COMPRESSION_FACTOR
        else:
            compression_factor = gconf.defaults.get("compressionFactor", gconf.DEFAULT_COMPRESSION_FACTOR)
    return EncodeParams.from_flags(quality=args.quality,
                                   lossless=args.lossless,
                                   compression_factor=compression_factor,
                                   resize=args.resize,
                                   psnr=args.psnr)


def init_error_reporting():
    if gconf.sentry_dsn:
        sentry_sdk.init(gconf.sentry_dsn,
                        ignore_errors=[KeyboardInterrupt],
                        environment=gconf.environment,
                        release=gconf.VERSION)


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    init_error_reporting()

    raw_path = args.path
    if raw_path is None:
        try:
            raw_path = prompt_for_path()
        except EOFError:
            raw_path = ""

    path = normalise_path(raw_path)
    util.logger.info("Path: %s", path)
    if not path or not os.path.exists(path):
        util.logger.error("Path does not exist, terminating....")
        return EXIT_BAD_PATH
    if not os.path.isfile(path) and not os.path.isdir(path):
        util.logger.error("Path is not a file or directory, terminating....")
        return EXIT_BAD_PATH

    single_file = os.path.isfile(path)
    try:
        params = build_params(args, single_file)
    except ValueError as error:
        parser.error(str(error))

    if single_file:
        util.logger.info("Single Image File Detected...")
    else:
        util.logger.info("Directory Detected Working on it...")

    scheduler = Scheduler(path, params, recursive=args.recursive, pool_size=args.workers)
    try:
        stats = asyncio.run(scheduler.run())
    except KeyboardInterrupt:
        util.logger.warning("Converter has been stopped with CTRL + C")
        return EXIT_INTERRUPTED

    if stats.has_failures:
        for source, reason in stats.failures:
            util.logger.error("Not converted (%s): %s", reason, source)
        return EXIT_PARTIAL_FAILURE
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
