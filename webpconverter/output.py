import os
import shutil
import stat

from . import util
from .util import ConversionIOError

"""
Everything that touches the output directories.

Each source directory gets a sibling ``webp_converter_output`` folder that
holds the converted (or copied) files.
"""

OUTPUT_DIR_NAME = "webp_converter_output"
WEBP_EXTENSION = ".webp"


def output_dir_for(source_path) -> str:
    """The output directory for a source file (nothing is created)."""
    parent_dir = os.path.dirname(os.path.abspath(source_path))
    return os.path.join(parent_dir, OUTPUT_DIR_NAME)


def resolve_output_dir(source_path) -> str:
    """Get the output directory for a source file, creating it if needed."""
    webp_dir = output_dir_for(source_path)
    if os.path.isdir(webp_dir):
        return webp_dir
    try:
        # Jobs sharing a parent race to create this
        os.makedirs(webp_dir, exist_ok=True)
    except OSError as error:
        raise ConversionIOError(source_path, "Could not create output directory",
                                additional_info=f"{webp_dir}: {error}") from error
    return webp_dir


def make_writable(source_path, log: util.RunLog = None) -> bool:
    """Best effort at clearing read-only flags on the source file."""
    log = log or util.runlog
    try:
        mode = os.stat(source_path).st_mode
        if not mode & stat.S_IWUSR:
            os.chmod(source_path, mode | stat.S_IWUSR)
        return True
    except OSError as error:
        log.debug("Could not make %s writable: %s", source_path, error)
        return False


def output_name(source_path) -> str:
    filename = os.path.basename(source_path)
    stem, extension = os.path.splitext(filename)
    if not stem or not extension:
        return filename
    return stem + WEBP_EXTENSION


def _remove_existing(destination, source_path):
    try:
        os.remove(destination)
    except FileNotFoundError:
        # Never there, or another job got to it first (x.png & x.webp)
        pass
    except OSError as error:
        raise ConversionIOError(source_path, "Could not replace existing output",
                                additional_info=f"{destination}: {error}") from error


def _discard_partial(destination, log):
    try:
        os.remove(destination)
    except FileNotFoundError:
        pass
    except OSError as error:
        log.error("Failed to remove partial output %s: %s", destination, error)


def prepare_destination(source_path) -> str:
    """Path of the .webp for a source file. Any old output there is removed."""
    destination = os.path.join(resolve_output_dir(source_path), output_name(source_path))
    _remove_existing(destination, source_path)
    return destination


def write_result(destination, data: bytes, log: util.RunLog = None) -> bool:
    """
    Write encoded bytes in one go. Nothing is written for empty data.

    A write that fails part way removes what it wrote, so an output is
    either complete or absent.
    """
    log = log or util.runlog
    if not data:
        log.warning("Encoder returned no data for %s, nothing written", destination)
        return False
    try:
        with open(destination, "wb") as output_file:
            output_file.write(data)
    except OSError as error:
        _discard_partial(destination, log)
        raise ConversionIOError(destination, "Could not write output", additional_info=str(error)) from error
    return True


def copy_directly(source_path, log: util.RunLog = None):
    """
    Copy a file that is already WebP into the output directory untouched.

    Empty sources are not copied (cleanup would only remove the copy again),
    ``None`` is returned for those.
    """
    log = log or util.runlog
    try:
        empty = os.path.getsize(source_path) == 0
    except OSError as error:
        raise ConversionIOError(source_path, "Could not read file", additional_info=str(error)) from error
    if empty:
        log.warning("Empty file, not copied: %s", source_path)
        return None

    destination = os.path.join(resolve_output_dir(source_path), os.path.basename(source_path))
    _remove_existing(destination, source_path)
    try:
        shutil.copyfile(source_path, destination)
    except OSError as error:
        _discard_partial(destination, log)
        raise ConversionIOError(source_path, "Could not copy file",
                                additional_info=f"{destination}: {error}") from error
    log.info("Copying: %s to %s", os.path.basename(source_path), destination)
    return destination


def output_dirs_for_run(root, recursive=False) -> list:
    if os.path.isfile(root):
        return [output_dir_for(root)]

    if not recursive:
        return [os.path.join(root, OUTPUT_DIR_NAME)]

    found = []
    for directory, subdirs, _ in os.walk(root):
        if OUTPUT_DIR_NAME in subdirs:
            found.append(os.path.join(directory, OUTPUT_DIR_NAME))
            subdirs.remove(OUTPUT_DIR_NAME)
    return found


def cleanup(root, recursive=False, log: util.RunLog = None) -> list:
    """
    Remove zero byte files left in the output directories of a run.

    A crashed encode can leave an empty file behind, after this every output
    is either complete or absent.
    """
    log = log or util.runlog
    removed = []
    for webp_dir in output_dirs_for_run(root, recursive):
        if not os.path.isdir(webp_dir):
            continue
        with os.scandir(webp_dir) as entries:
            empty_files = [entry.path for entry in entries
                           if entry.is_file(follow_symlinks=False) and entry.stat().st_size == 0]
        for path in empty_files:
            try:
                os.remove(path)
            except OSError as error:
                log.error("Failed to remove empty output %s: %s", path, error)
                continue
            log.info("Removed empty output: %s", path)
            removed.append(path)
    return removed
