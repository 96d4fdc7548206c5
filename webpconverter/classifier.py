"""
Decides what happens to a file based on its extension
"""

import os
from enum import Enum


class Action(Enum):
    CONVERT = "convert"
    COPY = "copy"
    SKIP = "skip"


CONVERT_EXTENSIONS = frozenset(("jpg", "jpeg", "png", "tiff", "tif", "bmp", "avif", "gif", "jfif"))
COPY_EXTENSIONS = frozenset(("webp",))


def get_extension(path) -> str:
    return os.path.splitext(os.fspath(path))[1][1:].lower()


def classify(path) -> Action:
    """
    Convert anything we can decode, copy files that are already WebP and
    skip the rest. Never touches the filesystem.
    """
    extension = get_extension(path)
    if extension in CONVERT_EXTENSIONS:
        return Action.CONVERT
    if extension in COPY_EXTENSIONS:
        return Action.COPY
    return Action.SKIP
