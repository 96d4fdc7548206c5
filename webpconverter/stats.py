"""
Per run stats
"""

import time
from collections import defaultdict
from enum import Enum
from typing import Dict

from . import util


class Stat(Enum):
    """Enum of all the stats we track"""

    CONVERTED = "converted"
    COPIED = "copied"
    SKIPPED = "skipped"
    FAILED = "failed"
    RETRIED = "retried"
    EMPTY_REMOVED = "emptyremoved"
    BYTES_IN = "bytesin"
    BYTES_OUT = "bytesout"


class RunStats:
    """Counts what happened during a run, all updates come from the event loop."""

    def __init__(self):
        self.counts: Dict[Stat, int] = defaultdict(int)
        self.failures = []
        self.start_time = time.time()
        self.end_time = None

    def increment_stat(self, stat: Stat, increment=1, **details):
        self.counts[stat] += increment
        if stat is Stat.FAILED and details.get("source"):
            self.failures.append((details["source"], details.get("reason", "")))

    def __getitem__(self, stat: Stat) -> int:
        return self.counts[stat]

    def finish(self):
        self.end_time = time.time()

    @property
    def elapsed(self) -> float:
        return (self.end_time or time.time()) - self.start_time

    @property
    def has_failures(self) -> bool:
        return self.counts[Stat.FAILED] > 0

    def summary(self) -> str:
        converted = self.counts[Stat.CONVERTED]
        copied = self.counts[Stat.COPIED]
        skipped = self.counts[Stat.SKIPPED]
        failed = self.counts[Stat.FAILED]
        summary = (f"Converted {converted} {util.s_suffix('file', converted)}, copied {copied}, "
                   f"skipped {skipped} & {failed} failed in {util.display_time(self.elapsed)}")
        if self.counts[Stat.RETRIED]:
            summary += f" ({self.counts[Stat.RETRIED]} retried with defaults)"
        if self.counts[Stat.EMPTY_REMOVED]:
            summary += f", removed {self.counts[Stat.EMPTY_REMOVED]} empty " \
                       + util.s_suffix("output", self.counts[Stat.EMPTY_REMOVED])
        if self.counts[Stat.BYTES_IN]:
            summary += (f". {util.format_size(self.counts[Stat.BYTES_IN])} in, "
                        f"{util.format_size(self.counts[Stat.BYTES_OUT])} out")
        return summary
