import os
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import NamedTuple

import sentry_sdk

from . import output, util
from .classifier import Action, classify
from .encoder import FALLBACK_PARAMS, EncodeParams, convert_one
from .pool import WorkerPool
from .stats import RunStats, Stat
from .util import RETRYABLE_ERRORS, ConversionIOError, ConverterException

"""
Walks a directory & feeds every image in it through the worker pool.
"""


class RunState(Enum):
    IDLE = "idle"
    WALKING = "walking"
    DISPATCHING = "dispatching"
    DRAINING = "draining"
    CLEANING_UP = "cleaningup"
    DONE = "done"


class ConversionJob(NamedTuple):
    source_path: str
    action: Action


class Scheduler:
    """
    One conversion run over a file or directory.

    Jobs go through a bounded worker pool, the CPU heavy part of each job runs
    in a thread pool of the same size. Failed conversions get a single retry
    with the fallback parameters, a file that still fails is logged & counted
    but never stops the run.
    """

    def __init__(self, root, params: EncodeParams, recursive=False, pool_size=None,
                 convert=convert_one, codec=None, log: util.RunLog = None):
        self.root = os.fspath(root)
        self.params = params
        self.recursive = recursive
        self.pool_size = pool_size
        self.convert = convert
        self.codec = codec
        self.log = log or util.runlog
        self.state = RunState.IDLE
        self.states = [RunState.IDLE]
        self.stats = RunStats()
        self._executor = None

    def _set_state(self, state: RunState):
        self.state = state
        self.states.append(state)
        self.log.debug("Run state: %s", state.value)

    def walk(self):
        """Yield every regular file to look at (depth 1 unless recursive)."""
        if os.path.isfile(self.root):
            yield self.root
            return

        if not self.recursive:
            with os.scandir(self.root) as entries:
                files = sorted(entry.path for entry in entries if entry.is_file())
            yield from files
            return

        for directory, subdirs, files in os.walk(self.root):
            # Never feed our own output back in
            if output.OUTPUT_DIR_NAME in subdirs:
                subdirs.remove(output.OUTPUT_DIR_NAME)
            subdirs.sort()
            for filename in sorted(files):
                path = os.path.join(directory, filename)
                if os.path.isfile(path):
                    yield path

    async def run(self) -> RunStats:
        pool = WorkerPool(self._handle_job, size=self.pool_size)
        self._executor = ThreadPoolExecutor(max_workers=pool.size, thread_name_prefix="WebPEncoder")
        try:
            async with pool:
                self._set_state(RunState.WALKING)
                try:
                    await self._dispatch(pool)
                except OSError as error:
                    # Whatever was already submitted still finishes
                    self._fail(self.root, ConversionIOError(self.root, "Could not read directory",
                                                            additional_info=str(error)))
                self._set_state(RunState.DRAINING)
        finally:
            self._executor.shutdown(wait=True)

        self._set_state(RunState.CLEANING_UP)
        removed = output.cleanup(self.root, self.recursive, log=self.log)
        self.stats.increment_stat(Stat.EMPTY_REMOVED, len(removed))

        self.stats.finish()
        self._set_state(RunState.DONE)
        self.log.info(self.stats.summary())
        return self.stats

    async def _dispatch(self, pool: WorkerPool):
        for path in self.walk():
            action = classify(path)
            if action is Action.SKIP:
                self.log.warning("Not a valid image file: %s", path)
                self.stats.increment_stat(Stat.SKIPPED)
                continue
            if self.state is RunState.WALKING:
                self._set_state(RunState.DISPATCHING)
            await pool.submit(ConversionJob(path, action))

    async def _handle_job(self, job: ConversionJob):
        try:
            if job.action is Action.COPY:
                if output.copy_directly(job.source_path, log=self.log) is None:
                    self.stats.increment_stat(Stat.SKIPPED)
                else:
                    self.stats.increment_stat(Stat.COPIED)
                return

            result = await self._convert_with_fallback(job.source_path)
        except ConverterException as error:
            self._fail(job.source_path, error)
            return

        self.stats.increment_stat(Stat.CONVERTED)
        self.stats.increment_stat(Stat.BYTES_IN, result.source_size)
        self.stats.increment_stat(Stat.BYTES_OUT, result.output_size if result.written else 0)

    async def _convert_with_fallback(self, source_path):
        try:
            return await self.convert(source_path, self.params, executor=self._executor, codec=self.codec,
                                      log=self.log)
        except RETRYABLE_ERRORS as error:
            self.log.warning("%s, retrying with default settings", error.get_message())
            self.stats.increment_stat(Stat.RETRIED)
            return await self.convert(source_path, FALLBACK_PARAMS, executor=self._executor, codec=self.codec,
                                      log=self.log)

    def _fail(self, source_path, error: ConverterException):
        self.log.error("Failed to convert %s: %s", source_path, error.get_message())
        self.stats.increment_stat(Stat.FAILED, source=source_path, reason=error.kind)
        sentry_sdk.capture_exception(error)
