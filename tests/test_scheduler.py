import asyncio
import logging
import os

import pytest

from PIL import Image

from webpconverter import output, scheduler as scheduler_module
from webpconverter.encoder import FALLBACK_PARAMS, EncodeParams, convert_one
from webpconverter.scheduler import ConversionJob, RunState, Scheduler
from webpconverter.classifier import Action
from webpconverter.stats import Stat
from webpconverter.util import ConversionIOError, DecodeError, EncodeError, RunLog, WorkerFailure

DEFAULT_BATCH_PARAMS = EncodeParams.from_flags(quality=75, lossless=True, compression_factor=2.0, psnr=40)


def run(scheduler):
    return asyncio.run(scheduler.run())


def outputs(directory):
    webp_dir = directory / output.OUTPUT_DIR_NAME
    return sorted(os.listdir(webp_dir)) if webp_dir.is_dir() else []


def test_directory_end_to_end(make_image, tmp_path, caplog):
    caplog.set_level(logging.INFO, logger="webpconverter")
    make_image("a.jpg")
    make_image("b.png")
    copied = make_image("c.webp")
    (tmp_path / "d.txt").write_text("not an image")

    stats = run(Scheduler(tmp_path, DEFAULT_BATCH_PARAMS, pool_size=2))

    assert outputs(tmp_path) == ["a.webp", "b.webp", "c.webp"]
    assert (tmp_path / output.OUTPUT_DIR_NAME / "c.webp").read_bytes() == copied.read_bytes()
    for name in ("a.webp", "b.webp"):
        with Image.open(tmp_path / output.OUTPUT_DIR_NAME / name) as converted:
            assert converted.format == "WEBP"
            assert converted.size == (64, 48)

    warnings = [record for record in caplog.records if record.levelno == logging.WARNING]
    assert any("d.txt" in record.getMessage() for record in warnings)
    assert stats[Stat.CONVERTED] == 2
    assert stats[Stat.COPIED] == 1
    assert stats[Stat.SKIPPED] == 1
    assert stats[Stat.FAILED] == 0
    assert not stats.has_failures


def test_state_machine(make_image, tmp_path):
    make_image("a.png")
    scheduler = Scheduler(tmp_path, FALLBACK_PARAMS, pool_size=1)
    assert scheduler.state is RunState.IDLE

    run(scheduler)

    assert scheduler.states == [RunState.IDLE, RunState.WALKING, RunState.DISPATCHING,
                                RunState.DRAINING, RunState.CLEANING_UP, RunState.DONE]


def test_non_recursive_only_looks_at_direct_children(make_image, tmp_path):
    make_image("top.png")
    make_image("nested.png", directory=tmp_path / "sub")

    run(Scheduler(tmp_path, FALLBACK_PARAMS))

    assert outputs(tmp_path) == ["top.webp"]
    assert outputs(tmp_path / "sub") == []


def test_recursive_run(make_image, tmp_path):
    make_image("top.png")
    make_image("nested.jpg", directory=tmp_path / "sub" / "deeper")

    stats = run(Scheduler(tmp_path, FALLBACK_PARAMS, recursive=True))
    assert stats[Stat.CONVERTED] == 2
    assert outputs(tmp_path) == ["top.webp"]
    assert outputs(tmp_path / "sub" / "deeper") == ["nested.webp"]

    # A second run must not pick up the outputs of the first
    stats = run(Scheduler(tmp_path, FALLBACK_PARAMS, recursive=True))
    assert stats[Stat.COPIED] == 0
    assert not (tmp_path / output.OUTPUT_DIR_NAME / output.OUTPUT_DIR_NAME).exists()


def test_single_file_root(make_image, tmp_path):
    source = make_image("only.png")
    make_image("other.png")

    stats = run(Scheduler(source, FALLBACK_PARAMS))

    assert stats[Stat.CONVERTED] == 1
    assert outputs(tmp_path) == ["only.webp"]


def test_retry_with_fallback_params(make_image, tmp_path):
    make_image("a.png")
    attempts = []

    async def picky_convert(source_path, params, **kwargs):
        attempts.append(params)
        if params != FALLBACK_PARAMS:
            raise EncodeError(source_path, "primary settings rejected")
        return await convert_one(source_path, params, **kwargs)

    primary = EncodeParams.from_flags(quality=90, compression_factor=4, resize=True)
    stats = run(Scheduler(tmp_path, primary, convert=picky_convert))

    assert attempts == [primary, FALLBACK_PARAMS]
    converted = tmp_path / output.OUTPUT_DIR_NAME / "a.webp"
    assert converted.stat().st_size > 0
    with Image.open(converted) as image:
        assert image.format == "WEBP"
    assert stats[Stat.RETRIED] == 1
    assert stats[Stat.CONVERTED] == 1
    assert stats[Stat.FAILED] == 0


def test_failed_file_does_not_stop_the_run(make_image, tmp_path, caplog):
    caplog.set_level(logging.ERROR, logger="webpconverter")
    make_image("good.png")
    (tmp_path / "broken.jpg").write_bytes(b"garbage")

    scheduler = Scheduler(tmp_path, DEFAULT_BATCH_PARAMS)
    stats = run(scheduler)

    assert scheduler.state is RunState.DONE
    assert outputs(tmp_path) == ["good.webp"]
    assert stats[Stat.CONVERTED] == 1
    assert stats[Stat.RETRIED] == 1
    assert stats[Stat.FAILED] == 1
    assert stats.has_failures
    assert stats.failures == [(str(tmp_path / "broken.jpg"), "DecodeError")]
    assert any("broken.jpg" in record.getMessage() for record in caplog.records)


def test_io_errors_are_not_retried(make_image, tmp_path):
    make_image("a.png")
    attempts = []

    async def unwritable(source_path, params, **kwargs):
        attempts.append(params)
        raise ConversionIOError(source_path, "read-only output")

    stats = run(Scheduler(tmp_path, DEFAULT_BATCH_PARAMS, convert=unwritable))

    assert len(attempts) == 1
    assert stats[Stat.RETRIED] == 0
    assert stats[Stat.FAILED] == 1


def test_cleanup_runs_once_after_every_job(make_image, tmp_path, monkeypatch):
    for index in range(5):
        make_image(f"{index}.png")
    events = []

    async def slow_convert(source_path, params, **kwargs):
        await asyncio.sleep(0.01)
        events.append("converted")
        return await convert_one(source_path, params, **kwargs)

    def fake_cleanup(root, recursive=False, **kwargs):
        events.append("cleanup")
        return []

    monkeypatch.setattr(scheduler_module.output, "cleanup", fake_cleanup)
    run(Scheduler(tmp_path, FALLBACK_PARAMS, pool_size=2, convert=slow_convert))

    assert events.count("cleanup") == 1
    assert events[-1] == "cleanup"
    assert events.count("converted") == 5


def test_empty_outputs_are_removed(make_image, tmp_path):
    make_image("a.png")
    webp_dir = tmp_path / output.OUTPUT_DIR_NAME
    webp_dir.mkdir()
    (webp_dir / "crashed.webp").write_bytes(b"")

    stats = run(Scheduler(tmp_path, FALLBACK_PARAMS))

    assert outputs(tmp_path) == ["a.webp"]
    assert stats[Stat.EMPTY_REMOVED] == 1


def test_concurrency_is_bounded(make_image, tmp_path):
    for index in range(8):
        make_image(f"{index}.png", size=(8, 8))
    running = 0
    most_running = 0

    async def tracked_convert(source_path, params, **kwargs):
        nonlocal running, most_running
        running += 1
        most_running = max(most_running, running)
        try:
            await asyncio.sleep(0.01)
            return await convert_one(source_path, params, **kwargs)
        finally:
            running -= 1

    stats = run(Scheduler(tmp_path, FALLBACK_PARAMS, pool_size=2, convert=tracked_convert))

    assert stats[Stat.CONVERTED] == 8
    assert most_running == 2


def test_log_sink_is_injected(make_image, tmp_path):
    (tmp_path / "notes.txt").write_text("skip me")

    class Sink(RunLog):
        def __init__(self):
            super().__init__()
            self.messages = []

        def warning(self, message, *args):
            self.messages.append(message % args)

    sink = Sink()
    run(Scheduler(tmp_path, FALLBACK_PARAMS, log=sink))

    assert sink.messages == [f"Not a valid image file: {tmp_path / 'notes.txt'}"]


def test_walk_skips_non_files(tmp_path):
    (tmp_path / "folder.png").mkdir()
    (tmp_path / "a.png").write_bytes(b"")

    walked = list(Scheduler(tmp_path, FALLBACK_PARAMS).walk())

    assert walked == [str(tmp_path / "a.png")]


def test_conversion_job():
    job = ConversionJob("/x/a.png", Action.CONVERT)
    assert job.source_path == "/x/a.png"
    assert job.action is Action.CONVERT


@pytest.mark.parametrize("error_class", [DecodeError, WorkerFailure])
def test_retry_on_decode_and_worker_errors(make_image, tmp_path, error_class):
    make_image("a.png")
    attempts = []

    async def flaky_convert(source_path, params, **kwargs):
        attempts.append(params)
        if params != FALLBACK_PARAMS:
            raise error_class(source_path, "first attempt went wrong")
        return await convert_one(source_path, params, **kwargs)

    primary = EncodeParams.from_flags(quality=90, compression_factor=4)
    stats = run(Scheduler(tmp_path, primary, convert=flaky_convert))

    assert attempts == [primary, FALLBACK_PARAMS]
    assert outputs(tmp_path) == ["a.webp"]
    assert stats[Stat.RETRIED] == 1
    assert stats[Stat.CONVERTED] == 1
    assert stats[Stat.FAILED] == 0


@pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="needs named pipes")
def test_unreadable_root_still_finishes_the_run(tmp_path):
    fifo = tmp_path / "pipe"
    os.mkfifo(fifo)

    scheduler = Scheduler(fifo, FALLBACK_PARAMS)
    stats = run(scheduler)

    assert scheduler.state is RunState.DONE
    assert RunState.CLEANING_UP in scheduler.states
    assert stats.failures == [(str(fifo), "IOError")]


def test_empty_webp_is_skipped_not_copied(tmp_path):
    (tmp_path / "empty.webp").write_bytes(b"")

    stats = run(Scheduler(tmp_path, FALLBACK_PARAMS))

    assert stats[Stat.COPIED] == 0
    assert stats[Stat.SKIPPED] == 1
    assert outputs(tmp_path) == []


def test_job_messages_go_to_the_injected_sink(make_image, tmp_path):
    make_image("a.png")
    make_image("c.webp")

    class Sink(RunLog):
        def __init__(self):
            super().__init__()
            self.messages = []

        def info(self, message, *args):
            self.messages.append(message % args)

    sink = Sink()
    run(Scheduler(tmp_path, FALLBACK_PARAMS, log=sink))

    assert any(message.startswith(f"Converted: {tmp_path / 'a.png'}") for message in sink.messages)
    assert any(message.startswith("Copying: c.webp") for message in sink.messages)
    assert sink.messages[-1].startswith("Converted 1 file")
