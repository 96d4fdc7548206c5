import asyncio
import io
import math
import os
from dataclasses import dataclass
from typing import Callable, NamedTuple, Optional

from PIL import Image, ImageChops, ImageStat

from . import output, util
from .util import ConverterException, DecodeError, EncodeError, WorkerFailure

"""
Decoding, resizing & WebP encoding of a single image.

Pillow does the actual codec work. This module decides what to ask it for:
which quality to use to hit a size or PSNR target and which of the original
and downscaled candidates to keep.
"""


@dataclass(frozen=True)
class EncodeParams:
    """The knobs a user can turn, built once per run & shared by every job."""

    quality: float = 75.0
    lossless: bool = False
    compression_factor: float = 0.0
    should_resize: bool = False
    target_psnr: float = 40.0

    @classmethod
    def from_flags(cls, quality=75.0, lossless=True, compression_factor=0.0, resize=False, psnr=40.0):
        if compression_factor < 0:
            raise ValueError(f"Compression factor must not be negative (got {compression_factor})")
        if psnr < 0:
            raise ValueError(f"PSNR must not be negative (got {psnr})")
        quality = float(util.clamp(quality, 0, 100))
        # Lossless only makes sense at full quality with no size target
        lossless = bool(lossless) and compression_factor == 0 and quality >= 100
        return cls(quality=quality,
                   lossless=lossless,
                   compression_factor=float(compression_factor),
                   should_resize=bool(resize),
                   target_psnr=float(psnr))

    def target_size(self, source_size: int) -> int:
        """Target output size in bytes, 0 means no target."""
        if self.compression_factor == 0:
            return 0
        return int(source_size / self.compression_factor)


FALLBACK_PARAMS = EncodeParams(quality=75.0, lossless=False, compression_factor=0.0,
                               should_resize=False, target_psnr=40.0)


@dataclass(frozen=True)
class EncoderTuning:
    """
    Fixed encoder settings. Not exposed on the command line.

    Pillow's encoder starts from libwebp's default preset, which also fixes
    segments=4, sns_strength=50, filter_strength=60, filter_sharpness=0,
    filter_type=1, alpha_compression=1, alpha_filtering=1 & preprocessing=0.
    """

    method: int = 6
    alpha_quality: int = 100
    exact: bool = False
    # Extra encodes allowed when searching for a size or PSNR target
    passes: int = 6
    resize_limit: int = 700
    resample: int = Image.LANCZOS


DEFAULT_TUNING = EncoderTuning()


class PillowWebPCodec:
    """Turns a decoded image into WebP bytes (and back) with Pillow."""

    def __init__(self, tuning: EncoderTuning = DEFAULT_TUNING):
        self.tuning = tuning

    def save_options(self, quality, lossless) -> dict:
        return {
            "quality": int(round(util.clamp(quality, 0, 100))),
            "lossless": bool(lossless),
            "method": self.tuning.method,
            "alpha_quality": self.tuning.alpha_quality,
            "exact": self.tuning.exact,
        }

    def encode(self, image: Image.Image, quality, lossless) -> bytes:
        buffer = io.BytesIO()
        image.save(buffer, "WEBP", **self.save_options(quality, lossless))
        return buffer.getvalue()

    def decode(self, data: bytes) -> Image.Image:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            return _normalise(image)


class ConversionResult(NamedTuple):
    source: str
    destination: Optional[str]
    source_size: int
    output_size: int
    resized: bool = False
    written: bool = True


def _normalise(image: Image.Image) -> Image.Image:
    # Always a new image, detached from the file it was read from
    if image.mode in ("RGB", "RGBA"):
        return image.copy()
    return image.convert("RGBA" if image.has_transparency_data else "RGB")


def decode_image(source_path) -> Image.Image:
    try:
        with Image.open(source_path) as image:
            image.load()
            return _normalise(image)
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as error:
        raise DecodeError(source_path, "Could not decode image", additional_info=str(error)) from error


def resize(image: Image.Image, limit=DEFAULT_TUNING.resize_limit, resample=DEFAULT_TUNING.resample) -> Image.Image:
    """
    Scale an image down so its longer side is ``limit`` pixels.

    Images that already fit are returned as they are (the same object).
    """
    width, height = image.size
    if width <= limit and height <= limit:
        return image

    if width >= height:
        new_size = (limit, max(1, round(height * limit / width)))
    else:
        new_size = (max(1, round(width * limit / height)), limit)
    return image.resize(new_size, resample)


def psnr(original: Image.Image, reconstructed: Image.Image) -> float:
    if reconstructed.mode != original.mode:
        reconstructed = reconstructed.convert(original.mode)
    difference = ImageChops.difference(original, reconstructed)
    squared_sums = ImageStat.Stat(difference).sum2
    mean_squared_error = sum(squared_sums) / (original.width * original.height * len(squared_sums))
    if mean_squared_error == 0:
        return math.inf
    return 10 * math.log10(255 ** 2 / mean_squared_error)


def _search_size(image, quality, target_size, codec, passes) -> bytes:
    best = codec.encode(image, quality, False)
    if len(best) <= target_size:
        return best

    smallest = best
    best_fit = None
    low, high = 0, int(round(quality))
    for _ in range(passes):
        if high - low <= 1:
            break
        middle = (low + high) // 2
        data = codec.encode(image, middle, False)
        if len(data) < len(smallest):
            smallest = data
        if len(data) <= target_size:
            best_fit = data
            low = middle
        else:
            high = middle
    return best_fit if best_fit is not None else smallest


def _search_psnr(image, quality, target_psnr, codec, passes) -> bytes:
    best = codec.encode(image, quality, False)
    if psnr(image, codec.decode(best)) < target_psnr:
        # Can't get there without going over the requested quality
        return best

    low, high = 0, int(round(quality))
    for _ in range(passes):
        if high - low <= 1:
            break
        middle = (low + high) // 2
        data = codec.encode(image, middle, False)
        if psnr(image, codec.decode(data)) >= target_psnr:
            best = data
            high = middle
        else:
            low = middle
    return best


def encode_candidate(image, params: EncodeParams, target_size: int, codec=None) -> bytes:
    """
    Encode one candidate. ``quality`` & ``target_psnr`` are hints: the quality
    is searched downward to meet a size target (or the PSNR target when there
    is no size target), never upward.
    """
    codec = codec or PillowWebPCodec()
    passes = getattr(codec, "tuning", DEFAULT_TUNING).passes
    if params.lossless:
        return codec.encode(image, params.quality, True)
    if target_size > 0:
        return _search_size(image, params.quality, target_size, codec, passes)
    if params.target_psnr > 0:
        return _search_psnr(image, params.quality, params.target_psnr, codec, passes)
    return codec.encode(image, params.quality, False)


def _pick_smaller(original, resized, encode: Callable):
    original_data = encode(original)
    if resized is None or resized is original:
        return original_data, False
    resized_data = encode(resized)
    if len(resized_data) < len(original_data):
        return resized_data, True
    return original_data, False


def decide_and_encode(original, resized, encode: Callable) -> bytes:
    """Encode both candidates & keep the smaller, the original wins ties."""
    return _pick_smaller(original, resized, encode)[0]


def encode_file(source_path, params: EncodeParams, codec=None):
    """
    Decode, maybe resize & encode a file. CPU heavy, so it's run off the
    event loop. Returns the chosen bytes & whether the resized one won.
    """
    codec = codec or PillowWebPCodec()
    source_size = os.path.getsize(source_path)
    target_size = params.target_size(source_size)

    image = decode_image(source_path)
    resized = None
    if params.should_resize:
        limit = getattr(codec, "tuning", DEFAULT_TUNING).resize_limit
        resized = resize(image, limit=limit)

    def encode(candidate):
        try:
            return encode_candidate(candidate, params, target_size, codec)
        except (OSError, ValueError, MemoryError) as error:
            raise EncodeError(source_path, "Failed to encode image", additional_info=str(error)) from error

    data, was_resized = _pick_smaller(image, resized, encode)
    return data, source_size, was_resized


async def convert_one(source_path, params: EncodeParams, executor=None, codec=None,
                      log: util.RunLog = None) -> ConversionResult:
    """Convert a single image into its output directory."""
    log = log or util.runlog
    loop = asyncio.get_running_loop()
    output.make_writable(source_path, log=log)
    try:
        data, source_size, was_resized = await loop.run_in_executor(executor, encode_file,
                                                                    source_path, params, codec)
    except ConverterException:
        raise
    except FileNotFoundError as error:
        raise DecodeError(source_path, "Source file disappeared", additional_info=str(error)) from error
    except Exception as error:
        raise WorkerFailure(source_path, "Encode worker aborted", additional_info=repr(error)) from error

    destination = output.prepare_destination(source_path)
    written = output.write_result(destination, data, log=log)
    if written:
        log.info("Converted: %s (%s -> %s%s)", source_path, util.format_size(source_size),
                 util.format_size(len(data)), ", resized" if was_resized else "")
    return ConversionResult(source=os.fspath(source_path),
                            destination=destination if written else None,
                            source_size=source_size,
                            output_size=len(data),
                            resized=was_resized,
                            written=written)
