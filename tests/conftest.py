import pytest
from PIL import Image


def gradient_image(size=(64, 48), mode="RGB"):
    """Something with a bit of detail, so encoders don't produce tiny files."""
    gradient = Image.linear_gradient("L").resize(size)
    image = Image.merge("RGB", (gradient,
                                gradient.transpose(Image.Transpose.FLIP_LEFT_RIGHT),
                                gradient.transpose(Image.Transpose.FLIP_TOP_BOTTOM)))
    if mode == "RGBA":
        image.putalpha(gradient)
    return image


@pytest.fixture
def make_image(tmp_path):
    def _make_image(name, size=(64, 48), mode="RGB", directory=None, **save_options):
        path = (directory or tmp_path) / name
        path.parent.mkdir(parents=True, exist_ok=True)
        gradient_image(size, mode).save(path, **save_options)
        return path

    return _make_image


class RecordingCodec:
    """Codec double: output length is whatever ``size_for`` says."""

    def __init__(self, size_for=lambda image, quality, lossless: int(quality) * 10 + 1):
        self.size_for = size_for
        self.calls = []

    def encode(self, image, quality, lossless):
        self.calls.append((image.size, quality, lossless))
        return b"x" * self.size_for(image, quality, lossless)

    def decode(self, data):
        raise AssertionError("decode not expected")


@pytest.fixture
def recording_codec():
    return RecordingCodec()


@pytest.fixture
def codec_class():
    return RecordingCodec
