"""Shared pytest fixtures for bwhero tests."""

import io
import struct
import zlib

import httpx
import pytest
from PIL import Image

from bwhero.config import TranscoderConfig
from bwhero.image.transcoder import configure_transcoder, shutdown_transcoder


def make_image_bytes(
    fmt: str = "PNG",
    size: tuple[int, int] = (64, 64),
    mode: str = "RGB",
) -> bytes:
    """Encode a noisy test image so it does not compress to nothing."""
    image = Image.effect_noise(size, 64).convert(mode)
    if mode in ("RGBA", "LA"):
        image.putalpha(128)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def make_flat_png(width: int, height: int) -> bytes:
    """Black RGB PNG built scanline by scanline, never holding the raster."""

    def chunk(tag: bytes, data: bytes) -> bytes:
        crc = zlib.crc32(tag + data) & 0xFFFFFFFF
        return struct.pack(">I", len(data)) + tag + data + struct.pack(">I", crc)

    compressor = zlib.compressobj()
    row = b"\x00" * (width * 3 + 1)
    idat = b"".join(compressor.compress(row) for _ in range(height)) + compressor.flush()
    header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", header)
        + chunk(b"IDAT", idat)
        + chunk(b"IEND", b"")
    )


class OriginRecorder:
    """httpx.MockTransport handler that records every outbound request."""

    def __init__(self, responder):
        self.responder = responder
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @property
    def calls(self) -> int:
        return len(self.requests)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def png_bytes():
    """A small RGB PNG."""
    return make_image_bytes("PNG")


@pytest.fixture
def jpeg_bytes():
    """A small RGB JPEG."""
    return make_image_bytes("JPEG")


@pytest.fixture
def transcoder_runtime():
    """Process-wide transcoder runtime with a small worker pool."""
    runtime = configure_transcoder(TranscoderConfig(workers=2, chunk_size=1024))
    yield runtime
    shutdown_transcoder()


@pytest.fixture
def origin_recorder():
    """Factory for recording mock origins: origin_recorder(responder)."""
    return OriginRecorder


@pytest.fixture
def make_image():
    """Factory for encoded test images: make_image(fmt, size, mode)."""
    return make_image_bytes


@pytest.fixture
def make_flat_image():
    """Factory for large, highly compressible PNGs: make_flat_image(width, height)."""
    return make_flat_png
