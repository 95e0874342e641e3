"""Image transcoding.

Two layers:

- PillowTranscoder: synchronous decode/resize/encode between two binary file
  objects. Runs on the process-wide worker pool.
- StreamTranscoder: async wrapper that spools the origin stream, runs the
  transcoder off the event loop, and hands back the encoded size together
  with a chunked reader over the output.

The encoded size is known before any response header is written, so the
caller can always fall back to a redirect when encoding fails.

Memory per image is bounded by TranscoderConfig.max_pixels: the dimensions
are read from the image header and anything larger is rejected before a
single scanline is decoded.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import tempfile
import threading
from collections.abc import AsyncIterator, Awaitable, Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import IO, Protocol

from PIL import Image, ImageFile
from starlette.concurrency import run_in_threadpool

from bwhero.config import MAX_DIMENSION, MAX_PIXELS, TranscoderConfig
from bwhero.exceptions import ClientDisconnected, ConfigurationError, TranscodeError
from bwhero.policy import TranscodeParams

logger = logging.getLogger("bwhero.transcoder")

# Pillow's JPEG encoder takes subsampling as an index
SUBSAMPLING = {"4:4:4": 0, "4:2:2": 1, "4:2:0": 2}

# How often a running encode checks whether its client is still there
DISCONNECT_POLL_SECONDS = 0.25


@dataclass
class TranscodeResult:
    """Completion data reported by the transcoder."""

    encoded_size: int
    width: int
    height: int
    format: str = "jpeg"


class Transcoder(Protocol):
    """Anything that can re-encode an image from source into sink."""

    def transcode(
        self, source: IO[bytes], sink: IO[bytes], params: TranscodeParams
    ) -> TranscodeResult:
        ...


# =============================================================================
# Process-wide runtime
# =============================================================================


class TranscoderRuntime:
    """Worker pool and decoder limits shared by every request.

    Configured once at process start through configure_transcoder(); request
    handlers only ever read it.
    """

    def __init__(self, config: TranscoderConfig):
        config.validate()
        self.config = config
        self.workers = config.workers or os.cpu_count() or 1
        self.executor = ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="bwhero-transcode"
        )

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False, cancel_futures=True)


_runtime: TranscoderRuntime | None = None

# Restored by shutdown_transcoder()
_PILLOW_DEFAULTS = (Image.MAX_IMAGE_PIXELS, ImageFile.LOAD_TRUNCATED_IMAGES)


def configure_transcoder(config: TranscoderConfig | None = None) -> TranscoderRuntime:
    """Initialize the transcoder runtime. Replaces any previous runtime."""
    global _runtime

    runtime = TranscoderRuntime(config or TranscoderConfig())

    # Pillow refuses images past twice this limit while opening them
    Image.MAX_IMAGE_PIXELS = runtime.config.max_pixels
    # Origins serve slightly broken images; decode what is there
    ImageFile.LOAD_TRUNCATED_IMAGES = True

    if _runtime is not None:
        _runtime.shutdown()
    _runtime = runtime
    logger.info(
        f"Transcoder configured with {runtime.workers} workers, "
        f"max {runtime.config.max_pixels:,} pixels per image"
    )
    return runtime


def get_transcoder_runtime() -> TranscoderRuntime:
    if _runtime is None:
        raise ConfigurationError("Transcoder runtime not configured")
    return _runtime


def shutdown_transcoder() -> None:
    """Release the worker pool and put Pillow's decoder limits back."""
    global _runtime
    if _runtime is not None:
        _runtime.shutdown()
        _runtime = None
    Image.MAX_IMAGE_PIXELS, ImageFile.LOAD_TRUNCATED_IMAGES = _PILLOW_DEFAULTS


# =============================================================================
# Pillow
# =============================================================================


class PillowTranscoder:
    """Re-encode any raster image Pillow can read as JPEG."""

    def __init__(self, max_pixels: int = MAX_PIXELS, max_dimension: int = MAX_DIMENSION):
        self.max_pixels = max_pixels
        self.max_dimension = max_dimension

    def transcode(
        self, source: IO[bytes], sink: IO[bytes], params: TranscodeParams
    ) -> TranscodeResult:
        if params.format != "jpeg":
            raise TranscodeError("Unsupported output format", details={"format": params.format})

        edge = min(params.max_dimension, self.max_dimension)
        bound = (edge, edge)

        try:
            image = Image.open(source)
        except Exception as e:
            raise _decode_error(e) from e

        with image:
            # Only the header has been read so far
            width, height = image.size
            if width * height > self.max_pixels:
                raise TranscodeError(
                    "Image too large",
                    details={"width": width, "height": height, "max_pixels": self.max_pixels},
                )

            try:
                # JPEG sources can be decoded at a reduced scale directly
                image.draft("L" if params.grayscale else "RGB", bound)
                # Animations load their first frame, which is all we keep
                image.load()
            except Exception as e:
                raise _decode_error(e) from e

            try:
                frame = image.convert("RGBA") if image.mode == "P" else image
                frame.thumbnail(bound, Image.Resampling.LANCZOS)
                frame = _to_output_mode(_flatten(frame), params.grayscale)

                start = sink.tell()
                frame.save(
                    sink,
                    format="JPEG",
                    quality=params.quality,
                    subsampling=SUBSAMPLING[params.chroma_subsampling],
                )
                encoded_size = sink.tell() - start
            except Exception as e:
                raise TranscodeError(
                    "Could not encode image", details={"error": f"{type(e).__name__}: {e}"}
                ) from e

            return TranscodeResult(
                encoded_size=encoded_size, width=frame.width, height=frame.height
            )


def _decode_error(e: Exception) -> TranscodeError:
    return TranscodeError("Could not decode image", details={"error": f"{type(e).__name__}: {e}"})


def _flatten(image: Image.Image) -> Image.Image:
    """Composite transparent images onto white; JPEG has no alpha."""
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return image


def _to_output_mode(image: Image.Image, grayscale: bool) -> Image.Image:
    mode = "L" if grayscale else "RGB"
    return image if image.mode == mode else image.convert(mode)


# =============================================================================
# Streaming wrapper
# =============================================================================


class AbortableFile:
    """File proxy whose reads and writes fail once the request is abandoned.

    Pillow pulls source data and pushes encoded data through these calls, so
    setting the event stops a running decode or encode at its next I/O.
    """

    def __init__(self, fileobj: IO[bytes], cancelled: threading.Event):
        self._file = fileobj
        self._cancelled = cancelled

    def _check(self) -> None:
        if self._cancelled.is_set():
            raise TranscodeError("Transcode abandoned")

    def read(self, size: int = -1) -> bytes:
        self._check()
        return self._file.read(size)

    def write(self, data: bytes) -> int:
        self._check()
        return self._file.write(data)

    def fileno(self) -> int:
        # Keeps Pillow's encoder on write() instead of the raw descriptor
        raise io.UnsupportedOperation("fileno")

    def __getattr__(self, name: str):
        return getattr(self._file, name)


class TranscodedImage:
    """Encoded output ready to stream, plus its completion result."""

    def __init__(self, result: TranscodeResult, output: IO[bytes], chunk_size: int):
        self.result = result
        self._output = output
        self._chunk_size = chunk_size

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        try:
            await run_in_threadpool(self._output.seek, 0)
            while True:
                chunk = await run_in_threadpool(self._output.read, self._chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    def close(self) -> None:
        self._output.close()


class StreamTranscoder:
    """Pipe an origin byte stream through a Transcoder."""

    def __init__(
        self,
        transcoder: Transcoder | None = None,
        runtime: TranscoderRuntime | None = None,
    ):
        self._transcoder = transcoder
        self._runtime = runtime

    @property
    def runtime(self) -> TranscoderRuntime:
        return self._runtime or get_transcoder_runtime()

    @property
    def transcoder(self) -> Transcoder:
        if self._transcoder is None:
            config = self.runtime.config
            self._transcoder = PillowTranscoder(
                max_pixels=config.max_pixels, max_dimension=config.max_dimension
            )
        return self._transcoder

    async def transcode(
        self,
        chunks: AsyncIterator[bytes],
        params: TranscodeParams,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> TranscodedImage:
        """Consume chunks, encode, and return the output with its final size.

        Raises:
            TranscodeError: origin stream failed or the image could not be encoded.
            ClientDisconnected: is_disconnected reported the client gone before
                the encode finished.
        """
        config = self.runtime.config
        source = tempfile.SpooledTemporaryFile(max_size=config.spool_max_memory)
        output = tempfile.SpooledTemporaryFile(max_size=config.spool_max_memory)
        cancelled = threading.Event()

        try:
            try:
                async for chunk in chunks:
                    # Past spool_max_memory this is a disk write
                    await run_in_threadpool(source.write, chunk)
                    if is_disconnected is not None and await is_disconnected():
                        raise ClientDisconnected("Client disconnected during origin read")
            except (ClientDisconnected, asyncio.CancelledError):
                raise
            except Exception as e:
                raise TranscodeError(
                    "Origin stream failed", details={"error": f"{type(e).__name__}: {e}"}
                ) from e

            await run_in_threadpool(source.seek, 0)
            result = await self._encode(
                AbortableFile(source, cancelled),
                AbortableFile(output, cancelled),
                params,
                is_disconnected,
            )
        except BaseException:
            cancelled.set()
            output.close()
            raise
        finally:
            source.close()

        return TranscodedImage(result, output, config.chunk_size)

    async def _encode(
        self,
        source: IO[bytes],
        sink: IO[bytes],
        params: TranscodeParams,
        is_disconnected: Callable[[], Awaitable[bool]] | None,
    ) -> TranscodeResult:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            self.runtime.executor, self.transcoder.transcode, source, sink, params
        )
        try:
            while True:
                done, _ = await asyncio.wait({future}, timeout=DISCONNECT_POLL_SECONDS)
                if done:
                    return future.result()
                if is_disconnected is not None and await is_disconnected():
                    raise ClientDisconnected("Client disconnected during encode")
        except BaseException:
            future.cancel()
            raise
