"""Configuration models for bwhero."""

from __future__ import annotations

from dataclasses import dataclass

from .exceptions import ConfigurationError

# Identity the proxy presents to clients and origins. VIA_MARKER is also what
# the loop guard looks for on inbound requests.
PROXY_NAME = "bandwidth-hero-proxy"
USER_AGENT = "Bandwidth-Hero Compressor"
VIA_MARKER = "1.1 bandwidth-hero"

DEFAULT_QUALITY = 40
MIN_QUALITY = 1
MAX_QUALITY = 100

# Largest dimension a JPEG can carry through the encoder without tiling
MAX_DIMENSION = 16383

# Decoded pixels allowed per image. Bounds the raster a worker holds in memory.
MAX_PIXELS = 50_000_000


@dataclass
class PolicyConfig:
    """Thresholds for the compress/bypass decision.

    GOTCHAS:
    - Sizes come from the origin's Content-Length. Origins that stream without
      one report size 0 and are always bypassed.
    - min_transparent_compress_length only applies when the client asked for
      JPEG output; PNG/GIF under it usually carry transparency that JPEG drops.
    """

    default_quality: int = DEFAULT_QUALITY
    min_compress_length: int = 1024
    min_transparent_compress_length: int = 1024 * 100

    def validate(self) -> None:
        if not MIN_QUALITY <= self.default_quality <= MAX_QUALITY:
            raise ConfigurationError(
                "Default quality out of range",
                details={"default_quality": self.default_quality, "range": "1-100"},
            )
        if self.min_compress_length < 0 or self.min_transparent_compress_length < 0:
            raise ConfigurationError(
                "Size thresholds must not be negative",
                details={
                    "min_compress_length": self.min_compress_length,
                    "min_transparent_compress_length": self.min_transparent_compress_length,
                },
            )


@dataclass
class TranscoderConfig:
    """Configuration for the image transcoder.

    The worker pool is process-wide and sized once at startup; see
    bwhero.image.transcoder.configure_transcoder.
    """

    max_dimension: int = MAX_DIMENSION
    max_pixels: int = MAX_PIXELS
    chroma_subsampling: str = "4:4:4"

    # None = one worker per available CPU
    workers: int | None = None

    # Bytes kept in memory per spooled image before spilling to disk
    spool_max_memory: int = 8 * 1024 * 1024

    # Size of the chunks streamed back to the client
    chunk_size: int = 64 * 1024

    def validate(self) -> None:
        if self.workers is not None and self.workers < 1:
            raise ConfigurationError(
                "Transcoder workers must be positive", details={"workers": self.workers}
            )
        if self.max_dimension < 1 or self.max_dimension > MAX_DIMENSION:
            raise ConfigurationError(
                "Max dimension out of range",
                details={"max_dimension": self.max_dimension, "limit": MAX_DIMENSION},
            )
        if self.max_pixels < 1:
            raise ConfigurationError(
                "Max pixels must be positive", details={"max_pixels": self.max_pixels}
            )
        if self.chroma_subsampling not in ("4:4:4", "4:2:2", "4:2:0"):
            raise ConfigurationError(
                "Unknown chroma subsampling",
                details={"chroma_subsampling": self.chroma_subsampling},
            )
        if self.chunk_size < 1 or self.spool_max_memory < 0:
            raise ConfigurationError(
                "Invalid buffer sizes",
                details={
                    "chunk_size": self.chunk_size,
                    "spool_max_memory": self.spool_max_memory,
                },
            )
