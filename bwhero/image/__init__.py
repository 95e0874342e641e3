"""Image transcoding for the proxy."""

from .transcoder import (
    PillowTranscoder,
    StreamTranscoder,
    TranscodedImage,
    Transcoder,
    TranscodeResult,
    TranscoderRuntime,
    configure_transcoder,
    get_transcoder_runtime,
    shutdown_transcoder,
)

__all__ = [
    "PillowTranscoder",
    "StreamTranscoder",
    "TranscodedImage",
    "Transcoder",
    "TranscodeResult",
    "TranscoderRuntime",
    "configure_transcoder",
    "get_transcoder_runtime",
    "shutdown_transcoder",
]
