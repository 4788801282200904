"""Client stream multiplexing."""

from .stream_multiplexer import FrameKind, StreamFrame, StreamMultiplexer

__all__ = ["FrameKind", "StreamFrame", "StreamMultiplexer"]
