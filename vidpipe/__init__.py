"""vidpipe: durable, at-least-once HLS transcoding pipeline."""

__version__ = "0.1.0"
