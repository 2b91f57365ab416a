"""Remote setup-script runner over SSH with streamed NDJSON output."""

__version__ = "0.1.0"
