"""Serial and SSH terminal connections driven by per-connection actors."""

__version__ = "0.1.0"
