"""Progressive chunked upscaler."""

__version__ = "0.1.0"
