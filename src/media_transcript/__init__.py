"""Media transcript acquisition with speech-to-text fallback."""

__version__ = "0.1.0"
