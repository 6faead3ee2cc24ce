"""Resumable bulk uploader for the archive catalog."""

__version__ = "0.1.0"
