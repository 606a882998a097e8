"""Queued EPUB to KEPUB conversion with upload to cloud-drive folders."""

__version__ = "0.1.0"
