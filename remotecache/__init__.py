"""Disk-backed LRU cache for build action results and content-addressed blobs."""

__version__ = "0.1.0"
__all__ = ["cache", "casblob", "disk", "findmissing", "lru", "metrics", "storage"]