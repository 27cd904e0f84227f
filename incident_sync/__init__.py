"""Incident synchronization engine: replicates upstream incidents into a local store."""

__version__ = "0.1.0"
