"""Structural code indexing and hybrid context retrieval for AI coding agents."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ctx-engine")
except PackageNotFoundError:
    __version__ = "0.0.0+local"
