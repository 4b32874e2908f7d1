"""Metadata for the Project."""

from importlib.metadata import PackageNotFoundError, metadata, version

__all__ = ("__project__", "__version__")

try:
    __version__ = version("sqlstream")
    __project__ = metadata("sqlstream")["Name"]
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"
    __project__ = "SQLStream"
