"""Error taxonomy shared by the scanning, hashing and deletion services."""

from __future__ import annotations


class PhotosiftError(Exception):
    """Base class for all photosift errors."""


class InvalidDirectoryError(PhotosiftError, NotADirectoryError):
    """A directory is missing, unreadable or not a directory."""


class InvalidArgumentError(PhotosiftError, ValueError):
    """An argument is outside its valid range."""


class AccessDeniedError(PhotosiftError, PermissionError):
    """A path lies outside the configured root directory."""


class ScanInProgressError(PhotosiftError, RuntimeError):
    """A duplicate scan for the same root is already running."""
