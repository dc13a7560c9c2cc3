"""Exceptions raised across mdviewer."""

from __future__ import annotations


class MdViewerError(Exception):
    """Base class for mdviewer errors."""


class RuntimeUnavailableError(MdViewerError):
    """The embedded browser runtime is missing and could not be installed."""


class InstallerDownloadError(RuntimeUnavailableError):
    """The runtime installer could not be downloaded."""


class ElevationCancelledError(MdViewerError):
    """The user declined the OS elevation prompt."""
