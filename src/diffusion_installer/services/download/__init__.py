"""Model download services."""

from .manager import DownloadManager, DownloadOutcome, filename_from_url, resolve_model_destination

__all__ = ["DownloadManager", "DownloadOutcome", "filename_from_url", "resolve_model_destination"]
