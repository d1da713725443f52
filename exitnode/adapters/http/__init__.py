"""HTTP download adapter."""

from exitnode.adapters.http.download import DownloadAdapter

__all__ = ["DownloadAdapter"]
