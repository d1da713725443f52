"""
HTTP download adapter — fetch a release artifact to a local file.

Used for the Go toolchain tarball and the cloudflared binary.  The body
is streamed straight to ``dest``; a failed transfer removes the partial
file so a later run never mistakes it for a finished download.
"""

from __future__ import annotations

import logging
import shutil
import time
import urllib.error
import urllib.request
from pathlib import Path

from exitnode import __version__
from exitnode.adapters.base import Adapter, ExecutionContext
from exitnode.core.models.action import Receipt

logger = logging.getLogger(__name__)

_USER_AGENT = f"exitnode/{__version__}"


class DownloadAdapter(Adapter):
    """Download a URL to a file.

    Action params:
        url (str): http(s) URL.
        dest (str): Destination file path.
        timeout (int): Socket timeout in seconds (default: 600).
    """

    @property
    def name(self) -> str:
        return "http"

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        url = context.params.get("url", "")
        if not url.startswith(("https://", "http://")):
            return False, f"Unsupported URL: {url!r}"
        if not context.params.get("dest"):
            return False, "Missing required param: 'dest'"
        return True, ""

    def execute(self, context: ExecutionContext) -> Receipt:
        url = context.params["url"]
        dest = Path(context.params["dest"])
        timeout = context.params.get("timeout", 600)

        logger.debug("Downloading %s -> %s", url, dest)
        start = time.monotonic()
        request = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT})

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            with urllib.request.urlopen(request, timeout=timeout) as resp, dest.open("wb") as out:
                shutil.copyfileobj(resp, out)
        except urllib.error.HTTPError as e:
            dest.unlink(missing_ok=True)
            return Receipt.failure(
                adapter=self.name,
                action_id=context.action.id,
                error=f"HTTP {e.code} fetching {url}",
                return_code=e.code,
            )
        except (urllib.error.URLError, OSError) as e:
            dest.unlink(missing_ok=True)
            return Receipt.failure(
                adapter=self.name,
                action_id=context.action.id,
                error=f"Download failed for {url}: {e}",
            )

        size = dest.stat().st_size
        return Receipt.success(
            adapter=self.name,
            action_id=context.action.id,
            output=f"{size} bytes",
            duration_ms=int((time.monotonic() - start) * 1000),
            metadata={"bytes": size},
        )
