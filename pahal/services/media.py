"""Media storage for incident photos and camera captures.

Blobs are written under MEDIA_ROOT and served by the app under
MEDIA_URL_PREFIX. Storage failures return None instead of raising.
"""

import logging
import os
import time
import uuid
from typing import Optional

from pahal.services.classifier import image_mime_type

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


class MediaStore:
    """Local filesystem blob store."""

    def __init__(self, root: str, url_prefix: str = "/media"):
        self.root = os.path.abspath(root)
        self.url_prefix = url_prefix.rstrip("/")

    @classmethod
    def from_config(cls, config=None):
        if config is None:
            from pahal.config import Config
            config = Config
        return cls(config.MEDIA_ROOT, config.MEDIA_URL_PREFIX)

    def store_blob(self, owner: str, data: bytes, is_primary: bool = False) -> Optional[str]:
        """Persist ``data`` under ``owner`` and return its public URL."""
        if not data:
            logger.warning(f"Refusing to store empty blob for {owner}")
            return None

        extension = _EXTENSIONS.get(image_mime_type(data), "bin")
        prefix = "primary" if is_primary else "media"
        relative_path = f"{owner}/{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}.{extension}"
        full_path = os.path.join(self.root, relative_path)

        try:
            os.makedirs(os.path.dirname(full_path), exist_ok=True)
            with open(full_path, "wb") as fh:
                fh.write(data)
        except OSError as e:
            logger.error(f"Failed to store media for {owner}: {e}")
            return None

        return f"{self.url_prefix}/{relative_path}"

    def read_blob(self, url: str) -> Optional[bytes]:
        """Load a blob previously returned by store_blob()."""
        path = self.path_for(url)
        if path is None:
            return None
        try:
            with open(path, "rb") as fh:
                return fh.read()
        except OSError as e:
            logger.warning(f"Failed to read media {url}: {e}")
            return None

    def path_for(self, url: str) -> Optional[str]:
        if not url or not url.startswith(self.url_prefix + "/"):
            return None
        relative = url[len(self.url_prefix) + 1:]
        path = os.path.abspath(os.path.join(self.root, relative))
        if not path.startswith(self.root + os.sep):
            return None
        return path
