"""
File storage for receipt, payment and expense images.

Files live on local disk under the uploads root and are referenced from rows
by their path relative to that root (e.g. "orders/order_12_receipt_..jpg").
Writes happen outside the database transaction; deletions are best-effort
and never raise.
"""

import base64
import binascii
import logging
import os
import secrets
import time
from pathlib import Path
from typing import Iterable, Optional, Tuple

from backend.app.core.exceptions import InvalidArgumentError

logger = logging.getLogger(__name__)

# Placeholder stored when an OTC order has no proof image
NO_IMAGE_PLACEHOLDER = "OTC_NO_IMAGE"

MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "application/pdf": ".pdf",
}

CATEGORY_DIRS = {"order": "orders", "expense": "expenses"}


def file_extension(mimetype: Optional[str], original_name: Optional[str]) -> str:
    if mimetype and mimetype in MIME_EXTENSIONS:
        return MIME_EXTENSIONS[mimetype]
    if original_name:
        ext = os.path.splitext(original_name)[1].lower()
        if ext:
            return ext
    return ".jpg"


def decode_upload(content: str) -> Tuple[bytes, Optional[str]]:
    """
    Decode base64 upload content, accepting data URLs.

    Returns:
        (raw bytes, mimetype from the data URL or None)
    """
    mimetype = None
    payload = content
    if content.startswith("data:"):
        header, _, payload = content.partition(",")
        mimetype = header[len("data:"):].split(";")[0] or None
        if not payload:
            raise InvalidArgumentError("Empty data URL")

    try:
        return base64.b64decode(payload, validate=True), mimetype
    except (binascii.Error, ValueError):
        raise InvalidArgumentError("Upload content is not valid base64")


class FileStorage:
    """Disk-backed store rooted at one uploads directory."""

    def __init__(self, root: str, url_prefix: str = "/api/uploads"):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")

    def generate_filename(
        self,
        category: str,
        entity_id: Optional[int],
        kind: Optional[str] = None,
        mimetype: Optional[str] = None,
        original_name: Optional[str] = None,
    ) -> str:
        """
        order_{id}_{kind}_{timestamp}_{hash}.{ext} for orders,
        expense_{id}_{timestamp}_{hash}.{ext} for expenses.
        """
        timestamp = int(time.time() * 1000)
        token = secrets.token_hex(4)
        ext = file_extension(mimetype, original_name)
        ident = entity_id if entity_id is not None else "new"
        if category == "expense":
            return f"expense_{ident}_{timestamp}_{token}{ext}"
        return f"order_{ident}_{kind or 'file'}_{timestamp}_{token}{ext}"

    def save(self, content: bytes, filename: str, category: str = "order") -> str:
        """Write bytes to disk and return the relative path stored on rows."""
        sub_dir = CATEGORY_DIRS.get(category, "orders")
        target_dir = self.root / sub_dir
        target_dir.mkdir(parents=True, exist_ok=True)
        (target_dir / filename).write_bytes(content)
        return f"{sub_dir}/{filename}"

    def full_path(self, path: Optional[str]) -> Optional[Path]:
        if not self.is_deletable(path):
            return None
        full = (self.root / self.normalize(path)).resolve()
        # Never reach outside the uploads root
        if self.root.resolve() not in full.parents:
            return None
        return full

    def normalize(self, path: Optional[str]) -> Optional[str]:
        """Map a public URL back to the relative path stored on rows."""
        if not path:
            return path
        prefix = f"{self.url_prefix}/"
        if path.startswith(prefix):
            return path[len(prefix):]
        return path

    def resolve_url(self, path: Optional[str]) -> Optional[str]:
        """Stable public reference for a stored path."""
        if not path:
            return None
        if path.startswith("data:") or path == NO_IMAGE_PLACEHOLDER:
            return path
        if path.startswith(("http://", "https://", f"{self.url_prefix}/")):
            return path
        return f"{self.url_prefix}/{path}"

    @staticmethod
    def is_deletable(path: Optional[str]) -> bool:
        # Inline data URLs and the placeholder have no file behind them
        if not path:
            return False
        return not (path.startswith("data:") or path == NO_IMAGE_PLACEHOLDER)

    def delete(self, path: Optional[str]) -> bool:
        """Remove a stored file. Failures are logged, never raised."""
        full = self.full_path(path)
        if full is None:
            return False
        try:
            full.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Failed to delete file %s: %s", path, e)
            return False

    def delete_many(self, paths: Iterable[Optional[str]]) -> int:
        return sum(1 for path in set(p for p in paths if p) if self.delete(path))
