"""Media hosting backends: Cloudinary upstream API or local disk."""

from __future__ import annotations

import logging
import os
import uuid
from io import BytesIO
from pathlib import Path
from typing import List, Optional

import cloudinary.uploader
from PIL import Image, UnidentifiedImageError

from config import Settings
from schemas import AssetReference

logger = logging.getLogger(__name__)

# upload kind -> (resource type, sub folder)
UPLOAD_KINDS = {
    "image": ("image", "images"),
    "video": ("video", "videos"),
    "pdf": ("raw", "pdfs"),
    "file": ("raw", "files"),
}


def _safe_filename(name: str) -> str:
    base = os.path.basename((name or "").replace("\\", "/"))
    cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_", "."} else "_" for ch in base)
    return cleaned.strip(".") or "file"


class CloudinaryHost:
    """Signed uploads and deletes against Cloudinary.

    Credentials travel with every call instead of through the SDK's global
    config, so two apps with different settings never interfere.
    """

    name = "cloudinary"

    def __init__(self, settings: Settings):
        self.settings = settings
        self.folder = settings.UPLOAD_FOLDER

    def _credentials(self) -> dict:
        return {
            "cloud_name": self.settings.CLOUDINARY_CLOUD_NAME,
            "api_key": self.settings.CLOUDINARY_API_KEY,
            "api_secret": self.settings.CLOUDINARY_API_SECRET,
            "secure": True,
        }

    def missing_env(self) -> List[str]:
        return self.settings.missing_cloudinary_env()

    def upload(self, data: bytes, filename: str, resource_type: str, subfolder: str) -> AssetReference:
        options = dict(self._credentials(), resource_type=resource_type, folder=f"{self.folder}/{subfolder}")
        if filename:
            options["filename_override"] = filename
        result = cloudinary.uploader.upload(BytesIO(data), **options)
        return AssetReference(
            url=result["secure_url"],
            public_id=result.get("public_id"),
            format=result.get("format") or Path(filename or "").suffix.lstrip(".").lower() or None,
            bytes=result.get("bytes", len(data)),
            resource_type=result.get("resource_type", resource_type),
            original_filename=filename or result.get("original_filename"),
        )

    def destroy(self, public_id: str, resource_type: str = "raw") -> bool:
        result = cloudinary.uploader.destroy(public_id, resource_type=resource_type, **self._credentials())
        return (result or {}).get("result") == "ok"


class LocalDiskHost:
    """Stores uploads under the data directory and serves them from /uploads."""

    name = "local"

    def __init__(self, root: str, folder: str, url_prefix: str = "/uploads"):
        self.root = Path(root).resolve()
        self.folder = folder
        self.url_prefix = url_prefix.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def missing_env(self) -> List[str]:
        return []

    def _detect_format(self, data: bytes, filename: str, resource_type: str) -> Optional[str]:
        if resource_type == "image":
            try:
                with Image.open(BytesIO(data)) as img:
                    if img.format:
                        return img.format.lower()
            except (UnidentifiedImageError, OSError):
                logger.info("Pillow could not identify %s, using its suffix", filename)
        return Path(filename or "").suffix.lstrip(".").lower() or None

    def upload(self, data: bytes, filename: str, resource_type: str, subfolder: str) -> AssetReference:
        relative = Path(self.folder) / subfolder / f"{uuid.uuid4().hex}_{_safe_filename(filename)}"
        target = self.root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return AssetReference(
            url=f"{self.url_prefix}/{relative.as_posix()}",
            public_id=relative.as_posix(),
            format=self._detect_format(data, filename, resource_type),
            bytes=len(data),
            resource_type=resource_type,
            original_filename=filename or None,
        )

    def resolve(self, relative: str) -> Optional[Path]:
        """Map a public id or URL path to a file inside the root, or None."""
        candidate = (self.root / relative).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            return None
        return candidate if candidate.is_file() else None

    def destroy(self, public_id: str, resource_type: str = "raw") -> bool:
        path = self.resolve(public_id)
        if path is None:
            return False
        path.unlink()
        return True


def build_media_host(settings: Settings):
    if settings.STORAGE_BACKEND == "cloudinary":
        return CloudinaryHost(settings)
    return LocalDiskHost(os.path.join(settings.DATA_DIR, "uploads"), settings.UPLOAD_FOLDER)
