"""
Application configuration using Pydantic Settings.

Settings are read once at process start and passed explicitly into each
component; request handlers never consult the environment directly.
"""

import tempfile
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database (MongoDB when both are set, local JSONL otherwise)
    DATABASE_URL: Optional[str] = None
    DATABASE_NAME: Optional[str] = None
    DATA_DIR: str = "data"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8080
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ORIGINS: List[str] = []
    CORS_ORIGIN_REGEX: Optional[str] = r"https://.*\.vercel\.app"

    # Media hosting
    STORAGE_BACKEND: Literal["cloudinary", "local"] = "local"
    CLOUDINARY_CLOUD_NAME: str = ""
    CLOUDINARY_API_KEY: str = ""
    CLOUDINARY_API_SECRET: str = ""
    UPLOAD_FOLDER: str = "docs"

    # Download proxy
    TRUSTED_MEDIA_DOMAIN: str = "cloudinary.com"
    PROXY_TIMEOUT_SECONDS: float = 60.0

    # PDF -> DOCX conversion
    MAX_PDF_MB: int = 12
    PDF2DOCX_TIMEOUT_SECONDS: float = 300.0
    CONVERTER_CANDIDATES: List[str] = ["/usr/bin/soffice", "soffice", "libreoffice"]
    CONVERTER_PROBE_TIMEOUT_SECONDS: float = 15.0
    CONVERT_TMP_DIR: str = tempfile.gettempdir()

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, frozen=True)

    @property
    def max_pdf_bytes(self) -> int:
        return self.MAX_PDF_MB * 1024 * 1024

    def missing_cloudinary_env(self) -> List[str]:
        """Names of the Cloudinary credentials that are not configured."""
        missing = []
        if not self.CLOUDINARY_CLOUD_NAME:
            missing.append("CLOUDINARY_CLOUD_NAME")
        if not self.CLOUDINARY_API_KEY:
            missing.append("CLOUDINARY_API_KEY")
        if not self.CLOUDINARY_API_SECRET:
            missing.append("CLOUDINARY_API_SECRET")
        return missing
