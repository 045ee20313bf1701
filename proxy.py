"""
Download proxy for media-host assets.

Streams a remote asset back as an attachment with a usable filename. Only
hosts under the trusted media domain are fetched; anything else is
redirected so the service never acts as an open proxy.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Tuple
from urllib.parse import SplitResult, parse_qsl, quote, unquote, urlencode, urlsplit, urlunsplit

import httpx
from fastapi.responses import RedirectResponse, Response, StreamingResponse

logger = logging.getLogger(__name__)

FORCE_DOWNLOAD_PARAM = "dl"
ATTACHMENT_CACHE_CONTROL = "private, max-age=31536000, immutable"

CONTENT_TYPE_EXTENSIONS = {
    "application/pdf": "pdf",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/bmp": "bmp",
    "image/tiff": "tiff",
    "image/svg+xml": "svg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/ogg": "ogg",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/aac": "aac",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
    "video/x-msvideo": "avi",
    "video/x-matroska": "mkv",
    "application/zip": "zip",
    "application/x-zip-compressed": "zip",
    "application/x-rar-compressed": "rar",
    "application/x-7z-compressed": "7z",
    "application/gzip": "gz",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.ms-powerpoint": "ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "pptx",
    "application/vnd.oasis.opendocument.text": "odt",
    "application/rtf": "rtf",
    "text/plain": "txt",
    "text/csv": "csv",
    "application/json": "json",
}

KNOWN_EXTENSIONS = set(CONTENT_TYPE_EXTENSIONS.values()) | {
    "jpeg", "tif", "heic", "htm", "html", "xml", "md", "flac", "tar", "tgz", "ods", "odp",
}

_FILENAME_STAR_RE = re.compile(r"filename\*\s*=\s*([\w-]*)'[^']*'([^;]+)", re.IGNORECASE)
_FILENAME_RE = re.compile(r'filename\s*=\s*(?:"((?:[^"\\]|\\.)*)"|([^;]+))', re.IGNORECASE)
_EXTENSION_RE = re.compile(r"\.([a-z0-9]{1,6})$", re.IGNORECASE)


class InvalidSourceURL(ValueError):
    """The url query parameter is missing or not an absolute http(s) URL."""


# ---------------------
# Name / extension helpers
# ---------------------

def clean_name(name: Optional[str]) -> str:
    """Drop path separators from a candidate filename."""
    return re.sub(r"[\\/]+", " ", name or "").strip()


def with_base(name: str) -> str:
    """``name`` unless it is only an extension (``.pdf``), in which case ''."""
    return name if _EXTENSION_RE.sub("", name).strip(" .") else ""


def known_extension(name: str) -> Optional[str]:
    m = _EXTENSION_RE.search(name or "")
    if m and m.group(1).lower() in KNOWN_EXTENSIONS:
        return m.group(1).lower()
    return None


def extension_from_path(path: str) -> Optional[str]:
    return known_extension(unquote(path.rsplit("/", 1)[-1]))


def extension_from_content_type(content_type: Optional[str]) -> Optional[str]:
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    return CONTENT_TYPE_EXTENSIONS.get(mime)


def filename_from_disposition(header: Optional[str]) -> Optional[str]:
    """Filename advertised by a Content-Disposition header, ``filename*`` first."""
    if not header:
        return None
    m = _FILENAME_STAR_RE.search(header)
    if m:
        try:
            return unquote(m.group(2).strip().strip('"'), encoding=m.group(1) or "utf-8", errors="strict")
        except (LookupError, UnicodeDecodeError):
            logger.debug("Unparseable filename* in %r", header)
    m = _FILENAME_RE.search(header)
    if m:
        value = m.group(1) if m.group(1) is not None else m.group(2).strip()
        return re.sub(r"\\(.)", r"\1", value) or None
    return None


def resolve_filename(
    source_path: str,
    desired: Optional[str],
    content_type: Optional[str],
    disposition: Optional[str] = None,
) -> str:
    """Pick the download name, then append an extension when it lacks one.

    Name: upstream Content-Disposition > desired name > last URL segment.
    Extension: URL path > Content-Type table; missing both is not an error.
    """
    name = (
        with_base(clean_name(filename_from_disposition(disposition)))
        or with_base(clean_name(desired))
        or with_base(clean_name(unquote(source_path.rsplit("/", 1)[-1])))
        or "file"
    )
    if known_extension(name):
        return name
    ext = extension_from_path(source_path) or extension_from_content_type(content_type)
    return f"{name}.{ext}" if ext else name


def content_disposition(filename: str) -> str:
    """Attachment header with an ASCII fallback and an RFC 5987 UTF-8 variant."""
    ascii_name = "".join(ch if 32 <= ord(ch) < 127 and ch not in '"\\' else "_" for ch in filename)
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename, safe='')}"


# ---------------------
# URL helpers
# ---------------------

def parse_source_url(raw: Optional[str]) -> SplitResult:
    if not raw or not raw.strip():
        raise InvalidSourceURL("Missing url param")
    try:
        parts = urlsplit(raw.strip())
    except ValueError as exc:
        raise InvalidSourceURL("Invalid url param") from exc
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        raise InvalidSourceURL("Invalid url param")
    return parts


def is_trusted_host(hostname: Optional[str], trusted_domain: str) -> bool:
    host = (hostname or "").lower().rstrip(".")
    domain = trusted_domain.lower().strip(".")
    return bool(domain) and (host == domain or host.endswith("." + domain))


def with_force_download(url: str, filename: Optional[str]) -> str:
    """Set the force-download query parameter (replacing any previous value)."""
    if not filename:
        return url
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != FORCE_DOWNLOAD_PARAM]
    query.append((FORCE_DOWNLOAD_PARAM, filename))
    return urlunsplit(parts._replace(query=urlencode(query, quote_via=quote)))


def with_attachment_transform(url: str, filename: Optional[str]) -> str:
    """Insert the provider's ``fl_attachment`` transform right after ``/upload/``."""
    parts = urlsplit(url)
    if "/upload/" not in parts.path:
        return url
    flag = f"fl_attachment:{quote(filename, safe='')}" if filename else "fl_attachment"
    return urlunsplit(parts._replace(path=parts.path.replace("/upload/", f"/upload/{flag}/", 1)))


# ---------------------
# Proxy
# ---------------------

@dataclass
class FetchOutcome:
    url: str
    response: Optional[httpx.Response] = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.response is not None


async def _iter_upstream(response: httpx.Response) -> AsyncIterator[bytes]:
    # Closing here also runs when the client disconnects and the stream is cancelled.
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    finally:
        await response.aclose()


class DownloadProxy:
    def __init__(self, client: httpx.AsyncClient, trusted_domain: str):
        self.client = client
        self.trusted_domain = trusted_domain

    def strategies(self, url: str, filename: str) -> List[Tuple[str, str]]:
        """Ordered fetch attempts; the last URL doubles as the redirect target."""
        return [
            ("force-download", with_force_download(url, filename)),
            ("attachment-transform", with_force_download(with_attachment_transform(url, filename), filename)),
        ]

    async def fetch(self, url: str) -> FetchOutcome:
        request = self.client.build_request("GET", url)
        try:
            response = await self.client.send(request, stream=True, follow_redirects=True)
        except httpx.HTTPError as exc:
            return FetchOutcome(url, reason=f"{type(exc).__name__}: {exc}")
        if not response.is_success:
            await response.aclose()
            return FetchOutcome(url, reason=f"HTTP {response.status_code}")
        return FetchOutcome(url, response)

    def attachment(self, response: httpx.Response, source: SplitResult, desired: str) -> StreamingResponse:
        content_type = response.headers.get("content-type") or "application/octet-stream"
        filename = resolve_filename(
            source.path,
            desired,
            content_type,
            response.headers.get("content-disposition"),
        )
        headers = {
            "Content-Type": content_type,
            "Content-Disposition": content_disposition(filename),
            "Cache-Control": ATTACHMENT_CACHE_CONTROL,
        }
        return StreamingResponse(_iter_upstream(response), status_code=200, headers=headers)

    async def download(self, raw_url: Optional[str], filename: Optional[str]) -> Response:
        source = parse_source_url(raw_url)
        url = urlunsplit(source)
        desired = clean_name(filename)
        fallback = with_force_download(url, desired)

        if not is_trusted_host(source.hostname, self.trusted_domain):
            logger.info("Untrusted host %s, redirecting without fetching", source.hostname)
            return RedirectResponse(fallback, status_code=302)

        try:
            strategies = self.strategies(url, desired)
            for label, candidate in strategies:
                outcome = await self.fetch(candidate)
                if not outcome.ok:
                    logger.info("Download strategy %s failed for %s: %s", label, candidate, outcome.reason)
                    continue
                try:
                    return self.attachment(outcome.response, source, desired)
                except Exception:
                    await outcome.response.aclose()
                    raise
            logger.warning("All download strategies failed for %s, redirecting", url)
            return RedirectResponse(strategies[-1][1], status_code=302)
        except Exception:
            logger.exception("Download proxy error for %s, redirecting", url)
            return RedirectResponse(fallback, status_code=302)
