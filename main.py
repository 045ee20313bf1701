import asyncio
import base64
import logging
import mimetypes
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, File, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, Response
from pymongo.errors import PyMongoError

from config import Settings
from converter import (
    ConversionFailed,
    ConversionSupervisor,
    ConverterUnavailable,
    UploadRejected,
    validate_upload,
)
from database import DocumentStore
from media_host import UPLOAD_KINDS, LocalDiskHost, build_media_host
from proxy import DownloadProxy, InvalidSourceURL, content_disposition
from schemas import COLLECTIONS, Application, ApplicationIn, DocumentGroup, DocumentGroupIn

logger = logging.getLogger(__name__)

GROUPS = COLLECTIONS[DocumentGroup]
APPLICATIONS = COLLECTIONS[Application]

# 1x1 transparent PNG used by the storage self-test
SELFTEST_PNG = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR4nGP4z8DwHwAFVgJt+0DgYQAAAABJRU5ErkJggg=="
)

router = APIRouter()


def _mask(secret: str) -> Optional[str]:
    return f"{secret[:4]}***" if secret else None


# ---------------------
# Dependencies
# ---------------------

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_media_host(request: Request):
    return request.app.state.media_host


def get_proxy(request: Request) -> DownloadProxy:
    return request.app.state.proxy


def get_converter(request: Request) -> ConversionSupervisor:
    return request.app.state.converter


# ---------------------
# Health
# ---------------------

@router.get("/")
async def root():
    return {"message": "Media Docs API", "status": "running"}


@router.get("/health")
async def health():
    return {"ok": True, "ts": int(time.time() * 1000)}


# ---------------------
# Uploads
# ---------------------

@router.get("/upload/ping")
async def upload_ping():
    return {"ok": True, "msg": "upload routes mounted"}


@router.get("/diag/storage")
async def storage_diagnostics(settings: Settings = Depends(get_settings), media_host=Depends(get_media_host)):
    missing = settings.missing_cloudinary_env()
    return {
        "ok": True,
        "backend": media_host.name,
        "present": {
            name: name not in missing
            for name in ("CLOUDINARY_CLOUD_NAME", "CLOUDINARY_API_KEY", "CLOUDINARY_API_SECRET")
        },
        "sample": {
            "cloud_name": settings.CLOUDINARY_CLOUD_NAME or None,
            "api_key": _mask(settings.CLOUDINARY_API_KEY),
        },
    }


async def _store_upload(media_host, data: bytes, filename: str, resource_type: str, subfolder: str, label: str):
    missing = media_host.missing_env()
    if missing:
        logger.error("[UPLOAD] Missing env: %s", missing)
        return JSONResponse(status_code=500, content={"ok": False, "error": f"Missing env: {', '.join(missing)}"})

    logger.info(
        "[UPLOAD] %s start name=%s size=%s resource_type=%s folder=%s",
        label, filename, len(data), resource_type, subfolder,
    )
    try:
        asset = await asyncio.to_thread(media_host.upload, data, filename, resource_type, subfolder)
    except Exception as exc:
        payload = {
            "ok": False,
            "error": str(exc) or "Upload failed",
            "name": type(exc).__name__,
            "http_code": getattr(exc, "http_code", None),
        }
        logger.exception("[UPLOAD] %s error: %s", label, payload)
        return JSONResponse(status_code=500, content=payload)

    logger.info("[UPLOAD] %s ok public_id=%s bytes=%s url=%s", label, asset.public_id, asset.bytes, asset.url)
    return {
        "ok": True,
        "url": asset.url,
        "public_id": asset.public_id,
        "bytes": asset.bytes,
        "format": asset.format,
        "resource_type": asset.resource_type,
        "originalname": filename,
    }


@router.post("/upload/_selftest")
async def upload_selftest(media_host=Depends(get_media_host)):
    data = base64.b64decode(SELFTEST_PNG)
    return await _store_upload(media_host, data, "selftest.png", "image", "selftest", "SELFTEST")


@router.post("/upload/{kind}")
async def upload_file(
    kind: str,
    file: Optional[UploadFile] = File(None),
    media_host=Depends(get_media_host),
):
    if kind not in UPLOAD_KINDS:
        return JSONResponse(status_code=404, content={"ok": False, "error": f"Unknown upload kind: {kind}"})
    if file is None:
        return JSONResponse(status_code=400, content={"ok": False, "error": "No file"})
    resource_type, subfolder = UPLOAD_KINDS[kind]
    data = await file.read()
    return await _store_upload(media_host, data, file.filename or "", resource_type, subfolder, kind.upper())


@router.get("/uploads/{path:path}")
async def get_upload(path: str, media_host=Depends(get_media_host)):
    file_path = media_host.resolve(path) if isinstance(media_host, LocalDiskHost) else None
    if file_path is None:
        return JSONResponse(status_code=404, content={"error": "asset not found"})
    media_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
    return FileResponse(file_path, media_type=media_type)


# ---------------------
# Metadata records
# ---------------------

@router.get("/document-groups")
def list_document_groups(store: DocumentStore = Depends(get_store)):
    return store.get_documents(GROUPS, newest_first=True)


@router.post("/document-groups")
def create_document_group(payload: DocumentGroupIn, store: DocumentStore = Depends(get_store)):
    name = (payload.name or "").strip()
    if not name or not payload.files:
        return JSONResponse(status_code=400, content={"ok": False, "error": "name + files required"})
    group = DocumentGroup(name=name, note=payload.note or None, files=payload.files)
    group_id = store.create_document(GROUPS, group)
    return {"ok": True, "id": group_id}


@router.delete("/document-groups/file")
def delete_document_file(
    public_id: Optional[str] = None,
    url: Optional[str] = None,
    store: DocumentStore = Depends(get_store),
    media_host=Depends(get_media_host),
):
    if not public_id and not url:
        return JSONResponse(status_code=400, content={"ok": False, "error": "public_id or url required"})

    if public_id:
        asset = store.find_asset(GROUPS, public_id) or {}
        resource_type = asset.get("resource_type") or "raw"
        try:
            if not media_host.destroy(public_id, resource_type):
                logger.info("Media host had nothing to delete for %s", public_id)
        except Exception as exc:
            logger.warning("Upstream delete of %s failed: %s", public_id, exc)

    match = {"public_id": public_id} if public_id else {"url": url}
    updated = store.pull_assets(GROUPS, match)
    return {"ok": True, "updated": updated}


@router.get("/applications")
def list_applications(store: DocumentStore = Depends(get_store)):
    return store.get_documents(APPLICATIONS)


@router.post("/applications", status_code=201)
def create_application(payload: ApplicationIn, store: DocumentStore = Depends(get_store)):
    name = (payload.name or "").strip()
    phone = (payload.phone or "").strip()
    if not name or not phone:
        return JSONResponse(status_code=400, content={"error": "name and phone are required"})
    application = Application(name=name, family_name=payload.family_name.strip(), phone=phone)
    application_id = store.create_document(APPLICATIONS, application)
    return {"_id": application_id, **application.model_dump()}


# ---------------------
# Download proxy
# ---------------------

@router.get("/download")
async def download(
    url: Optional[str] = None,
    filename: Optional[str] = None,
    proxy: DownloadProxy = Depends(get_proxy),
):
    try:
        return await proxy.download(url, filename)
    except InvalidSourceURL as exc:
        return JSONResponse(status_code=400, content={"ok": False, "error": str(exc)})


# ---------------------
# PDF -> DOCX
# ---------------------

@router.post("/convert/pdf-to-word")
@router.post("/convert/pdf-to-word/word")
async def convert_pdf_to_word(
    file: Optional[UploadFile] = File(None),
    settings: Settings = Depends(get_settings),
    converter: ConversionSupervisor = Depends(get_converter),
):
    max_bytes = settings.max_pdf_bytes
    # Read one byte past the ceiling so oversized uploads are detected without loading them whole.
    data = await file.read(max_bytes + 1) if file is not None else b""
    try:
        name = validate_upload(file.filename if file is not None else None, len(data), max_bytes)
        document = await converter.convert(data, name)
    except UploadRejected as exc:
        return JSONResponse(status_code=exc.status_code, content=exc.payload())
    except ConverterUnavailable as exc:
        logger.error("PDF conversion unavailable: %s", exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})
    except ConversionFailed as exc:
        logger.warning("PDF conversion failed (%s): %s", exc.kind, exc.message)
        return JSONResponse(status_code=500, content=exc.payload())

    return Response(
        content=document.content,
        media_type=document.media_type,
        headers={"Content-Disposition": content_disposition(document.filename)},
    )


@router.get("/debug/converter")
async def debug_converter(converter: ConversionSupervisor = Depends(get_converter)):
    located = await converter.locate_binary()
    if located is None:
        return PlainTextResponse("no converter binary found", status_code=500)
    binary, version = located
    return PlainTextResponse(f"{binary}: {version}")


# ---------------------
# App factory
# ---------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info(
        "Starting Media Docs API: storage=%s database=%s cloud_name=%s api_key=%s",
        app.state.media_host.name,
        app.state.store.backend,
        settings.CLOUDINARY_CLOUD_NAME or "(missing)",
        _mask(settings.CLOUDINARY_API_KEY) or "(missing)",
    )
    yield
    if app.state.owns_http_client:
        await app.state.http_client.aclose()
    app.state.store.close()
    logger.info("Shutting down Media Docs API")


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"ok": False, "error": str(exc)})


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[DocumentStore] = None,
    media_host=None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    settings = settings or Settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="Media Docs API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store or DocumentStore(
        settings.DATABASE_URL,
        settings.DATABASE_NAME,
        os.path.join(settings.DATA_DIR, "local_db"),
    )
    app.state.media_host = media_host or build_media_host(settings)
    app.state.owns_http_client = http_client is None
    app.state.http_client = http_client or httpx.AsyncClient(timeout=settings.PROXY_TIMEOUT_SECONDS)
    app.state.proxy = DownloadProxy(app.state.http_client, settings.TRUSTED_MEDIA_DOMAIN)
    app.state.converter = ConversionSupervisor(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_origin_regex=settings.CORS_ORIGIN_REGEX,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(PyMongoError, database_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = app.state.settings
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)
