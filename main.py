"""FastAPI application that restyles uploaded photos through an image API."""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, Response, UploadFile
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

from app.clients.image_provider import ImageProviderClient, ImageProviderError, UploadedImage
from app.config import get_settings
from app.counters import build_counter_store
from app.logging_config import configure_logging
from app.rate_limit import GENERATE_POLICY, RateLimitDenied, RateLimiter, build_policies
from app.utils import client_identity

configure_logging()
LOGGER = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent

settings = get_settings()
provider = ImageProviderClient(settings)
rate_limiter = RateLimiter(
    build_counter_store(settings),
    build_policies(settings),
    fail_mode=settings.rate_limit_fail_mode,
)

app = FastAPI(title="Restyle")
app.mount("/static", StaticFiles(directory=BASE_DIR / "static"), name="static")
templates = Jinja2Templates(directory=BASE_DIR / "templates")


@app.exception_handler(RateLimitDenied)
async def rate_limit_denied(request: Request, exc: RateLimitDenied) -> JSONResponse:
    decision = exc.decision
    return JSONResponse(
        status_code=exc.status_code,
        content=decision.to_payload(),
        headers=decision.headers(time.time()),
    )


@app.exception_handler(HTTPException)
async def http_error(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


def get_rate_limiter() -> RateLimiter:
    """Provide the process-wide admission controller."""

    return rate_limiter


def get_image_provider() -> ImageProviderClient:
    """Provide a configured image generation client."""

    return provider


def _read_upload(upload: Optional[UploadFile], *, required: bool) -> Optional[UploadedImage]:
    if upload is None or not upload.filename:
        if required:
            raise HTTPException(status_code=400, detail="No image uploaded")
        return None
    content_type = upload.content_type or ""
    if not content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="Uploads must be images.")
    content = upload.file.read(settings.max_upload_bytes + 1)
    if not content:
        if required:
            raise HTTPException(status_code=400, detail="No image uploaded")
        return None
    if len(content) > settings.max_upload_bytes:
        raise HTTPException(status_code=413, detail="Image is too large.")
    return UploadedImage(content=content, filename=upload.filename, content_type=content_type)


@app.get("/", response_class=HTMLResponse)
async def index(request: Request) -> HTMLResponse:
    """Serve the upload page."""

    return templates.TemplateResponse(
        request,
        "index.html",
        {"variants": settings.image_variants},
    )


@app.post("/api/generate")
def generate(
    request: Request,
    response: Response,
    image: Optional[UploadFile] = File(None),
    style: Optional[UploadFile] = File(None),
    limiter: RateLimiter = Depends(get_rate_limiter),
    image_provider: ImageProviderClient = Depends(get_image_provider),
) -> dict:
    """Generate styled variants of the uploaded photo."""

    photo = _read_upload(image, required=True)
    reference = _read_upload(style, required=False)

    identity = client_identity(
        request.headers,
        request.client.host if request.client else None,
        trust_forwarded=settings.trust_forwarded_for,
    )
    decision = limiter.check(identity, GENERATE_POLICY)
    if not decision.admitted:
        raise RateLimitDenied.from_decision(decision)
    response.headers.update(decision.headers(time.time()))

    try:
        images = image_provider.generate_variants(photo, style=reference)
    except ImageProviderError as exc:
        LOGGER.warning("Image provider error", extra={"client_ip": identity})
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Generation failed", extra={"client_ip": identity})
        raise HTTPException(status_code=500, detail="Generation failed") from exc

    return {"images": images}
