from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from omegaconf import DictConfig

from .cache import TTLCache, content_key
from .configuration import load_settings
from .generation import GenerationError, detect_image, generate_for_request
from .imaging import (
    MAX_DIMENSION,
    EncodedImage,
    ImagingError,
    compress_to_target,
    convert_image,
    images_to_pdf,
    pdf_to_images_zip,
    resize_image,
)
from .job_store import JobStore
from .middleware import RateLimiter, RateLimitMiddleware
from .models import (
    DetectResponse,
    ErrorResponse,
    GenerateRequest,
    HealthStatus,
    JobCreated,
    JobDetail,
    QueueSummary,
    round_ms,
)
from .queue_worker import GenerateFn, QueueWorker
from .utils import coerce_fit, coerce_keep_aspect, pick_output_format, safe_float, safe_int

logger = logging.getLogger(__name__)

DetectFn = Callable[..., Awaitable[Dict[str, Any]]]

CHUNK_SIZE = 1 << 20
MAX_PDF_IMAGES = 50


def _cors_origins(raw: str) -> List[str]:
    if raw == "*":
        return ["*"]
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def create_app(
    settings: Optional[DictConfig] = None,
    generate: Optional[GenerateFn] = None,
    detect: Optional[DetectFn] = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Runtime settings (default: load_settings())
        generate: Generation collaborator for the queue worker
            (default: the configured Hugging Face Space)
        detect: Detection collaborator (default: the configured detector Space)

    Returns:
        The FastAPI application. Shared state is created when the lifespan
        starts and lives on ``app.state``.
    """
    settings = settings if settings is not None else load_settings()
    if generate is None:
        generate = partial(
            generate_for_request,
            space_id=settings.generate.space_id,
            hf_token=settings.generate.hf_token,
            endpoint=settings.generate.endpoint,
        )
    if detect is None:
        detect = partial(
            detect_image,
            space_id=settings.detect.space_id,
            hf_token=settings.generate.hf_token,
            endpoint=settings.detect.endpoint,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        jobs = JobStore(
            ttl_ms=settings.jobs.ttl_ms,
            rolling_window=settings.jobs.rolling_window,
            avg_fallback_ms=settings.jobs.avg_fallback_ms,
        )
        worker = QueueWorker(jobs, generate, poll_interval=settings.jobs.poll_interval_ms / 1000)
        app.state.jobs = jobs
        app.state.worker = worker
        app.state.detect_cache = TTLCache(
            ttl_ms=settings.detect.cache_ttl_ms,
            max_items=settings.detect.cache_max_items,
        )
        worker.start()
        try:
            yield
        finally:
            await worker.stop()

    app = FastAPI(title="Rivel API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.detect = detect

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(settings.server.cors_origin),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )
    app.add_middleware(
        RateLimitMiddleware,
        limiter=RateLimiter(
            max_requests=settings.rate_limit.max_requests,
            window_ms=settings.rate_limit.window_ms,
        ),
        prefix="/api",
    )

    app.include_router(router)
    return app


def get_job_store(request: Request) -> JobStore:
    return request.app.state.jobs


def get_detect_cache(request: Request) -> TTLCache:
    return request.app.state.detect_cache


def get_settings(request: Request) -> DictConfig:
    return request.app.state.settings


async def _read_upload(file: UploadFile, limit: int) -> bytes:
    chunks: List[bytes] = []
    total = 0
    while chunk := await file.read(CHUNK_SIZE):
        total += len(chunk)
        if total > limit:
            await file.close()
            raise HTTPException(status_code=413, detail=f"File exceeds the {limit} byte upload limit")
        chunks.append(chunk)
    await file.close()
    return b"".join(chunks)


async def _require_upload(file: Optional[UploadFile], field: str, settings: DictConfig) -> bytes:
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail=f"Missing file. Use form field name: {field}")
    return await _read_upload(file, settings.server.upload_limit_bytes)


async def _imaging(label: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    try:
        return await run_in_threadpool(func, *args, **kwargs)
    except ImagingError as exc:
        raise HTTPException(status_code=400, detail=f"{label}: {exc}") from exc


def _image_response(out: EncodedImage, mime: str, filename: str) -> Response:
    headers = {
        "Content-Disposition": f'inline; filename="{filename}"',
        "X-Image-Width": str(out.width),
        "X-Image-Height": str(out.height),
        "X-Image-Bytes": str(out.size_bytes),
        "X-Image-Format": out.format,
    }
    if out.quality_used is not None:
        headers["X-Quality-Used"] = str(out.quality_used)
    return Response(content=out.data, media_type=mime, headers=headers)


router = APIRouter(prefix="/api")


@router.get("/health", response_model=HealthStatus)
async def healthcheck() -> HealthStatus:
    return HealthStatus()


# Store-touching handlers are async so they run on the event loop, never
# concurrently with the queue worker.


@router.post("/generate", response_model=JobCreated)
async def submit_generation(
    payload: Optional[GenerateRequest] = None,
    jobs: JobStore = Depends(get_job_store),
) -> JobCreated:
    request = payload or GenerateRequest()
    if not request.prompt:
        raise HTTPException(status_code=400, detail="prompt is required")

    job = jobs.create_job(request)
    logger.info(f"Job {job.id} queued")
    return JobCreated(
        job_id=job.id,
        status=job.status,
        queue_position=jobs.get_queue_position(job.id),
        eta_ms=round_ms(jobs.estimate_wait_ms(job.id)),
        avg_duration_ms=round_ms(jobs.get_avg_duration_ms()),
    )


@router.get("/generate/queue", response_model=QueueSummary)
async def queue_summary(jobs: JobStore = Depends(get_job_store)) -> QueueSummary:
    return QueueSummary(**jobs.stats(), avg_duration_ms=round_ms(jobs.get_avg_duration_ms()))


@router.get("/generate/{job_id}", response_model=JobDetail)
async def generation_status(job_id: str, jobs: JobStore = Depends(get_job_store)) -> JobDetail:
    job = jobs.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_detail(
        now=jobs.now(),
        queue_position=jobs.get_queue_position(job_id),
        eta_ms=jobs.estimate_wait_ms(job_id),
        avg_duration_ms=jobs.get_avg_duration_ms(),
    )


@router.post("/detect", response_model=DetectResponse, responses={500: {"model": ErrorResponse}})
async def detect(
    request: Request,
    image: Optional[UploadFile] = File(None),
    cache: TTLCache = Depends(get_detect_cache),
    settings: DictConfig = Depends(get_settings),
):
    if image is None or not image.filename:
        raise HTTPException(status_code=400, detail="Missing image. Please upload using form-data field name: image")
    data = await _read_upload(image, settings.server.upload_limit_bytes)

    key = content_key(data)
    cached = cache.get(key)
    if cached is not None:
        return JSONResponse(content=cached, headers={"X-Cache": "HIT"})

    try:
        out = await request.app.state.detect(image_bytes=data, mime=image.content_type or "image/png")
    except GenerationError as exc:
        logger.warning(f"Detect failed: {exc}")
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="Detect failed", details=str(exc)).model_dump(),
        )

    body = DetectResponse(**out).model_dump(mode="json")
    cache.set(key, body)
    return JSONResponse(content=body, headers={"X-Cache": "MISS"})


@router.post("/resize")
async def resize(
    image: Optional[UploadFile] = File(None),
    width: Optional[str] = Form(None),
    height: Optional[str] = Form(None),
    fit: Optional[str] = Form(None),
    quality: Optional[str] = Form(None),
    out_format: Optional[str] = Form(None, alias="outFormat"),
    keep_aspect: Optional[str] = Form(None, alias="keepAspect"),
    settings: DictConfig = Depends(get_settings),
) -> Response:
    data = await _require_upload(image, "image", settings)
    keep = coerce_keep_aspect(keep_aspect, True)
    output = pick_output_format(out_format, image.content_type)

    out = await _imaging(
        "Resize failed",
        resize_image,
        data,
        width=safe_int(width, None, 1, MAX_DIMENSION) if width else None,
        height=safe_int(height, None, 1, MAX_DIMENSION) if height else None,
        fit=coerce_fit(fit, "contain", keep),
        keep_aspect=keep,
        fmt=output.fmt,
        quality=safe_int(quality, 85, 10, 95),
    )
    return _image_response(out, output.mime, f"rivel-resized.{output.ext}")


@router.post("/resize/compress")
async def compress(
    image: Optional[UploadFile] = File(None),
    target_mb: Optional[str] = Form(None, alias="targetMB"),
    min_quality: Optional[str] = Form(None, alias="minQuality"),
    max_quality: Optional[str] = Form(None, alias="maxQuality"),
    out_format: Optional[str] = Form(None, alias="outFormat"),
    settings: DictConfig = Depends(get_settings),
) -> Response:
    data = await _require_upload(image, "image", settings)
    output = pick_output_format(out_format, image.content_type)

    out = await _imaging(
        "Compress failed",
        compress_to_target,
        data,
        target_mb=safe_float(target_mb, 1.0, 0.05, 50),
        min_quality=safe_int(min_quality, 35, 5, 95),
        max_quality=safe_int(max_quality, 92, 10, 95),
        fmt=output.fmt,
    )
    return _image_response(out, output.mime, f"rivel-compressed.{output.ext}")


@router.post("/convert/image")
async def convert(
    image: Optional[UploadFile] = File(None),
    to: str = Form("png"),
    quality: Optional[str] = Form(None),
    settings: DictConfig = Depends(get_settings),
) -> Response:
    data = await _require_upload(image, "image", settings)
    out = await _imaging("Convert failed", convert_image, data, to=to, quality=safe_int(quality, 90, 10, 95))
    output = pick_output_format(out.format, None)
    return _image_response(out, output.mime, f"rivel-converted.{output.ext}")


@router.post("/convert/images-to-pdf")
async def convert_images_to_pdf(
    images: Optional[List[UploadFile]] = File(None),
    settings: DictConfig = Depends(get_settings),
) -> Response:
    uploads = [upload for upload in images or [] if upload.filename]
    if not uploads:
        raise HTTPException(status_code=400, detail="Missing images. Use form field name: images")
    if len(uploads) > MAX_PDF_IMAGES:
        raise HTTPException(status_code=400, detail=f"At most {MAX_PDF_IMAGES} images are allowed")

    buffers = [await _read_upload(upload, settings.server.upload_limit_bytes) for upload in uploads]
    pdf = await _imaging("Images to PDF failed", images_to_pdf, buffers)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": 'inline; filename="output.pdf"'},
    )


@router.post("/convert/pdf-to-images")
async def convert_pdf_to_images(
    pdf: Optional[UploadFile] = File(None),
    output_format: str = Form("png", alias="format"),
    dpi: Optional[str] = Form(None),
    settings: DictConfig = Depends(get_settings),
) -> Response:
    data = await _require_upload(pdf, "pdf", settings)
    archive = await _imaging(
        "PDF to images failed",
        pdf_to_images_zip,
        data,
        fmt=output_format,
        dpi=safe_float(dpi, 150),
    )
    return Response(
        content=archive,
        media_type="application/zip",
        headers={"Content-Disposition": 'attachment; filename="output.zip"'},
    )


app = create_app()


def run() -> None:
    """Serve the API with uvicorn on the configured port."""
    import uvicorn

    settings = app.state.settings
    uvicorn.run("rivel_backend.main:app", host="0.0.0.0", port=int(settings.server.port))
