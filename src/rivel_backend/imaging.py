"""
Image and document conversions backing the resize and convert endpoints.

All functions are synchronous and CPU or process bound; the API runs them
in the thread pool. Pillow does the encoding work, and PDF rasterization is
delegated to poppler's ``pdftoppm`` executable.
"""

from __future__ import annotations

import io
import logging
import re
import shutil
import subprocess
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from .utils import safe_float, safe_int

logger = logging.getLogger(__name__)

RESAMPLE = Image.Resampling.LANCZOS

MAX_DIMENSION = 12_000

# A4 in points (1/72 inch), rendered at PDF_DPI
A4_POINTS = (595.28, 841.89)
PDF_MARGIN_POINTS = 18
PDF_DPI = 150

PDFTOPPM = "pdftoppm"
PDFTOPPM_TIMEOUT = 120
PAGE_NUMBER_PATTERN = re.compile(r"page-(\d+)\.")


class ImagingError(ValueError):
    """Raised for unreadable inputs, unsupported formats or failed conversions."""


@dataclass
class EncodedImage:
    data: bytes
    width: int
    height: int
    format: str
    quality_used: Optional[int] = None
    target_bytes: Optional[int] = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)


def _open(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ImagingError(f"Unsupported or corrupt image: {exc}") from exc
    return image


def _prepare_mode(image: Image.Image, fmt: str) -> Image.Image:
    if fmt == "jpeg":
        return image if image.mode in ("RGB", "L") else image.convert("RGB")
    if image.mode in ("RGB", "RGBA"):
        return image
    if image.mode in ("LA", "PA", "P") or "transparency" in image.info:
        return image.convert("RGBA")
    return image.convert("RGB")


def encode_image(image: Image.Image, fmt: str, quality: int = 85) -> bytes:
    q = safe_int(quality, 85, 10, 95)
    image = _prepare_mode(image, fmt)
    buffer = io.BytesIO()
    if fmt == "png":
        image.save(buffer, format="PNG", optimize=True)
    elif fmt == "webp":
        image.save(buffer, format="WEBP", quality=q)
    elif fmt == "jpeg":
        image.save(buffer, format="JPEG", quality=q, optimize=True)
    else:
        raise ImagingError(f"Unsupported output format: {fmt}")
    return buffer.getvalue()


def _encoded(image: Image.Image, fmt: str, quality: int) -> EncodedImage:
    data = encode_image(image, fmt, quality)
    return EncodedImage(data=data, width=image.width, height=image.height, format=fmt)


def _scaled(size: Tuple[int, int], scale: float) -> Tuple[int, int]:
    return max(1, round(size[0] * scale)), max(1, round(size[1] * scale))


def resize_image(
    data: bytes,
    width: Optional[int] = None,
    height: Optional[int] = None,
    fit: str = "contain",
    keep_aspect: bool = True,
    fmt: str = "jpeg",
    quality: int = 85,
) -> EncodedImage:
    """
    Resize an image to the requested box and re-encode it.

    Images are never enlarged. With a single dimension the other one follows
    the aspect ratio. With both dimensions:

    - contain: scale down to fit inside the box
    - cover: crop around the centre so the image fills the box
    - fill: stretch to the box, ignoring the aspect ratio

    Args:
        data: Encoded input image
        width: Target width in pixels, or None
        height: Target height in pixels, or None
        fit: contain | cover | fill
        keep_aspect: When False, fill is used regardless of fit
        fmt: Output format (png | jpeg | webp)
        quality: Encoder quality for lossy formats (10..95)

    Returns:
        EncodedImage with the output bytes and dimensions

    Raises:
        ImagingError: If the input cannot be decoded
    """
    image = _open(data)
    iw, ih = image.size
    chosen_fit = fit if keep_aspect else "fill"

    if width and height:
        box = (min(width, iw), min(height, ih))
        if chosen_fit == "cover":
            image = ImageOps.fit(image, box, method=RESAMPLE)
        elif chosen_fit == "fill":
            image = image.resize(box, RESAMPLE)
        else:
            scale = min(width / iw, height / ih, 1.0)
            image = image.resize(_scaled((iw, ih), scale), RESAMPLE)
    elif width or height:
        scale = min((width / iw) if width else (height / ih), 1.0)
        image = image.resize(_scaled((iw, ih), scale), RESAMPLE)

    return _encoded(image, fmt, quality)


def compress_to_target(
    data: bytes,
    target_mb: float = 1.0,
    min_quality: int = 35,
    max_quality: int = 92,
    fmt: str = "jpeg",
) -> EncodedImage:
    """
    Re-encode an image with decreasing quality until it fits a byte budget.

    Quality starts at ``max_quality`` and drops by 8 for the first four
    attempts, then by 6, never below ``min_quality`` and for at most 14
    attempts. If the result is still too large the image is downscaled to
    85 % and encoded once more 10 points lower. The last attempt is returned
    even when it misses the budget.
    """
    target_bytes = max(1, int(safe_float(target_mb, 1.0) * 1024 * 1024))
    q_min = safe_int(min_quality, 35, 5, 95)
    q_max = safe_int(max_quality, 92, 10, 95)
    q_min = min(q_min, q_max)

    image = _open(data)
    quality = q_max
    encoded = _encoded(image, fmt, quality)
    for attempt in range(1, 14):
        if encoded.size_bytes <= target_bytes or quality == q_min:
            break
        step = 8 if attempt <= 4 else 6
        quality = max(q_min, quality - step)
        encoded = _encoded(image, fmt, quality)

    if encoded.size_bytes > target_bytes:
        quality = max(q_min, quality - 10)
        smaller = image.resize(_scaled(image.size, 0.85), RESAMPLE)
        encoded = _encoded(smaller, fmt, quality)
        logger.info(f"Downscaled to {smaller.width}x{smaller.height} to approach {target_bytes} bytes")

    encoded.quality_used = quality
    encoded.target_bytes = target_bytes
    return encoded


def convert_image(data: bytes, to: str = "png", quality: int = 90) -> EncodedImage:
    fmt = str(to or "").strip().lower()
    if fmt == "jpg":
        fmt = "jpeg"
    if fmt not in ("png", "jpeg", "webp"):
        raise ImagingError(f"Unsupported output format: {to}")
    return _encoded(_open(data), fmt, safe_int(quality, 90, 10, 95))


def images_to_pdf(images: Iterable[bytes]) -> bytes:
    """
    Lay out each image on its own A4 page and return the PDF bytes.

    EXIF orientation is applied, and every image is scaled to fit inside the
    page margins and centred.
    """
    page_w = round(A4_POINTS[0] / 72 * PDF_DPI)
    page_h = round(A4_POINTS[1] / 72 * PDF_DPI)
    margin = round(PDF_MARGIN_POINTS / 72 * PDF_DPI)
    max_w, max_h = page_w - 2 * margin, page_h - 2 * margin

    pages: List[Image.Image] = []
    for data in images:
        image = ImageOps.exif_transpose(_open(data))
        if image.mode in ("RGBA", "LA", "PA") or (image.mode == "P" and "transparency" in image.info):
            image = image.convert("RGBA")
        else:
            image = image.convert("RGB")

        scale = min(max_w / image.width, max_h / image.height)
        image = image.resize(_scaled(image.size, scale), RESAMPLE)

        page = Image.new("RGB", (page_w, page_h), "white")
        offset = ((page_w - image.width) // 2, (page_h - image.height) // 2)
        page.paste(image, offset, image if image.mode == "RGBA" else None)
        pages.append(page)

    if not pages:
        raise ImagingError("At least one image is required")

    buffer = io.BytesIO()
    pages[0].save(buffer, format="PDF", save_all=True, append_images=pages[1:], resolution=float(PDF_DPI))
    return buffer.getvalue()


def _page_number(path: Path) -> int:
    match = PAGE_NUMBER_PATTERN.search(path.name)
    return int(match.group(1)) if match else 0


def pdf_to_images_zip(
    pdf_bytes: bytes,
    fmt: str = "png",
    dpi: float = 150,
    timeout: float = PDFTOPPM_TIMEOUT,
) -> bytes:
    """
    Rasterize every page of a PDF and bundle the images in a ZIP archive.

    Args:
        pdf_bytes: The PDF document
        fmt: png or jpeg (jpg is accepted; anything else means png)
        dpi: Render resolution, clamped to 72..600 (150 when not numeric)
        timeout: Seconds pdftoppm may run before the conversion is abandoned

    Returns:
        ZIP bytes containing page-N.png / page-N.jpg in page order

    Raises:
        ImagingError: If pdftoppm is not installed, fails on the document
            or runs past the timeout
    """
    jpeg = str(fmt).lower() in ("jpeg", "jpg")
    ext = "jpg" if jpeg else "png"
    resolution = safe_float(dpi, 150, 72, 600)

    executable = shutil.which(PDFTOPPM)
    if executable is None:
        raise ImagingError(f"{PDFTOPPM} is not installed; install poppler-utils to convert PDFs")

    with tempfile.TemporaryDirectory(prefix="rivel-pdf2zip-") as workdir:
        work = Path(workdir)
        pdf_path = work / "in.pdf"
        pdf_path.write_bytes(pdf_bytes)

        args = [
            executable,
            "-r",
            f"{resolution:g}",
            "-jpeg" if jpeg else "-png",
            str(pdf_path),
            str(work / "page"),
        ]
        try:
            subprocess.run(args, check=True, capture_output=True, timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise ImagingError(f"{PDFTOPPM} timed out after {timeout:g}s") from exc
        except subprocess.CalledProcessError as exc:
            stderr = exc.stderr.decode("utf-8", "replace").strip() if exc.stderr else ""
            raise ImagingError(f"{PDFTOPPM} failed: {stderr or exc}") from exc

        files = sorted(work.glob(f"page-*.{ext}"), key=_page_number)
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
            for path in files:
                archive.write(path, arcname=path.name)

    logger.info(f"Rasterized {len(files)} PDF page(s) at {resolution:g} dpi")
    return buffer.getvalue()
