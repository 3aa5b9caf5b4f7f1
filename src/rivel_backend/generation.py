"""
Clients for the Hugging Face Spaces that do the heavy lifting.

Two remote Gradio apps are used:
- a prompt-to-image Space, called by the queue worker for every job
- an AI-image detector Space, called directly by the detect endpoint

gradio_client is synchronous and may spend a long time waking a cold Space,
so every call is pushed to the thread pool to keep the event loop free.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import tempfile
from typing import Any, Dict, Optional

from fastapi.concurrency import run_in_threadpool
from gradio_client import Client, handle_file

from .models import DEFAULT_GUIDANCE, DEFAULT_SEED, DEFAULT_STEPS, GenerateRequest, coerce_number

logger = logging.getLogger(__name__)

DEFAULT_GENERATE_ENDPOINT = "/generate"
DEFAULT_DETECT_ENDPOINT = "/predict"


class GenerationError(RuntimeError):
    """Raised when a remote Space cannot be reached or returns an error."""


def _connect(space_id: str, hf_token: Optional[str]) -> Client:
    try:
        return Client(space_id, hf_token=hf_token or None, verbose=False)
    except Exception as exc:  # noqa: BLE001 - gradio_client raises many transport types
        raise GenerationError(f"Could not connect to Space {space_id}: {exc}") from exc


def extract_image_url(image: Any) -> Optional[str]:
    """
    Pull a usable URL or file path out of a Gradio image output.

    Gradio returns images either as a plain string or as a file mapping with
    ``url`` and/or ``path`` members.
    """
    if isinstance(image, str):
        return image
    if isinstance(image, dict):
        for key in ("url", "path"):
            value = image.get(key)
            if isinstance(value, str):
                return value
    return None


def _predict_generate(
    space_id: str,
    hf_token: Optional[str],
    endpoint: str,
    payload: Dict[str, Any],
) -> Any:
    client = _connect(space_id, hf_token)
    try:
        return client.predict(api_name=endpoint, **payload)
    except Exception as exc:  # noqa: BLE001
        raise GenerationError(f"Generation failed on {space_id}{endpoint}: {exc}") from exc


async def generate_from_space(
    *,
    space_id: str,
    hf_token: Optional[str] = None,
    prompt: str,
    negative_prompt: str = "",
    steps: Any = DEFAULT_STEPS,
    guidance: Any = DEFAULT_GUIDANCE,
    seed: Any = DEFAULT_SEED,
    endpoint: str = DEFAULT_GENERATE_ENDPOINT,
) -> Dict[str, Any]:
    """
    Run one prompt-to-image generation on a Gradio Space.

    Args:
        space_id: Hugging Face Space identifier (e.g. "owner/space")
        hf_token: Optional access token for private or rate-limited Spaces
        prompt: Text prompt, required by the Space
        negative_prompt: Text to steer away from; the Space requires the field
        steps: Inference steps (default 20 when not numeric)
        guidance: Guidance scale (default 7.5 when not numeric)
        seed: Random seed, -1 for random (default when not numeric)
        endpoint: Gradio API name to call

    Returns:
        Dict with ``endpoint_used``, ``meta``, ``image_url`` and ``raw_image``
        (the untouched image output when no URL could be extracted)

    Raises:
        GenerationError: If the Space is unreachable or the prediction fails
    """
    payload = {
        "prompt": str(prompt).strip(),
        "negative_prompt": str(negative_prompt or "").strip(),
        "steps": int(coerce_number(steps, DEFAULT_STEPS)),
        "guidance": coerce_number(guidance, DEFAULT_GUIDANCE),
        "seed": int(coerce_number(seed, DEFAULT_SEED)),
    }

    data = await run_in_threadpool(_predict_generate, space_id, hf_token, endpoint, payload)

    meta = None
    image = None
    if isinstance(data, (list, tuple)):
        meta = data[0] if len(data) > 0 else None
        image = data[1] if len(data) > 1 else None

    image_url = extract_image_url(image)
    return {
        "endpoint_used": endpoint,
        "meta": meta,
        "image_url": image_url,
        "raw_image": None if image_url else image,
    }


async def generate_for_request(
    request: GenerateRequest,
    *,
    space_id: str,
    hf_token: Optional[str] = None,
    endpoint: str = DEFAULT_GENERATE_ENDPOINT,
) -> Dict[str, Any]:
    return await generate_from_space(
        space_id=space_id,
        hf_token=hf_token,
        endpoint=endpoint,
        prompt=request.prompt,
        negative_prompt=request.negative_prompt,
        steps=request.steps,
        guidance=request.guidance,
        seed=request.seed,
    )


def _predict_detect(
    space_id: str,
    hf_token: Optional[str],
    endpoint: str,
    image_bytes: bytes,
    mime: str,
) -> Any:
    suffix = mimetypes.guess_extension(mime or "") or ".png"
    fd, path = tempfile.mkstemp(suffix=suffix, prefix="rivel-detect-")
    try:
        with os.fdopen(fd, "wb") as buffer:
            buffer.write(image_bytes)
        client = _connect(space_id, hf_token)
        try:
            return client.predict(handle_file(path), api_name=endpoint)
        except Exception as exc:  # noqa: BLE001
            raise GenerationError(f"Detection failed on {space_id}{endpoint}: {exc}") from exc
    finally:
        os.unlink(path)


async def detect_image(
    *,
    space_id: str,
    image_bytes: bytes,
    mime: str = "image/png",
    hf_token: Optional[str] = None,
    endpoint: str = DEFAULT_DETECT_ENDPOINT,
) -> Dict[str, Any]:
    """
    Ask the detector Space whether an image is AI-generated.

    Returns:
        Dict with the ``space`` used and the raw ``result`` of the prediction
    """
    data = await run_in_threadpool(_predict_detect, space_id, hf_token, endpoint, image_bytes, mime)
    if isinstance(data, (list, tuple)):
        data = data[0] if data else None
    logger.info(f"Detection completed on {space_id}")
    return {"space": space_id, "result": data}
