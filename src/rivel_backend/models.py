from __future__ import annotations

import math
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_STEPS = 20
DEFAULT_GUIDANCE = 7.5
DEFAULT_SEED = -1


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def coerce_number(value: Any, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


class GenerateRequest(BaseModel):
    """Submission payload for the generation queue.

    Numeric fields never fail validation: anything missing or non-numeric
    falls back to its default. An empty prompt is rejected by the route.
    """

    prompt: str = ""
    negative_prompt: str = ""
    steps: int = DEFAULT_STEPS
    guidance: float = DEFAULT_GUIDANCE
    seed: int = DEFAULT_SEED

    @field_validator("prompt", "negative_prompt", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("steps", mode="before")
    @classmethod
    def _coerce_steps(cls, value: Any) -> int:
        return int(coerce_number(value, DEFAULT_STEPS))

    @field_validator("guidance", mode="before")
    @classmethod
    def _coerce_guidance(cls, value: Any) -> float:
        return coerce_number(value, DEFAULT_GUIDANCE)

    @field_validator("seed", mode="before")
    @classmethod
    def _coerce_seed(cls, value: Any) -> int:
        return int(coerce_number(value, DEFAULT_SEED))


class GenerationResult(CamelModel):
    endpoint_used: str
    meta: Any = None
    image_url: Optional[str] = None


class JobCreated(CamelModel):
    ok: bool = True
    job_id: str
    status: JobStatus
    queue_position: Optional[int] = None
    eta_ms: int
    avg_duration_ms: Optional[int] = None


class JobDetail(CamelModel):
    ok: bool = True
    id: str
    status: JobStatus
    created_at: int
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    duration_ms: Optional[int] = None
    elapsed_ms: int
    queue_position: Optional[int] = None
    eta_ms: int
    avg_duration_ms: Optional[int] = None
    result: Optional[GenerationResult] = None
    error: Optional[str] = None


class QueueSummary(CamelModel):
    ok: bool = True
    queued: int
    running: int
    done: int
    error: int
    queue_length: int
    current_job_id: Optional[str] = None
    avg_duration_ms: Optional[int] = None


class DetectResponse(BaseModel):
    space: str
    result: Any = None


class ErrorResponse(BaseModel):
    ok: bool = False
    error: str
    details: Optional[str] = None


class HealthStatus(BaseModel):
    ok: bool = True


def round_ms(value: Optional[float]) -> Optional[int]:
    return None if value is None else int(round(value))
