"""Pydantic schemas for generation requests and validated render parameters.

``GenerationRequest`` is the loose API body: it only checks types, so a
submission with an over-long prompt still creates a job. The Generation Stage
then runs :func:`validate_generation_params`, which enforces the render rules
and raises the pipeline's terminal ``ValidationError`` so the job fails
immediately without a provider call.

Validation Rules:
    - prompt: non-empty, at most 2000 characters
    - negative_prompt: at most 1000 characters
    - aspect_ratio: "16:9" or "9:16"
    - resolution: "720p" or "1080p"
    - model: "stable" or "fast"
    - duration_sec: 5-60 when given
    - image: base64 bytes and an ``image/*`` MIME type
"""

import base64
import binascii
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from framebrew.exceptions import ValidationError

MAX_PROMPT_LENGTH = 2000
MAX_NEGATIVE_PROMPT_LENGTH = 1000
ASPECT_RATIOS = ("16:9", "9:16")
RESOLUTIONS = ("720p", "1080p")
MODEL_TIERS = ("stable", "fast")
MIN_DURATION_SEC = 5
MAX_DURATION_SEC = 60


class ReferenceImage(BaseModel):
    """Optional image that seeds the render."""

    image_bytes: str = Field(..., description="Base64-encoded image data")
    mime_type: str = Field(..., examples=["image/png"])

    def decoded(self) -> bytes:
        return base64.b64decode(self.image_bytes)


class GenerationRequest(BaseModel):
    """Body of POST /api/v1/generations.

    Only types are checked here. Render rules are enforced by the
    Generation Stage so invalid requests surface as FAILED jobs.
    """

    model_config = ConfigDict(populate_by_name=True)

    project_id: str | None = None
    title: str | None = Field(default=None, max_length=255)
    prompt: str = ""
    style_preset: str | None = None
    negative_prompt: str | None = None
    aspect_ratio: str = "16:9"
    resolution: str = "720p"
    model: str = "fast"
    duration_sec: int | None = None
    captions: bool = True
    watermark: bool = False
    image: ReferenceImage | None = None


class GenerationParams(BaseModel):
    """Render parameters after validation."""

    model_config = ConfigDict(frozen=True)

    prompt: str
    style_preset: str | None = None
    negative_prompt: str | None = None
    aspect_ratio: Literal["16:9", "9:16"] = "16:9"
    resolution: Literal["720p", "1080p"] = "720p"
    model: Literal["stable", "fast"] = "fast"
    duration_sec: int | None = None
    captions: bool = True
    watermark: bool = False
    image: ReferenceImage | None = None

    @property
    def full_prompt(self) -> str:
        """Prompt with the style preset appended, as sent to the provider."""
        if self.style_preset:
            return f"{self.prompt}\n\nStyle: {self.style_preset}"
        return self.prompt


def validate_generation_params(raw: dict[str, Any]) -> GenerationParams:
    """Validate render parameters for the Generation Stage.

    Args:
        raw: Parameter dict (job columns plus optional reference image).

    Returns:
        Frozen GenerationParams.

    Raises:
        ValidationError: On the first rule that fails. Terminal, never retried.

    Example:
        >>> validate_generation_params({"prompt": "x" * 2001})
        ValidationError: Prompt must be at most 2000 characters
    """
    prompt = (raw.get("prompt") or "").strip()
    if not prompt:
        raise ValidationError("Prompt is required", field="prompt")
    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValidationError(
            f"Prompt must be at most {MAX_PROMPT_LENGTH} characters", field="prompt"
        )

    negative_prompt = raw.get("negative_prompt") or None
    if negative_prompt and len(negative_prompt) > MAX_NEGATIVE_PROMPT_LENGTH:
        raise ValidationError(
            f"Negative prompt must be at most {MAX_NEGATIVE_PROMPT_LENGTH} characters",
            field="negative_prompt",
        )

    aspect_ratio = raw.get("aspect_ratio") or "16:9"
    if aspect_ratio not in ASPECT_RATIOS:
        raise ValidationError(f"Unsupported aspect ratio: {aspect_ratio}", field="aspect_ratio")

    resolution = raw.get("resolution") or "720p"
    if resolution not in RESOLUTIONS:
        raise ValidationError(f"Unsupported resolution: {resolution}", field="resolution")

    model = raw.get("model") or "fast"
    if model not in MODEL_TIERS:
        raise ValidationError(f"Unsupported model: {model}", field="model")

    duration_sec = raw.get("duration_sec")
    if duration_sec is not None and not MIN_DURATION_SEC <= duration_sec <= MAX_DURATION_SEC:
        raise ValidationError(
            f"Duration must be between {MIN_DURATION_SEC} and {MAX_DURATION_SEC} seconds",
            field="duration_sec",
        )

    image = raw.get("image")
    if image is not None:
        image = _validate_reference_image(image)

    return GenerationParams(
        prompt=prompt,
        style_preset=raw.get("style_preset") or None,
        negative_prompt=negative_prompt,
        aspect_ratio=aspect_ratio,
        resolution=resolution,
        model=model,
        duration_sec=duration_sec,
        captions=raw.get("captions", True),
        watermark=raw.get("watermark", False),
        image=image,
    )


def _validate_reference_image(image: ReferenceImage | dict[str, Any]) -> ReferenceImage:
    if isinstance(image, dict):
        image = ReferenceImage(
            image_bytes=image.get("image_bytes") or "",
            mime_type=image.get("mime_type") or "",
        )

    if not image.mime_type.startswith("image/"):
        raise ValidationError("Reference image must have an image/* MIME type", field="image")
    try:
        data = image.decoded()
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Reference image is not valid base64", field="image") from e
    if not data:
        raise ValidationError("Reference image is empty", field="image")
    return image
