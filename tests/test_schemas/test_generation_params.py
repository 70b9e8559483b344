"""Tests for generation request parsing and render parameter validation.

Test Coverage:
- GenerationRequest accepts out-of-range values (validation is deferred)
- validate_generation_params rules and their error fields
- Reference image checks
- full_prompt style preset handling
"""

import pydantic
import pytest

from framebrew.exceptions import ValidationError
from framebrew.schemas.generation import (
    GenerationParams,
    GenerationRequest,
    validate_generation_params,
)
from tests.support.factories import reference_image


def valid_params(**overrides) -> dict:
    return {
        "prompt": "A cat surfing at sunset",
        "aspect_ratio": "16:9",
        "resolution": "720p",
        "model": "fast",
        "duration_sec": 8,
        **overrides,
    }


class TestGenerationRequest:
    def test_over_long_prompt_is_accepted_by_the_api_body(self):
        """[P0] Submission never rejects on render rules.

        GIVEN: A 2001 character prompt
        WHEN: Parsing the API body
        THEN: Parsing succeeds so the job can be created and failed by the stage
        """
        request = GenerationRequest(prompt="x" * 2001)

        assert len(request.prompt) == 2001

    def test_defaults(self):
        request = GenerationRequest(prompt="A cat surfing")

        assert request.aspect_ratio == "16:9"
        assert request.resolution == "720p"
        assert request.model == "fast"
        assert request.captions is True
        assert request.watermark is False
        assert request.image is None


class TestValidateGenerationParams:
    """Tests for render rule enforcement."""

    def test_valid_params(self):
        """[P0] Valid parameters produce frozen GenerationParams."""
        params = validate_generation_params(valid_params(style_preset="cinematic"))

        assert isinstance(params, GenerationParams)
        assert params.prompt == "A cat surfing at sunset"
        assert params.style_preset == "cinematic"
        assert params.duration_sec == 8

    def test_prompt_is_stripped(self):
        params = validate_generation_params(valid_params(prompt="  A cat surfing  "))

        assert params.prompt == "A cat surfing"

    @pytest.mark.parametrize("prompt", ["", "   ", None])
    def test_missing_prompt(self, prompt):
        with pytest.raises(ValidationError, match="Prompt is required") as exc_info:
            validate_generation_params(valid_params(prompt=prompt))

        assert exc_info.value.field == "prompt"

    def test_prompt_limit_is_inclusive(self):
        """[P0] 2000 characters pass, 2001 fail."""
        assert validate_generation_params(valid_params(prompt="x" * 2000)).prompt == "x" * 2000

        with pytest.raises(ValidationError, match="at most 2000 characters"):
            validate_generation_params(valid_params(prompt="x" * 2001))

    def test_negative_prompt_limit(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_generation_params(valid_params(negative_prompt="n" * 1001))

        assert exc_info.value.field == "negative_prompt"

    @pytest.mark.parametrize(
        ("field", "value"),
        [
            ("aspect_ratio", "4:3"),
            ("resolution", "4k"),
            ("model", "ultra"),
            ("duration_sec", 4),
            ("duration_sec", 61),
        ],
    )
    def test_unsupported_values(self, field, value):
        """[P1] Each rule reports the offending field."""
        with pytest.raises(ValidationError) as exc_info:
            validate_generation_params(valid_params(**{field: value}))

        assert exc_info.value.field == field
        assert exc_info.value.retriable is False

    @pytest.mark.parametrize("duration", [5, 60, None])
    def test_duration_bounds(self, duration):
        assert validate_generation_params(valid_params(duration_sec=duration)).duration_sec == duration

    def test_missing_optional_fields_use_defaults(self):
        params = validate_generation_params({"prompt": "A cat surfing"})

        assert params.aspect_ratio == "16:9"
        assert params.resolution == "720p"
        assert params.model == "fast"
        assert params.image is None

    def test_params_are_frozen(self):
        params = validate_generation_params(valid_params())

        with pytest.raises(pydantic.ValidationError):
            params.prompt = "changed"


class TestReferenceImage:
    def test_valid_image(self):
        params = validate_generation_params(valid_params(image=reference_image()))

        assert params.image is not None
        assert params.image.mime_type == "image/png"
        assert params.image.decoded().startswith(b"\x89PNG")

    def test_non_image_mime_type(self):
        with pytest.raises(ValidationError, match="image/\\* MIME type") as exc_info:
            validate_generation_params(valid_params(image=reference_image(mime_type="video/mp4")))

        assert exc_info.value.field == "image"

    def test_invalid_base64(self):
        image = {"image_bytes": "a", "mime_type": "image/png"}

        with pytest.raises(ValidationError, match="not valid base64"):
            validate_generation_params(valid_params(image=image))

    def test_empty_image(self):
        with pytest.raises(ValidationError, match="empty"):
            validate_generation_params(valid_params(image=reference_image(data=b"")))


class TestFullPrompt:
    def test_style_preset_is_appended(self):
        params = GenerationParams(prompt="A cat surfing", style_preset="anime")

        assert params.full_prompt == "A cat surfing\n\nStyle: anime"

    def test_without_style_preset(self):
        assert GenerationParams(prompt="A cat surfing").full_prompt == "A cat surfing"
