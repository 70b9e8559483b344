"""Quality score schema returned by the scorer and stored on Video.score."""

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field

ScoreValue = Annotated[int, Field(ge=0, le=100)]


class QualityScore(BaseModel):
    """Multi-dimensional quality score, every dimension 0-100."""

    model_config = ConfigDict(extra="ignore")

    overall: ScoreValue
    hook: ScoreValue
    pacing: ScoreValue
    clarity: ScoreValue
    brand_safety: ScoreValue
    duration_fit: ScoreValue
    visual_qoe: ScoreValue
    audio_qoe: ScoreValue
