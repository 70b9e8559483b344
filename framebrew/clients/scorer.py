"""Quality scoring clients.

``HttpQualityScorer`` calls an external scoring service. When SCORER_URL is
not configured, ``SimulatedQualityScorer`` produces a plausible score so the
pipeline can still complete end to end.

Overall Score Weights:
    hook 0.20, pacing 0.15, clarity 0.15, brand_safety 0.10,
    duration_fit 0.10, visual_qoe 0.15, audio_qoe 0.15
"""

import random
from typing import Protocol

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from framebrew.exceptions import ScoringError
from framebrew.schemas.score import QualityScore
from framebrew.utils.logging import get_logger

log = get_logger(__name__)

SCORE_WEIGHTS = {
    "hook": 0.20,
    "pacing": 0.15,
    "clarity": 0.15,
    "brand_safety": 0.10,
    "duration_fit": 0.10,
    "visual_qoe": 0.15,
    "audio_qoe": 0.15,
}


class QualityScorer(Protocol):
    async def score(self, artifact_url: str) -> QualityScore: ...

    async def close(self) -> None: ...


def weighted_overall(dimensions: dict[str, int]) -> int:
    """Combine dimension scores into the overall score."""
    return round(sum(dimensions[name] * weight for name, weight in SCORE_WEIGHTS.items()))


def feedback_summary(score: QualityScore) -> str:
    """Human-readable summary of a score for the video library.

    Example:
        >>> feedback_summary(score)  # overall 82, hook 65
        'High-quality video with strong performance. Consider a stronger opening hook.'
    """
    if score.overall >= 90:
        parts = ["Excellent video quality with outstanding performance across all metrics."]
    elif score.overall >= 80:
        parts = ["High-quality video with strong performance."]
    elif score.overall >= 70:
        parts = ["Good video quality with room for improvement."]
    else:
        parts = ["Video quality needs significant improvement."]

    if score.hook < 70:
        parts.append("Consider a stronger opening hook.")
    if score.pacing < 70:
        parts.append("Pacing could be tightened.")
    if score.clarity < 75:
        parts.append("Message clarity could be improved.")
    if score.visual_qoe < 70:
        parts.append("Visual quality is below target.")
    if score.audio_qoe < 70:
        parts.append("Audio quality is below target.")
    if score.brand_safety >= 90:
        parts.append("Fully brand safe.")
    if score.hook >= 85:
        parts.append("Opening hook is very engaging.")
    if score.pacing >= 85:
        parts.append("Pacing is excellent.")

    return " ".join(parts)


class SimulatedQualityScorer:
    """Scorer stand-in that draws dimensions around a random base score.

    Args:
        rng: Random source, seeded in tests for stable scores.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self.rng = rng or random.Random()

    def _around(self, base: int, spread: int = 10) -> int:
        return max(0, min(100, base + self.rng.randint(-spread, spread)))

    async def score(self, artifact_url: str) -> QualityScore:
        base = self.rng.randint(60, 95)
        dimensions = {
            "hook": self._around(base),
            "pacing": self._around(base),
            "clarity": self._around(base),
            "brand_safety": self.rng.randint(80, 100),
            "duration_fit": self._around(base, 5),
            "visual_qoe": self._around(base),
            "audio_qoe": self._around(base),
        }
        score = QualityScore(overall=weighted_overall(dimensions), **dimensions)
        log.info("simulated_score_generated", artifact_url=artifact_url, overall=score.overall)
        return score

    async def close(self) -> None:
        return None


class HttpQualityScorer:
    """Client for the external quality scoring service.

    POST {base_url}/score with ``{"artifact_url": ...}`` and expects the
    QualityScore fields in the JSON response.
    """

    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=120.0)

    @retry(
        retry=retry_if_exception_type((httpx.TransportError,)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _post(self, artifact_url: str) -> httpx.Response:
        return await self.client.post(f"{self.base_url}/score", json={"artifact_url": artifact_url})

    async def score(self, artifact_url: str) -> QualityScore:
        """Score a stored artifact.

        Raises:
            ScoringError: Transport failure, HTTP error, or malformed response.
        """
        try:
            response = await self._post(artifact_url)
            response.raise_for_status()
            score = QualityScore.model_validate(response.json())
        except httpx.HTTPError as e:
            raise ScoringError(f"Scorer request failed: {e}", artifact_url=artifact_url) from e
        except ValueError as e:
            # pydantic.ValidationError and JSON decode errors are ValueErrors
            raise ScoringError(f"Scorer returned an invalid score: {e}", artifact_url=artifact_url) from e

        log.info("artifact_scored", artifact_url=artifact_url, overall=score.overall)
        return score

    async def close(self) -> None:
        await self.client.aclose()
