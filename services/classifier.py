"""Risk classification for trap readings."""

from __future__ import annotations

from typing import Optional

from models.records import AlertLevel

DEFAULT_RED_THRESHOLD = 20
DEFAULT_YELLOW_THRESHOLD = 10


class RiskClassifier:
    """Trusts an edge-supplied level when present, otherwise applies moth-count thresholds."""

    def __init__(
        self,
        red_threshold: int = DEFAULT_RED_THRESHOLD,
        yellow_threshold: int = DEFAULT_YELLOW_THRESHOLD,
    ) -> None:
        if yellow_threshold > red_threshold:
            raise ValueError("Yellow threshold must not exceed the red threshold.")
        self.red_threshold = red_threshold
        self.yellow_threshold = yellow_threshold

    def classify(self, moth_count: int, precomputed: Optional[AlertLevel] = None) -> AlertLevel:
        if precomputed is not None:
            return precomputed
        return self.from_count(moth_count)

    def from_count(self, moth_count: int) -> AlertLevel:
        if moth_count >= self.red_threshold:
            return AlertLevel.red
        if moth_count >= self.yellow_threshold:
            return AlertLevel.yellow
        return AlertLevel.green
