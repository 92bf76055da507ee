from __future__ import annotations

import math
import threading
from typing import Dict, Mapping

from loguru import logger

from ..database import Settings
from ..errors import InvalidScoringWeight

MINIMUM_SCORE = "minimumScore"
BLOOD_COMPATIBILITY = "bloodCompatibility"
URGENCY = "urgency"
WAITING_TIME = "waitingTime"
GEOGRAPHIC = "geographic"
MEDICAL = "medical"

DEFAULT_WEIGHTS: Dict[str, float] = {
    MINIMUM_SCORE: 40,
    BLOOD_COMPATIBILITY: 30,
    URGENCY: 25,
    WAITING_TIME: 20,
    GEOGRAPHIC: 15,
    MEDICAL: 10,
}


class ScoringWeights:
    """Process-wide scoring parameters.

    Category weights cap their component score; ``minimumScore`` is the
    eligibility floor. Reads always see the latest administrative write.
    """

    def __init__(self, initial: Mapping[str, float] | None = None) -> None:
        self._lock = threading.RLock()
        self._weights: Dict[str, float] = dict(DEFAULT_WEIGHTS)
        for name, value in (initial or {}).items():
            self._weights[name] = self._validate(name, value)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScoringWeights":
        return cls(
            {
                MINIMUM_SCORE: settings.minimum_score,
                BLOOD_COMPATIBILITY: settings.weight_blood_compatibility,
                URGENCY: settings.weight_urgency,
                WAITING_TIME: settings.weight_waiting_time,
                GEOGRAPHIC: settings.weight_geographic,
                MEDICAL: settings.weight_medical,
            }
        )

    @staticmethod
    def _validate(name: str, value: float) -> float:
        if not name or not name.strip():
            raise InvalidScoringWeight("Scoring parameter name must not be empty")
        try:
            number = float(value)
        except (TypeError, ValueError) as exc:
            raise InvalidScoringWeight(f"Scoring parameter {name} must be numeric") from exc
        if math.isnan(number) or math.isinf(number) or number < 0:
            raise InvalidScoringWeight(f"Scoring parameter {name} must be finite and non-negative")
        return number

    def get(self, name: str, default: float = 0.0) -> float:
        with self._lock:
            return self._weights.get(name, default)

    def __getitem__(self, name: str) -> float:
        with self._lock:
            return self._weights[name]

    @property
    def minimum_score(self) -> float:
        return self.get(MINIMUM_SCORE)

    def set_weight(self, name: str, value: float) -> float:
        number = self._validate(name, value)
        with self._lock:
            previous = self._weights.get(name)
            self._weights[name] = number
        logger.info("Scoring parameter {} updated: {} -> {}", name, previous, number)
        return number

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._weights)
