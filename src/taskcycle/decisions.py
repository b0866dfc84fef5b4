"""Injectable sources for the randomized branches of the scheduler."""

from __future__ import annotations

import random
from typing import Protocol


class DecisionSource(Protocol):
    def decide(self, kind: str, probability: float) -> bool:
        """Return True with the given probability for a decision of *kind*."""


class RandomDecisionSource:
    def __init__(self, seed: int | None = None) -> None:
        self.seed = seed
        self._random = random.Random(seed)

    def decide(self, kind: str, probability: float) -> bool:
        if probability <= 0.0:
            return False
        if probability >= 1.0:
            return True
        return self._random.random() < probability
