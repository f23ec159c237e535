"""Speed-scaled delays used by the agent loop."""
from __future__ import annotations

from dataclasses import dataclass

from screenpilot.src.utils.config import MAX_SPEED_MULTIPLIER, MIN_SPEED_MULTIPLIER

ITERATION_DELAY_MS = 500
CLICK_DELAY_MS = 50
EFFECT_SETTLE_MS = 200
PARSE_ERROR_DELAY_MS = 500
PREVIEW_DELAY_MS = 500
LLM_ERROR_DELAY_MS = 1000


def validate_speed_multiplier(value: float) -> float:
    if value != value:  # NaN
        return 1.0
    return min(max(value, MIN_SPEED_MULTIPLIER), MAX_SPEED_MULTIPLIER)


@dataclass(slots=True)
class DelayController:
    """Divides base delays by the speed multiplier, never below 1 ms."""

    speed_multiplier: float = 1.0

    def __post_init__(self) -> None:
        self.speed_multiplier = validate_speed_multiplier(self.speed_multiplier)

    def calculate_ms(self, base_ms: int) -> int:
        return max(1, int(base_ms / self.speed_multiplier))

    def seconds(self, base_ms: int) -> float:
        return self.calculate_ms(base_ms) / 1000.0

    def iteration_delay(self) -> float:
        return self.seconds(ITERATION_DELAY_MS)

    def click_delay(self) -> float:
        return self.seconds(CLICK_DELAY_MS)

    def settle_delay(self) -> float:
        return self.seconds(EFFECT_SETTLE_MS)

    def parse_error_delay(self) -> float:
        return self.seconds(PARSE_ERROR_DELAY_MS)

    def preview_delay(self) -> float:
        return self.seconds(PREVIEW_DELAY_MS)
