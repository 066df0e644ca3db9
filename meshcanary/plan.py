"""Rollout plan: validated, immutable stage list plus gating parameters."""
import re
from dataclasses import dataclass
from typing import Iterable, Sequence, Tuple, Union

from meshcanary.errors import PlanValidationError

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


@dataclass(frozen=True)
class WeightPair:
    stable: int
    canary: int

    def __post_init__(self):
        for name in ("stable", "canary"):
            v = getattr(self, name)
            # bool is an int subclass; reject it explicitly
            if isinstance(v, bool) or not isinstance(v, int):
                raise PlanValidationError(f"{name} weight must be an integer, got {v!r}")
            if not 0 <= v <= 100:
                raise PlanValidationError(f"{name} weight {v} outside [0, 100]")
        if self.stable + self.canary != 100:
            raise PlanValidationError(
                f"weights {self.stable}/{self.canary} sum to {self.stable + self.canary}, not 100")

    @classmethod
    def parse(cls, raw) -> "WeightPair":
        """Accept ``"90:10"``, ``[90, 10]`` or ``{"stable": 90, "canary": 10}``."""
        if isinstance(raw, WeightPair):
            return raw
        if isinstance(raw, str):
            parts = raw.replace("/", ":").split(":")
            if len(parts) != 2:
                raise PlanValidationError(f"cannot parse weight pair {raw!r}")
            try:
                return cls(int(parts[0].strip()), int(parts[1].strip()))
            except ValueError:
                raise PlanValidationError(f"cannot parse weight pair {raw!r}") from None
        if isinstance(raw, dict):
            try:
                return cls(raw["stable"], raw["canary"])
            except KeyError as e:
                raise PlanValidationError(f"weight pair {raw!r} missing {e.args[0]!r}") from None
        if isinstance(raw, (list, tuple)) and len(raw) == 2:
            return cls(raw[0], raw[1])
        raise PlanValidationError(f"cannot parse weight pair {raw!r}")

    def __str__(self):
        return f"{self.stable}/{self.canary}"


ROLLBACK = WeightPair(100, 0)


def parse_duration(value: Union[int, float, str]) -> float:
    """Seconds from a number or a Prometheus-style duration (``90s``, ``2m``, ``1m30s``)."""
    if isinstance(value, bool):
        raise PlanValidationError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    pos, total = 0, 0.0
    for m in _DURATION_PART.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
        pos = m.end()
    if pos == 0 or pos != len(text):
        raise PlanValidationError(f"invalid duration {value!r}")
    return total


def parse_stages(raw: Iterable) -> Tuple[WeightPair, ...]:
    if isinstance(raw, str):
        raw = [s for s in raw.split(",") if s.strip()]
    stages = []
    for i, item in enumerate(raw):
        try:
            stages.append(WeightPair.parse(item))
        except PlanValidationError as e:
            raise PlanValidationError(f"stage {i}: {e}") from None
    return tuple(stages)


@dataclass(frozen=True)
class RolloutPlan:
    route: str
    stable_revision: str
    canary_revision: str
    stages: Tuple[WeightPair, ...]
    error_threshold: float
    poll_interval: float = 30.0
    metric_window: float = 60.0

    def __post_init__(self):
        # freeze whatever sequence the caller handed in
        object.__setattr__(self, "stages", parse_stages(self.stages))
        self.validate()

    def validate(self):
        if not self.route:
            raise PlanValidationError("route name is required")
        if not self.stable_revision or not self.canary_revision:
            raise PlanValidationError("stable and canary revision labels are required")
        if self.stable_revision == self.canary_revision:
            raise PlanValidationError(
                f"stable and canary revision are both {self.stable_revision!r}")
        if not self.stages:
            raise PlanValidationError("plan needs at least one stage")
        for i in range(1, len(self.stages)):
            prev, cur = self.stages[i - 1], self.stages[i]
            if cur.canary < prev.canary:
                raise PlanValidationError(
                    f"stage {i} lowers canary weight {prev.canary} -> {cur.canary}")
        if isinstance(self.error_threshold, bool) or not isinstance(self.error_threshold, (int, float)):
            raise PlanValidationError(f"error threshold must be a number, got {self.error_threshold!r}")
        if not 0.0 < self.error_threshold < 1.0:
            raise PlanValidationError(
                f"error threshold {self.error_threshold} must be strictly between 0 and 1")
        if self.poll_interval <= 0:
            raise PlanValidationError(f"poll interval must be positive, got {self.poll_interval}")
        if self.metric_window <= 0:
            raise PlanValidationError(f"metric window must be positive, got {self.metric_window}")

    @property
    def last_index(self) -> int:
        return len(self.stages) - 1

    @property
    def final(self) -> WeightPair:
        return self.stages[-1]


def nearest_stage(stages: Sequence[WeightPair], live: WeightPair) -> int:
    """Index of the stage closest to the live split.

    Exact matches win (the highest such index, so a resumed run does not
    replay stages it already passed). Otherwise the stage with the smallest
    canary-weight distance wins, ties going to the lower canary weight.
    """
    exact = [i for i, s in enumerate(stages) if s == live]
    if exact:
        return exact[-1]
    return min(range(len(stages)), key=lambda i: (abs(stages[i].canary - live.canary), i))
