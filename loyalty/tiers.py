"""
Tier Table

Ordered tier definitions and the lifetime-points → tier lookup.
Built once at startup and shared by every component that needs a tier.
"""

import json
from bisect import bisect_right
from dataclasses import dataclass, asdict
from typing import Any, Optional, Sequence

from .errors import TierConfigurationError


@dataclass(frozen=True)
class TierDefinition:
    name: str
    threshold: int
    multiplier: float = 1.0
    color: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


DEFAULT_TIERS = (
    TierDefinition("Bronze", 0, 1.0, "#CD7F32"),
    TierDefinition("Silver", 500, 1.25, "#C0C0C0"),
    TierDefinition("Gold", 2000, 1.5, "#FFD700"),
    TierDefinition("Platinum", 5000, 2.0, "#E5E4E2"),
)


class TierTable:
    """
    Immutable, threshold-ordered tier list.

    Thresholds must be non-negative, non-decreasing in declaration order,
    and include 0. When two tiers share a threshold the one declared later
    wins the lookup.
    """

    def __init__(self, tiers: Sequence[TierDefinition] = DEFAULT_TIERS):
        tiers = tuple(tiers)
        if not tiers:
            raise TierConfigurationError("Tier table cannot be empty")

        names = [t.name for t in tiers]
        if len(set(names)) != len(names):
            raise TierConfigurationError(f"Duplicate tier names in {names}")

        for previous, current in zip(tiers, tiers[1:]):
            if current.threshold < previous.threshold:
                raise TierConfigurationError(
                    f"Tier {current.name} ({current.threshold}) is declared after "
                    f"{previous.name} ({previous.threshold}); thresholds must not decrease"
                )

        if tiers[0].threshold != 0:
            raise TierConfigurationError("Tier table must contain a floor tier with threshold 0")

        for tier in tiers:
            if tier.multiplier <= 0:
                raise TierConfigurationError(f"Tier {tier.name} has a non-positive multiplier")

        self._tiers = tiers
        self._thresholds = [t.threshold for t in tiers]
        self._by_name = {t.name: t for t in tiers}

    @classmethod
    def from_json(cls, raw: str) -> "TierTable":
        try:
            data: Any = json.loads(raw)
            tiers = [
                TierDefinition(
                    name=str(item["name"]),
                    threshold=int(item["threshold"]),
                    multiplier=float(item.get("multiplier", 1.0)),
                    color=item.get("color"),
                )
                for item in data
            ]
        except (ValueError, TypeError, KeyError) as e:
            raise TierConfigurationError(f"Invalid tier configuration: {e}") from e
        return cls(tiers)

    @property
    def tiers(self) -> tuple[TierDefinition, ...]:
        return self._tiers

    @property
    def floor(self) -> TierDefinition:
        # Several tiers may share threshold 0; the later one is the effective floor.
        return self.derive(0)

    def derive(self, lifetime_points: int) -> TierDefinition:
        index = bisect_right(self._thresholds, lifetime_points)
        if index == 0:
            return self._tiers[0]
        return self._tiers[index - 1]

    def next_tier(self, lifetime_points: int) -> Optional[TierDefinition]:
        index = bisect_right(self._thresholds, lifetime_points)
        if index >= len(self._tiers):
            return None
        return self.derive(self._tiers[index].threshold)

    def get(self, name: str) -> TierDefinition:
        return self._by_name[name]

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self):
        return iter(self._tiers)

    def __len__(self) -> int:
        return len(self._tiers)
