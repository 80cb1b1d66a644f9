"""
Unit Tests for the Tier Table
"""

import pytest

from loyalty.errors import TierConfigurationError
from loyalty.tiers import TierDefinition, TierTable


class TestDeriveTier:
    """Tests for lifetime points → tier lookup."""

    @pytest.mark.parametrize("points,expected", [
        (0, "Bronze"),
        (499, "Bronze"),
        (500, "Silver"),
        (1999, "Silver"),
        (2000, "Gold"),
        (4999, "Gold"),
        (5000, "Platinum"),
        (1_000_000, "Platinum"),
    ])
    def test_default_thresholds(self, points, expected):
        """The highest tier whose threshold is reached wins."""
        assert TierTable().derive(points).name == expected

    def test_negative_points_fall_back_to_floor(self):
        """Input below every threshold yields the floor tier."""
        assert TierTable().derive(-1).name == "Bronze"

    def test_duplicate_threshold_prefers_later_declaration(self):
        """Tiers sharing a threshold resolve to the one declared last."""
        table = TierTable([
            TierDefinition("Base", 0),
            TierDefinition("Early", 100),
            TierDefinition("Late", 100),
        ])

        assert table.derive(100).name == "Late"
        assert table.derive(99).name == "Base"
        assert table.next_tier(50).name == "Late"

    def test_next_tier(self):
        """The next tier is the first one above the current lifetime points."""
        table = TierTable()

        assert table.next_tier(0).name == "Silver"
        assert table.next_tier(500).name == "Gold"
        assert table.next_tier(5000) is None

    def test_floor(self):
        """The floor tier has threshold 0."""
        assert TierTable().floor.name == "Bronze"


class TestTierConfiguration:
    """Tests for tier table validation."""

    def test_missing_floor_rejected(self):
        """A table without a 0 threshold is a configuration error."""
        with pytest.raises(TierConfigurationError):
            TierTable([TierDefinition("Silver", 500)])

    def test_decreasing_thresholds_rejected(self):
        """Thresholds must not decrease in declaration order."""
        with pytest.raises(TierConfigurationError):
            TierTable([
                TierDefinition("Bronze", 0),
                TierDefinition("Gold", 2000),
                TierDefinition("Silver", 500),
            ])

    def test_empty_rejected(self):
        """An empty table is a configuration error."""
        with pytest.raises(TierConfigurationError):
            TierTable([])

    def test_duplicate_names_rejected(self):
        """Tier names are unique."""
        with pytest.raises(TierConfigurationError):
            TierTable([TierDefinition("Bronze", 0), TierDefinition("Bronze", 10)])

    def test_from_json(self):
        """A table can be loaded from JSON configuration."""
        table = TierTable.from_json(
            '[{"name": "Member", "threshold": 0}, '
            '{"name": "VIP", "threshold": 1000, "multiplier": 3, "color": "#000"}]'
        )

        assert [t.name for t in table] == ["Member", "VIP"]
        assert table.get("VIP").multiplier == 3.0
        assert table.get("Member").multiplier == 1.0

    def test_from_json_invalid(self):
        """Malformed JSON configuration is reported as a configuration error."""
        with pytest.raises(TierConfigurationError):
            TierTable.from_json('[{"threshold": 0}]')
        with pytest.raises(TierConfigurationError):
            TierTable.from_json("not json")
