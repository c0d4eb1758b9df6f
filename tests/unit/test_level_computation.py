"""Level computation tests. Thresholds MUST match the client's level bar."""

from readtrack.gamification.levels import (
    MAX_LEVEL,
    MAX_XP,
    add_xp,
    calculate_level,
    compute_level,
    level_title,
    xp_for_level,
)


class TestLevelComputation:
    def test_level_1_at_zero_xp(self):
        result = compute_level(0)
        assert result["level"] == 1
        assert result["title"] == "Page Turner"

    def test_boundary_99_xp(self):
        assert calculate_level(99) == 1

    def test_level_2_at_100_xp(self):
        assert calculate_level(100) == 2

    def test_level_3_at_400_xp(self):
        assert calculate_level(399) == 2
        assert calculate_level(400) == 3

    def test_thresholds_roundtrip(self):
        for level in (2, 5, 10, 37, 99):
            assert calculate_level(xp_for_level(level)) == level
            assert calculate_level(xp_for_level(level) - 1) == level - 1

    def test_capped_at_max_level(self):
        assert calculate_level(MAX_XP) == MAX_LEVEL

    def test_negative_xp_counts_as_zero(self):
        assert calculate_level(-50) == 1

    def test_progress_within_level(self):
        result = compute_level(550)
        assert result["level"] == 3
        assert result["xp_into_level"] == 150
        assert result["xp_for_level"] == 500
        assert result["next_level"] == 4

    def test_max_level_has_no_division_by_zero(self):
        result = compute_level(MAX_XP)
        assert result["next_level"] == MAX_LEVEL
        assert result["xp_for_level"] >= 1


class TestTitles:
    def test_titles_follow_min_level(self):
        assert level_title(4) == "Casual Reader"
        assert level_title(10) == "Binge Reader"
        assert level_title(100) == "Omniscient Reader"


class TestAddXp:
    def test_adds(self):
        assert add_xp(10, 6) == 16

    def test_never_decreases(self):
        assert add_xp(10, -5) == 10

    def test_overflow_clamped(self):
        assert add_xp(MAX_XP - 1, 100) == MAX_XP
