"""Completion-rate arithmetic and analytics payload shaping."""

from fractions import Fraction
import math

import pytest

from taskboard.analytics import build_analytics, completion_rate


class TestCompletionRate:

    @pytest.mark.parametrize("assigned, completed, expected", [
        (0, 0, 0),
        (1, 0, 0),
        (1, 1, 100),
        (2, 1, 50),
        (3, 1, 33),
        (3, 2, 67),
        (8, 1, 13),   # 12.5 rounds up
        (8, 3, 38),   # 37.5 rounds up
        (200, 1, 1),  # 0.5 rounds up
        (201, 1, 0),
    ])
    def test_known_values(self, assigned, completed, expected):
        assert completion_rate(assigned, completed) == expected

    def test_matches_half_up_rounding_everywhere(self):
        """Exact comparison against rational arithmetic for every small pair."""
        for assigned in range(1, 60):
            for completed in range(assigned + 1):
                exact = Fraction(100 * completed, assigned)
                assert completion_rate(assigned, completed) == math.floor(exact + Fraction(1, 2))

    def test_empty_set_is_zero(self):
        assert completion_rate(0, 0) == 0


class TestBuildAnalytics:

    def test_payload_shape(self):
        payload = build_analytics(
            {"assigned": 4, "completed": 1},
            [
                {"user_id": 1, "name": "Alice", "assigned": 0, "completed": 0},
                {"user_id": 2, "name": "Bob", "assigned": 4, "completed": 1},
            ],
        )
        assert payload["totals"] == {"assigned": 4, "completed": 1, "completion_rate": 25}
        assert payload["perUser"] == [
            {"user_id": 1, "name": "Alice", "assigned": 0, "completed": 0, "completion_rate": 0},
            {"user_id": 2, "name": "Bob", "assigned": 4, "completed": 1, "completion_rate": 25},
        ]

    def test_does_not_mutate_input_rows(self):
        rows = [{"user_id": 1, "name": "Alice", "assigned": 2, "completed": 2}]
        build_analytics({"assigned": 2, "completed": 2}, rows)
        assert "completion_rate" not in rows[0]
