"""
Unit tests for the trend classifier.

Tests window partitioning, truncating averages and the five-way
trend classification.
"""
import warnings

import pytest

from feeder import trend
from feeder.trend import (
    Sample,
    Trend,
    build_profile,
    classify,
    partition_bounds,
    _truncating_div,
)


def make_window(*pairs):
    """Build a most-recent-first window from (fee, revenue) pairs."""
    return [
        Sample(channel_id="1x1x1", fee=fee, revenue=revenue, observed_at=10_000 - i * 100)
        for i, (fee, revenue) in enumerate(pairs)
    ]


class TestPartitionBounds:
    """Tests for present/past index ranges."""

    @pytest.mark.parametrize("length,present,past", [
        (1, [0], [0]),
        (2, [0], [1]),
        (3, [0], [2]),
        (4, [0, 1], [2, 3]),
        (7, [0, 1, 2], [4, 5, 6]),
        (9, [0, 1, 2], [6, 7, 8]),
    ])
    def test_bounds(self, length, present, past):
        bounds = partition_bounds(length)
        assert list(bounds["present"]) == present
        assert list(bounds["past"]) == past

    def test_partitions_never_empty(self):
        for length in range(1, 50):
            bounds = partition_bounds(length)
            assert 0 in bounds["present"]
            assert length - 1 in bounds["past"]


class TestBuildProfile:
    """Tests for build_profile."""

    def test_single_sample_is_insufficient(self):
        assert build_profile(make_window((500, 0))) is None

    def test_empty_window_is_insufficient(self):
        assert build_profile([]) is None

    def test_two_samples(self):
        profile = build_profile(make_window((500, 30), (400, 10)))

        assert profile.present.count == 1
        assert profile.present.fee_avg == 500
        assert profile.past.count == 1
        assert profile.past.fee_avg == 400
        assert profile.overall.count == 2
        assert profile.overall.fee_avg == 450
        assert profile.overall.revenue_avg == 20

    def test_averages_truncate(self):
        profile = build_profile(make_window((10, 1), (11, 2), (11, 2)))

        # 32 / 3 and 5 / 3
        assert profile.overall.fee_avg == 10
        assert profile.overall.revenue_avg == 1

    def test_five_sample_slices(self):
        # L=5: present = [0, 1], past = [3, 4]
        profile = build_profile(make_window((100, 1), (200, 1), (300, 1), (400, 1), (500, 1)))

        assert profile.present.fee_sum == 300
        assert profile.past.fee_sum == 900
        assert profile.overall.fee_sum == 1500

    def test_rising_revenue_and_falling_fee(self):
        profile = build_profile(make_window((100, 900), (200, 500), (300, 100)))

        assert profile.revenue_trend is Trend.RISING
        assert profile.fee_trend is Trend.FALLING

    def test_to_dict(self):
        d = build_profile(make_window((500, 30), (400, 10))).to_dict()

        assert d["present"]["fee_avg"] == 500
        assert d["past"]["revenue_avg"] == 10
        assert d["fee_trend"] == "rising"
        assert d["revenue_trend"] == "rising"


class TestClassify:
    """Tests for classify(past, overall, present)."""

    @pytest.mark.parametrize("past,overall,present,expected", [
        (1, 2, 3, Trend.RISING),
        (3, 2, 1, Trend.FALLING),
        (1, 3, 2, Trend.HUMP),
        (3, 3, 2, Trend.HUMP),
        (3, 1, 2, Trend.DIP),
        (1, 1, 2, Trend.DIP),
        (2, 2, 2, Trend.FLAT),
        (1, 2, 2, Trend.FLAT),
        (3, 2, 2, Trend.FLAT),
        (0, 0, 0, Trend.FLAT),
    ])
    def test_labels(self, past, overall, present, expected):
        assert classify(past, overall, present) is expected


class TestTruncatingDiv:
    """Integer division rounds toward zero."""

    def test_positive(self):
        assert _truncating_div(7, 2) == 3

    def test_negative(self):
        assert _truncating_div(-7, 2) == -3


class TestModuleSource:

    def test_compiles_without_escape_warnings(self):
        with open(trend.__file__, encoding="utf-8") as f:
            source = f.read()

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            compile(source, trend.__file__, "exec")
