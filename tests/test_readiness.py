import pytest

from readiness import (
    calculate_overload_multiplier,
    calculate_progression_suggestions,
    calculate_readiness,
    clip,
    readiness_band,
    round_to_increment,
)


def test_neutral_score_when_nothing_is_known():
    """No metrics at all still produces a score instead of an error."""
    result = calculate_readiness({})
    assert result.rho == pytest.approx(0.65)
    assert "missing_hrv" in result.flags
    assert "missing_rhr" in result.flags
    assert calculate_readiness(None).rho == pytest.approx(0.65)


def test_good_day_scores_high():
    result = calculate_readiness({
        "recovery_score": 80,
        "sleep_performance": 90,
        "hrv_now_ms": 50,
        "hrv_baseline_ms": 40,
        "rhr_now_bpm": 55,
        "rhr_baseline_bpm": 60,
    })
    expected = 0.4 * 0.8 + 0.3 * 0.9 + 0.15 * 1.2 + 0.15 * (60 / 55)
    assert result.rho == pytest.approx(expected)
    assert result.flags == ["good_recovery", "good_sleep"]


def test_score_is_clipped_to_one():
    result = calculate_readiness({
        "recovery_score": 100,
        "sleep_performance": 100,
        "hrv_now_ms": 100,
        "hrv_baseline_ms": 40,
        "rhr_now_bpm": 40,
        "rhr_baseline_bpm": 60,
    })
    assert result.rho == 1.0


def test_high_strain_lowers_score():
    metrics = {
        "recovery_score": 10,
        "sleep_performance": 10,
        "hrv_now_ms": 20,
        "hrv_baseline_ms": 40,
        "rhr_now_bpm": 80,
        "rhr_baseline_bpm": 60,
    }
    rested = calculate_readiness(metrics)
    strained = calculate_readiness(dict(metrics, yesterday_strain=18))

    assert rested.rho == pytest.approx(0.31)
    assert strained.rho == pytest.approx(0.26)
    assert "high_strain_yesterday" in strained.flags
    assert "low_recovery" in strained.flags
    assert "poor_sleep" in strained.flags


def test_zero_baseline_counts_as_missing():
    result = calculate_readiness({"hrv_now_ms": 50, "hrv_baseline_ms": 0})
    assert "missing_hrv" in result.flags


def test_score_always_in_unit_interval():
    cases = [
        {"recovery_score": 0, "sleep_performance": 0, "yesterday_strain": 21},
        {"recovery_score": 100, "sleep_performance": 100, "yesterday_strain": 0},
        {"hrv_now_ms": 1, "hrv_baseline_ms": 500, "rhr_now_bpm": 200, "rhr_baseline_bpm": 30},
    ]
    for metrics in cases:
        assert 0.0 <= calculate_readiness(metrics).rho <= 1.0


@pytest.mark.parametrize("rho, level, expected", [
    (0.5, "intermediate", 1.0),
    (0.7, "intermediate", 1.06),
    (1.0, "advanced", 1.1),
    (0.0, "advanced", 0.9),
    (1.0, "beginner", 1.05),
    (0.0, "beginner", 0.9),
])
def test_overload_multiplier(rho, level, expected):
    assert calculate_overload_multiplier(rho, level) == pytest.approx(expected)


@pytest.mark.parametrize("rho", [i / 20 for i in range(-20, 41)])
def test_beginner_multiplier_is_capped(rho):
    multiplier = calculate_overload_multiplier(rho, "beginner")
    assert 0.9 <= multiplier <= 1.05


def test_helpers():
    assert clip(5, 0, 1) == 1
    assert clip(-5, 0, 1) == 0
    assert round_to_increment(7.3) == 7.5
    assert round_to_increment(6.2) == 5.0
    assert round_to_increment(8.75) == 10.0
    assert readiness_band(0.8) == "excellent"
    assert readiness_band(0.6) == "good"
    assert readiness_band(0.5) == "low"


def _history(latest, previous=None):
    sessions = [{"sets": [latest]}]
    if previous:
        sessions.append({"sets": [previous]})
    return [{"exercise_name": "Bench Press", "sessions": sessions}]


STALLED = _history({"weight": 100, "reps": 5, "volume": 500}, {"weight": 100, "reps": 5, "volume": 500})
IMPROVING = _history({"weight": 100, "reps": 5, "volume": 500}, {"weight": 90, "reps": 5, "volume": 450})


class TestProgressionSuggestions:
    def test_no_history_starts_conservative(self):
        result = calculate_progression_suggestions([{"exercise_name": "Squat", "sessions": []}], 0.7)
        assert result[0]["suggestions"][0]["suggested"] == 20

    def test_plateau_with_good_readiness_pushes_lightly(self):
        result = calculate_progression_suggestions(STALLED, 0.8)[0]
        assert result["plateau_detected"] is True
        assert result["suggestions"][0]["suggested"] == 102.5

    def test_plateau_with_poor_readiness_deloads(self):
        result = calculate_progression_suggestions(STALLED, 0.6)[0]
        assert result["suggestions"][0]["suggested"] == 90.0
        assert "Deload" in result["suggestions"][0]["rationale"]

    def test_adaptive_by_readiness(self):
        assert calculate_progression_suggestions(IMPROVING, 0.8)[0]["suggestions"][0]["suggested"] == 105.0
        assert calculate_progression_suggestions(IMPROVING, 0.4)[0]["suggestions"][0]["suggested"] == 97.5

    def test_neutral_readiness_adds_a_rep(self):
        suggestion = calculate_progression_suggestions(IMPROVING, 0.6)[0]["suggestions"][0]
        assert suggestion["type"] == "reps"
        assert suggestion["suggested"] == 6

    def test_linear_and_percentage(self):
        linear = calculate_progression_suggestions(IMPROVING, 0.6, "linear", {"linear_increment": 5})
        assert linear[0]["suggestions"][0]["suggested"] == 105
        pct = calculate_progression_suggestions(IMPROVING, 0.6, "percentage")
        assert pct[0]["suggestions"][0]["suggested"] == 102.5

    def test_session_without_sets_gives_nothing(self):
        result = calculate_progression_suggestions([{"exercise_name": "Row", "sessions": [{"sets": []}]}], 0.8)
        assert result[0]["suggestions"] == []
