# readiness.py
"""
Readiness scoring for WHOOP recovery metrics.

rho is a 0-1 estimate of how ready the user is to train today. It feeds the
overload multiplier used for load suggestions and the progression rules
below. Everything in here is pure: no I/O, no exceptions for missing data.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

EXPERIENCE_LEVELS = ("beginner", "intermediate", "advanced")
BEGINNER_MULTIPLIER_CAP = 1.05
STRAIN_PENALTY_THRESHOLD = 14
STRAIN_PENALTY = 0.05

METRIC_FIELDS = (
    "recovery_score",
    "sleep_performance",
    "hrv_now_ms",
    "hrv_baseline_ms",
    "rhr_now_bpm",
    "rhr_baseline_bpm",
    "yesterday_strain",
)


@dataclass
class Readiness:
    rho: float
    flags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {"rho": self.rho, "flags": list(self.flags)}


def clip(value: float, lo: float, hi: float) -> float:
    return min(max(value, lo), hi)


def round_to_increment(value: float, increment: float = 2.5) -> float:
    """Round half-up to the nearest plate increment (7.3 -> 7.5 with 2.5)."""
    return math.floor(value / increment + 0.5) * increment


def _metric(metrics, name) -> Optional[float]:
    if metrics is None:
        return None
    if isinstance(metrics, Mapping):
        value = metrics.get(name)
    else:
        value = getattr(metrics, name, None)
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def calculate_readiness(metrics=None) -> Readiness:
    """
    Combine WHOOP metrics into a readiness score.

    Weights: recovery 40%, sleep 30%, HRV ratio 15%, resting HR ratio 15%.
    Absent recovery/sleep count as 0.5 and absent HRV/RHR pairs as a 1.0
    ratio, so an empty input still yields a neutral score.
    """
    flags: List[str] = []

    recovery_score = _metric(metrics, "recovery_score")
    sleep_performance = _metric(metrics, "sleep_performance")
    recovery = recovery_score / 100 if recovery_score is not None else 0.5
    sleep = sleep_performance / 100 if sleep_performance is not None else 0.5

    hrv_now = _metric(metrics, "hrv_now_ms")
    hrv_baseline = _metric(metrics, "hrv_baseline_ms")
    if hrv_now and hrv_baseline:
        hrv = clip(hrv_now / hrv_baseline, 0.8, 1.2)
    else:
        hrv = 1.0
        flags.append("missing_hrv")

    rhr_now = _metric(metrics, "rhr_now_bpm")
    rhr_baseline = _metric(metrics, "rhr_baseline_bpm")
    if rhr_now and rhr_baseline:
        # lower resting HR than baseline is the good direction
        rhr = clip(rhr_baseline / rhr_now, 0.8, 1.2)
    else:
        rhr = 1.0
        flags.append("missing_rhr")

    rho = clip(0.4 * recovery + 0.3 * sleep + 0.15 * hrv + 0.15 * rhr, 0.0, 1.0)

    strain = _metric(metrics, "yesterday_strain")
    if strain and strain > STRAIN_PENALTY_THRESHOLD:
        rho = max(0.0, rho - STRAIN_PENALTY)
        flags.append("high_strain_yesterday")

    if recovery < 0.6:
        flags.append("low_recovery")
    if sleep < 0.6:
        flags.append("poor_sleep")
    if recovery >= 0.8:
        flags.append("good_recovery")
    if sleep >= 0.8:
        flags.append("good_sleep")

    return Readiness(rho=rho, flags=flags)


def calculate_overload_multiplier(rho: float, experience_level: str = "intermediate") -> float:
    """Map readiness to a load multiplier in [0.9, 1.1]; beginners never exceed 1.05."""
    multiplier = clip(1 + 0.3 * (rho - 0.5), 0.9, 1.1)
    if experience_level == "beginner":
        multiplier = min(multiplier, BEGINNER_MULTIPLIER_CAP)
    return multiplier


def readiness_band(rho: float) -> str:
    if rho > 0.7:
        return "excellent"
    if rho > 0.5:
        return "good"
    return "low"


def _best_set(sets: List[Dict]) -> Dict:
    best = sets[0]
    for candidate in sets[1:]:
        if (candidate.get("volume") or 0) > (best.get("volume") or 0):
            best = candidate
    return best


def calculate_progression_suggestions(
    history: List[Dict],
    rho: float,
    progression_type: str = "adaptive",
    preferences: Optional[Dict] = None,
) -> List[Dict]:
    """
    Suggest the next load per exercise from its recent sessions.

    `history` items look like {"exercise_name": ..., "sessions": [{"sets":
    [{"weight", "reps", "volume"}]}]} with the newest session first.
    """
    preferences = preferences or {}
    results = []

    for exercise in history:
        name = exercise.get("exercise_name")
        sessions = exercise.get("sessions") or []
        suggestions: List[Dict] = []
        plateau = False

        if not sessions:
            results.append({
                "exercise_name": name,
                "suggestions": [{
                    "type": "weight",
                    "current": 0,
                    "suggested": 20,
                    "rationale": "No historical data - starting with conservative weight",
                }],
                "plateau_detected": False,
            })
            continue

        latest_sets = sessions[0].get("sets") or []
        if not latest_sets:
            results.append({"exercise_name": name, "suggestions": [], "plateau_detected": False})
            continue

        best = _best_set(latest_sets)
        if len(sessions) >= 2:
            previous_sets = sessions[1].get("sets") or []
            if previous_sets:
                latest_volume = best.get("volume") or 0
                previous_volume = _best_set(previous_sets).get("volume") or 0
                if latest_volume - previous_volume <= 0.05 * previous_volume:
                    plateau = True

        weight = best.get("weight")
        reps = best.get("reps")
        if weight and reps:
            plateau_note = " (plateau detected - consider deload)" if plateau else ""

            if progression_type == "linear":
                increment = preferences.get("linear_increment") or 2.5
                suggestions.append({
                    "type": "weight",
                    "current": weight,
                    "suggested": weight + increment,
                    "rationale": f"Linear progression: +{increment}kg from last session{plateau_note}",
                    "plateau_detected": plateau,
                })
            elif progression_type == "percentage":
                pct = (preferences.get("percentage_increment") or 2.5) / 100
                suggestions.append({
                    "type": "weight",
                    "current": weight,
                    "suggested": round_to_increment(weight * (1 + pct)),
                    "rationale": f"Percentage progression: +{pct * 100:.1f}% from last session{plateau_note}",
                    "plateau_detected": plateau,
                })
            else:
                if plateau and rho < 0.7:
                    factor = 0.9
                    rationale = "Deload recommended: plateau detected with poor readiness"
                elif plateau:
                    factor = 1.025
                    rationale = "Light progression despite plateau (good readiness allows push)"
                else:
                    factor = 1.05 if rho > 0.7 else 1.0 if rho > 0.5 else 0.975
                    rationale = f"Adaptive progression based on {readiness_band(rho)} readiness"

                model = preferences.get("progression_model") or ("reps" if factor == 1.0 else "weight")
                if model == "weight":
                    suggestions.append({
                        "type": "weight",
                        "current": weight,
                        "suggested": round_to_increment(weight * factor),
                        "rationale": rationale,
                        "plateau_detected": plateau,
                    })
                else:
                    suggestions.append({
                        "type": "reps",
                        "current": reps,
                        "suggested": reps + 1,
                        "rationale": "Volume progression: add 1 rep while maintaining weight",
                        "plateau_detected": plateau,
                    })

        results.append({"exercise_name": name, "suggestions": suggestions, "plateau_detected": plateau})

    return results
