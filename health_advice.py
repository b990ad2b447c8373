# health_advice.py
"""
Readiness-based load advice for a planned session.

The numbers are deterministic: readiness and overload come from
readiness.py, per-set loads from the last logged session and the
progression rules. OpenAI only rewrites the summary line when a key is
configured; without it (or on any failure) the computed summary stands.
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from openai import OpenAI

import config
from readiness import (
    calculate_overload_multiplier,
    calculate_progression_suggestions,
    calculate_readiness,
    readiness_band,
    round_to_increment,
)

logger = logging.getLogger(__name__)

UNSAFE_READINESS = 0.35
DEFAULT_SET_COUNT = 3
DEFAULT_WEIGHT_KG = 20
DEFAULT_REPS = 8

DEFAULT_METRICS = {
    "recovery_score": 50,
    "sleep_performance": 75,
    "hrv_now_ms": 40,
    "hrv_baseline_ms": 40,
    "rhr_now_bpm": 60,
    "rhr_baseline_bpm": 60,
    "yesterday_strain": 10,
}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _by_band(rho, excellent, good, low):
    band = readiness_band(rho)
    return excellent if band == "excellent" else good if band == "good" else low


def load_stored_metrics(db, user_id, days=2) -> Optional[Dict]:
    """Latest recovery and sleep rows for the user from the last `days` days."""
    since = datetime.now(timezone.utc) - timedelta(days=days)
    recovery = db.execute(
        """
        SELECT * FROM whoop_recovery WHERE user_id = ? AND date >= ?
        ORDER BY date DESC, id DESC LIMIT 1
        """,
        (str(user_id), since.date().isoformat()),
    ).fetchone()
    sleep = db.execute(
        """
        SELECT * FROM whoop_sleep WHERE user_id = ? AND start >= ?
        ORDER BY start DESC, id DESC LIMIT 1
        """,
        (str(user_id), since.isoformat()),
    ).fetchone()

    if not recovery and not sleep:
        return None

    metrics = {}
    if recovery:
        metrics.update({
            "recovery_score": recovery["recovery_score"],
            "hrv_now_ms": recovery["hrv_rmssd_milli"],
            "hrv_baseline_ms": recovery["hrv_rmssd_baseline"],
            "rhr_now_bpm": recovery["resting_heart_rate"],
            "rhr_baseline_bpm": recovery["resting_heart_rate_baseline"],
        })
    if sleep:
        metrics["sleep_performance"] = sleep["sleep_performance_percentage"]
    return {k: v for k, v in metrics.items() if v is not None}


def resolve_metrics(request_metrics: Optional[Dict], stored: Optional[Dict]) -> Dict:
    """Stored WHOOP data wins over request data, which wins over the defaults."""
    metrics = dict(DEFAULT_METRICS)
    metrics.update({k: v for k, v in (request_metrics or {}).items() if v is not None})
    metrics.update(stored or {})
    return metrics


def load_exercise_history(db, user_id, exercise_names: List[str], exclude_session_id=None,
                          sessions_per_exercise=2) -> List[Dict]:
    if not exercise_names:
        return []
    placeholders = ",".join("?" for _ in exercise_names)
    params = [str(user_id), *exercise_names]
    query = f"""
        SELECT session_id, exercise_name, weight, reps, workout_date
        FROM session_exercises
        WHERE user_id = ? AND exercise_name IN ({placeholders})
    """
    if exclude_session_id is not None:
        query += " AND session_id != ?"
        params.append(exclude_session_id)
    query += " ORDER BY workout_date DESC, session_id DESC, set_order ASC"

    history: Dict[str, List[Dict]] = {}
    for row in db.execute(query, params).fetchall():
        sessions = history.setdefault(row["exercise_name"], [])
        session = next((s for s in sessions if s["session_id"] == row["session_id"]), None)
        if session is None:
            if len(sessions) >= sessions_per_exercise:
                continue
            session = {"session_id": row["session_id"], "workout_date": row["workout_date"], "sets": []}
            sessions.append(session)
        weight, reps = row["weight"], row["reps"]
        session["sets"].append({
            "weight": weight,
            "reps": reps,
            "volume": weight * reps if weight and reps else None,
        })

    return [{"exercise_name": name, "sessions": sessions} for name, sessions in history.items()]


def with_volumes(history: List[Dict]) -> List[Dict]:
    """Fill in set volume (weight x reps) where the client left it out."""
    for exercise in history:
        for session in exercise.get("sessions") or []:
            for entry in session.get("sets") or []:
                if entry.get("volume") is None and entry.get("weight") and entry.get("reps"):
                    entry["volume"] = entry["weight"] * entry["reps"]
    return history


def _find(items, exercise, key):
    names = {exercise.get("name"), exercise.get("exercise_id")}
    return next((item for item in items if item.get(key) in names), None)


def _exercise_advice(exercise: Dict, rho: float, multiplier: float, history: List[Dict],
                     suggestions: List[Dict]) -> Dict:
    set_count = len(exercise.get("sets") or []) or DEFAULT_SET_COUNT
    exercise_history = _find(history, exercise, "exercise_name")
    suggestion = _find(suggestions, exercise, "exercise_name")

    base_weight, base_reps = DEFAULT_WEIGHT_KG, DEFAULT_REPS
    latest_sets = []
    if exercise_history and exercise_history.get("sessions"):
        latest_sets = exercise_history["sessions"][0].get("sets") or []
        if latest_sets:
            heaviest = max(latest_sets, key=lambda s: s.get("weight") or 0)
            base_weight = heaviest.get("weight") or base_weight
            base_reps = heaviest.get("reps") or base_reps

    plateau = False
    if suggestion and suggestion["suggestions"]:
        weight_hint = next((s for s in suggestion["suggestions"] if s["type"] == "weight"), None)
        reps_hint = next((s for s in suggestion["suggestions"] if s["type"] == "reps"), None)
        target_weight = weight_hint["suggested"] if weight_hint else base_weight
        target_reps = reps_hint["suggested"] if reps_hint else base_reps
        plateau = suggestion["plateau_detected"]
        lead = suggestion["suggestions"][0]["rationale"]
    else:
        target_weight = round_to_increment(base_weight * multiplier)
        target_reps = _round_half_up(base_reps * multiplier)
        lead = None

    base_rest = _by_band(rho, 120, 150, 180)
    planned_ids = [s.get("set_id") for s in exercise.get("sets") or []]
    sets = []
    for index in range(set_count):
        fatigue = 1 if index == 0 else 1 - 0.05 * index
        rest = base_rest + 15 * index

        if lead:
            rationale = f"Set {index + 1}: {lead}"
            if plateau:
                rationale += " [Plateau Alert]"
            if index > 0:
                rationale += f" with {_round_half_up((1 - fatigue) * 100)}% fatigue adjustment"
        elif latest_sets:
            rationale = (f"Set {index + 1}: Based on last session performance ({base_weight}kg x {base_reps}) "
                         f"with {_by_band(rho, 'good', 'moderate', 'low')} readiness")
            if index > 0:
                rationale += f" and {_round_half_up((1 - fatigue) * 100)}% fatigue adjustment"
        else:
            rationale = f"Set {index + 1}: Conservative estimate with readiness adjustment"
            if index > 0:
                rationale += " and fatigue consideration"
        rationale += f". Rest {_round_half_up(rest / 60)} minutes."

        set_id = planned_ids[index] if index < len(planned_ids) and planned_ids[index] else \
            f"{exercise.get('exercise_id')}_{index + 1}"
        sets.append({
            "set_id": set_id,
            "suggested_weight_kg": round_to_increment(target_weight * fatigue),
            "suggested_reps": max(1, _round_half_up(target_reps * fatigue)),
            "suggested_rest_seconds": rest,
            "rationale": rationale,
        })

    best_volume = sum(s.get("volume") or 0 for s in latest_sets)
    return {
        "exercise_id": exercise.get("exercise_id"),
        "name": exercise.get("name") or exercise.get("exercise_id"),
        "predicted_chance_to_beat_best": _by_band(rho, 0.8, 0.6, 0.4),
        "planned_volume_kg": None,
        "best_volume_kg": best_volume or None,
        "plateau_detected": plateau,
        "sets": sets,
    }


def build_health_advice(request: Dict, metrics: Dict, history: Optional[List[Dict]] = None) -> Dict:
    """
    Compute the advice document for one session.

    `request` is a validated HealthAdviceRequest dumped to a dict; `metrics`
    the already-resolved WHOOP metrics.
    """
    readiness = calculate_readiness(metrics)
    rho = readiness.rho
    experience = (request.get("user_profile") or {}).get("experience_level", "intermediate")
    multiplier = calculate_overload_multiplier(rho, experience)

    if rho < UNSAFE_READINESS:
        logger.info("health_advice_unsafe session_id=%s rho=%.3f", request.get("session_id"), rho)
        return {
            "session_id": request.get("session_id"),
            "readiness": {"rho": rho, "overload_multiplier": 1.0, "flags": readiness.flags + ["unsafe_readiness"]},
            "per_exercise": [],
            "session_predicted_chance": 0.3,
            "summary": "Your recovery metrics suggest taking it easy today. Stick to your planned loads.",
            "warnings": ["Low readiness detected - no overload recommended"],
        }

    history = with_volumes(history or [])
    progression_type = request.get("progression_type") or "adaptive"
    suggestions = []
    if history:
        suggestions = calculate_progression_suggestions(history, rho, progression_type, {
            "linear_increment": request.get("linear_increment"),
            "percentage_increment": request.get("percentage_increment"),
        })

    exercises = (request.get("workout_plan") or {}).get("exercises") or []
    per_exercise = [_exercise_advice(ex, rho, multiplier, history, suggestions) for ex in exercises]

    total_sets = sum(len(ex["sets"]) for ex in per_exercise)
    base_rest = _by_band(rho, 120, 150, 180)
    session_minutes = _round_half_up((total_sets * base_rest + 60 * total_sets) / 60)

    plateaus = sum(1 for s in suggestions if s["plateau_detected"])
    warnings = []
    if plateaus:
        warnings.append(f"Plateau detected in {plateaus} exercise{'s' if plateaus > 1 else ''} "
                        f"- consider deload or variation")

    if progression_type == "linear":
        progression_note = f"Using linear progression (+{request.get('linear_increment') or 2.5}kg per session)"
    elif progression_type == "percentage":
        progression_note = f"Using percentage progression (+{request.get('percentage_increment') or 2.5}% per session)"
    else:
        progression_note = "Using adaptive progression based on readiness and performance"

    summary = (f"Load recommendations based on readiness ({_round_half_up(rho * 100)}%) and "
               f"{'historical performance data' if history else 'conservative estimates'}. "
               f"{progression_note}. Allow {session_minutes} minutes for this session.")

    return {
        "session_id": request.get("session_id"),
        "readiness": {"rho": rho, "overload_multiplier": multiplier, "flags": readiness.flags},
        "per_exercise": per_exercise,
        "session_predicted_chance": _by_band(rho, 0.75, 0.6, 0.45),
        "summary": summary,
        "warnings": warnings,
        "recovery_recommendations": {
            "recommended_rest_between_sets": f"{_round_half_up(base_rest / 60)} minutes for strength exercises",
            "recommended_rest_between_sessions": _by_band(rho, "24-48 hours", "48-72 hours",
                                                          "72+ hours for full recovery"),
            "session_duration_estimate": f"{session_minutes} minutes",
        },
    }


def generate_coach_summary(advice: Dict) -> Optional[str]:
    """Ask OpenAI for a short coaching summary; None when unavailable."""
    api_key = config.openai_api_key()
    if not api_key:
        return None

    exercises = ", ".join(
        f"{ex['name']} {ex['sets'][0]['suggested_weight_kg']}kg x {ex['sets'][0]['suggested_reps']}"
        for ex in advice["per_exercise"] if ex["sets"]
    ) or "no exercises planned"
    prompt = f"""
    Write a two-sentence coaching summary for today's strength session.

    Readiness: {round(advice['readiness']['rho'] * 100)}%
    Flags: {', '.join(advice['readiness']['flags']) or 'none'}
    Load multiplier: {advice['readiness']['overload_multiplier']:.2f}
    First-set targets: {exercises}
    Warnings: {'; '.join(advice['warnings']) or 'none'}

    Do not change the numbers. Plain text only.
    """

    try:
        client = OpenAI(api_key=api_key)
        completion = client.chat.completions.create(
            model=config.openai_model(),
            messages=[{"role": "user", "content": prompt}],
            temperature=0.7,
            max_tokens=200,
        )
        text = (completion.choices[0].message.content or "").strip()
        return text or None
    except Exception as e:
        logger.warning("coach_summary_failed error=%s", e)
        return None


def with_coach_summary(advice: Dict) -> Dict:
    if not advice["per_exercise"]:
        return advice
    if not config.openai_api_key():
        advice["warnings"].append("AI coach not configured - using calculated summary")
        return advice

    summary = generate_coach_summary(advice)
    if summary:
        advice["summary"] = summary
    else:
        advice["warnings"].append("AI coach unavailable - using calculated summary")
    return advice
