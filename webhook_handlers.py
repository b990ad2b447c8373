# webhook_handlers.py
"""Processing of verified WHOOP webhook events into local tables."""

import json
import logging
from datetime import datetime, timezone

import sse_broadcast
import whoop_client

logger = logging.getLogger(__name__)


def _now_iso():
    return datetime.now(timezone.utc).isoformat()


def _json_or_none(value):
    return json.dumps(value) if value else None


def _date_part(timestamp):
    if timestamp and "T" in timestamp:
        return timestamp.split("T")[0]
    return datetime.now(timezone.utc).date().isoformat()


def resolve_user_id(db, whoop_user_id):
    """Map a WHOOP user id to our user id; the WHOOP test user gets a placeholder."""
    if whoop_client.is_test_user(whoop_user_id):
        return whoop_client.TEST_DB_USER_ID
    integration = whoop_client.get_active_integration(db, whoop_user_id)
    if integration:
        return integration["user_id"]
    return str(whoop_user_id)


def process_workout_update(db, payload):
    workout_id = str(payload.id)
    user_id = resolve_user_id(db, payload.user_id)
    test_mode = whoop_client.is_test_user(payload.user_id)

    workout = whoop_client.fetch_workout(db, workout_id, payload.user_id)
    if not workout:
        logger.error("webhook_workout_unavailable workout_id=%s", workout_id)
        return
    required = ("start", "end", "sport_name", "score_state")
    if not isinstance(workout, dict) or any(not isinstance(workout.get(k), str) for k in required):
        logger.error("webhook_workout_invalid workout_id=%s", workout_id)
        return

    db.execute(
        """
        INSERT INTO external_workouts_whoop
            (user_id, whoop_workout_id, start, end, timezone_offset, sport_name,
             score_state, score, during, zone_duration, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(whoop_workout_id) DO UPDATE SET
            start = excluded.start,
            end = excluded.end,
            timezone_offset = excluded.timezone_offset,
            sport_name = excluded.sport_name,
            score_state = excluded.score_state,
            score = excluded.score,
            during = excluded.during,
            zone_duration = excluded.zone_duration,
            updated_at = excluded.updated_at
        """,
        (
            user_id, workout_id, workout["start"], workout["end"], workout.get("timezone_offset"),
            workout["sport_name"], workout["score_state"], _json_or_none(workout.get("score")),
            _json_or_none(workout.get("during")), _json_or_none(workout.get("zone_duration")), _now_iso(),
        ),
    )
    db.commit()
    logger.info("webhook_workout_stored workout_id=%s user_id=%s test_mode=%s", workout_id, user_id, test_mode)

    if test_mode:
        return
    try:
        sse_broadcast.broadcast_workout_update(user_id, {
            "id": workout_id,
            "type": payload.type,
            "sport_name": workout["sport_name"],
            "start": workout["start"],
            "end": workout["end"],
        })
    except Exception as e:
        logger.error("webhook_broadcast_failed workout_id=%s error=%s", workout_id, e)


def process_recovery_update(db, payload):
    recovery_id = str(payload.id)
    user_id = resolve_user_id(db, payload.user_id)
    recovery = whoop_client.fetch_whoop_data(db, "recovery", recovery_id, payload.user_id)
    if not recovery:
        logger.error("webhook_recovery_unavailable recovery_id=%s", recovery_id)
        return

    score = recovery.get("score") or {}
    db.execute(
        """
        INSERT INTO whoop_recovery
            (user_id, whoop_recovery_id, cycle_id, date, recovery_score, hrv_rmssd_milli,
             hrv_rmssd_baseline, resting_heart_rate, resting_heart_rate_baseline, raw_data, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(whoop_recovery_id) DO UPDATE SET
            cycle_id = excluded.cycle_id,
            date = excluded.date,
            recovery_score = excluded.recovery_score,
            hrv_rmssd_milli = excluded.hrv_rmssd_milli,
            hrv_rmssd_baseline = excluded.hrv_rmssd_baseline,
            resting_heart_rate = excluded.resting_heart_rate,
            resting_heart_rate_baseline = excluded.resting_heart_rate_baseline,
            raw_data = excluded.raw_data,
            updated_at = excluded.updated_at
        """,
        (
            user_id, recovery_id, recovery.get("cycle_id"), _date_part(recovery.get("created_at")),
            score.get("recovery_score"), score.get("hrv_rmssd_milli"), score.get("hrv_baseline"),
            score.get("resting_heart_rate"), score.get("hr_baseline"), json.dumps(recovery), _now_iso(),
        ),
    )
    db.commit()
    logger.info("webhook_recovery_stored recovery_id=%s user_id=%s", recovery_id, user_id)


def process_sleep_update(db, payload):
    sleep_id = str(payload.id)
    user_id = resolve_user_id(db, payload.user_id)
    sleep = whoop_client.fetch_whoop_data(db, "sleep", sleep_id, payload.user_id)
    if not sleep:
        logger.error("webhook_sleep_unavailable sleep_id=%s", sleep_id)
        return

    score = sleep.get("score") or {}
    stages = score.get("stage_summary") or {}
    db.execute(
        """
        INSERT INTO whoop_sleep
            (user_id, whoop_sleep_id, start, end, timezone_offset, sleep_performance_percentage,
             total_sleep_time_milli, sleep_efficiency_percentage, slow_wave_sleep_time_milli,
             rem_sleep_time_milli, light_sleep_time_milli, wake_time_milli, disturbance_count,
             raw_data, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(whoop_sleep_id) DO UPDATE SET
            start = excluded.start,
            end = excluded.end,
            timezone_offset = excluded.timezone_offset,
            sleep_performance_percentage = excluded.sleep_performance_percentage,
            total_sleep_time_milli = excluded.total_sleep_time_milli,
            sleep_efficiency_percentage = excluded.sleep_efficiency_percentage,
            slow_wave_sleep_time_milli = excluded.slow_wave_sleep_time_milli,
            rem_sleep_time_milli = excluded.rem_sleep_time_milli,
            light_sleep_time_milli = excluded.light_sleep_time_milli,
            wake_time_milli = excluded.wake_time_milli,
            disturbance_count = excluded.disturbance_count,
            raw_data = excluded.raw_data,
            updated_at = excluded.updated_at
        """,
        (
            user_id, sleep_id, sleep.get("start"), sleep.get("end"), sleep.get("timezone_offset"),
            score.get("sleep_performance_percentage"), stages.get("total_in_bed_time_milli"),
            score.get("sleep_efficiency_percentage"), stages.get("total_slow_wave_sleep_time_milli"),
            stages.get("total_rem_sleep_time_milli"), stages.get("total_light_sleep_time_milli"),
            stages.get("total_awake_time_milli"), stages.get("disturbance_count"),
            json.dumps(sleep), _now_iso(),
        ),
    )
    db.commit()
    logger.info("webhook_sleep_stored sleep_id=%s user_id=%s", sleep_id, user_id)


def process_cycle_update(db, payload):
    cycle_id = str(payload.id)
    user_id = resolve_user_id(db, payload.user_id)
    cycle = whoop_client.fetch_whoop_data(db, "cycle", cycle_id, payload.user_id)
    if not cycle:
        logger.error("webhook_cycle_unavailable cycle_id=%s", cycle_id)
        return

    score = cycle.get("score") or {}
    db.execute(
        """
        INSERT INTO whoop_cycles
            (user_id, whoop_cycle_id, start, end, timezone_offset, day_strain,
             average_heart_rate, max_heart_rate, kilojoule, raw_data, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(whoop_cycle_id) DO UPDATE SET
            start = excluded.start,
            end = excluded.end,
            timezone_offset = excluded.timezone_offset,
            day_strain = excluded.day_strain,
            average_heart_rate = excluded.average_heart_rate,
            max_heart_rate = excluded.max_heart_rate,
            kilojoule = excluded.kilojoule,
            raw_data = excluded.raw_data,
            updated_at = excluded.updated_at
        """,
        (
            user_id, cycle_id, cycle.get("start"), cycle.get("end"), cycle.get("timezone_offset"),
            score.get("strain"), score.get("average_heart_rate"), score.get("max_heart_rate"),
            score.get("kilojoule"), json.dumps(cycle), _now_iso(),
        ),
    )
    db.commit()
    logger.info("webhook_cycle_stored cycle_id=%s user_id=%s", cycle_id, user_id)


def process_body_measurement_update(db, payload):
    measurement_id = str(payload.id)
    user_id = resolve_user_id(db, payload.user_id)
    measurement = whoop_client.fetch_whoop_data(db, "body_measurement", measurement_id, payload.user_id)
    if not measurement:
        logger.error("webhook_measurement_unavailable measurement_id=%s", measurement_id)
        return

    db.execute(
        """
        INSERT INTO whoop_body_measurement
            (user_id, whoop_measurement_id, height_meter, weight_kilogram, max_heart_rate,
             measurement_date, raw_data, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(whoop_measurement_id) DO UPDATE SET
            height_meter = excluded.height_meter,
            weight_kilogram = excluded.weight_kilogram,
            max_heart_rate = excluded.max_heart_rate,
            measurement_date = excluded.measurement_date,
            raw_data = excluded.raw_data,
            updated_at = excluded.updated_at
        """,
        (
            user_id, measurement_id, measurement.get("height_meter"), measurement.get("weight_kilogram"),
            measurement.get("max_heart_rate"), _date_part(measurement.get("created_at")),
            json.dumps(measurement), _now_iso(),
        ),
    )
    db.commit()
    logger.info("webhook_measurement_stored measurement_id=%s user_id=%s", measurement_id, user_id)


def process_profile_update(db, payload):
    logger.info("webhook_profile_update whoop_user_id=%s entity_id=%s", payload.user_id, payload.id)


HANDLERS = {
    "workout.updated": process_workout_update,
    "recovery.updated": process_recovery_update,
    "sleep.updated": process_sleep_update,
    "cycle.updated": process_cycle_update,
    "body_measurement.updated": process_body_measurement_update,
    "user_profile.updated": process_profile_update,
}


def record_event(db, payload, headers, user_agent=None, content_type=None):
    cursor = db.execute(
        """
        INSERT INTO webhook_events
            (provider, event_type, external_user_id, external_entity_id, payload, headers, status)
        VALUES ('whoop', ?, ?, ?, ?, ?, 'received')
        """,
        (
            payload.type, str(payload.user_id), str(payload.id), payload.model_dump_json(),
            json.dumps({
                "signature": headers.signature,
                "timestamp": headers.timestamp,
                "user_agent": user_agent,
                "content_type": content_type,
            }),
        ),
    )
    db.commit()
    return cursor.lastrowid


def mark_event(db, event_id, status, processing_time_ms, error=None):
    if not event_id:
        return
    db.execute(
        """
        UPDATE webhook_events
        SET status = ?, error = ?, processing_time_ms = ?, processed_at = ?
        WHERE id = ?
        """,
        (status, error, processing_time_ms, _now_iso(), event_id),
    )
    db.commit()
