import json
import logging
import sqlite3
import time
from datetime import datetime, timezone

from flask import Flask, Response, jsonify, request, session
from pydantic import ValidationError

import config
import db
import health_advice
import rate_limit
import sse_broadcast
import webhook_handlers
from schemas import BatchSaveRequest, HealthAdviceRequest, SaveWorkoutPayload
from whoop_webhook import WhoopWebhookPayload, extract_webhook_headers, verify_whoop_webhook

config.configure_logging()
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = config.get_env('FLASK_SECRET_KEY', 'dev-secret-key-change-me')
db.init_app(app)

HEALTH_ADVICE_ENDPOINT = "health-advice"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Content-Security-Policy": "default-src 'self'; script-src 'self'; style-src 'self'; frame-ancestors 'none'",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "X-XSS-Protection": "1; mode=block",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


@app.after_request
def set_security_headers(response):
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


def current_user_id():
    return session.get("user_id")


def _validation_error(e: ValidationError):
    return jsonify(success=False, error="Invalid request",
                   details=e.errors(include_url=False, include_context=False)), 400


@app.errorhandler(404)
def not_found(e):
    return jsonify(success=False, error="Not found"), 404


@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify(success=False, error="Method not allowed"), 405


@app.errorhandler(500)
def server_error(e):
    logger.error("unhandled_error error=%s", e)
    return jsonify(success=False, error="Unexpected error"), 500


@app.route("/")
def index():
    return jsonify(service="swole-tracker", status="ok")


# -------------------------
# WHOOP webhooks
# -------------------------
@app.route("/api/webhooks/whoop", methods=["POST"])
def whoop_webhook():
    started = time.monotonic()
    body = request.get_data(as_text=True)

    headers = extract_webhook_headers(request.headers)
    if headers is None:
        logger.warning("webhook_rejected reason=invalid_headers")
        return jsonify(error="Invalid webhook headers"), 400

    if not verify_whoop_webhook(body, headers.signature, headers.timestamp):
        return jsonify(error="Invalid signature"), 401

    try:
        payload = WhoopWebhookPayload.model_validate(json.loads(body))
    except (ValueError, ValidationError) as e:
        logger.warning("webhook_rejected reason=invalid_payload error=%s", e)
        return jsonify(error="Invalid JSON payload"), 400

    logger.info("webhook_received type=%s whoop_user_id=%s entity_id=%s trace_id=%s",
                payload.type, payload.user_id, payload.id, payload.trace_id)

    conn = db.get_db()
    event_id = None
    try:
        event_id = webhook_handlers.record_event(
            conn, payload, headers,
            user_agent=request.headers.get("User-Agent"),
            content_type=request.headers.get("Content-Type"),
        )
    except sqlite3.Error as e:
        logger.error("webhook_event_log_failed error=%s", e)

    handler = webhook_handlers.HANDLERS.get(payload.type)
    if handler is None:
        logger.info("webhook_ignored type=%s", payload.type)
        _mark_event(conn, event_id, "ignored", started)
        return jsonify(success=True, message="Event type not processed")

    try:
        handler(conn, payload)
    except Exception as e:
        logger.exception("webhook_processing_failed type=%s entity_id=%s", payload.type, payload.id)
        _mark_event(conn, event_id, "failed", started, str(e))
        return jsonify(error="Internal server error"), 500

    _mark_event(conn, event_id, "processed", started)
    return jsonify(success=True, message=f"{payload.type} processed successfully")


def _mark_event(conn, event_id, status, started, error=None):
    # the event itself is already applied; a failed status update must not turn into a retry
    try:
        webhook_handlers.mark_event(conn, event_id, status, _elapsed_ms(started), error)
    except sqlite3.Error as e:
        logger.error("webhook_event_update_failed event_id=%s status=%s error=%s", event_id, status, e)


@app.route("/api/webhooks/whoop", methods=["GET"])
def whoop_webhook_status():
    return jsonify(message="Whoop webhook endpoint is active",
                   timestamp=datetime.now(timezone.utc).isoformat())


def _elapsed_ms(started):
    return int((time.monotonic() - started) * 1000)


# -------------------------
# Server-Sent Events
# -------------------------
@app.route("/api/sse/workout-updates")
def workout_updates():
    user_id = current_user_id()
    if not user_id:
        return jsonify(success=False, error="Unauthorized"), 401

    writer = sse_broadcast.QueueWriter()
    writer.write(sse_broadcast.connected_event())
    sse_broadcast.add_connection(user_id, writer)

    response = Response(writer.stream(), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"

    def disconnect():
        sse_broadcast.remove_connection(user_id, writer)
        writer.close()
        logger.info("sse_connection_closed user_id=%s", user_id)

    response.call_on_close(disconnect)
    return response


# -------------------------
# Health advice
# -------------------------
@app.route("/api/health-advice", methods=["POST"])
def health_advice_route():
    user_id = current_user_id()
    if not user_id:
        return jsonify(success=False, error="Unauthorized"), 401

    try:
        advice_request = HealthAdviceRequest.model_validate(request.get_json(silent=True) or {})
    except ValidationError as e:
        return _validation_error(e)

    conn = db.get_db()
    limit = rate_limit.check_rate_limit(conn, user_id, HEALTH_ADVICE_ENDPOINT, config.health_advice_rate_limit())
    if not limit.allowed:
        response = jsonify(success=False, error="Rate limit exceeded",
                           reset_time=limit.reset_time.isoformat())
        response.status_code = 429
        response.headers["Retry-After"] = str(limit.retry_after)
        return response

    data = advice_request.model_dump()
    metrics = health_advice.resolve_metrics(data.get("whoop"), health_advice.load_stored_metrics(conn, user_id))

    history = data["history"]
    if not history:
        names = [ex.name or ex.exercise_id for ex in advice_request.workout_plan.exercises]
        history = health_advice.load_exercise_history(conn, user_id, names)

    advice = health_advice.build_health_advice(data, metrics, history)
    advice = health_advice.with_coach_summary(advice)
    logger.info("health_advice_generated user_id=%s session_id=%s rho=%.3f exercises=%s",
                user_id, advice["session_id"], advice["readiness"]["rho"], len(advice["per_exercise"]))

    response = jsonify(advice)
    response.headers["X-RateLimit-Remaining"] = str(limit.remaining)
    return response


# -------------------------
# Workout saves
# -------------------------
def _save_user_id():
    return current_user_id() or request.headers.get("X-User-Id")


def save_workout(conn, user_id, workout: SaveWorkoutPayload) -> int:
    """Replace the stored exercises of a session; returns the rows written."""
    rows = []
    for exercise in workout.exercises:
        for order, entry in enumerate(exercise.sets):
            if entry.weight is None and entry.reps is None:
                continue
            rows.append((
                str(user_id), workout.session_id, exercise.template_exercise_id, exercise.exercise_name,
                order, entry.weight, entry.reps, entry.sets, entry.unit,
            ))

    with conn:
        conn.execute("DELETE FROM session_exercises WHERE user_id = ? AND session_id = ?",
                     (str(user_id), workout.session_id))
        conn.executemany(
            """
            INSERT INTO session_exercises
                (user_id, session_id, template_exercise_id, exercise_name, set_order, weight, reps, sets, unit)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            rows,
        )
    return len(rows)


@app.route("/api/workouts/save", methods=["POST"])
def save_workout_route():
    user_id = _save_user_id()
    if not user_id:
        return jsonify(success=False, error="Unauthorized"), 401
    try:
        workout = SaveWorkoutPayload.model_validate(request.get_json(silent=True) or {})
    except ValidationError as e:
        return _validation_error(e)

    try:
        saved = save_workout(db.get_db(), user_id, workout)
    except sqlite3.Error as e:
        logger.error("workout_save_failed user_id=%s session_id=%s error=%s", user_id, workout.session_id, e)
        return jsonify(success=False, error="Database error"), 500

    logger.info("workout_saved user_id=%s session_id=%s sets=%s", user_id, workout.session_id, saved)
    return jsonify(success=True, session_id=workout.session_id, sets_saved=saved)


@app.route("/api/workouts/batch-save", methods=["POST"])
def batch_save_route():
    user_id = _save_user_id()
    if not user_id:
        return jsonify(success=False, error="Unauthorized"), 401
    try:
        batch = BatchSaveRequest.model_validate(request.get_json(silent=True) or {})
    except ValidationError as e:
        return _validation_error(e)

    conn = db.get_db()
    results = []
    try:
        for workout in batch.workouts:
            results.append({"session_id": workout.session_id, "sets_saved": save_workout(conn, user_id, workout)})
    except sqlite3.Error as e:
        logger.error("workout_batch_save_failed user_id=%s error=%s", user_id, e)
        return jsonify(success=False, error="Database error"), 500

    logger.info("workout_batch_saved user_id=%s workouts=%s", user_id, len(results))
    return jsonify(success=True, results=results)


if __name__ == "__main__":
    port = int(config.get_env("PORT", "5000"))
    debug = config.get_env("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug, threaded=True)
