import sqlite3

from flask import g

import config

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS user_integrations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        provider TEXT NOT NULL,
        external_user_id TEXT,
        access_token TEXT,
        refresh_token TEXT,
        expires_at TIMESTAMP,
        is_active INTEGER DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS webhook_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        provider TEXT NOT NULL,
        event_type TEXT,
        external_user_id TEXT,
        external_entity_id TEXT,
        payload TEXT,
        headers TEXT,
        status TEXT DEFAULT 'received',
        error TEXT,
        processing_time_ms INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        processed_at TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS whoop_recovery (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        whoop_recovery_id TEXT UNIQUE NOT NULL,
        cycle_id TEXT,
        date DATE,
        recovery_score REAL,
        hrv_rmssd_milli REAL,
        hrv_rmssd_baseline REAL,
        resting_heart_rate REAL,
        resting_heart_rate_baseline REAL,
        raw_data TEXT,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS whoop_sleep (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        whoop_sleep_id TEXT UNIQUE NOT NULL,
        start TIMESTAMP,
        end TIMESTAMP,
        timezone_offset TEXT,
        sleep_performance_percentage REAL,
        total_sleep_time_milli INTEGER,
        sleep_efficiency_percentage REAL,
        slow_wave_sleep_time_milli INTEGER,
        rem_sleep_time_milli INTEGER,
        light_sleep_time_milli INTEGER,
        wake_time_milli INTEGER,
        disturbance_count INTEGER,
        raw_data TEXT,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS whoop_cycles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        whoop_cycle_id TEXT UNIQUE NOT NULL,
        start TIMESTAMP,
        end TIMESTAMP,
        timezone_offset TEXT,
        day_strain REAL,
        average_heart_rate INTEGER,
        max_heart_rate INTEGER,
        kilojoule REAL,
        raw_data TEXT,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS whoop_body_measurement (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        whoop_measurement_id TEXT UNIQUE NOT NULL,
        height_meter REAL,
        weight_kilogram REAL,
        max_heart_rate INTEGER,
        measurement_date DATE,
        raw_data TEXT,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS external_workouts_whoop (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        whoop_workout_id TEXT UNIQUE NOT NULL,
        start TIMESTAMP,
        end TIMESTAMP,
        timezone_offset TEXT,
        sport_name TEXT,
        score_state TEXT,
        score TEXT,
        during TEXT,
        zone_duration TEXT,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS session_exercises (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        session_id INTEGER NOT NULL,
        template_exercise_id INTEGER,
        exercise_name TEXT NOT NULL,
        set_order INTEGER NOT NULL,
        weight REAL,
        reps INTEGER,
        sets INTEGER,
        unit TEXT DEFAULT 'kg',
        workout_date TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS rate_limits (
        user_id TEXT NOT NULL,
        endpoint TEXT NOT NULL,
        window_start INTEGER NOT NULL,
        requests INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, endpoint, window_start)
    );
'''


def connect(path=None):
    conn = sqlite3.connect(str(path or config.database_path()))
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
    return conn


def get_db():
    db = getattr(g, '_database', None)
    if db is None:
        db = g._database = connect()
    return db


def close_connection(exception=None):
    db = getattr(g, '_database', None)
    if db is not None:
        db.close()
        g._database = None


def init_app(app):
    app.teardown_appcontext(close_connection)
