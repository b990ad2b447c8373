# whoop_client.py
import logging
from datetime import datetime, timedelta, timezone

import requests

import config
from errors import WhoopApiError

logger = logging.getLogger(__name__)

# WHOOP's "send test webhook" button always uses this user id
TEST_USER_ID = 12345
TEST_DB_USER_ID = "TEST_USER_12345"

ENTITY_ENDPOINTS = {
    "workout": "activity/workout",
    "recovery": "recovery",
    "sleep": "activity/sleep",
    "cycle": "cycle",
    "body_measurement": "user/measurement/body",
}


def is_test_user(whoop_user_id) -> bool:
    try:
        return int(whoop_user_id) == TEST_USER_ID
    except (TypeError, ValueError):
        return False


def get_active_integration(db, whoop_user_id):
    """Find the active WHOOP integration for a WHOOP user id."""
    return db.execute(
        """
        SELECT * FROM user_integrations
        WHERE provider = 'whoop' AND is_active = 1
          AND (external_user_id = ? OR user_id = ?)
        ORDER BY id DESC LIMIT 1
        """,
        (str(whoop_user_id), str(whoop_user_id)),
    ).fetchone()


def fetch_entity(access_token, entity, entity_id, timeout=10):
    endpoint = ENTITY_ENDPOINTS[entity]
    url = f"{config.whoop_api_base()}/{endpoint}/{entity_id}"
    try:
        headers = {'Authorization': f'Bearer {access_token}', 'Content-Type': 'application/json'}
        response = requests.get(url, headers=headers, timeout=timeout)
    except requests.exceptions.RequestException as e:
        raise WhoopApiError(endpoint, detail=str(e)) from e

    if not response.ok:
        raise WhoopApiError(endpoint, response.status_code, response.text[:200])
    return response.json()


def fetch_whoop_data(db, entity, entity_id, whoop_user_id):
    """
    Fetch one entity for the user behind a webhook.

    Returns None (logged) for the test user, when the user has no active
    integration, or when the API call fails.
    """
    if is_test_user(whoop_user_id):
        logger.info("whoop_test_mode entity=%s id=%s skipping_api_call=true", entity, entity_id)
        return None

    integration = get_active_integration(db, whoop_user_id)
    if not integration or not integration["access_token"]:
        logger.error("whoop_integration_missing whoop_user_id=%s", whoop_user_id)
        return None

    try:
        return fetch_entity(integration["access_token"], entity, entity_id)
    except WhoopApiError as e:
        logger.error("whoop_fetch_failed entity=%s id=%s error=%s", entity, entity_id, e)
        return None


def mock_test_workout(workout_id):
    start = datetime.now(timezone.utc)
    return {
        "id": str(workout_id),
        "start": start.isoformat(),
        "end": (start + timedelta(hours=1)).isoformat(),
        "timezone_offset": "-08:00",
        "sport_name": "TEST WORKOUT",
        "score_state": "SCORED",
        "score": {"strain": 15.5},
        "during": {"average_heart_rate": 145},
        "zone_duration": {
            "zone_zero_milli": 0,
            "zone_one_milli": 600000,
            "zone_two_milli": 1800000,
            "zone_three_milli": 1200000,
            "zone_four_milli": 300000,
            "zone_five_milli": 100000,
        },
    }


def fetch_workout(db, workout_id, whoop_user_id):
    if is_test_user(whoop_user_id):
        logger.info("whoop_test_mode entity=workout id=%s mock=true", workout_id)
        return mock_test_workout(workout_id)
    return fetch_whoop_data(db, "workout", workout_id, whoop_user_id)
