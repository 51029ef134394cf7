"""
Configuration for the reconciler, read from the environment (and .env when present).
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/pay2ping.db")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Reconciliation heartbeat (default disabled)
RECONCILE_ENABLED = os.getenv("RECONCILE_ENABLED", "false").lower() == "true"
RECONCILE_INTERVAL_SEC = int(os.getenv("RECONCILE_INTERVAL_SEC", "120"))  # every 2 minutes
RECONCILE_LOOKBACK_SEC = int(os.getenv("RECONCILE_LOOKBACK_SEC", "21600"))  # 6 hours
RECONCILE_TICK_DEADLINE_SEC = int(os.getenv("RECONCILE_TICK_DEADLINE_SEC", "90"))
RECONCILE_LEASE_TTL_SEC = int(os.getenv("RECONCILE_LEASE_TTL_SEC", "600"))
MISSING_DATA_MAX_ATTEMPTS = int(os.getenv("MISSING_DATA_MAX_ATTEMPTS", "3"))

# Attendance source
ATTENDANCE_PROVIDER = os.getenv("ATTENDANCE_PROVIDER", "zoom")  # zoom|mock
ATTENDANCE_TIMEOUT_SEC = float(os.getenv("ATTENDANCE_TIMEOUT_SEC", "15"))
ZOOM_ACCOUNT_ID = os.getenv("ZOOM_ACCOUNT_ID")
ZOOM_CLIENT_ID = os.getenv("ZOOM_CLIENT_ID")
ZOOM_CLIENT_SECRET = os.getenv("ZOOM_CLIENT_SECRET")

# Disbursement relay
DISBURSEMENT_PROVIDER = os.getenv("DISBURSEMENT_PROVIDER", "http")  # http|mock
DISBURSEMENT_URL = os.getenv("DISBURSEMENT_URL")
DISBURSEMENT_TOKEN = os.getenv("DISBURSEMENT_TOKEN")
DISBURSEMENT_TIMEOUT_SEC = float(os.getenv("DISBURSEMENT_TIMEOUT_SEC", "30"))

VERSION = "0.3.0"


def get_db_path() -> str:
    """Current database path. Read at call time so tests can point DB_PATH elsewhere."""
    return os.getenv("DB_PATH", DB_PATH)


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or get_db_path()).parent.mkdir(parents=True, exist_ok=True)


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def is_reconcile_enabled():
    """Check if the reconciliation heartbeat should run."""
    return RECONCILE_ENABLED


def get_reconcile_interval():
    """Tick interval in seconds."""
    return RECONCILE_INTERVAL_SEC


def get_lookback_seconds():
    """Eligibility window in seconds."""
    return RECONCILE_LOOKBACK_SEC


def get_attendance_verifier():
    """Build the configured attendance verifier."""
    if ATTENDANCE_PROVIDER == "mock":
        from pay2ping.services.mock import MockAttendanceVerifier
        return MockAttendanceVerifier()

    from pay2ping.services.zoom import ZoomAttendanceVerifier
    return ZoomAttendanceVerifier(
        account_id=ZOOM_ACCOUNT_ID,
        client_id=ZOOM_CLIENT_ID,
        client_secret=ZOOM_CLIENT_SECRET,
        timeout=ATTENDANCE_TIMEOUT_SEC,
    )


def get_disbursement_client():
    """Build the configured disbursement client."""
    if DISBURSEMENT_PROVIDER == "mock":
        from pay2ping.services.mock import MockDisbursementClient
        return MockDisbursementClient()

    from pay2ping.services.disbursement import HttpDisbursementClient
    return HttpDisbursementClient(
        base_url=DISBURSEMENT_URL,
        token=DISBURSEMENT_TOKEN,
        timeout=DISBURSEMENT_TIMEOUT_SEC,
    )


def validate_reconciler_config():
    """Validate reconciler configuration and return any issues."""
    issues = []

    if RECONCILE_INTERVAL_SEC < 1:
        issues.append("RECONCILE_INTERVAL_SEC must be >= 1")

    if RECONCILE_LOOKBACK_SEC < 1:
        issues.append("RECONCILE_LOOKBACK_SEC must be >= 1")

    if RECONCILE_TICK_DEADLINE_SEC < 1:
        issues.append("RECONCILE_TICK_DEADLINE_SEC must be >= 1")

    if RECONCILE_LEASE_TTL_SEC <= RECONCILE_TICK_DEADLINE_SEC:
        issues.append("RECONCILE_LEASE_TTL_SEC must exceed RECONCILE_TICK_DEADLINE_SEC")

    if MISSING_DATA_MAX_ATTEMPTS < 1:
        issues.append("MISSING_DATA_MAX_ATTEMPTS must be >= 1")

    if ATTENDANCE_PROVIDER not in ["zoom", "mock"]:
        issues.append(f"Invalid ATTENDANCE_PROVIDER: {ATTENDANCE_PROVIDER}")
    elif ATTENDANCE_PROVIDER == "zoom" and not (ZOOM_ACCOUNT_ID and ZOOM_CLIENT_ID and ZOOM_CLIENT_SECRET):
        issues.append("ATTENDANCE_PROVIDER=zoom requires ZOOM_ACCOUNT_ID, ZOOM_CLIENT_ID and ZOOM_CLIENT_SECRET")

    if DISBURSEMENT_PROVIDER not in ["http", "mock"]:
        issues.append(f"Invalid DISBURSEMENT_PROVIDER: {DISBURSEMENT_PROVIDER}")
    elif DISBURSEMENT_PROVIDER == "http" and not DISBURSEMENT_URL:
        issues.append("DISBURSEMENT_PROVIDER=http requires DISBURSEMENT_URL")

    return issues
