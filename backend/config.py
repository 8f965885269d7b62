"""
Configuration and shared helpers
"""

import os
import hashlib
import secrets
from datetime import datetime, timezone, timedelta, time
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
from pathlib import Path
import pytz

# Load .env
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'sales_crm')

client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]

# Timezone used for attendance days and scheduled jobs
APP_TIMEZONE = os.environ.get('APP_TIMEZONE', 'Asia/Kolkata')
IST = pytz.timezone(APP_TIMEZONE)

SESSION_DAYS = int(os.environ.get('SESSION_DAYS', '7'))


# ==================== ATTENDANCE SETTINGS ====================

SUBMISSION_WINDOW_START = time(5, 0)
SUBMISSION_WINDOW_END = time(13, 0)
EXIF_TOLERANCE_MINUTES = 15
DEVICE_HISTORY_DAYS = 7
MAX_CLIENT_CLOCK_SKEW_HOURS = 24
MIN_NOTE_LENGTH = 3
TIMELINE_URL_PATTERN = r'^https://(www\.)?(google\.com/maps|maps\.app\.goo\.gl)'
TIMELINE_URL_TIMEOUT = float(os.environ.get('TIMELINE_URL_TIMEOUT', '5'))

# HEAD request against the timeline URL (disabled in tests / offline envs)
TIMELINE_URL_CHECK = os.environ.get('TIMELINE_URL_CHECK', 'true').lower() == 'true'

ADMIN_ROLES = ("admin", "super_admin")


# ==================== HELPERS ====================

def hash_password(password: str) -> str:
    """Hash a password with SHA256"""
    return hashlib.sha256(password.encode()).hexdigest()

def generate_token() -> str:
    """Generate a secure session token"""
    return secrets.token_urlsafe(32)

def now_iso() -> str:
    """Current UTC date/time as ISO string"""
    return datetime.now(timezone.utc).isoformat()

def parse_iso(value) -> datetime:
    """
    Parse a stored ISO string (or datetime) into an aware UTC datetime.
    Returns None for empty values.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

def normalize_iso(value) -> str:
    """
    Client-supplied date/time -> UTC ISO string (naive values are UTC).
    Stored dates are compared as strings, so they must share one offset.
    Raises ValueError when the value is not ISO 8601.
    """
    try:
        dt = parse_iso(value)
    except ValueError:
        raise ValueError(f"Invalid date '{value}', expected ISO 8601")
    return dt.isoformat() if dt else None


# ==================== IST HELPERS ====================

def now_ist() -> datetime:
    return datetime.now(timezone.utc).astimezone(IST)

def to_ist(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(IST)

def today_ist(now: datetime = None) -> str:
    """IST calendar date as YYYY-MM-DD"""
    current = to_ist(now) if now else now_ist()
    return current.strftime("%Y-%m-%d")

def ist_day_bounds_utc(date_ist: str) -> tuple:
    """UTC ISO bounds [start, end) of an IST calendar day"""
    day = datetime.strptime(date_ist, "%Y-%m-%d")
    start = IST.localize(day)
    end = start + timedelta(days=1)
    return (
        start.astimezone(timezone.utc).isoformat(),
        end.astimezone(timezone.utc).isoformat(),
    )

def is_within_submission_window(now: datetime = None) -> bool:
    current = (to_ist(now) if now else now_ist()).time()
    return SUBMISSION_WINDOW_START <= current <= SUBMISSION_WINDOW_END

def is_late_submission(now: datetime = None) -> bool:
    """Late = outside the window AND after its end"""
    current = (to_ist(now) if now else now_ist()).time()
    return not is_within_submission_window(now) and current > SUBMISSION_WINDOW_END
