"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Attendance Validation                                           ║
║                                                                              ║
║  Submission checks (errors block, warnings flag):                            ║
║  - visit note, selfie, timeline evidence (Google Maps URL or screenshot)     ║
║  - geolocation ranges, late submission (IST window), device fingerprint      ║
║  Integrity: device fingerprint hash + canonical record hash (tamper check)   ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import re
import json
import hashlib
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, List
from urllib.parse import urlparse

import httpx

from config import (
    TIMELINE_URL_PATTERN,
    TIMELINE_URL_CHECK,
    TIMELINE_URL_TIMEOUT,
    MIN_NOTE_LENGTH,
    EXIF_TOLERANCE_MINUTES,
    MAX_CLIENT_CLOCK_SKEW_HOURS,
    is_late_submission,
    parse_iso,
)

logger = logging.getLogger("attendance_validation")

_TIMELINE_RE = re.compile(TIMELINE_URL_PATTERN)

FINGERPRINT_FIELDS = (
    "user_agent", "timezone", "language", "platform",
    "screen_width", "screen_height", "color_depth", "pixel_ratio",
)

RECORD_HASH_FIELDS = (
    "user_id", "date_ist", "note", "timeline_url", "timeline_screenshot_url",
    "selfie_url", "client_lat", "client_lng", "submitted_at_utc",
)


class ValidationResult:
    """Outcome of a submission check"""

    def __init__(self):
        self.errors: List[str] = []
        self.warnings: List[str] = []
        self.metadata: dict = {}

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "metadata": self.metadata,
        }


# ==================== URL CHECK ====================

def is_timeline_url(url: str) -> bool:
    return bool(_TIMELINE_RE.match(url or ""))


async def check_timeline_url(url: str, result: ValidationResult):
    """HEAD request on the timeline URL. Failures are warnings only."""
    try:
        async with httpx.AsyncClient(timeout=TIMELINE_URL_TIMEOUT, follow_redirects=True) as http_client:
            response = await http_client.head(url)
    except httpx.HTTPError as e:
        logger.warning(f"[TIMELINE_URL] check failed url={url} error={e}")
        result.warnings.append("Could not validate timeline URL")
        return

    if not response.is_success:
        result.warnings.append("Timeline URL is not accessible")
    result.metadata["timeline_url"] = {
        "is_valid": response.is_success,
        "domain": urlparse(url).hostname,
        "resolved_url": str(response.url),
    }


# ==================== SUBMISSION ====================

async def validate_attendance_submission(
    record: dict,
    fingerprint: Optional[dict] = None,
    now: datetime = None,
    check_url: bool = None
) -> ValidationResult:
    """
    Validate an attendance submission.

    record keys: note, selfie_url, timeline_url, timeline_screenshot_url,
    client_lat, client_lng
    """
    if check_url is None:
        check_url = TIMELINE_URL_CHECK
    result = ValidationResult()

    note = (record.get("note") or "").strip()
    if len(note) < MIN_NOTE_LENGTH:
        result.errors.append(
            f"Visit report is required and must be at least {MIN_NOTE_LENGTH} characters long"
        )

    if not record.get("selfie_url"):
        result.errors.append("Selfie is required")

    timeline_url = (record.get("timeline_url") or "").strip()
    screenshot = (record.get("timeline_screenshot_url") or "").strip()
    if not timeline_url and not screenshot:
        result.errors.append("Either timeline URL or screenshot is required")

    if timeline_url:
        if not is_timeline_url(timeline_url):
            result.errors.append("Timeline URL must be from Google Maps")
        elif check_url:
            await check_timeline_url(timeline_url, result)

    lat, lng = record.get("client_lat"), record.get("client_lng")
    if lat is None or lng is None:
        result.warnings.append("Location not provided")
    elif not validate_geolocation(lat, lng):
        result.errors.append("Invalid location coordinates")

    if is_late_submission(now):
        result.warnings.append("Submission is after the standard time window")

    if fingerprint:
        result.metadata["device_fingerprint"] = fingerprint
        if fingerprint.get("screen_width", 0) < 320 or fingerprint.get("screen_height", 0) < 240:
            result.warnings.append("Device screen size is unusually small")
        if not fingerprint.get("cookie_enabled", True):
            result.warnings.append("Cookies are disabled - may affect functionality")

    return result


# ==================== FINGERPRINT / HASH ====================

def server_fingerprint() -> dict:
    """Fallback when the client sends no fingerprint"""
    return {
        "user_agent": "server",
        "timezone": "UTC",
        "language": "en",
        "platform": "server",
        "cookie_enabled": False,
        "screen_width": 1920,
        "screen_height": 1080,
        "color_depth": 24,
        "pixel_ratio": 1,
    }


def _sha256(payload: dict, sort_keys: bool = False) -> str:
    data = json.dumps(payload, sort_keys=sort_keys, separators=(",", ":"), default=str)
    return hashlib.sha256(data.encode()).hexdigest()


def hash_device_fingerprint(fingerprint: dict) -> str:
    return _sha256({k: fingerprint.get(k) for k in FINGERPRINT_FIELDS})


def generate_record_hash(record: dict) -> str:
    canonical = {k: record.get(k) for k in RECORD_HASH_FIELDS if record.get(k) is not None}
    return _sha256(canonical, sort_keys=True)


def detect_tampering(record: dict) -> bool:
    return generate_record_hash(record) != record.get("hash")


# ==================== OTHER CHECKS ====================

def validate_exif_timestamp(exif_taken_at, submitted_at: datetime) -> bool:
    """True when the photo was taken within tolerance of the submission (or no EXIF)"""
    try:
        taken = parse_iso(exif_taken_at)
    except ValueError:
        return False
    if not taken:
        return True
    return abs(submitted_at - taken) <= timedelta(minutes=EXIF_TOLERANCE_MINUTES)


def validate_geolocation(lat: float, lng: float) -> bool:
    return -90 <= lat <= 90 and -180 <= lng <= 180


def check_duplicate_submission(user_id: str, date_ist: str, records: List[dict]) -> bool:
    return any(r.get("user_id") == user_id and r.get("date_ist") == date_ist for r in records)


def check_device_change(fingerprint_hash: str, recent_hashes: List[str]) -> bool:
    """True when the user has history but this device was never seen in it"""
    known = [h for h in recent_hashes if h]
    return bool(known) and fingerprint_hash not in known


def check_client_clock(client_time, now: datetime = None) -> bool:
    """True when the client clock is within the accepted skew of server time"""
    try:
        client_dt = parse_iso(client_time)
    except ValueError:
        return False
    if not client_dt:
        return True
    current = now or datetime.now(timezone.utc)
    return abs(current - client_dt) <= timedelta(hours=MAX_CLIENT_CLOCK_SKEW_HOURS)
