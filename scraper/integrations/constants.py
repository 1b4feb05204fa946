# Target types, job kinds and job platform constants
from enum import Enum
from typing import Dict, Tuple

from scraper.core.exceptions import InvalidTargetTypeError


class TargetType(str, Enum):
    GOOGLE = "google"
    FACEBOOK = "facebook"
    TRIPADVISOR = "tripadvisor"
    BOOKING = "booking"


class JobKind(str, Enum):
    REVIEWS = "reviews"
    OVERVIEW = "overview"


class RunKind(str, Enum):
    INITIAL = "initial"
    RECURRING_REVIEWS = "recurring-reviews"
    RECURRING_OVERVIEW = "recurring-overview"

    @classmethod
    def for_job_kind(cls, job_kind: JobKind) -> "RunKind":
        return cls.RECURRING_REVIEWS if job_kind == JobKind.REVIEWS else cls.RECURRING_OVERVIEW


# Dashboard and billing spell some target types differently
TARGET_TYPE_ALIASES = {
    "google_reviews": TargetType.GOOGLE,
    "google_maps": TargetType.GOOGLE,
    "trip_advisor": TargetType.TRIPADVISOR,
}

# Every supported target type is collected for both job kinds
JOB_KINDS_BY_TARGET_TYPE: Dict[TargetType, Tuple[JobKind, ...]] = {
    target_type: (JobKind.REVIEWS, JobKind.OVERVIEW) for target_type in TargetType
}

DEFAULT_MAX_BATCH_SIZE: Dict[TargetType, int] = {
    TargetType.GOOGLE: 50,
    TargetType.FACEBOOK: 30,
    TargetType.TRIPADVISOR: 30,
    TargetType.BOOKING: 30,
}

ACTOR_IDS: Dict[Tuple[TargetType, JobKind], str] = {
    (TargetType.GOOGLE, JobKind.REVIEWS): "Xb8osYTtOjlsgI6k9",
    (TargetType.FACEBOOK, JobKind.REVIEWS): "dX3d80hsNMilEwjXG",
    (TargetType.TRIPADVISOR, JobKind.REVIEWS): "Hvp4YfFGyLM635Q2F",
    (TargetType.BOOKING, JobKind.REVIEWS): "PbMHke3jW25J6hSOA",
    (TargetType.GOOGLE, JobKind.OVERVIEW): "compass/crawler-google-places",
    (TargetType.FACEBOOK, JobKind.OVERVIEW): "apify/facebook-pages-scraper",
    (TargetType.TRIPADVISOR, JobKind.OVERVIEW): "maxcopell/tripadvisor",
    (TargetType.BOOKING, JobKind.OVERVIEW): "voyager/booking-scraper",
}

# Initial full-history runs ask for everything
UNLIMITED_ITEMS = 99999

WEBHOOK_EVENT_TYPES = ("ACTOR.RUN.SUCCEEDED", "ACTOR.RUN.FAILED", "ACTOR.RUN.ABORTED")
WEBHOOK_PATH = "/webhooks/job-platform"

DEFAULT_RUN_OPTIONS = {
    "build": "latest",
    "timeoutSecs": 3600,
    "memoryMbytes": 4096,
}

# Fixed-time expressions for the common intervals (minute field is the batch offset)
COMMON_INTERVAL_CRON = {
    6: "{minute} */6 * * *",
    12: "{minute} */12 * * *",
    24: "{minute} 9 * * *",
    72: "{minute} 10 */3 * *",
}
BATCH_OFFSET_STEP_MINUTES = 15


def parse_target_type(value) -> TargetType:
    """
    Resolve a target type string or raise.

    Unknown values are rejected rather than defaulted so a misconfigured
    caller cannot silently subscribe targets to the wrong review source.
    """
    if isinstance(value, TargetType):
        return value
    if not isinstance(value, str) or not value.strip():
        raise InvalidTargetTypeError(f"Invalid target type: {value!r}")
    normalized = value.strip().lower()
    if normalized in TARGET_TYPE_ALIASES:
        return TARGET_TYPE_ALIASES[normalized]
    try:
        return TargetType(normalized)
    except ValueError:
        raise InvalidTargetTypeError(f"Unsupported target type: {value!r}") from None


def parse_job_kind(value) -> JobKind:
    if isinstance(value, JobKind):
        return value
    try:
        return JobKind(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported job kind: {value!r}") from None
