"""
Job Platform Client

Narrow interface over the external job platform (Apify): recurring job
create/update/delete, run once, fetch output. Orchestration code depends only
on `JobPlatform`; `ApifyJobPlatform` is the SDK-backed implementation.

Also holds the pure helpers that translate scheduling state into platform
shapes: cron derivation, per-target-type input payloads and callback config.
"""
import json
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Sequence

from apify_client import ApifyClient

from scraper.core.exceptions import UpstreamError
from scraper.integrations.constants import (
    BATCH_OFFSET_STEP_MINUTES,
    COMMON_INTERVAL_CRON,
    DEFAULT_RUN_OPTIONS,
    UNLIMITED_ITEMS,
    WEBHOOK_EVENT_TYPES,
    WEBHOOK_PATH,
    JobKind,
    TargetType,
)

logger = logging.getLogger(__name__)


@dataclass
class WebhookSpec:
    """Completion callback attached to a run."""
    request_url: str
    payload_template: str
    event_types: Sequence[str] = WEBHOOK_EVENT_TYPES

    def to_client_dict(self) -> Dict[str, Any]:
        """Shape accepted by the SDK's `webhooks=` argument."""
        return {
            "event_types": list(self.event_types),
            "request_url": self.request_url,
            "payload_template": self.payload_template,
        }

    def to_api_dict(self) -> Dict[str, Any]:
        """Shape stored inside a recurring job's run input."""
        return {
            "eventTypes": list(self.event_types),
            "requestUrl": self.request_url,
            "payloadTemplate": self.payload_template,
        }

    @classmethod
    def from_api_dict(cls, data: Dict[str, Any]) -> "WebhookSpec":
        return cls(
            request_url=data["requestUrl"],
            payload_template=data.get("payloadTemplate", ""),
            event_types=tuple(data.get("eventTypes") or WEBHOOK_EVENT_TYPES),
        )


@dataclass
class RecurringJobSpec:
    name: str
    cron_expression: str
    actor_id: str
    run_input: Dict[str, Any] = field(default_factory=dict)
    webhooks: List[WebhookSpec] = field(default_factory=list)
    run_options: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_RUN_OPTIONS))
    enabled: bool = False
    external_id: Optional[str] = None  # set once created on the platform


@dataclass
class RunHandle:
    run_id: str
    dataset_id: Optional[str] = None
    status: Optional[str] = None


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def batch_offset_minutes(batch_index: int) -> int:
    """Stagger batches of one group by 15 minutes so they do not all fire together."""
    return (batch_index * BATCH_OFFSET_STEP_MINUTES) % 60


def interval_to_cron(interval_hours: int, batch_index: int = 0) -> str:
    """
    Cron expression for a refresh interval.

    6h/12h/24h/72h use fixed readable expressions. Other intervals below a
    day run every N hours; intervals of a day or more run at 09:xx every
    ceil(N / 24) days, since the hour field cannot express steps above 23.
    The batch offset only smooths platform load.
    """
    if not isinstance(interval_hours, int) or interval_hours <= 0:
        raise ValueError(f"interval_hours must be a positive integer, got {interval_hours!r}")
    if batch_index < 0:
        raise ValueError(f"batch_index must be non-negative, got {batch_index!r}")

    minute = batch_offset_minutes(batch_index)
    template = COMMON_INTERVAL_CRON.get(interval_hours)
    if template:
        return template.format(minute=minute)
    if interval_hours < 24:
        return f"{minute} */{interval_hours} * * *"

    days = math.ceil(interval_hours / 24)
    if interval_hours % 24:
        logger.warning(f"Interval {interval_hours}h is not a whole number of days, scheduling every {days} days")
    return f"{minute} 9 */{days} * *"


def schedule_entry_name(target_type: TargetType, job_kind: JobKind, interval_hours: int, batch_index: int) -> str:
    suffix = f"-batch-{batch_index}" if batch_index > 0 else ""
    return f"{target_type.value}-{job_kind.value}-{interval_hours}h{suffix}"


def _url_list(identifiers: Sequence[str]) -> List[Dict[str, str]]:
    return [{"url": identifier} for identifier in identifiers]


def build_job_input(
    target_type: TargetType,
    job_kind: JobKind,
    identifiers: Sequence[str],
    max_items: int,
) -> Dict[str, Any]:
    """
    Actor input for a batch of identifiers.

    Google takes one batched array of place ids; the other sources take a
    per-URL start list. Item limits are omitted for unlimited runs where the
    actor treats absence as "everything".
    """
    identifiers = list(identifiers)
    limited = max_items < UNLIMITED_ITEMS

    if job_kind == JobKind.OVERVIEW:
        if target_type == TargetType.GOOGLE:
            return {
                "placeIds": identifiers,
                "maxReviews": 0,
                "maxImages": 0,
                "language": "en",
            }
        return {"startUrls": _url_list(identifiers), "maxItems": len(identifiers)}

    if target_type == TargetType.GOOGLE:
        return {
            "placeIds": identifiers,
            "maxReviews": max_items,
            "reviewsSort": "newest",
            "language": "en",
            "reviewsOrigin": "google",
            "personalData": False,
        }

    if target_type == TargetType.FACEBOOK:
        payload = {
            "startUrls": _url_list(identifiers),
            "proxy": {"apifyProxyGroups": ["RESIDENTIAL"]},
            "maxRequestRetries": 10,
        }
        if limited:
            payload["resultsLimit"] = max_items
        return payload

    if target_type == TargetType.TRIPADVISOR:
        payload = {
            "startUrls": _url_list(identifiers),
            "scrapeReviewerInfo": True,
            "reviewRatings": ["ALL_REVIEW_RATINGS"],
            "reviewsLanguages": ["ALL_REVIEW_LANGUAGES"],
        }
        if limited:
            payload["maxItemsPerQuery"] = max_items
        return payload

    if target_type == TargetType.BOOKING:
        payload = {
            "startUrls": _url_list(identifiers),
            "sortReviewsBy": "f_recent_desc",
            "reviewScores": ["ALL"],
            "proxyConfiguration": {"useApifyProxy": True},
        }
        if limited:
            payload["maxReviewsPerHotel"] = max_items
        return payload

    raise ValueError(f"No input builder for target type {target_type!r}")


def build_webhook(
    base_url: str,
    secret: str,
    target_type: TargetType,
    run_kind: str,
    schedule_entry_id: Optional[int] = None,
) -> WebhookSpec:
    """
    Completion callback for a run.

    The payload template is rendered by the platform: `{{eventType}}`,
    `{{eventData}}` and `{{resource}}` are substituted as JSON values, the
    rest is carried through verbatim so the handler knows the target type and
    owning schedule entry without a lookup.
    """
    if not secret:
        raise ValueError("Job webhook secret is required to build callback URLs")

    entry_value = "null" if schedule_entry_id is None else str(int(schedule_entry_id))
    payload_template = (
        '{"eventType": {{eventType}}, "eventData": {{eventData}}, "resource": {{resource}}, '
        f'"targetType": "{target_type.value}", "runKind": "{run_kind}", '
        f'"scheduleEntryId": {entry_value}}}'
    )
    return WebhookSpec(
        request_url=f"{base_url.rstrip('/')}{WEBHOOK_PATH}?token={secret}",
        payload_template=payload_template,
    )


def encode_run_input(run_input: Dict[str, Any], webhooks: Sequence[WebhookSpec]) -> Dict[str, str]:
    """Recurring job actions store the input as a JSON body."""
    body = dict(run_input)
    if webhooks:
        body["webhooks"] = [webhook.to_api_dict() for webhook in webhooks]
    return {"body": json.dumps(body), "contentType": "application/json; charset=utf-8"}


def decode_run_input(encoded: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not encoded:
        return {}
    body = encoded.get("body")
    if body is None:
        return dict(encoded)
    if isinstance(body, dict):
        return dict(body)
    return json.loads(body) if body else {}


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class JobPlatform(ABC):
    """Operations the orchestration layer needs from the job platform."""

    @abstractmethod
    def create_recurring_job(self, spec: RecurringJobSpec) -> str:
        """Create a recurring job, returning its external id."""

    @abstractmethod
    def update_recurring_job_input(
        self,
        job_id: str,
        run_input: Dict[str, Any],
        webhooks: Sequence[WebhookSpec],
        enabled: bool,
    ) -> None:
        """Swap input and callbacks, keeping cron, build and resource settings."""

    @abstractmethod
    def set_recurring_job_enabled(self, job_id: str, enabled: bool) -> None:
        """Enable or disable without touching the job's actions."""

    @abstractmethod
    def delete_recurring_job(self, job_id: str) -> None:
        """Delete the recurring job."""

    @abstractmethod
    def trigger_recurring_job(self, job_id: str) -> RunHandle:
        """Run the recurring job's action once with its current input."""

    @abstractmethod
    def run_once(
        self,
        actor_id: str,
        run_input: Dict[str, Any],
        webhooks: Sequence[WebhookSpec] = (),
        max_items: Optional[int] = None,
    ) -> RunHandle:
        """Start an ad hoc run; completion is reported through the webhooks."""

    @abstractmethod
    def fetch_output(self, dataset_id: str) -> List[Dict[str, Any]]:
        """All items of a finished run's output dataset."""

    @abstractmethod
    def run_and_collect(self, actor_id: str, run_input: Dict[str, Any], timeout_secs: int) -> List[Dict[str, Any]]:
        """Run to completion (bounded by timeout_secs) and return the output items."""


class ApifyJobPlatform(JobPlatform):
    """JobPlatform backed by the Apify SDK."""

    def __init__(self, token: str, timeout_secs: int = 30, max_retries: int = 2, client: Optional[ApifyClient] = None):
        if not token:
            raise ValueError("Job platform token is required")
        self.client = client or ApifyClient(token, max_retries=max_retries, timeout_secs=timeout_secs)

    def _call(self, operation: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except Exception as e:
            logger.error(f"Job platform {operation} failed: {e}")
            raise UpstreamError(f"Job platform {operation} failed: {e}") from e

    def create_recurring_job(self, spec: RecurringJobSpec) -> str:
        action = {
            "type": "RUN_ACTOR",
            "actorId": spec.actor_id,
            "runInput": encode_run_input(spec.run_input, spec.webhooks),
            "runOptions": dict(spec.run_options),
        }
        schedule = self._call(
            "create schedule",
            lambda: self.client.schedules().create(
                name=spec.name,
                cron_expression=spec.cron_expression,
                is_enabled=spec.enabled,
                is_exclusive=False,
                actions=[action],
            ),
        )
        logger.info(f"Created recurring job {spec.name} ({schedule['id']}) cron='{spec.cron_expression}'")
        return schedule["id"]

    def _get_schedule(self, job_id: str) -> Dict[str, Any]:
        schedule = self._call("get schedule", lambda: self.client.schedule(job_id).get())
        if schedule is None:
            raise UpstreamError(f"Recurring job {job_id} not found on job platform")
        return schedule

    def update_recurring_job_input(self, job_id, run_input, webhooks, enabled):
        current = self._get_schedule(job_id)
        encoded = encode_run_input(run_input, webhooks)
        actions = [{**action, "runInput": encoded} for action in current.get("actions", [])]
        self._call(
            "update schedule",
            lambda: self.client.schedule(job_id).update(is_enabled=enabled, actions=actions),
        )

    def set_recurring_job_enabled(self, job_id, enabled):
        current = self._get_schedule(job_id)
        self._call(
            "update schedule",
            lambda: self.client.schedule(job_id).update(is_enabled=enabled, actions=current.get("actions", [])),
        )

    def delete_recurring_job(self, job_id):
        self._call("delete schedule", lambda: self.client.schedule(job_id).delete())

    def trigger_recurring_job(self, job_id):
        current = self._get_schedule(job_id)
        actions = current.get("actions") or []
        if not actions or not actions[0].get("actorId"):
            raise UpstreamError(f"Recurring job {job_id} has no runnable action")

        action = actions[0]
        run_input = decode_run_input(action.get("runInput"))
        webhooks = [WebhookSpec.from_api_dict(w) for w in run_input.get("webhooks", [])]
        return self.run_once(action["actorId"], run_input, webhooks)

    def run_once(self, actor_id, run_input, webhooks=(), max_items=None):
        kwargs = {"run_input": run_input}
        if webhooks:
            kwargs["webhooks"] = [webhook.to_client_dict() for webhook in webhooks]
        if max_items is not None and max_items < UNLIMITED_ITEMS:
            kwargs["max_items"] = max_items

        run = self._call("start run", lambda: self.client.actor(actor_id).start(**kwargs))
        return RunHandle(run_id=run["id"], dataset_id=run.get("defaultDatasetId"), status=run.get("status"))

    def fetch_output(self, dataset_id):
        return self._call("fetch dataset", lambda: list(self.client.dataset(dataset_id).iterate_items()))

    def run_and_collect(self, actor_id, run_input, timeout_secs):
        run = self._call(
            "run actor",
            lambda: self.client.actor(actor_id).call(run_input=run_input, timeout_secs=timeout_secs),
        )
        if run is None or run.get("status") != "SUCCEEDED":
            status = run.get("status") if run else "unknown"
            raise UpstreamError(f"Actor {actor_id} run finished with status {status}")
        return self.fetch_output(run["defaultDatasetId"])


@lru_cache()
def get_job_platform() -> JobPlatform:
    from scraper.core.config import get_settings
    settings = get_settings()
    return ApifyJobPlatform(
        token=settings.job_platform_token,
        timeout_secs=settings.job_platform_timeout_secs,
        max_retries=settings.job_platform_max_retries,
    )
