"""
Run Output Processing

Routes a finished run's dataset items to the processor for its job kind:

- reviews: items are matched to tracked profiles by their external identifier
  and stored as CollectedReview rows, deduplicated per profile by review key
- overview: the latest item per identifier refreshes the profile's display
  name, rating and review count

Scheduled batch runs serve several tenants at once, so results are also
grouped per tenant for the synthesized JobRunRecords.
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from scraper.core.timeutils import utcnow
from scraper.db.models import CollectedReview, TrackedProfile
from scraper.integrations.constants import JobKind, TargetType, parse_target_type

logger = logging.getLogger(__name__)

# Dataset fields carrying the identifier the run was started with, most specific first
IDENTIFIER_FIELDS = {
    TargetType.GOOGLE: ("placeId",),
    TargetType.FACEBOOK: ("inputUrl", "facebookUrl", "pageUrl", "url"),
    TargetType.TRIPADVISOR: ("inputUrl", "tripAdvisorUrl", "url"),
    TargetType.BOOKING: ("inputUrl", "bookingUrl", "hotelUrl", "url"),
}

REVIEW_KEY_FIELDS = ("reviewId", "id", "reviewUrl")

OVERVIEW_NAME_FIELDS = ("title", "name", "pageName", "hotelName")
OVERVIEW_RATING_FIELDS = ("totalScore", "rating", "overallRating")
OVERVIEW_COUNT_FIELDS = ("reviewsCount", "numberOfReviews", "ratingCount", "reviews")


@dataclass
class TenantCounts:
    items_processed: int = 0
    items_new: int = 0
    items_duplicate: int = 0
    targets_updated: int = 0


@dataclass
class ProcessingResult:
    items_processed: int = 0
    items_new: int = 0
    items_duplicate: int = 0
    targets_updated: int = 0
    per_tenant: Dict[str, TenantCounts] = field(default_factory=dict)
    unmatched_identifiers: List[str] = field(default_factory=list)

    def tenant(self, tenant_id: str) -> TenantCounts:
        return self.per_tenant.setdefault(tenant_id, TenantCounts())


def _first(item: Dict[str, Any], fields: Sequence[str]):
    for name in fields:
        value = item.get(name)
        if value not in (None, ""):
            return value
    return None


def item_identifier(target_type: TargetType, item: Dict[str, Any]) -> Optional[str]:
    value = _first(item, IDENTIFIER_FIELDS[target_type])
    return str(value).strip() if value is not None else None


def review_key(item: Dict[str, Any]) -> str:
    """Stable per-review key; items without an id are keyed by their content."""
    value = _first(item, REVIEW_KEY_FIELDS)
    if value is not None:
        return str(value)[:255]
    digest = hashlib.sha1(json.dumps(item, sort_keys=True, default=str).encode("utf-8")).hexdigest()
    return f"sha1:{digest}"


def overview_fields(item: Dict[str, Any]) -> Dict[str, Any]:
    """Display name, rating and review count from an overview item."""
    rating = _first(item, OVERVIEW_RATING_FIELDS)
    count = _first(item, OVERVIEW_COUNT_FIELDS)
    try:
        rating = float(rating) if rating is not None else None
    except (TypeError, ValueError):
        rating = None
    try:
        count = int(count) if count is not None and not isinstance(count, (list, dict)) else None
    except (TypeError, ValueError):
        count = None
    name = _first(item, OVERVIEW_NAME_FIELDS)
    return {
        "display_name": str(name)[:500] if name is not None else None,
        "rating": rating,
        "review_count": count,
    }


def group_by_identifier(target_type: TargetType, items: Iterable[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for item in items:
        identifier = item_identifier(target_type, item)
        if identifier is None:
            logger.debug(f"Skipping {target_type.value} item without identifier")
            continue
        grouped.setdefault(identifier, []).append(item)
    return grouped


def _profiles_by_identifier(
    db: Session,
    target_type: TargetType,
    identifiers: Sequence[str],
    tenant_id: Optional[str],
) -> Dict[str, List[TrackedProfile]]:
    if not identifiers:
        return {}
    query = db.query(TrackedProfile).filter(
        TrackedProfile.target_type == target_type.value,
        TrackedProfile.external_identifier.in_(list(identifiers)),
    )
    if tenant_id is not None:
        query = query.filter(TrackedProfile.tenant_id == tenant_id)

    profiles: Dict[str, List[TrackedProfile]] = {}
    for profile in query.all():
        profiles.setdefault(profile.external_identifier, []).append(profile)
    return profiles


def process_reviews(
    db: Session,
    target_type: TargetType,
    items: Sequence[Dict[str, Any]],
    tenant_id: Optional[str] = None,
) -> ProcessingResult:
    """
    Store review items for every matching tracked profile.

    Args:
        db: Database session (flushed, not committed)
        target_type: Review source of the run
        items: Dataset items
        tenant_id: Restrict matching to one tenant (ad hoc runs); None for
            scheduled batch runs, which serve every tenant tracking an identifier

    Returns:
        ProcessingResult with overall and per-tenant counts
    """
    result = ProcessingResult()
    grouped = group_by_identifier(target_type, items)
    profiles = _profiles_by_identifier(db, target_type, list(grouped), tenant_id)

    for identifier, identifier_items in grouped.items():
        matched = profiles.get(identifier)
        if not matched:
            logger.warning(f"No tracked {target_type.value} profile for {identifier}, skipping {len(identifier_items)} items")
            result.unmatched_identifiers.append(identifier)
            continue

        for profile in matched:
            existing = {
                key for (key,) in db.query(CollectedReview.review_key)
                .filter(CollectedReview.profile_id == profile.id)
                .all()
            }
            counts = result.tenant(profile.tenant_id)
            new_for_profile = 0
            for item in identifier_items:
                key = review_key(item)
                result.items_processed += 1
                counts.items_processed += 1
                if key in existing:
                    result.items_duplicate += 1
                    counts.items_duplicate += 1
                    continue
                existing.add(key)
                db.add(CollectedReview(
                    tenant_id=profile.tenant_id,
                    profile_id=profile.id,
                    target_type=target_type.value,
                    review_key=key,
                    payload=item,
                ))
                new_for_profile += 1

            result.items_new += new_for_profile
            counts.items_new += new_for_profile
            if new_for_profile:
                result.targets_updated += 1
                counts.targets_updated += 1

    db.flush()
    logger.info(
        f"{target_type.value}: {result.items_new} new, {result.items_duplicate} duplicates, "
        f"{result.targets_updated} profiles updated"
    )
    return result


def process_overview(
    db: Session,
    target_type: TargetType,
    items: Sequence[Dict[str, Any]],
    tenant_id: Optional[str] = None,
) -> ProcessingResult:
    """Refresh tracked profiles from overview items; the last item per identifier wins."""
    result = ProcessingResult()
    grouped = group_by_identifier(target_type, items)
    profiles = _profiles_by_identifier(db, target_type, list(grouped), tenant_id)
    now = utcnow()

    for identifier, identifier_items in grouped.items():
        matched = profiles.get(identifier)
        if not matched:
            result.unmatched_identifiers.append(identifier)
            continue

        latest = identifier_items[-1]
        fields = overview_fields(latest)
        for profile in matched:
            counts = result.tenant(profile.tenant_id)
            result.items_processed += 1
            counts.items_processed += 1
            if fields["display_name"] and not profile.display_name:
                profile.display_name = fields["display_name"]
            if fields["rating"] is not None:
                profile.rating = fields["rating"]
            if fields["review_count"] is not None:
                profile.review_count = fields["review_count"]
            profile.overview_data = latest
            profile.overview_updated_at = now
            result.targets_updated += 1
            counts.targets_updated += 1

    db.flush()
    logger.info(f"{target_type.value} overview: {result.targets_updated} profiles refreshed")
    return result


Processor = Callable[[Session, TargetType, Sequence[Dict[str, Any]], Optional[str]], ProcessingResult]

PROCESSORS: Dict[JobKind, Processor] = {
    JobKind.REVIEWS: process_reviews,
    JobKind.OVERVIEW: process_overview,
}


def process_run_output(
    db: Session,
    target_type,
    job_kind: JobKind,
    items: Sequence[Dict[str, Any]],
    tenant_id: Optional[str] = None,
) -> ProcessingResult:
    target_type = parse_target_type(target_type)
    return PROCESSORS[job_kind](db, target_type, items, tenant_id)
