"""
Tracked profile creation for newly configured targets.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scraper.core.config import Settings, get_settings
from scraper.core.timeutils import utcnow
from scraper.db.models import TrackedProfile
from scraper.integrations.constants import JobKind, parse_target_type
from scraper.integrations.job_platform import JobPlatform, build_job_input
from scraper.services.data_processing import group_by_identifier, overview_fields

logger = logging.getLogger(__name__)

# Overview fetches run inline with the lifecycle request
PROFILE_FETCH_TIMEOUT_SECS = 120


@dataclass
class ProfileResult:
    profile: TrackedProfile
    created: bool


class ProfileService:
    """Ensure a TrackedProfile exists before a target is scheduled"""

    def __init__(self, platform: JobPlatform, settings: Optional[Settings] = None):
        self.platform = platform
        self.settings = settings or get_settings()

    def get_profile(self, db: Session, tenant_id: str, target_type, external_identifier: str) -> Optional[TrackedProfile]:
        target_type = parse_target_type(target_type)
        return (
            db.query(TrackedProfile)
            .filter(
                TrackedProfile.tenant_id == tenant_id,
                TrackedProfile.target_type == target_type.value,
                TrackedProfile.external_identifier == external_identifier.strip(),
            )
            .one_or_none()
        )

    def ensure_profile_exists(self, db: Session, tenant_id: str, target_type, external_identifier: str) -> ProfileResult:
        """
        Return the tenant's profile for an identifier, creating it when missing.

        New profiles are populated from a bounded overview run on the job
        platform. A run that finds nothing still creates the profile, named
        after its identifier; a failed run raises UpstreamError and creates
        nothing.
        """
        target_type = parse_target_type(target_type)
        if not external_identifier or not external_identifier.strip():
            raise ValueError("external_identifier is required")
        external_identifier = external_identifier.strip()

        profile = self.get_profile(db, tenant_id, target_type, external_identifier)
        if profile is not None:
            return ProfileResult(profile=profile, created=False)

        run_input = build_job_input(target_type, JobKind.OVERVIEW, [external_identifier], max_items=1)
        items = self.platform.run_and_collect(
            self.settings.actor_id(target_type, JobKind.OVERVIEW),
            run_input,
            timeout_secs=PROFILE_FETCH_TIMEOUT_SECS,
        )

        matching = group_by_identifier(target_type, items).get(external_identifier) or items
        fields = overview_fields(matching[-1]) if matching else {}
        if not fields.get("display_name"):
            logger.warning(f"No overview data for {target_type.value} {external_identifier}, using identifier as name")

        profile = TrackedProfile(
            tenant_id=tenant_id,
            target_type=target_type.value,
            external_identifier=external_identifier,
            display_name=fields.get("display_name") or external_identifier,
            rating=fields.get("rating"),
            review_count=fields.get("review_count"),
            overview_data=matching[-1] if matching else None,
            overview_updated_at=utcnow() if matching else None,
        )
        db.add(profile)
        try:
            db.commit()
        except IntegrityError:
            # Created concurrently by another request
            db.rollback()
            return ProfileResult(profile=self.get_profile(db, tenant_id, target_type, external_identifier), created=False)

        db.refresh(profile)
        logger.info(f"Created {target_type.value} profile {profile.id} for tenant {tenant_id} ({profile.display_name})")
        return ProfileResult(profile=profile, created=True)
