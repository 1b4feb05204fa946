import uuid

from sqlalchemy import Column, Integer, String, DateTime, Float, Boolean, Text, JSON, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from scraper.db.database import Base


def _uuid_str():
    return str(uuid.uuid4())


class ScheduleEntry(Base):
    """
    One shared recurring job on the job platform.

    Serves a bounded batch of targets that share (target_type, job_kind,
    interval_hours). `subscriber_count` caches the number of active mappings
    pointing here and is recomputed inside every transaction that changes them.
    """
    __tablename__ = "schedule_entries"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)

    target_type = Column(String(32), nullable=False, index=True)
    job_kind = Column(String(16), nullable=False)
    interval_hours = Column(Integer, nullable=False)
    batch_index = Column(Integer, nullable=False, default=0)

    # Job platform handles
    external_job_id = Column(String(128), nullable=False, unique=True)
    actor_id = Column(String(128), nullable=False)
    cron_expression = Column(String(64), nullable=False)
    max_items_per_run = Column(Integer, nullable=False, default=100)

    subscriber_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=False)
    is_paused = Column(Boolean, nullable=False, default=False)  # admin pause

    # External sync bookkeeping
    needs_sync = Column(Boolean, nullable=False, default=False, index=True)
    last_sync_error = Column(Text, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    # Written only by job completion handling
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    next_run_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    mappings = relationship("SubscriberMapping", back_populates="schedule")

    __table_args__ = (
        UniqueConstraint('target_type', 'job_kind', 'interval_hours', 'batch_index', name='uq_schedule_entry_slot'),
        Index('idx_schedule_entry_group', 'target_type', 'job_kind', 'interval_hours'),
    )


class SubscriberMapping(Base):
    """Binds one tracked target to one schedule entry for one job kind."""
    __tablename__ = "subscriber_mappings"

    id = Column(Integer, primary_key=True, index=True)
    target_id = Column(String(64), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    target_type = Column(String(32), nullable=False)
    job_kind = Column(String(16), nullable=False)
    external_identifier = Column(String(1024), nullable=False)

    # Always equal to the owning schedule entry's interval
    interval_hours = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    schedule_id = Column(Integer, ForeignKey("schedule_entries.id"), nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    schedule = relationship("ScheduleEntry", back_populates="mappings")

    __table_args__ = (
        UniqueConstraint('target_id', 'job_kind', name='uq_subscriber_target_kind'),
        Index('idx_subscriber_tenant_type', 'tenant_id', 'target_type'),
    )


class CustomIntervalOverride(Base):
    """Administrative per-tenant interval that supersedes the tier default."""
    __tablename__ = "custom_interval_overrides"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    target_type = Column(String(32), nullable=False)
    custom_interval_hours = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)
    set_by = Column(String(255), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)  # ignored once passed, never auto-deleted

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('tenant_id', 'target_type', name='uq_custom_interval_tenant_type'),
    )


class JobRunRecord(Base):
    """Tracking row for one job platform run (ad hoc or scheduled)."""
    __tablename__ = "job_run_records"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=True, index=True)  # null for multi-tenant batch runs
    target_type = Column(String(32), nullable=False)
    run_kind = Column(String(32), nullable=False)  # initial, recurring-reviews, recurring-overview
    schedule_id = Column(Integer, ForeignKey("schedule_entries.id", ondelete="SET NULL"), nullable=True)

    external_run_id = Column(String(128), nullable=True, index=True)
    external_dataset_id = Column(String(128), nullable=True)
    status = Column(String(20), nullable=False, default="running")  # running, completed, failed
    identifiers = Column(JSON, nullable=True)  # external identifiers the run was started with

    items_processed = Column(Integer, nullable=False, default=0)
    items_new = Column(Integer, nullable=False, default=0)
    items_duplicate = Column(Integer, nullable=False, default=0)
    targets_updated = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    # Admin retries create a new record and point the old one at it
    retry_of_id = Column(Integer, ForeignKey("job_run_records.id"), nullable=True)
    superseded_by_id = Column(Integer, nullable=True)

    started_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_job_run_tenant_type', 'tenant_id', 'target_type'),
    )


class JobWebhookEvent(Base):
    """Idempotency log for job completion callbacks, one row per external run."""
    __tablename__ = "job_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    external_run_id = Column(String(128), nullable=False, unique=True)
    event_type = Column(String(32), nullable=False)
    processing_status = Column(String(20), nullable=False, default="pending")  # pending, success, failed
    attempts = Column(Integer, nullable=False, default=1)
    error_message = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)

    received_at = Column(DateTime(timezone=True), server_default=func.now())
    claimed_at = Column(DateTime(timezone=True), nullable=True)  # lease of the delivery currently processing
    processed_at = Column(DateTime(timezone=True), nullable=True)


class TrackedProfile(Base):
    """A tenant's tracked external profile (the scrape target)."""
    __tablename__ = "tracked_profiles"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    tenant_id = Column(String(64), nullable=False, index=True)
    target_type = Column(String(32), nullable=False)
    external_identifier = Column(String(1024), nullable=False)
    display_name = Column(String(500), nullable=True)

    # Overview data refreshed by recurring overview runs
    rating = Column(Float, nullable=True)
    review_count = Column(Integer, nullable=True)
    overview_data = Column(JSON, nullable=True)
    overview_updated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint('tenant_id', 'target_type', 'external_identifier', name='uq_tracked_profile'),
    )


class TenantSubscription(Base):
    """Billing state mirrored from the payment provider."""
    __tablename__ = "tenant_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default="none")  # active, trialing, past_due, canceled, none

    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True)
    stripe_product_id = Column(String(255), nullable=True)
    enabled_features = Column(JSON, nullable=False, default=list)  # feature lookup keys

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class TargetConfiguration(Base):
    """Identifiers a tenant configured in the dashboard, per target type."""
    __tablename__ = "target_configurations"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    target_type = Column(String(32), nullable=False)
    external_identifier = Column(String(1024), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint('tenant_id', 'target_type', 'external_identifier', name='uq_target_configuration'),
    )


class CollectedReview(Base):
    """Deduplicated review items ingested from job output."""
    __tablename__ = "collected_reviews"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    profile_id = Column(String(36), ForeignKey("tracked_profiles.id", ondelete="CASCADE"), nullable=False)
    target_type = Column(String(32), nullable=False)
    review_key = Column(String(255), nullable=False)
    payload = Column(JSON, nullable=True)
    collected_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint('profile_id', 'review_key', name='uq_collected_review'),
    )
