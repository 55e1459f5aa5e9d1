"""
Organization Quota Management for the HR RAG Pipeline

Enforces usage limits per organization based on subscription tier.
Document limits are checked before validation, query limits before
retrieval. Exceeded limits are reported with current usage, the limit and
the time the window resets.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from .errors import QuotaExceededError

logger = logging.getLogger(__name__)


@dataclass
class OrganizationQuota:
    """Quota limits for an organization."""
    # Document limits
    max_documents: int = 100
    max_chunks_per_document: int = 1000

    # Query limits
    max_queries_per_day: int = 1000
    max_queries_per_hour: int = 100

    # Size limits
    max_document_size_mb: int = 50


# Predefined tiers
QUOTA_TIERS = {
    "free": OrganizationQuota(
        max_documents=10,
        max_chunks_per_document=500,
        max_queries_per_day=100,
        max_queries_per_hour=20,
        max_document_size_mb=10,
    ),
    "default": OrganizationQuota(),
    "premium": OrganizationQuota(
        max_documents=1000,
        max_chunks_per_document=2000,
        max_queries_per_day=10000,
        max_queries_per_hour=500,
        max_document_size_mb=100,
    ),
    "enterprise": OrganizationQuota(
        max_documents=10000,
        max_chunks_per_document=5000,
        max_queries_per_day=100000,
        max_queries_per_hour=5000,
        max_document_size_mb=200,
    ),
}


@dataclass
class QuotaUsage:
    """Current usage for an organization."""
    document_count: int = 0
    queries_today: int = 0
    queries_this_hour: int = 0
    day_started: datetime = field(default_factory=lambda: _start_of_day(datetime.now()))
    hour_started: datetime = field(default_factory=lambda: _start_of_hour(datetime.now()))


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _start_of_hour(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0)


class QuotaManager:
    """
    Manages organization quotas and enforces limits.

    Usage:
        manager = QuotaManager(document_store)

        # Check before document upload
        manager.check_document_quota(organization_id, tier="default", size_bytes=len(data))

        # Check before query
        manager.check_query_quota(organization_id, tier="default")
        manager.record_query(organization_id)
    """

    def __init__(self, document_store=None, clock=datetime.now):
        """
        Initialize quota manager.

        Args:
            document_store: DocumentStore used to count an organization's documents
            clock: Callable returning the current time
        """
        self.store = document_store
        self._clock = clock
        self._usage: dict[str, QuotaUsage] = {}
        self._lock = threading.Lock()

    def get_quota(self, tier: str = "default") -> OrganizationQuota:
        return QUOTA_TIERS.get(tier, QUOTA_TIERS["default"])

    def get_usage(self, organization_id: str) -> QuotaUsage:
        """
        Get current usage for an organization.

        Query windows roll over on the hour and at midnight. The document
        count comes from the store when one is configured.
        """
        now = self._clock()
        with self._lock:
            usage = self._usage.setdefault(organization_id, QuotaUsage(
                day_started=_start_of_day(now), hour_started=_start_of_hour(now),
            ))
            if _start_of_day(now) > usage.day_started:
                usage.day_started = _start_of_day(now)
                usage.queries_today = 0
            if _start_of_hour(now) > usage.hour_started:
                usage.hour_started = _start_of_hour(now)
                usage.queries_this_hour = 0

        if self.store is not None:
            usage.document_count = len(self.store.list_documents(organization_id=organization_id))
        return usage

    def check_document_quota(
        self,
        organization_id: str,
        tier: str = "default",
        size_bytes: int = 0,
        new_chunks: int = 0,
    ) -> bool:
        """
        Check if a document upload is allowed.

        Args:
            organization_id: Organization identifier
            tier: Subscription tier
            size_bytes: Size of the uploaded file
            new_chunks: Number of chunks in the new document (0 before chunking)

        Returns:
            True if allowed

        Raises:
            QuotaExceededError: If quota would be exceeded
        """
        quota = self.get_quota(tier)
        usage = self.get_usage(organization_id)

        if usage.document_count >= quota.max_documents:
            raise QuotaExceededError(
                f"Document limit reached ({quota.max_documents} documents)",
                quota_type="documents",
                current=usage.document_count,
                limit=quota.max_documents,
            )

        max_bytes = quota.max_document_size_mb * 1024 * 1024
        if size_bytes > max_bytes:
            raise QuotaExceededError(
                f"Document exceeds the {quota.max_document_size_mb} MB tier limit",
                quota_type="document_size",
                current=size_bytes,
                limit=max_bytes,
            )

        if new_chunks > quota.max_chunks_per_document:
            raise QuotaExceededError(
                f"Document too large ({new_chunks} chunks, max {quota.max_chunks_per_document})",
                quota_type="chunks_per_document",
                current=new_chunks,
                limit=quota.max_chunks_per_document,
            )

        return True

    def check_query_quota(self, organization_id: str, tier: str = "default") -> bool:
        """
        Check if a query is allowed.

        Raises:
            QuotaExceededError: With the time the exhausted window resets
        """
        quota = self.get_quota(tier)
        usage = self.get_usage(organization_id)

        if usage.queries_this_hour >= quota.max_queries_per_hour:
            raise QuotaExceededError(
                f"Hourly query limit reached ({quota.max_queries_per_hour} queries/hour)",
                quota_type="queries_per_hour",
                current=usage.queries_this_hour,
                limit=quota.max_queries_per_hour,
                reset_at=usage.hour_started + timedelta(hours=1),
            )

        if usage.queries_today >= quota.max_queries_per_day:
            raise QuotaExceededError(
                f"Daily query limit reached ({quota.max_queries_per_day} queries/day)",
                quota_type="queries_per_day",
                current=usage.queries_today,
                limit=quota.max_queries_per_day,
                reset_at=usage.day_started + timedelta(days=1),
            )

        return True

    def max_document_bytes(self, tier: str = "default") -> int:
        """Size ceiling a tier imposes on the security screen."""
        return self.get_quota(tier).max_document_size_mb * 1024 * 1024

    def record_query(self, organization_id: str):
        """Record a query for quota tracking."""
        self.get_usage(organization_id)
        with self._lock:
            usage = self._usage[organization_id]
            usage.queries_today += 1
            usage.queries_this_hour += 1

    def get_quota_status(self, organization_id: str, tier: str = "default") -> dict:
        """Current usage vs limits for an organization."""
        quota = self.get_quota(tier)
        usage = self.get_usage(organization_id)

        def _entry(used, limit):
            return {
                "used": used,
                "limit": limit,
                "remaining": max(limit - used, 0),
                "percentage": round(used / limit * 100, 1),
            }

        return {
            "tier": tier,
            "documents": _entry(usage.document_count, quota.max_documents),
            "queries_this_hour": _entry(usage.queries_this_hour, quota.max_queries_per_hour),
            "queries_today": _entry(usage.queries_today, quota.max_queries_per_day),
        }


# CLI for testing
if __name__ == "__main__":
    import json

    manager = QuotaManager()
    organization_id = "org-test-123"

    print("=== Quota Tiers ===")
    for tier_name, tier in QUOTA_TIERS.items():
        print(f"{tier_name}: {tier.max_documents} docs, {tier.max_queries_per_hour}/hour, "
              f"{tier.max_queries_per_day}/day")

    for _ in range(21):
        try:
            manager.check_query_quota(organization_id, tier="free")
            manager.record_query(organization_id)
        except QuotaExceededError as e:
            print(json.dumps(e.to_dict(), indent=2))
            break

    print(json.dumps(manager.get_quota_status(organization_id, tier="free"), indent=2))
