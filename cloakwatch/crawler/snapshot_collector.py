"""
Snapshot acquisition under varying access conditions, and the snapshot source read by the engine
"""
import time
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Dict, Any

from sqlalchemy.exc import SQLAlchemyError

from cloakwatch.storage.database import DatabaseSession
from cloakwatch.storage.models import Ad, LandingPageSnapshot
from cloakwatch.crawler.conditions import (
    AccessCondition, SAFE_CONDITION, priority_conditions, deduce_cloaker_token, apply_token
)
from cloakwatch.crawler.web_crawler import WebCrawler

logger = logging.getLogger(__name__)


class FetchFailed(Exception):
    """Snapshots could not be acquired (network, timeout or store read failure)"""

    def __init__(self, ad_id: str, message: str):
        super().__init__(f"Fetch failed for ad {ad_id}: {message}")
        self.ad_id = ad_id
        self.message = message


@dataclass
class SnapshotRecord:
    """Read model of one landing-page capture"""
    condition: str
    captured_at: datetime
    content_hash: str
    preview: str = ''
    content_text: Optional[str] = None
    redirect_chain: List[str] = field(default_factory=list)
    final_url: Optional[str] = None
    is_black_page: bool = False
    detected_token: Optional[str] = None
    check_id: Optional[str] = None

    @classmethod
    def from_model(cls, snapshot: LandingPageSnapshot) -> 'SnapshotRecord':
        return cls(
            condition=snapshot.snapshot_condition,
            captured_at=snapshot.captured_at,
            content_hash=snapshot.content_hash or '',
            preview=snapshot.content_preview or '',
            content_text=snapshot.content_text,
            redirect_chain=list(snapshot.redirect_chain or []),
            final_url=snapshot.final_redirect_url,
            is_black_page=bool(snapshot.is_black_page),
            detected_token=snapshot.detected_token,
            check_id=snapshot.check_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'condition': self.condition,
            'capturedAt': self.captured_at.isoformat() if self.captured_at else None,
            'contentHash': self.content_hash,
            'preview': self.preview,
        }


class DatabaseSnapshotSource:
    """Snapshot source backed by the landing_page_snapshots table"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def fetch_snapshots(self, ad_id: str) -> List[SnapshotRecord]:
        """
        Return an ad's snapshots, newest first

        Raises:
            FetchFailed: If the store cannot be read
        """
        try:
            with DatabaseSession(self.session_factory) as session:
                snapshots = session.query(LandingPageSnapshot)\
                    .filter(LandingPageSnapshot.ad_id == ad_id)\
                    .filter(LandingPageSnapshot.content_hash != None)\
                    .filter(LandingPageSnapshot.content_hash != '')\
                    .order_by(LandingPageSnapshot.captured_at.desc(), LandingPageSnapshot.id.desc())\
                    .all()
                return [SnapshotRecord.from_model(s) for s in snapshots]
        except SQLAlchemyError as e:
            raise FetchFailed(ad_id, f"snapshot store unavailable: {e}") from e


class SnapshotCollector:
    """Captures an ad's landing page under the safe baseline and probing conditions"""

    def __init__(self, crawler: WebCrawler = None, session_factory=None,
                 conditions_per_check: int = 6, stop_on_first_divergence: bool = True):
        """
        Args:
            crawler: Crawler used for requests
            session_factory: Session factory for persisting snapshots
            conditions_per_check: Probing conditions tried after the baseline
            stop_on_first_divergence: Stop probing once a capture differs from the baseline
        """
        self.crawler = crawler or WebCrawler()
        self.session_factory = session_factory
        self.conditions_per_check = conditions_per_check
        self.stop_on_first_divergence = stop_on_first_divergence

    @classmethod
    def from_config(cls, config: Dict[str, Any], crawler: WebCrawler = None, session_factory=None):
        divergence = config['divergence']
        return cls(
            crawler=crawler,
            session_factory=session_factory,
            conditions_per_check=int(divergence['conditions_per_check']),
            stop_on_first_divergence=bool(divergence['stop_on_first_divergence']),
        )

    def _store_snapshot(self, ad: Ad, condition: AccessCondition, crawl_result: Dict,
                        token: Optional[str], captured_at: datetime, check_id: str) -> LandingPageSnapshot:
        with DatabaseSession(self.session_factory) as session:
            snapshot = LandingPageSnapshot(
                tenant_id=ad.tenant_id,
                ad_id=ad.id,
                snapshot_condition=condition.label,
                user_agent=condition.headers()['User-Agent'],
                ip_geo=condition.country,
                referer=condition.headers().get('Referer'),
                content_hash=crawl_result['content_hash'],
                content_preview=crawl_result['content_preview'],
                content_text=crawl_result['content_text'],
                redirect_chain=crawl_result['redirect_chain'],
                final_redirect_url=crawl_result['final_url'],
                response_code=crawl_result['http_status'],
                is_black_page=crawl_result['is_black_page'],
                detected_token=token if condition.include_token else None,
                check_id=check_id,
                captured_at=captured_at,
            )
            session.add(snapshot)
        return snapshot

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return deadline - time.monotonic()

    def collect(self, ad: Ad, target_url: str, deadline: Optional[float] = None) -> List[Dict]:
        """
        Capture the baseline plus probing conditions and persist each capture

        Every capture of one call shares a check id, so the engine only
        compares pages fetched in the same pass.

        Args:
            ad: Ad being checked (can be detached)
            target_url: Validated landing URL
            deadline: time.monotonic() value after which no request is started;
                requests are cut off at the deadline

        Returns:
            List of crawl results that were stored

        Raises:
            FetchFailed: If the baseline, or every probing condition, fails,
                or the deadline passed before the baseline
        """
        token = deduce_cloaker_token(target_url)
        if token:
            logger.info(f"Deduced cloaker token '{token}' for ad {ad.id}")

        check_id = str(uuid.uuid4())
        remaining = self._remaining(deadline)
        if remaining is not None and remaining <= 0:
            raise FetchFailed(ad.id, "time budget exhausted before baseline")

        baseline = self.crawler.crawl(target_url, SAFE_CONDITION, target_url=target_url, timeout=remaining)
        if baseline['error']:
            raise FetchFailed(ad.id, baseline['error'])

        captured = []
        self._store_snapshot(ad, SAFE_CONDITION, baseline, None, datetime.utcnow(), check_id)
        captured.append(baseline)
        logger.info(f"White page baseline captured for ad {ad.id}: {baseline['content_hash'][:8]}")

        errors = []
        for condition in priority_conditions(self.conditions_per_check):
            remaining = self._remaining(deadline)
            if remaining is not None and remaining <= 0:
                logger.info(f"Time budget exhausted while probing ad {ad.id}, {len(captured)} capture(s) kept")
                break

            request_url = apply_token(target_url, token) if condition.include_token else target_url
            result = self.crawler.crawl(request_url, condition, target_url=target_url, timeout=remaining)
            if result['error']:
                errors.append(result['error'])
                continue

            self._store_snapshot(ad, condition, result, token, datetime.utcnow(), check_id)
            captured.append(result)

            if self.stop_on_first_divergence and (
                    result['content_hash'] != baseline['content_hash'] or result['is_black_page']):
                logger.info(f"Divergence observed for ad {ad.id} under '{condition.label}'")
                break

        if len(captured) == 1 and errors:
            raise FetchFailed(ad.id, f"all probing conditions failed: {errors[-1]}")

        return captured
