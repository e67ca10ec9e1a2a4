"""
Ad store boundary: reads ad signals and writes suspicion scores back
"""
import time
import logging
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy.exc import SQLAlchemyError

from cloakwatch.storage.database import DatabaseSession
from cloakwatch.storage.models import Ad, Domain
from cloakwatch.alerting.events import TOPIC_ADS

logger = logging.getLogger(__name__)

# Columns a score write may touch besides the score and flag
WRITABLE_FIELDS = {
    'detected_black_url', 'final_lp_url', 'white_url', 'cloaker_token', 'last_snapshot_at', 'longevity_days',
}


class ScoreWriteFailed(Exception):
    """Persisting an ad's score failed after all retries"""

    def __init__(self, ad_id: str, message: str):
        super().__init__(f"Score write failed for ad {ad_id}: {message}")
        self.ad_id = ad_id
        self.message = message


class AdStore:
    """Reads and writes ads through short-lived sessions"""

    def __init__(self, session_factory=None, retries: int = 3, event_bus=None, retry_delay: float = 0.5):
        """
        Args:
            session_factory: Session factory bound to the worker's engine
            retries: Attempts made before a write is reported as failed
            event_bus: Bus notified after each successful write
            retry_delay: Base delay between attempts, doubled each retry
        """
        self.session_factory = session_factory
        self.retries = max(1, int(retries))
        self.event_bus = event_bus
        self.retry_delay = retry_delay

    def read_ad(self, ad_id: str) -> Optional[Ad]:
        """Load an ad (detached, attributes loaded)"""
        with DatabaseSession(self.session_factory) as session:
            return session.query(Ad).filter(Ad.id == ad_id).first()

    def read_domain(self, domain_id: Optional[str]) -> Optional[Domain]:
        if not domain_id:
            return None
        with DatabaseSession(self.session_factory) as session:
            return session.query(Domain).filter(Domain.id == domain_id).first()

    def write_score(self, ad_id: str, suspicion_score: int, is_cloaked_flag: bool, **extra) -> Dict[str, Any]:
        """
        Persist an ad's suspicion score and cloaking flag

        Args:
            ad_id: Ad identifier
            suspicion_score: Integer score 0-100
            is_cloaked_flag: Whether cloaking has been confirmed
            **extra: Optional detected_black_url, final_lp_url, white_url, cloaker_token,
                last_snapshot_at, longevity_days

        Returns:
            Dictionary with ad_id, previous_score and suspicion_score

        Raises:
            ScoreWriteFailed: If the ad is missing or every attempt failed
        """
        unknown = set(extra) - WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported ad fields: {sorted(unknown)}")

        last_error = None
        for attempt in range(1, self.retries + 1):
            try:
                with DatabaseSession(self.session_factory) as session:
                    ad = session.query(Ad).filter(Ad.id == ad_id).first()
                    if not ad:
                        raise ScoreWriteFailed(ad_id, "ad not found")
                    previous = ad.suspicion_score
                    ad.suspicion_score = int(suspicion_score)
                    ad.is_cloaked_flag = bool(is_cloaked_flag)
                    for key, value in extra.items():
                        if value is not None:
                            setattr(ad, key, value)
                    ad.updated_at = datetime.utcnow()
                    tenant_id = ad.tenant_id
                    advertiser_id = ad.advertiser_id
                    domain_id = ad.domain_id
                break
            except SQLAlchemyError as e:
                last_error = e
                logger.warning(f"Score write attempt {attempt}/{self.retries} for ad {ad_id} failed: {e}")
                if attempt < self.retries:
                    time.sleep(self.retry_delay * (2 ** (attempt - 1)))
        else:
            raise ScoreWriteFailed(ad_id, str(last_error))

        result = {
            'ad_id': ad_id,
            'tenant_id': tenant_id,
            'advertiser_id': advertiser_id,
            'domain_id': domain_id,
            'previous_score': previous,
            'suspicion_score': int(suspicion_score),
            'is_cloaked_flag': bool(is_cloaked_flag),
        }
        if self.event_bus:
            self.event_bus.publish(TOPIC_ADS, result)
        return result
