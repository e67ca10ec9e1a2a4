"""
Alert manager: creates deduplicated alerts from engine outputs and tracks read state
"""
import threading
import logging
from datetime import datetime, timedelta
from typing import List, Dict, Any, Optional

from cloakwatch.storage.database import DatabaseSession
from cloakwatch.storage.models import Alert, Ad, Advertiser, Tenant, JobRun
from cloakwatch.alerting.events import TOPIC_ALERTS

logger = logging.getLogger(__name__)

ALERT_NEW_AD = 'new_ad'
ALERT_HIGH_SUSPICION = 'high_suspicion'
ALERT_API_STATUS = 'api_status'

SEVERITY_INFO = 'info'
SEVERITY_WARNING = 'warning'
SEVERITY_ERROR = 'error'

HEALTH_CHECK_JOB = 'ad_library_api_health_check'


def severity_for_score(score: Optional[float]) -> str:
    """
    Alert severity for a suspicion score

    >= 80 is an error, 50-79 a warning, anything lower informational.
    """
    score = score or 0
    if score >= 80:
        return SEVERITY_ERROR
    if score >= 50:
        return SEVERITY_WARNING
    return SEVERITY_INFO


class AlertManager:
    """Creates alerts, suppressing duplicates within a rolling window"""

    def __init__(self, session_factory=None, dedup_window_hours: float = 24,
                 high_suspicion_threshold: int = 80, event_bus=None):
        """
        Initialize alert manager

        Args:
            session_factory: Session factory (optional, a new engine is used if not provided)
            dedup_window_hours: Window in which (tenant, ad, type) is alerted at most once
            high_suspicion_threshold: Score at which an ad raises a high-suspicion alert
            event_bus: Bus notified after each inserted alert
        """
        self.session_factory = session_factory
        self.dedup_window = timedelta(hours=dedup_window_hours)
        self.high_suspicion_threshold = high_suspicion_threshold
        self.event_bus = event_bus
        # Serializes the check-then-insert so concurrent workers cannot both pass the dedup check
        self._insert_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Dict[str, Any], session_factory=None, event_bus=None) -> 'AlertManager':
        alerts = config['alerts']
        return cls(
            session_factory=session_factory,
            dedup_window_hours=alerts['dedup_window_hours'],
            high_suspicion_threshold=alerts['high_suspicion_threshold'],
            event_bus=event_bus,
        )

    def _is_duplicate(self, session, tenant_id: str, related_ad_id: Optional[str],
                      alert_type: str, now: datetime) -> bool:
        query = session.query(Alert.id)\
            .filter(Alert.tenant_id == tenant_id)\
            .filter(Alert.alert_type == alert_type)\
            .filter(Alert.created_at >= now - self.dedup_window)
        if related_ad_id is None:
            query = query.filter(Alert.related_ad_id == None)
        else:
            query = query.filter(Alert.related_ad_id == related_ad_id)
        return query.first() is not None

    def create_alert(self, tenant_id: str, alert_type: str, title: str, message: str = None,
                     severity: str = SEVERITY_INFO, related_ad_id: str = None,
                     related_advertiser_id: str = None, metadata: Dict[str, Any] = None,
                     now: datetime = None) -> Optional[Alert]:
        """
        Insert an alert unless an equivalent one exists in the dedup window

        Args:
            tenant_id: Owning tenant
            alert_type: new_ad, high_suspicion or api_status
            title: Short title
            message: Body text
            severity: info, warning or error
            related_ad_id: Ad the alert is about (optional)
            related_advertiser_id: Advertiser the alert is about (optional)
            metadata: Free-form details
            now: Creation time (defaults to utcnow)

        Returns:
            The inserted Alert, or None if it was suppressed as a duplicate
        """
        if severity not in (SEVERITY_INFO, SEVERITY_WARNING, SEVERITY_ERROR):
            raise ValueError(f"Unknown alert severity '{severity}'")
        now = now or datetime.utcnow()

        with self._insert_lock:
            with DatabaseSession(self.session_factory) as session:
                if self._is_duplicate(session, tenant_id, related_ad_id, alert_type, now):
                    logger.debug(f"Suppressed duplicate {alert_type} alert for ad {related_ad_id}")
                    return None

                alert = Alert(
                    tenant_id=tenant_id,
                    alert_type=alert_type,
                    title=title,
                    message=message,
                    severity=severity,
                    is_read=False,
                    related_ad_id=related_ad_id,
                    related_advertiser_id=related_advertiser_id,
                    metadata_json=metadata or {},
                    created_at=now,
                )
                session.add(alert)
                session.flush()

        logger.info(f"Created {severity} {alert_type} alert for tenant {tenant_id}: {title}")
        if self.event_bus:
            self.event_bus.publish(TOPIC_ALERTS, {'tenant_id': tenant_id, 'alert_id': alert.id})
        return alert

    def insert_alert(self, payload: Dict[str, Any]) -> Optional[Alert]:
        """
        Alert sink entry point accepting the camelCase wire payload

        Args:
            payload: {tenantId, alertType, title, message, severity,
                relatedAdId?, relatedAdvertiserId?, metadata?}
        """
        return self.create_alert(
            tenant_id=payload['tenantId'],
            alert_type=payload['alertType'],
            title=payload['title'],
            message=payload.get('message'),
            severity=payload.get('severity', SEVERITY_INFO),
            related_ad_id=payload.get('relatedAdId'),
            related_advertiser_id=payload.get('relatedAdvertiserId'),
            metadata=payload.get('metadata'),
        )

    def _advertiser_name(self, session, ad: Ad) -> str:
        if ad.advertiser_id:
            advertiser = session.query(Advertiser).filter(Advertiser.id == ad.advertiser_id).first()
            if advertiser:
                return advertiser.name
        return ad.page_name or "Unknown"

    def alert_for_score_change(self, ad: Ad, previous_score: Optional[int] = None) -> Optional[Alert]:
        """
        Raise a high-suspicion alert when an ad reaches the threshold

        Ads already at or above the threshold before this score do not alert again.
        """
        score = ad.suspicion_score or 0
        if score < self.high_suspicion_threshold:
            return None
        if previous_score is not None and previous_score >= self.high_suspicion_threshold:
            return None

        with DatabaseSession(self.session_factory) as session:
            name = self._advertiser_name(session, ad)

        return self.create_alert(
            tenant_id=ad.tenant_id,
            alert_type=ALERT_HIGH_SUSPICION,
            title=f"High suspicion detected: {name}",
            message=f"Suspicion score: {score}. {ad.headline or ''}".strip(),
            severity=severity_for_score(score),
            related_ad_id=ad.id,
            related_advertiser_id=ad.advertiser_id,
            metadata={'suspicion_score': score, 'previous_score': previous_score,
                      'is_cloaked': bool(ad.is_cloaked_flag)},
        )

    def check_new_ads(self, tenant_id: str, since: datetime = None) -> Dict[str, int]:
        """
        Alert on ads created recently and on recently updated high-suspicion ads

        Args:
            tenant_id: Tenant to check
            since: Lower bound for created_at/updated_at (defaults to 24 hours ago)

        Returns:
            Dictionary with newAlertsCount, adsChecked and highSuspicionAds
        """
        since = since or datetime.utcnow() - timedelta(hours=24)
        candidates = []

        with DatabaseSession(self.session_factory) as session:
            new_ads = session.query(Ad)\
                .filter(Ad.tenant_id == tenant_id)\
                .filter(Ad.created_at >= since)\
                .order_by(Ad.created_at.desc())\
                .all()
            for ad in new_ads:
                name = self._advertiser_name(session, ad)
                candidates.append(dict(
                    tenant_id=tenant_id,
                    alert_type=ALERT_NEW_AD,
                    title=f"New ad detected: {name}",
                    message=ad.headline or f"Suspicion score: {ad.suspicion_score or 0}",
                    severity=severity_for_score(ad.suspicion_score),
                    related_ad_id=ad.id,
                    related_advertiser_id=ad.advertiser_id,
                    metadata={'suspicion_score': ad.suspicion_score, 'page_name': ad.page_name},
                ))

            new_ids = {ad.id for ad in new_ads}
            risky_ads = session.query(Ad)\
                .filter(Ad.tenant_id == tenant_id)\
                .filter(Ad.suspicion_score >= self.high_suspicion_threshold)\
                .filter(Ad.updated_at >= since)\
                .all()
            for ad in risky_ads:
                if ad.id in new_ids:
                    continue
                name = self._advertiser_name(session, ad)
                candidates.append(dict(
                    tenant_id=tenant_id,
                    alert_type=ALERT_HIGH_SUSPICION,
                    title=f"High suspicion detected: {name}",
                    message=f"Suspicion score: {ad.suspicion_score}. {ad.headline or ''}".strip(),
                    severity=severity_for_score(ad.suspicion_score),
                    related_ad_id=ad.id,
                    related_advertiser_id=ad.advertiser_id,
                    metadata={'suspicion_score': ad.suspicion_score},
                ))

        created = sum(1 for candidate in candidates if self.create_alert(**candidate))
        logger.info(f"Created {created} new alert(s) for tenant {tenant_id}")
        return {
            'newAlertsCount': created,
            'adsChecked': len(new_ads),
            'highSuspicionAds': len(risky_ads),
        }

    def record_api_health(self, is_working: bool, details: Dict[str, Any] = None,
                          checked_at: datetime = None, api: str = 'ad_library') -> Dict[str, Any]:
        """
        Log an external API health check and announce recovery to every tenant

        Args:
            is_working: Result of the health check
            details: Diagnostic details stored with the check
            checked_at: Time of the check
            api: API name recorded in alert metadata

        Returns:
            Dictionary with recovered, previous_status and recovery_alerts
        """
        checked_at = checked_at or datetime.utcnow()
        with DatabaseSession(self.session_factory) as session:
            last_check = session.query(JobRun)\
                .filter(JobRun.job_name == HEALTH_CHECK_JOB)\
                .order_by(JobRun.created_at.desc(), JobRun.id.desc())\
                .first()
            previous_status = last_check.status if last_check else 'unknown'

            session.add(JobRun(
                job_name=HEALTH_CHECK_JOB,
                task_type='health_check',
                schedule_type='manual',
                status='completed' if is_working else 'failed',
                started_at=checked_at,
                completed_at=checked_at,
                metadata_json=details or {},
            ))
            tenant_ids = [row[0] for row in session.query(Tenant.id).all()]

        recovered = previous_status == 'failed' and is_working
        recovery_alerts = 0
        if recovered:
            logger.info(f"{api} API recovered, notifying {len(tenant_ids)} tenant(s)")
            for tenant_id in tenant_ids:
                alert = self.create_alert(
                    tenant_id=tenant_id,
                    alert_type=ALERT_API_STATUS,
                    title=f"{api} API recovered",
                    message="The API is working normally again. Imports and searches can resume.",
                    severity=SEVERITY_INFO,
                    metadata={
                        'api': api,
                        'previous_status': 'error',
                        'current_status': 'working',
                        'recovered_at': checked_at.isoformat(),
                    },
                    now=checked_at,
                )
                if alert:
                    recovery_alerts += 1

        return {
            'recovered': recovered,
            'previous_status': previous_status,
            'recovery_alerts': recovery_alerts,
        }

    def list_alerts(self, tenant_id: str, unread_only: bool = False, limit: int = 50) -> List[Alert]:
        """Most recent alerts for a tenant"""
        with DatabaseSession(self.session_factory) as session:
            query = session.query(Alert).filter(Alert.tenant_id == tenant_id)
            if unread_only:
                query = query.filter(Alert.is_read == False)
            return query.order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit).all()

    def unread_count(self, tenant_id: str) -> int:
        with DatabaseSession(self.session_factory) as session:
            return session.query(Alert)\
                .filter(Alert.tenant_id == tenant_id)\
                .filter(Alert.is_read == False)\
                .count()

    def mark_as_read(self, alert_id: int) -> bool:
        with DatabaseSession(self.session_factory) as session:
            alert = session.query(Alert).filter(Alert.id == alert_id).first()
            if not alert:
                return False
            alert.is_read = True
            tenant_id = alert.tenant_id
        self._notify(tenant_id)
        return True

    def mark_all_as_read(self, tenant_id: str) -> int:
        """
        Mark every unread alert of a tenant as read

        Returns:
            Number of alerts updated
        """
        with DatabaseSession(self.session_factory) as session:
            updated = session.query(Alert)\
                .filter(Alert.tenant_id == tenant_id)\
                .filter(Alert.is_read == False)\
                .update({Alert.is_read: True}, synchronize_session=False)
        self._notify(tenant_id)
        return updated

    def delete_alert(self, alert_id: int) -> bool:
        with DatabaseSession(self.session_factory) as session:
            alert = session.query(Alert).filter(Alert.id == alert_id).first()
            if not alert:
                return False
            tenant_id = alert.tenant_id
            session.delete(alert)
        self._notify(tenant_id)
        return True

    def _notify(self, tenant_id: str):
        if self.event_bus:
            self.event_bus.publish(TOPIC_ALERTS, {'tenant_id': tenant_id})
