"""
Advertiser and domain rollups, always recomputed from the constituent ads
"""
import logging
from typing import Iterable, Dict, Optional

from cloakwatch.storage.database import DatabaseSession
from cloakwatch.storage.models import Ad, Advertiser, Domain

logger = logging.getLogger(__name__)


def mean_score(scores) -> float:
    """Arithmetic mean of suspicion scores; 0.0 for an empty set"""
    values = [s or 0 for s in scores]
    if not values:
        return 0.0
    return sum(values) / len(values)


def recompute_advertiser(session, advertiser_id: str) -> Optional[Advertiser]:
    """Recompute an advertiser's counters and average suspicion from its ads"""
    advertiser = session.query(Advertiser).filter(Advertiser.id == advertiser_id).first()
    if not advertiser:
        logger.warning(f"Advertiser {advertiser_id} not found for rollup")
        return None

    ads = session.query(Ad).filter(Ad.advertiser_id == advertiser_id).all()
    advertiser.total_ads = len(ads)
    advertiser.active_ads = sum(1 for ad in ads if ad.status == 'active')
    advertiser.domains_count = len({ad.domain_id for ad in ads if ad.domain_id})
    advertiser.avg_suspicion_score = mean_score(ad.suspicion_score for ad in ads)
    return advertiser


def recompute_domain(session, domain_id: str) -> Optional[Domain]:
    """Recompute a domain's suspicion score as the mean of its ads"""
    domain = session.query(Domain).filter(Domain.id == domain_id).first()
    if not domain:
        logger.warning(f"Domain {domain_id} not found for rollup")
        return None

    scores = [ad.suspicion_score for ad in session.query(Ad).filter(Ad.domain_id == domain_id).all()]
    domain.suspicion_score = mean_score(scores)
    return domain


def recompute_rollups(advertiser_ids: Iterable[str] = (), domain_ids: Iterable[str] = (),
                      session_factory=None) -> Dict[str, int]:
    """
    Recompute the given advertisers and domains in one transaction

    Returns:
        Dictionary with counts of advertisers and domains recomputed
    """
    stats = {'advertisers': 0, 'domains': 0}
    with DatabaseSession(session_factory) as session:
        for advertiser_id in sorted({a for a in advertiser_ids if a}):
            if recompute_advertiser(session, advertiser_id):
                stats['advertisers'] += 1
        for domain_id in sorted({d for d in domain_ids if d}):
            if recompute_domain(session, domain_id):
                stats['domains'] += 1

    logger.info(f"Recomputed rollups: {stats}")
    return stats


def recompute_all_rollups(tenant_id: str = None, session_factory=None) -> Dict[str, int]:
    """Recompute every advertiser and domain, optionally for one tenant"""
    with DatabaseSession(session_factory) as session:
        advertisers = session.query(Advertiser.id)
        domains = session.query(Domain.id)
        if tenant_id:
            advertisers = advertisers.filter(Advertiser.tenant_id == tenant_id)
            domains = domains.filter(Domain.tenant_id == tenant_id)
        advertiser_ids = [row[0] for row in advertisers.all()]
        domain_ids = [row[0] for row in domains.all()]

    return recompute_rollups(advertiser_ids, domain_ids, session_factory)
