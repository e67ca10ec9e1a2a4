"""
Winning score: longevity and engagement folded into a 0-100 quality score and tier

Derived on every read and never persisted, so it cannot drift from
longevity_days or engagement_score.
"""
from dataclasses import dataclass
from typing import Iterable, Dict, Any, List

from cloakwatch.scoring.suspicion_scorer import round_half_up

LONGEVITY_FULL_DAYS = 60
LONGEVITY_WEIGHT = 0.6
ENGAGEMENT_WEIGHT = 0.4

TIER_CHAMPION = 'champion'
TIER_STRONG = 'strong'
TIER_PROMISING = 'promising'
TIER_TESTING = 'testing'

TIERS = [TIER_CHAMPION, TIER_STRONG, TIER_PROMISING, TIER_TESTING]

TIER_LABELS = {
    TIER_CHAMPION: "🏆 Champion",
    TIER_STRONG: "💪 Strong",
    TIER_PROMISING: "📈 Promising",
    TIER_TESTING: "🧪 Testing",
}


@dataclass(frozen=True)
class WinningScore:
    total: int
    longevity_score: int
    engagement_score: float
    tier: str
    is_winner: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'longevityScore': self.longevity_score,
            'engagementScore': self.engagement_score,
            'tier': self.tier,
            'isWinner': self.is_winner,
        }


def tier_for_total(total: int) -> str:
    if total >= 85:
        return TIER_CHAMPION
    if total >= 70:
        return TIER_STRONG
    if total >= 50:
        return TIER_PROMISING
    return TIER_TESTING


def calculate_winning_score(longevity_days=None, engagement_score=None) -> WinningScore:
    """
    Compute the winning score

    longevity_score = min(100, days / 60 * 100); total = round(0.6 * longevity
    + 0.4 * engagement). Missing inputs count as 0; inputs outside their
    ranges are clamped so the total stays within 0-100.

    Args:
        longevity_days: Days the ad has been running
        engagement_score: Engagement score, 0-100

    Returns:
        WinningScore
    """
    days = max(0, longevity_days or 0)
    longevity_score = min(100.0, (days / LONGEVITY_FULL_DAYS) * 100)
    engagement = max(0, min(100, engagement_score or 0))

    total = round_half_up(longevity_score * LONGEVITY_WEIGHT + engagement * ENGAGEMENT_WEIGHT)
    return WinningScore(
        total=total,
        longevity_score=round_half_up(longevity_score),
        engagement_score=engagement,
        tier=tier_for_total(total),
        is_winner=total >= 70,
    )


def winning_score_for_ad(ad) -> WinningScore:
    """Winning score from an ad's current longevity and engagement"""
    return calculate_winning_score(ad.longevity_days, ad.engagement_score)


def rank_ads(ads: Iterable) -> List:
    """Ads paired with their winning scores, best first"""
    scored = [(ad, winning_score_for_ad(ad)) for ad in ads]
    scored.sort(key=lambda pair: pair[1].total, reverse=True)
    return scored


def winning_stats(ads: Iterable) -> Dict[str, Any]:
    """
    Tier counts and average winning score over the given ads

    Recomputed from the ads on every call.
    """
    scores = [winning_score_for_ad(ad) for ad in ads]
    stats = {
        'totalAds': len(scores),
        'totalWinners': sum(1 for s in scores if s.is_winner),
        'avgWinningScore': 0,
    }
    for tier in TIERS:
        stats[tier] = sum(1 for s in scores if s.tier == tier)
    if scores:
        stats['avgWinningScore'] = round_half_up(sum(s.total for s in scores) / len(scores))
    return stats


def get_tier_label(tier: str) -> str:
    return TIER_LABELS[tier]

