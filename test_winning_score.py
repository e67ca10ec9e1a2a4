"""
Tests for the winning score engine
"""
from types import SimpleNamespace

import pytest

from cloakwatch.scoring.suspicion_scorer import round_half_up
from cloakwatch.scoring.winning_score import (
    calculate_winning_score, winning_score_for_ad, winning_stats, rank_ads, get_tier_label,
    TIER_CHAMPION, TIER_STRONG, TIER_PROMISING, TIER_TESTING,
)


def test_full_longevity_and_engagement_is_champion():
    score = calculate_winning_score(60, 100)
    assert score.total == 100
    assert score.longevity_score == 100
    assert score.tier == TIER_CHAMPION
    assert score.is_winner


def test_longevity_caps_at_sixty_days():
    assert calculate_winning_score(120, 0).longevity_score == 100
    assert calculate_winning_score(120, 0).total == 60


@pytest.mark.parametrize("days,engagement,total,tier", [
    (0, 0, 0, TIER_TESTING),
    (30, 50, 50, TIER_PROMISING),
    (45, 70, 73, TIER_STRONG),
    (60, 25, 70, TIER_STRONG),
    (60, 62.5, 85, TIER_CHAMPION),
    (30, 49, 50, TIER_PROMISING),
    (30, 47, 49, TIER_TESTING),
])
def test_totals_and_tier_boundaries(days, engagement, total, tier):
    score = calculate_winning_score(days, engagement)
    assert score.total == total
    assert score.tier == tier
    assert score.is_winner == (total >= 70)


def test_rounding_is_half_up():
    assert round_half_up(0.5) == 1
    assert round_half_up(2.5) == 3
    assert round_half_up(2.49) == 2
    # 1.25 * 0.4 == 0.5, which must round up rather than to even
    assert calculate_winning_score(0, 1.25).total == 1


def test_longevity_score_is_rounded():
    score = calculate_winning_score(1, 0)
    assert score.longevity_score == 2  # 1.67
    assert score.total == 1


def test_missing_and_out_of_range_inputs_stay_in_bounds():
    assert calculate_winning_score(None, None).total == 0
    assert calculate_winning_score(-10, -5).total == 0
    assert calculate_winning_score(1000, 500).total == 100


def test_to_dict_uses_wire_names():
    assert calculate_winning_score(45, 70).to_dict() == {
        'total': 73,
        'longevityScore': 75,
        'engagementScore': 70,
        'tier': TIER_STRONG,
        'isWinner': True,
    }


def test_score_follows_current_ad_values():
    ad = SimpleNamespace(longevity_days=10, engagement_score=20)
    before = winning_score_for_ad(ad).total
    ad.longevity_days = 60
    assert winning_score_for_ad(ad).total > before


def test_stats_on_empty_set_are_zero():
    stats = winning_stats([])
    assert stats['totalAds'] == 0
    assert stats['totalWinners'] == 0
    assert stats['avgWinningScore'] == 0
    assert stats[TIER_CHAMPION] == 0 and stats[TIER_TESTING] == 0


def test_stats_count_tiers():
    ads = [
        SimpleNamespace(longevity_days=60, engagement_score=100),
        SimpleNamespace(longevity_days=45, engagement_score=70),
        SimpleNamespace(longevity_days=0, engagement_score=0),
    ]
    stats = winning_stats(ads)
    assert stats['totalAds'] == 3
    assert stats['totalWinners'] == 2
    assert stats[TIER_CHAMPION] == 1
    assert stats[TIER_STRONG] == 1
    assert stats[TIER_TESTING] == 1
    assert stats['avgWinningScore'] == 58  # (100 + 73 + 0) / 3


def test_rank_ads_orders_best_first():
    weak = SimpleNamespace(longevity_days=1, engagement_score=0)
    strong = SimpleNamespace(longevity_days=60, engagement_score=90)
    ranked = rank_ads([weak, strong])
    assert ranked[0][0] is strong


def test_tier_labels():
    assert "Champion" in get_tier_label(TIER_CHAMPION)
    assert "Testing" in get_tier_label(TIER_TESTING)
