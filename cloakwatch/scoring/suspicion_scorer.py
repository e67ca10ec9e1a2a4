"""
Suspicion scoring: folds divergence, redirect and static risk signals into a 0-100 score
"""
import math
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

BAND_HIGH = 'high'
BAND_MEDIUM = 'medium'
BAND_LOW = 'low'

BAND_LABELS = {
    BAND_HIGH: "HIGH PROBABILITY",
    BAND_MEDIUM: "Medium Risk",
    BAND_LOW: "Low Risk",
}

HIGH_BAND_MIN = 61
MEDIUM_BAND_MIN = 31


def round_half_up(value: float) -> int:
    """Round .5 upwards, matching the dashboard's Math.round"""
    return int(math.floor(value + 0.5))


def risk_band(score: float) -> str:
    """
    Risk band for a suspicion score

    >= 61 is high, 31-60 medium, <= 30 low.
    """
    if score >= HIGH_BAND_MIN:
        return BAND_HIGH
    if score >= MEDIUM_BAND_MIN:
        return BAND_MEDIUM
    return BAND_LOW


def risk_label(score: float) -> str:
    """Display label for a suspicion score"""
    return BAND_LABELS[risk_band(score)]


@dataclass
class SuspicionSignals:
    """Inputs to the suspicion score; every field is 'more is worse'"""
    divergence_confirmed: bool = False
    divergence_delta: float = 0.0  # 0-100
    redirect_depth: int = 0
    heuristics: Dict[str, float] = field(default_factory=dict)  # name -> 0-100 severity


@dataclass
class ScoringWeights:
    divergence_weight: float = 70.0
    confirmed_divergence_floor: float = 61.0
    redirect_max: float = 15.0
    redirect_decay: float = 0.5
    heuristic_weights: Dict[str, float] = field(default_factory=lambda: {
        'cloaker_token': 10.0,
        'black_page_markers': 10.0,
        'domain_reputation': 15.0,
    })

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'ScoringWeights':
        scoring = config['scoring']
        return cls(
            divergence_weight=float(scoring['divergence_weight']),
            confirmed_divergence_floor=float(scoring['confirmed_divergence_floor']),
            redirect_max=float(scoring['redirect_max']),
            redirect_decay=float(scoring['redirect_decay']),
            heuristic_weights={k: float(v) for k, v in scoring['heuristic_weights'].items()},
        )


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


class SuspicionScorer:
    """Deterministic weighted combination of suspicion signals"""

    def __init__(self, weights: ScoringWeights = None):
        self.weights = weights or ScoringWeights()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'SuspicionScorer':
        return cls(ScoringWeights.from_config(config))

    def redirect_component(self, depth: int) -> float:
        """Grows with every hop, each hop adding less than the previous one"""
        depth = max(0, int(depth or 0))
        return self.weights.redirect_max * (1.0 - self.weights.redirect_decay ** depth)

    def score(self, signals: SuspicionSignals) -> int:
        """
        Compute the 0-100 suspicion score

        Args:
            signals: Suspicion signals for one ad

        Returns:
            Integer score in [0, 100]
        """
        w = self.weights
        raw = w.divergence_weight * _clamp(signals.divergence_delta or 0.0) / 100.0
        raw += self.redirect_component(signals.redirect_depth)
        for name, severity in (signals.heuristics or {}).items():
            weight = w.heuristic_weights.get(name)
            if weight is None:
                logger.debug(f"Ignoring unweighted heuristic '{name}'")
                continue
            raw += weight * _clamp(severity or 0.0) / 100.0

        if signals.divergence_confirmed:
            raw = max(raw, w.confirmed_divergence_floor)

        return int(_clamp(round_half_up(raw)))

    def signals_for_ad(self, ad, verdict=None, domain=None) -> SuspicionSignals:
        """
        Assemble signals from an ad, its latest divergence verdict and its domain

        A confirmed cloaking flag stays a confirmed divergence even when the
        latest check saw consistent content, since cloakers rotate.
        """
        heuristics: Dict[str, float] = {}
        confirmed = bool(ad.is_cloaked_flag)
        delta = 0.0
        depth = 0
        token = ad.cloaker_token

        if verdict is not None:
            confirmed = confirmed or verdict.diverges
            delta = verdict.suspicion_delta
            depth = verdict.redirect_depth
            token = token or verdict.detected_token
            heuristics['black_page_markers'] = 100.0 if verdict.black_page_detected else 0.0

        heuristics['cloaker_token'] = 100.0 if token else 0.0
        if domain is not None and domain.reputation_risk is not None:
            heuristics['domain_reputation'] = float(domain.reputation_risk)

        return SuspicionSignals(
            divergence_confirmed=confirmed,
            divergence_delta=delta,
            redirect_depth=depth,
            heuristics=heuristics,
        )

    def score_ad(self, ad, verdict=None, domain=None) -> int:
        return self.score(self.signals_for_ad(ad, verdict, domain))
