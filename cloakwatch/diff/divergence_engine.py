"""
Divergence engine: decides whether a landing page serves different content to different audiences
"""
import difflib
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from itertools import combinations
from typing import Dict, List, Optional, Any

from cloakwatch.crawler.url_validator import validate
from cloakwatch.crawler.snapshot_collector import SnapshotRecord, DatabaseSnapshotSource
from cloakwatch.diff.normalizer import NormalizationPolicy, normalized_hash

logger = logging.getLogger(__name__)

STATUS_DIVERGED = 'diverged'
STATUS_CONSISTENT = 'consistent'
STATUS_INSUFFICIENT_DATA = 'insufficient_data'
STATUS_INVALID_TARGET = 'invalid_target'


@dataclass
class Mismatch:
    """Two conditions whose normalized content differs"""
    condition_a: str
    condition_b: str
    change_percentage: float
    severity: float


@dataclass
class DivergenceVerdict:
    """Outcome of one divergence check"""
    ad_id: str
    status: str
    diverges: bool = False
    suspicion_delta: int = 0
    matched_conditions: List[str] = field(default_factory=list)
    mismatches: List[Mismatch] = field(default_factory=list)
    snapshots_compared: int = 0
    redirect_depth: int = 0
    black_page_detected: bool = False
    detected_black_url: Optional[str] = None
    detected_token: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_conclusive(self) -> bool:
        return self.status in (STATUS_DIVERGED, STATUS_CONSISTENT)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'adId': self.ad_id,
            'status': self.status,
            'diverges': self.diverges,
            'suspicionDelta': self.suspicion_delta,
            'matchedConditions': list(self.matched_conditions),
            'snapshotsCompared': self.snapshots_compared,
            'redirectDepth': self.redirect_depth,
            'blackPageDetected': self.black_page_detected,
            'detectedBlackUrl': self.detected_black_url,
            'reason': self.reason,
        }


class DivergenceEngine:
    """Compares snapshots captured under distinct access conditions"""

    def __init__(self, snapshot_source=None, policy: NormalizationPolicy = None,
                 mismatch_floor: float = 40.0, snapshot_window_hours: Optional[float] = 24):
        """
        Initialize divergence engine

        Args:
            snapshot_source: Object with fetch_snapshots(ad_id) returning records newest-first
            policy: Normalization policy applied before hashing
            mismatch_floor: Minimum severity a mismatching pair contributes
            snapshot_window_hours: Only snapshots this close to the newest capture are compared
        """
        self.snapshot_source = snapshot_source or DatabaseSnapshotSource()
        self.policy = policy or NormalizationPolicy()
        self.mismatch_floor = float(mismatch_floor)
        self.snapshot_window_hours = snapshot_window_hours

    @classmethod
    def from_config(cls, config: Dict[str, Any], snapshot_source=None) -> 'DivergenceEngine':
        divergence = config['divergence']
        return cls(
            snapshot_source=snapshot_source,
            policy=NormalizationPolicy.from_config(config),
            mismatch_floor=divergence['mismatch_floor'],
            snapshot_window_hours=divergence.get('snapshot_window_hours'),
        )

    def evaluate(self, ad_id: str, target_url: str) -> DivergenceVerdict:
        """
        Run the divergence protocol for an ad

        Args:
            ad_id: Ad identifier
            target_url: Landing URL being checked

        Returns:
            DivergenceVerdict; invalid targets and insufficient data are
            reported through its status

        Raises:
            FetchFailed: If snapshots cannot be acquired
        """
        validation = validate(target_url)
        if not validation.valid:
            logger.warning(f"Rejected target URL for ad {ad_id}: {validation.reason}")
            return DivergenceVerdict(ad_id=ad_id, status=STATUS_INVALID_TARGET, reason=validation.reason)

        snapshots = self.snapshot_source.fetch_snapshots(ad_id)
        return self.compare_snapshots(ad_id, snapshots)

    def select_comparable(self, snapshots: List[SnapshotRecord]) -> List[SnapshotRecord]:
        """
        Newest snapshot per condition, restricted to the capture window

        When the newest capture carries a check id only captures from that
        same collection pass are compared.

        Args:
            snapshots: Records ordered newest-first
        """
        if not snapshots:
            return []
        ordered = sorted(snapshots, key=lambda s: s.captured_at, reverse=True)
        check_id = ordered[0].check_id
        if check_id is not None:
            ordered = [s for s in ordered if s.check_id == check_id]
        newest = ordered[0].captured_at
        window = None
        if self.snapshot_window_hours is not None:
            window = timedelta(hours=self.snapshot_window_hours)

        latest: Dict[str, SnapshotRecord] = {}
        for snapshot in ordered:
            if window is not None and newest - snapshot.captured_at > window:
                break
            if snapshot.condition not in latest:
                latest[snapshot.condition] = snapshot
        return list(latest.values())

    def _hash(self, snapshot: SnapshotRecord) -> str:
        if snapshot.content_text is not None:
            return normalized_hash(snapshot.content_text, self.policy)
        return snapshot.content_hash

    def compare_snapshots(self, ad_id: str, snapshots: List[SnapshotRecord]) -> DivergenceVerdict:
        """
        Pure comparison of already-acquired snapshots

        Args:
            ad_id: Ad identifier
            snapshots: Snapshot records, newest first

        Returns:
            DivergenceVerdict
        """
        comparable = self.select_comparable(snapshots)
        if len(comparable) < 2:
            return DivergenceVerdict(
                ad_id=ad_id,
                status=STATUS_INSUFFICIENT_DATA,
                snapshots_compared=len(comparable),
                reason="At least two snapshots under distinct conditions are required",
            )

        hashes = {s.condition: self._hash(s) for s in comparable}
        mismatches = []
        for a, b in combinations(comparable, 2):
            if hashes[a.condition] == hashes[b.condition]:
                continue
            change_pct = self._calculate_change_percentage(a.preview, b.preview)
            mismatches.append(Mismatch(
                condition_a=a.condition,
                condition_b=b.condition,
                change_percentage=change_pct,
                severity=max(self.mismatch_floor, change_pct),
            ))

        redirect_depth = max((max(len(s.redirect_chain) - 1, 0) for s in comparable), default=0)
        black_pages = [s for s in comparable if s.is_black_page]
        token = next((s.detected_token for s in comparable if s.detected_token), None)

        verdict = DivergenceVerdict(
            ad_id=ad_id,
            status=STATUS_DIVERGED if mismatches else STATUS_CONSISTENT,
            diverges=bool(mismatches),
            suspicion_delta=self._suspicion_delta(mismatches),
            matched_conditions=sorted({m.condition_a for m in mismatches} | {m.condition_b for m in mismatches}),
            mismatches=mismatches,
            snapshots_compared=len(comparable),
            redirect_depth=redirect_depth,
            black_page_detected=bool(black_pages),
            detected_token=token,
        )

        if mismatches:
            verdict.detected_black_url = self._pick_black_url(comparable, black_pages, hashes)
            logger.info(
                f"Divergence for ad {ad_id}: {len(mismatches)} mismatching pair(s), "
                f"delta {verdict.suspicion_delta}"
            )
        return verdict

    def _suspicion_delta(self, mismatches: List[Mismatch]) -> int:
        """Sum of mismatch severities, capped at 100"""
        if not mismatches:
            return 0
        total = sum(m.severity for m in mismatches)
        return int(min(100, round(total)))

    @staticmethod
    def _pick_black_url(comparable: List[SnapshotRecord], black_pages: List[SnapshotRecord],
                        hashes: Dict[str, str]) -> Optional[str]:
        """Final URL of the page shown to targets rather than reviewers"""
        if black_pages:
            return black_pages[0].final_url
        # Content held by the fewest conditions is the one served to a narrow audience
        counts: Dict[str, int] = {}
        for digest in hashes.values():
            counts[digest] = counts.get(digest, 0) + 1
        rarest = min(comparable, key=lambda s: (counts[hashes[s.condition]], s.condition))
        return rarest.final_url

    def _calculate_change_percentage(self, text_before: str, text_after: str) -> float:
        """
        Calculate approximate percentage of content change

        Args:
            text_before: First preview
            text_after: Second preview

        Returns:
            Percentage of change (0-100)
        """
        if not text_before:
            return 100.0 if text_after else 0.0
        if not text_after:
            return 100.0

        # Use sequence matcher for similarity
        matcher = difflib.SequenceMatcher(None, text_before, text_after)
        similarity = matcher.ratio()
        change_percentage = (1.0 - similarity) * 100.0

        return round(change_percentage, 2)
