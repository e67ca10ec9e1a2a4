"""
Tests for the divergence engine and its snapshot source
"""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from cloakwatch.crawler.snapshot_collector import SnapshotRecord, DatabaseSnapshotSource, FetchFailed
from cloakwatch.diff.normalizer import NormalizationPolicy, normalized_hash, make_preview
from cloakwatch.diff.divergence_engine import (
    DivergenceEngine, STATUS_DIVERGED, STATUS_CONSISTENT, STATUS_INSUFFICIENT_DATA, STATUS_INVALID_TARGET,
)

TARGET = "https://offer.example.com/lp"
NOW = datetime(2026, 3, 1, 12, 0, 0)


class ListSnapshotSource:
    def __init__(self, snapshots):
        self.snapshots = snapshots
        self.calls = 0

    def fetch_snapshots(self, ad_id):
        self.calls += 1
        return sorted(self.snapshots, key=lambda s: s.captured_at, reverse=True)


def record(condition, text, minutes_ago=0, **fields):
    return SnapshotRecord(
        condition=condition,
        captured_at=NOW - timedelta(minutes=minutes_ago),
        content_hash=normalized_hash(text),
        preview=make_preview(text),
        content_text=text,
        **fields
    )


def engine_for(snapshots, **kwargs):
    return DivergenceEngine(ListSnapshotSource(snapshots), **kwargs)


def test_identical_content_is_consistent():
    engine = engine_for([
        record("US IP + Bot UA + Direct", "Healthy recipes"),
        record("BR IP + Mobile UA + FB Referer", "Healthy recipes"),
    ])
    verdict = engine.evaluate("ad-1", TARGET)
    assert verdict.status == STATUS_CONSISTENT
    assert not verdict.diverges
    assert verdict.suspicion_delta == 0
    assert verdict.matched_conditions == []


def test_different_hashes_diverge():
    engine = engine_for([
        record("US IP + Bot UA + Direct", "Healthy recipes"),
        record("BR IP + Mobile UA + FB Referer", "Buy now! Miracle pills $49"),
    ])
    verdict = engine.evaluate("ad-1", TARGET)
    assert verdict.status == STATUS_DIVERGED
    assert verdict.diverges
    assert verdict.suspicion_delta >= 40
    assert verdict.matched_conditions == sorted([
        "BR IP + Mobile UA + FB Referer", "US IP + Bot UA + Direct",
    ])


def test_single_condition_is_insufficient_data():
    engine = engine_for([record("US IP + Bot UA + Direct", "Healthy recipes")])
    verdict = engine.evaluate("ad-1", TARGET)
    assert verdict.status == STATUS_INSUFFICIENT_DATA
    assert not verdict.diverges
    assert verdict.suspicion_delta == 0


def test_repeated_captures_of_one_condition_do_not_count_twice():
    engine = engine_for([
        record("US IP + Bot UA + Direct", "Healthy recipes", minutes_ago=0),
        record("US IP + Bot UA + Direct", "Other text", minutes_ago=5),
    ])
    assert engine.evaluate("ad-1", TARGET).status == STATUS_INSUFFICIENT_DATA


@pytest.mark.parametrize("url", [
    "http://localhost/lp",
    "http://127.0.0.1/",
    "http://10.0.0.5/",
    "http://169.254.169.254/latest/meta-data",
    "ftp://offer.example.com/",
    "//offer.example.com/lp",
    "",
])
def test_invalid_target_never_fetches(url):
    source = ListSnapshotSource([])
    verdict = DivergenceEngine(source).evaluate("ad-1", url)
    assert verdict.status == STATUS_INVALID_TARGET
    assert not verdict.diverges
    assert verdict.reason
    assert source.calls == 0


def test_fetch_failure_propagates():
    source = MagicMock()
    source.fetch_snapshots.side_effect = FetchFailed("ad-1", "timeout")
    with pytest.raises(FetchFailed):
        DivergenceEngine(source).evaluate("ad-1", TARGET)


def test_whitespace_only_differences_are_ignored_by_default():
    engine = engine_for([
        record("US IP + Bot UA + Direct", "Healthy   recipes\n\n today"),
        record("BR IP + Mobile UA + FB Referer", "Healthy recipes today"),
    ])
    assert engine.evaluate("ad-1", TARGET).status == STATUS_CONSISTENT


def test_case_fold_policy():
    snapshots = [
        record("US IP + Bot UA + Direct", "Healthy Recipes"),
        record("BR IP + Mobile UA + FB Referer", "healthy recipes"),
    ]
    assert engine_for(snapshots).evaluate("ad-1", TARGET).diverges
    folded = engine_for(snapshots, policy=NormalizationPolicy(case_fold=True))
    assert not folded.evaluate("ad-1", TARGET).diverges


def test_script_policy_decides_whether_script_changes_count():
    snapshots = [
        record("US IP + Bot UA + Direct", "<html><body><script>go('/recipes')</script><p>Welcome</p></body></html>"),
        record("BR IP + Mobile UA + FB Referer", "<html><body><script>go('/pills')</script><p>Welcome</p></body></html>"),
    ]
    assert not engine_for(snapshots).evaluate("ad-1", TARGET).diverges
    kept = engine_for(snapshots, policy=NormalizationPolicy(strip_scripts=False))
    assert kept.evaluate("ad-1", TARGET).diverges


def test_more_mismatches_never_lower_the_delta():
    two = engine_for([
        record("US IP + Bot UA + Direct", "Healthy recipes"),
        record("BR IP + Mobile UA + FB Referer", "Miracle pills"),
    ]).evaluate("ad-1", TARGET)
    three = engine_for([
        record("US IP + Bot UA + Direct", "Healthy recipes"),
        record("BR IP + Mobile UA + FB Referer", "Miracle pills"),
        record("BR IP + Desktop UA + FB Referer", "Casino bonus"),
    ]).evaluate("ad-1", TARGET)
    assert three.suspicion_delta >= two.suspicion_delta
    assert three.suspicion_delta <= 100


def test_snapshots_outside_window_are_ignored():
    engine = engine_for([
        record("US IP + Bot UA + Direct", "Healthy recipes", minutes_ago=0),
        record("BR IP + Mobile UA + FB Referer", "Miracle pills", minutes_ago=60 * 48),
    ], snapshot_window_hours=24)
    assert engine.evaluate("ad-1", TARGET).status == STATUS_INSUFFICIENT_DATA


def test_only_the_newest_collection_pass_is_compared():
    # An earlier pass saw the old page under a condition the newest pass failed to fetch
    engine = engine_for([
        record("US IP + Bot UA + Direct", "Version two", minutes_ago=0, check_id="pass-2"),
        record("BR IP + Mobile UA + FB Referer", "Version two", minutes_ago=0, check_id="pass-2"),
        record("US IP + Bot UA + Direct", "Version one", minutes_ago=90, check_id="pass-1"),
        record("BR IP + Mobile UA + FB Referer", "Version one", minutes_ago=90, check_id="pass-1"),
        record("BR IP + Desktop UA + FB Referer", "Version one", minutes_ago=90, check_id="pass-1"),
    ])
    verdict = engine.evaluate("ad-1", TARGET)
    assert verdict.status == STATUS_CONSISTENT
    assert verdict.snapshots_compared == 2


def test_black_url_and_redirect_depth_are_reported():
    black = "https://pills.example.net/buy"
    engine = engine_for([
        record("US IP + Bot UA + Direct", "Healthy recipes", final_url=TARGET, redirect_chain=[TARGET]),
        record("BR IP + Mobile UA + FB Referer", "Miracle pills $49", final_url=black,
               redirect_chain=[TARGET, "https://trk.example.net/r", black], is_black_page=True,
               detected_token="xk=9f8a7b"),
    ])
    verdict = engine.evaluate("ad-1", TARGET)
    assert verdict.detected_black_url == black
    assert verdict.redirect_depth == 2
    assert verdict.black_page_detected
    assert verdict.detected_token == "xk=9f8a7b"


def test_to_dict_exposes_wire_fields():
    verdict = engine_for([
        record("US IP + Bot UA + Direct", "Healthy recipes"),
        record("BR IP + Mobile UA + FB Referer", "Miracle pills"),
    ]).evaluate("ad-1", TARGET)
    payload = verdict.to_dict()
    assert payload['diverges'] is True
    assert payload['suspicionDelta'] == verdict.suspicion_delta
    assert payload['matchedConditions'] == verdict.matched_conditions


def test_database_source_returns_newest_first(session_factory, ad_factory, snapshot_factory):
    ad = ad_factory()
    snapshot_factory(ad, "US IP + Bot UA + Direct", "old", captured_at=NOW - timedelta(hours=1))
    snapshot_factory(ad, "BR IP + Mobile UA + FB Referer", "new", captured_at=NOW)
    records = DatabaseSnapshotSource(session_factory).fetch_snapshots(ad.id)
    assert [r.content_text for r in records] == ["new", "old"]


def test_database_source_failure_raises_fetch_failed():
    factory = MagicMock()
    factory.return_value.query.side_effect = OperationalError("SELECT", {}, Exception("disk I/O error"))
    with pytest.raises(FetchFailed):
        DatabaseSnapshotSource(factory).fetch_snapshots("ad-1")
