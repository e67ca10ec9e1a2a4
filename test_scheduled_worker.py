"""
Tests for the scheduled worker driver
"""
import time

import pytest
import schedule

from cloakwatch.crawler.scheduler import (
    WorkerContext, ScheduledWorker, TASK_DIVERGENCE_TEST, TASK_STATUS_CHECK,
    SCHEDULE_DAILY, SCHEDULE_INTRADAY,
)
from cloakwatch.storage.database import DatabaseSession
from cloakwatch.crawler.conditions import priority_conditions
from cloakwatch.storage.models import Ad, JobRun, DailyReport, LandingPageSnapshot, Advertiser

from conftest import ScriptedCrawler, crawl_result

CLEAN_URL = "https://clean.example.com/lp"


@pytest.fixture()
def make_worker(config, db_url, session_factory):
    contexts = []

    def make(crawler, **worker_overrides):
        config['worker'].update(worker_overrides)
        context = WorkerContext(config, db_url=db_url, crawler=crawler)
        contexts.append(context)
        return ScheduledWorker(context)

    yield make
    for context in contexts:
        context.close()


def load_ad(session_factory, ad_id):
    with DatabaseSession(session_factory) as session:
        return session.query(Ad).filter(Ad.id == ad_id).first()


class PerUrlCrawler(ScriptedCrawler):
    """Serves a black page only for one landing URL"""

    def __init__(self, cloaked_url, **kwargs):
        super().__init__(**kwargs)
        self.cloaked_url = cloaked_url
        self.clean = ScriptedCrawler(white=self.white)

    def crawl(self, url, condition=None, target_url=None, timeout=None):
        if (target_url or url).startswith(self.cloaked_url):
            return super().crawl(url, condition, target_url, timeout)
        self.crawled.append((url, condition))
        return self.clean.crawl(url, condition, target_url, timeout)


def test_daily_run_scores_flags_and_reports(make_worker, session_factory, ad_factory, advertiser_factory):
    advertiser = advertiser_factory()
    cloaked = ad_factory(advertiser_id=advertiser.id, suspicion_score=10)
    clean = ad_factory(advertiser_id=advertiser.id, final_lp_url=CLEAN_URL)
    crawler = PerUrlCrawler(cloaked.final_lp_url, white="Healthy recipes", black="Miracle pills, order now $49")
    worker = make_worker(crawler)

    result = worker.run(TASK_DIVERGENCE_TEST, SCHEDULE_DAILY)

    assert result['success'] is True
    assert result['taskType'] == TASK_DIVERGENCE_TEST
    assert result['scheduleType'] == SCHEDULE_DAILY
    assert result['processedCount'] == 2
    assert result['divergencesFound'] == 1
    assert result['errorsCount'] == 0
    assert 'completedAt' in result

    flagged = load_ad(session_factory, cloaked.id)
    assert flagged.is_cloaked_flag
    assert flagged.suspicion_score >= 61
    assert flagged.last_snapshot_at is not None
    assert flagged.white_url == cloaked.final_lp_url
    untouched = load_ad(session_factory, clean.id)
    assert not untouched.is_cloaked_flag
    assert untouched.suspicion_score < 31
    assert untouched.white_url is None

    with DatabaseSession(session_factory) as session:
        job = session.query(JobRun).filter(JobRun.task_type == TASK_DIVERGENCE_TEST).one()
        assert job.status == 'completed'
        assert job.ads_processed == 2
        assert job.divergences_found == 1
        report = session.query(DailyReport).one()
        assert report.total_ads_analyzed == 2
        assert report.new_cloakers_detected == 1
        assert report.top_aggressive_ads[0]['id'] == cloaked.id
        stored = session.query(Advertiser).filter(Advertiser.id == advertiser.id).one()
        assert stored.avg_suspicion_score == pytest.approx((flagged.suspicion_score + untouched.suspicion_score) / 2)


def test_fetch_failures_are_counted_and_batch_continues(make_worker, session_factory, ad_factory):
    ads = [ad_factory(suspicion_score=33) for _ in range(3)]
    crawler = ScriptedCrawler(fail_baseline=True)
    worker = make_worker(crawler)

    result = worker.run(TASK_DIVERGENCE_TEST, SCHEDULE_DAILY)

    assert result['success'] is True
    assert result['errorsCount'] == 3
    assert result['processedCount'] == 0
    # Each ad was attempted fetch_retries times
    assert len(crawler.crawled) == 3 * 2
    for ad in ads:
        assert load_ad(session_factory, ad.id).suspicion_score == 33
    with DatabaseSession(session_factory) as session:
        assert session.query(JobRun).one().status == 'partial'


def test_exhausted_budget_leaves_ads_for_next_run(make_worker, session_factory, ad_factory):
    ads = [ad_factory(suspicion_score=5) for _ in range(4)]
    crawler = ScriptedCrawler(white="a", black="b")
    worker = make_worker(crawler, time_budget_seconds=0)

    result = worker.run(TASK_DIVERGENCE_TEST, SCHEDULE_DAILY)

    assert result['processedCount'] == 0
    assert result['skippedCount'] == 4
    assert crawler.crawled == []
    for ad in ads:
        assert load_ad(session_factory, ad.id).suspicion_score == 5
    with DatabaseSession(session_factory) as session:
        assert session.query(LandingPageSnapshot).count() == 0


class VersionedCrawler(ScriptedCrawler):
    """Serves one page to everyone; one condition can be made to fail"""

    def __init__(self, text, failing_label=None):
        super().__init__(white=text)
        self.failing_label = failing_label

    def crawl(self, url, condition=None, target_url=None, timeout=None):
        if condition is not None and condition.label == self.failing_label:
            self.crawled.append((url, condition))
            return crawl_result(None, error=f"Timeout fetching {url}")
        return super().crawl(url, condition, target_url, timeout)


def test_updated_page_with_failed_condition_is_not_flagged(make_worker, config, session_factory, ad_factory):
    ad = ad_factory(suspicion_score=0)
    last_label = priority_conditions(config['divergence']['conditions_per_check'])[-1].label

    first = make_worker(VersionedCrawler("Version one")).run(TASK_DIVERGENCE_TEST, SCHEDULE_DAILY)
    second = make_worker(VersionedCrawler("Version two", failing_label=last_label))\
        .run(TASK_DIVERGENCE_TEST, SCHEDULE_DAILY)

    assert first['divergencesFound'] == 0
    assert second['processedCount'] == 1
    assert second['divergencesFound'] == 0
    stored = load_ad(session_factory, ad.id)
    assert not stored.is_cloaked_flag
    assert stored.suspicion_score < 31


class SlowCrawler(ScriptedCrawler):
    """Every request takes a while, but never longer than the time it is given"""

    def crawl(self, url, condition=None, target_url=None, timeout=None):
        time.sleep(0.4 if timeout is None else max(0.0, min(0.4, timeout)))
        return super().crawl(url, condition, target_url, timeout)


def test_time_budget_bounds_an_ad_already_in_progress(make_worker, ad_factory):
    ad_factory()
    crawler = SlowCrawler()
    worker = make_worker(crawler, time_budget_seconds=1)

    started = time.monotonic()
    result = worker.run(TASK_DIVERGENCE_TEST, SCHEDULE_DAILY)
    elapsed = time.monotonic() - started

    assert result['success'] is True
    assert elapsed < 2.0
    # Baseline plus six conditions would need seven requests
    assert len(crawler.crawled) < 7
    assert all(t is not None and t <= 1 for t in crawler.timeouts)


def test_invalid_target_is_not_fetched_or_scored(make_worker, session_factory, ad_factory):
    ad = ad_factory(final_lp_url="http://localhost:8080/lp", suspicion_score=12)
    crawler = ScriptedCrawler()
    worker = make_worker(crawler)

    result = worker.run(TASK_DIVERGENCE_TEST, SCHEDULE_DAILY)

    assert result['processedCount'] == 1
    assert result['errorsCount'] == 0
    assert crawler.crawled == []
    assert load_ad(session_factory, ad.id).suspicion_score == 12


def test_intraday_selects_high_suspicion_ads(make_worker, ad_factory):
    ad_factory(suspicion_score=70)
    ad_factory(suspicion_score=10)
    ad_factory(suspicion_score=20, status='inactive')
    crawler = ScriptedCrawler()
    worker = make_worker(crawler)

    result = worker.run(TASK_DIVERGENCE_TEST, SCHEDULE_INTRADAY)

    assert result['processedCount'] == 1


def test_cloaked_flag_is_sticky_when_content_matches(make_worker, session_factory, ad_factory):
    ad = ad_factory(is_cloaked_flag=True, suspicion_score=75)
    worker = make_worker(ScriptedCrawler())

    worker.run(TASK_DIVERGENCE_TEST, SCHEDULE_DAILY)

    stored = load_ad(session_factory, ad.id)
    assert stored.is_cloaked_flag
    assert stored.suspicion_score >= 61


def test_status_check_soft_deactivates_dead_pages(make_worker, session_factory, ad_factory):
    dead = ad_factory(final_lp_url="https://gone.example.com/lp")
    broken = ad_factory(final_lp_url="https://broken.example.com/lp")
    alive = ad_factory(final_lp_url=CLEAN_URL)
    crawler = ScriptedCrawler(head_status={
        "https://gone.example.com/lp": 404,
        "https://broken.example.com/lp": 503,
        CLEAN_URL: 200,
    })
    worker = make_worker(crawler)

    result = worker.run(TASK_STATUS_CHECK, SCHEDULE_DAILY)

    assert result['success'] is True
    assert result['processedCount'] == 3
    for ad in (dead, broken):
        stored = load_ad(session_factory, ad.id)
        assert stored.status == 'inactive'
        assert stored.end_date is not None
    stored = load_ad(session_factory, alive.id)
    assert stored.status == 'active'
    assert stored.longevity_days == 10


def test_unknown_task_type_fails_cleanly(make_worker, session_factory):
    worker = make_worker(ScriptedCrawler())
    result = worker.run('reindex', SCHEDULE_DAILY)
    assert result['success'] is False
    assert "reindex" in result['error']
    with DatabaseSession(session_factory) as session:
        assert session.query(JobRun).one().status == 'failed'


def test_test_ad_runs_single_pipeline(make_worker, session_factory, ad_factory):
    ad = ad_factory()
    worker = make_worker(ScriptedCrawler(white="Healthy recipes", black="Casino bonus, buy now"))
    outcome = worker.test_ad(ad.id)
    assert outcome['status'] == 'processed'
    assert outcome['verdict']['diverges'] is True
    assert outcome['score'] >= 61


def test_test_ad_unknown_id(make_worker):
    worker = make_worker(ScriptedCrawler())
    with pytest.raises(ValueError):
        worker.test_ad("missing")


def test_register_jobs(make_worker):
    worker = make_worker(ScriptedCrawler())
    scheduler = worker.register_jobs(schedule.Scheduler())
    assert len(scheduler.get_jobs()) == 3


def test_context_close_releases_crawler(config, db_url, session_factory):
    crawler = ScriptedCrawler()
    with WorkerContext(config, db_url=db_url, crawler=crawler):
        pass
    assert crawler.closed
