"""
Scheduled worker: batch divergence tests and status checks over the ad corpus
"""
import math
import time
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import List, Dict, Any, Callable

import schedule
from sqlalchemy import or_
from sqlalchemy.orm import sessionmaker

from cloakwatch.config.loader import load_watchdog_config
from cloakwatch.storage.database import DatabaseSession, create_engine_instance
from cloakwatch.storage.models import Ad, JobRun, DailyReport
from cloakwatch.storage.ad_store import AdStore, ScoreWriteFailed
from cloakwatch.crawler.conditions import AccessCondition
from cloakwatch.crawler.url_validator import validate
from cloakwatch.crawler.web_crawler import WebCrawler
from cloakwatch.crawler.snapshot_collector import SnapshotCollector, DatabaseSnapshotSource, FetchFailed
from cloakwatch.diff.normalizer import NormalizationPolicy
from cloakwatch.diff.divergence_engine import DivergenceEngine
from cloakwatch.scoring.suspicion_scorer import SuspicionScorer
from cloakwatch.scoring.rollups import recompute_rollups
from cloakwatch.scoring.winning_score import rank_ads
from cloakwatch.alerting.alert_manager import AlertManager
from cloakwatch.alerting.events import EventBus, TOPIC_JOB_RUNS

logger = logging.getLogger(__name__)

TASK_DIVERGENCE_TEST = 'divergence_test'
TASK_STATUS_CHECK = 'status_check'

SCHEDULE_DAILY = 'daily'
SCHEDULE_INTRADAY = 'intraday'
SCHEDULE_MANUAL = 'manual'

STATUS_PROBE_CONDITION = AccessCondition('desktop', 'none', 'tier1', include_token=False)

OUTCOME_PROCESSED = 'processed'
OUTCOME_SKIPPED = 'skipped'
OUTCOME_FAILED = 'failed'


class WorkerContext:
    """
    Per-process resources shared by every job: database engine, session
    factory, HTTP crawler and event bus

    Created once at worker startup and closed at shutdown.
    """

    def __init__(self, config: Dict[str, Any] = None, db_url: str = None,
                 crawler: WebCrawler = None, event_bus: EventBus = None):
        self.config = config or load_watchdog_config()
        self.engine = create_engine_instance(db_url)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.crawler = crawler or WebCrawler(
            max_redirects=int(self.config['divergence']['max_redirects']),
            geo_proxies=self.config.get('geo_proxies') or {},
            policy=NormalizationPolicy.from_config(self.config),
        )
        self.event_bus = event_bus or EventBus()
        self.closed = False

    def close(self):
        if self.closed:
            return
        self.crawler.close()
        self.engine.dispose()
        self.event_bus.clear()
        self.closed = True
        logger.info("Worker context closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ScheduledWorker:
    """Runs divergence tests and status checks in bounded batches"""

    def __init__(self, context: WorkerContext):
        """
        Initialize worker from a shared context

        Args:
            context: Per-process worker context
        """
        self.context = context
        self.config = context.config
        worker = self.config['worker']
        self.max_workers = int(worker['max_workers'])
        self.time_budget_seconds = float(worker['time_budget_seconds'])
        self.fetch_retries = int(worker['fetch_retries'])

        session_factory = context.session_factory
        self.collector = SnapshotCollector.from_config(self.config, context.crawler, session_factory)
        self.engine = DivergenceEngine.from_config(self.config, DatabaseSnapshotSource(session_factory))
        self.scorer = SuspicionScorer.from_config(self.config)
        self.ad_store = AdStore(session_factory, int(worker['score_write_retries']), context.event_bus)
        self.alert_manager = AlertManager.from_config(self.config, session_factory, context.event_bus)

    @property
    def session_factory(self):
        return self.context.session_factory

    def run(self, task_type: str = TASK_DIVERGENCE_TEST, schedule_type: str = SCHEDULE_DAILY) -> Dict[str, Any]:
        """
        Run one batch

        Args:
            task_type: divergence_test or status_check
            schedule_type: daily, intraday or manual

        Returns:
            Dictionary with success, taskType, scheduleType, processedCount,
            divergencesFound, errorsCount, skippedCount and completedAt
        """
        logger.info(f"Starting scheduled worker: {task_type} ({schedule_type})")
        started = datetime.utcnow()
        start_clock = time.monotonic()
        job_id = self._start_job(task_type, schedule_type, started)

        try:
            if task_type == TASK_DIVERGENCE_TEST:
                stats = self._run_divergence_test(schedule_type)
            elif task_type == TASK_STATUS_CHECK:
                stats = self._run_status_check()
            else:
                raise ValueError(f"Unknown task type '{task_type}'")
        except Exception as e:
            logger.error(f"Scheduled worker {task_type} failed: {e}", exc_info=True)
            completed = datetime.utcnow()
            self._finish_job(job_id, 'failed', {}, completed, start_clock, error_message=str(e))
            return {
                'success': False,
                'taskType': task_type,
                'scheduleType': schedule_type,
                'error': str(e),
                'completedAt': completed.isoformat(),
            }

        completed = datetime.utcnow()
        status = 'partial' if stats['errors'] or stats['skipped'] else 'completed'
        self._finish_job(job_id, status, stats, completed, start_clock)

        result = {
            'success': True,
            'taskType': task_type,
            'scheduleType': schedule_type,
            'processedCount': stats['processed'],
            'divergencesFound': stats['divergences'],
            'errorsCount': stats['errors'],
            'skippedCount': stats['skipped'],
            'completedAt': completed.isoformat(),
        }
        logger.info(f"Worker completed: {result}")
        return result

    def _start_job(self, task_type: str, schedule_type: str, started: datetime) -> int:
        with DatabaseSession(self.session_factory) as session:
            job = JobRun(
                job_name=f"{task_type}_{schedule_type}",
                task_type=task_type,
                schedule_type=schedule_type,
                status='running',
                started_at=started,
            )
            session.add(job)
            session.flush()
            return job.id

    def _finish_job(self, job_id: int, status: str, stats: Dict[str, int], completed: datetime,
                    start_clock: float, error_message: str = None):
        with DatabaseSession(self.session_factory) as session:
            job = session.query(JobRun).filter(JobRun.id == job_id).first()
            job.status = status
            job.completed_at = completed
            job.ads_processed = stats.get('processed', 0)
            job.divergences_found = stats.get('divergences', 0)
            job.errors_count = stats.get('errors', 0)
            job.duration_ms = int((time.monotonic() - start_clock) * 1000)
            job.error_message = error_message
            job.metadata_json = {'skipped': stats.get('skipped', 0)}
        self.context.event_bus.publish(TOPIC_JOB_RUNS, {'job_run_id': job_id, 'status': status})

    def _select_ads(self, schedule_type: str) -> List[Dict[str, Any]]:
        """
        Ads to test, highest suspicion first

        Daily runs cover the broad active set; intraday runs focus on ads
        already above the suspicion threshold.
        """
        worker = self.config['worker']
        with DatabaseSession(self.session_factory) as session:
            query = session.query(Ad)\
                .filter(Ad.status == 'active')\
                .filter(or_(Ad.final_lp_url != None, Ad.white_url != None))
            if schedule_type == SCHEDULE_INTRADAY:
                query = query.filter(Ad.suspicion_score >= worker['intraday_min_suspicion'])
                limit = worker['intraday_limit']
            else:
                limit = worker['daily_limit']
            ads = query.order_by(Ad.suspicion_score.desc(), Ad.id).limit(int(limit)).all()
            return [self._ad_ref(ad) for ad in ads]

    @staticmethod
    def _ad_ref(ad: Ad) -> Dict[str, Any]:
        return {
            'id': ad.id,
            'tenant_id': ad.tenant_id,
            'advertiser_id': ad.advertiser_id,
            'domain_id': ad.domain_id,
            'target_url': ad.final_lp_url or ad.white_url,
            'is_cloaked_flag': bool(ad.is_cloaked_flag),
        }

    def _run_pool(self, refs: List[Dict[str, Any]], task: Callable, deadline: float) -> List[Dict[str, Any]]:
        """Run task(ref, deadline) for each ref on a bounded pool"""
        outcomes = []
        if not refs:
            return outcomes
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='cloakwatch')
        try:
            futures = [executor.submit(task, ref, deadline) for ref in refs]
            for future in as_completed(futures):
                outcomes.append(future.result())
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
        return outcomes

    def _run_divergence_test(self, schedule_type: str) -> Dict[str, int]:
        refs = self._select_ads(schedule_type)
        logger.info(f"Found {len(refs)} ads to test")

        deadline = time.monotonic() + self.time_budget_seconds
        outcomes = self._run_pool(refs, self._process_ad, deadline)
        stats = self._tally(outcomes)

        touched = [o['ref'] for o in outcomes if o['status'] == OUTCOME_PROCESSED]
        stats['errors'] += self._recompute_rollups(touched)

        if schedule_type == SCHEDULE_DAILY:
            self._write_daily_reports(outcomes)
        return stats

    @staticmethod
    def _tally(outcomes: List[Dict[str, Any]]) -> Dict[str, int]:
        return {
            'processed': sum(1 for o in outcomes if o['status'] == OUTCOME_PROCESSED),
            'divergences': sum(1 for o in outcomes if o.get('diverged')),
            'errors': sum(1 for o in outcomes if o['status'] == OUTCOME_FAILED),
            'skipped': sum(1 for o in outcomes if o['status'] == OUTCOME_SKIPPED),
        }

    def _collect_with_retries(self, ad: Ad, target_url: str, deadline: float):
        """Collect snapshots, retrying failed passes while the budget allows"""
        collect_deadline = None if math.isinf(deadline) else deadline
        last_error = None
        for attempt in range(1, self.fetch_retries + 1):
            if attempt > 1 and time.monotonic() >= deadline:
                logger.info(f"Time budget exhausted, no further snapshot attempts for ad {ad.id}")
                break
            try:
                return self.collector.collect(ad, target_url, deadline=collect_deadline)
            except FetchFailed as e:
                last_error = e
                logger.warning(f"Snapshot attempt {attempt}/{self.fetch_retries} for ad {ad.id} failed: {e.message}")
        raise last_error

    def _process_ad(self, ref: Dict[str, Any], deadline: float) -> Dict[str, Any]:
        """
        Collect, compare, score and alert for one ad

        Never raises: failures are reported in the outcome so the batch continues.
        """
        outcome = {'ref': ref, 'status': OUTCOME_SKIPPED, 'diverged': False, 'newly_cloaked': False,
                   'verdict': None, 'score': None, 'error': None}
        if time.monotonic() >= deadline:
            logger.info(f"Time budget exhausted, leaving ad {ref['id']} for the next run")
            return outcome

        ad_id = ref['id']
        target_url = ref['target_url']
        try:
            if not validate(target_url).valid:
                outcome['verdict'] = self.engine.evaluate(ad_id, target_url)
                outcome['status'] = OUTCOME_PROCESSED
                return outcome

            ad = self.ad_store.read_ad(ad_id)
            if ad is None:
                raise ScoreWriteFailed(ad_id, "ad disappeared before processing")

            self._collect_with_retries(ad, target_url, deadline)
            verdict = self.engine.evaluate(ad_id, target_url)
            outcome['verdict'] = verdict
            outcome['status'] = OUTCOME_PROCESSED

            if not verdict.is_conclusive:
                logger.info(f"Ad {ad_id}: {verdict.status}, score left unchanged")
                return outcome

            domain = self.ad_store.read_domain(ad.domain_id)
            score = self.scorer.score_ad(ad, verdict, domain)
            is_cloaked = bool(ad.is_cloaked_flag) or verdict.diverges
            written = self.ad_store.write_score(
                ad_id, score, is_cloaked,
                detected_black_url=verdict.detected_black_url,
                cloaker_token=verdict.detected_token,
                white_url=target_url if verdict.diverges else None,
                last_snapshot_at=datetime.utcnow(),
                longevity_days=ad.compute_longevity_days(),
            )

            outcome['score'] = score
            outcome['diverged'] = verdict.diverges
            outcome['newly_cloaked'] = is_cloaked and not ref['is_cloaked_flag']

            ad.suspicion_score = score
            ad.is_cloaked_flag = is_cloaked
            self.alert_manager.alert_for_score_change(ad, previous_score=written['previous_score'])
            return outcome

        except (FetchFailed, ScoreWriteFailed) as e:
            logger.error(f"Error processing ad {ad_id}: {e}", exc_info=True)
            outcome['error'] = str(e)
        except Exception as e:
            logger.error(f"Unexpected error processing ad {ad_id}: {e}", exc_info=True)
            outcome['error'] = str(e)
        outcome['status'] = OUTCOME_FAILED
        return outcome

    def _recompute_rollups(self, refs: List[Dict[str, Any]]) -> int:
        """Recompute rollups touched by the batch; returns the number of errors"""
        if not refs:
            return 0
        try:
            recompute_rollups(
                advertiser_ids=[r['advertiser_id'] for r in refs],
                domain_ids=[r['domain_id'] for r in refs],
                session_factory=self.session_factory,
            )
            return 0
        except Exception as e:
            logger.error(f"Error recomputing rollups: {e}", exc_info=True)
            return 1

    def _write_daily_reports(self, outcomes: List[Dict[str, Any]]):
        """One report per tenant covering the ads analyzed in this run"""
        by_tenant: Dict[str, List[Dict[str, Any]]] = {}
        for outcome in outcomes:
            if outcome['status'] == OUTCOME_PROCESSED:
                by_tenant.setdefault(outcome['ref']['tenant_id'], []).append(outcome)

        with DatabaseSession(self.session_factory) as session:
            for tenant_id, tenant_outcomes in by_tenant.items():
                ad_ids = [o['ref']['id'] for o in tenant_outcomes]
                ads = session.query(Ad).filter(Ad.id.in_(ad_ids)).all()
                aggressive = sorted(ads, key=lambda a: (-(a.suspicion_score or 0), a.id))[:5]
                session.add(DailyReport(
                    tenant_id=tenant_id,
                    report_date=datetime.utcnow().date(),
                    total_ads_analyzed=len(tenant_outcomes),
                    new_cloakers_detected=sum(1 for o in tenant_outcomes if o['newly_cloaked']),
                    top_aggressive_ads=[{'id': a.id, 'score': a.suspicion_score} for a in aggressive],
                    top_longevity_ads=[
                        {'id': a.id, 'longevityDays': a.longevity_days, 'winningScore': s.total}
                        for a, s in rank_ads(ads)[:5]
                    ],
                ))
        logger.info(f"Wrote daily reports for {len(by_tenant)} tenant(s)")

    def _run_status_check(self) -> Dict[str, int]:
        limit = int(self.config['worker']['status_check_limit'])
        with DatabaseSession(self.session_factory) as session:
            ads = session.query(Ad)\
                .filter(Ad.status == 'active')\
                .filter(or_(Ad.final_lp_url != None, Ad.white_url != None))\
                .order_by(Ad.id)\
                .limit(limit)\
                .all()
            refs = [self._ad_ref(ad) for ad in ads]

        deadline = time.monotonic() + self.time_budget_seconds
        outcomes = self._run_pool(refs, self._check_status, deadline)
        stats = self._tally(outcomes)

        deactivated = [o['ref'] for o in outcomes if o.get('deactivated')]
        if deactivated:
            stats['errors'] += self._recompute_rollups(deactivated)
        logger.info(f"Status check deactivated {len(deactivated)} ad(s)")
        return stats

    def _check_status(self, ref: Dict[str, Any], deadline: float) -> Dict[str, Any]:
        """
        Probe an ad's landing page; 404 or 5xx soft-deactivates it

        Longevity is refreshed either way.
        """
        outcome = {'ref': ref, 'status': OUTCOME_SKIPPED, 'deactivated': False, 'error': None}
        if time.monotonic() >= deadline:
            return outcome

        status_code, error = self.context.crawler.head(ref['target_url'], STATUS_PROBE_CONDITION)
        if error:
            logger.warning(f"Status probe failed for ad {ref['id']}: {error}")
            outcome['status'] = OUTCOME_FAILED
            outcome['error'] = error
            return outcome

        try:
            with DatabaseSession(self.session_factory) as session:
                ad = session.query(Ad).filter(Ad.id == ref['id']).first()
                if ad is None:
                    outcome['status'] = OUTCOME_FAILED
                    outcome['error'] = "ad not found"
                    return outcome
                if status_code == 404 or status_code >= 500:
                    ad.status = 'inactive'
                    ad.end_date = ad.end_date or datetime.utcnow().date()
                    outcome['deactivated'] = True
                    logger.info(f"Ad {ad.id} marked inactive (HTTP {status_code})")
                ad.longevity_days = ad.compute_longevity_days()
        except Exception as e:
            logger.error(f"Error updating status for ad {ref['id']}: {e}", exc_info=True)
            outcome['status'] = OUTCOME_FAILED
            outcome['error'] = str(e)
            return outcome

        outcome['status'] = OUTCOME_PROCESSED
        return outcome

    def test_ad(self, ad_id: str, target_url: str = None) -> Dict[str, Any]:
        """
        Run the full divergence pipeline for a single ad, outside any budget

        Returns:
            Dictionary with the outcome status, score, error and verdict
        """
        ad = self.ad_store.read_ad(ad_id)
        if ad is None:
            raise ValueError(f"Ad {ad_id} not found")
        ref = self._ad_ref(ad)
        if target_url:
            ref['target_url'] = target_url
        outcome = self._process_ad(ref, math.inf)
        self._recompute_rollups([ref] if outcome['status'] == OUTCOME_PROCESSED else [])
        verdict = outcome['verdict']
        return {
            'status': outcome['status'],
            'score': outcome['score'],
            'error': outcome['error'],
            'verdict': verdict.to_dict() if verdict else None,
        }

    def register_jobs(self, scheduler: schedule.Scheduler = None) -> schedule.Scheduler:
        """Register daily, intraday and status-check jobs on a scheduler"""
        scheduler = scheduler or schedule.Scheduler()
        schedules = self.config['schedules']
        scheduler.every().day.at(schedules['daily_at']).do(self.run, TASK_DIVERGENCE_TEST, SCHEDULE_DAILY)
        scheduler.every(int(schedules['intraday_every_hours'])).hours.do(
            self.run, TASK_DIVERGENCE_TEST, SCHEDULE_INTRADAY)
        scheduler.every().day.at(schedules['status_check_at']).do(self.run, TASK_STATUS_CHECK, SCHEDULE_DAILY)
        return scheduler

    def start_scheduler(self, run_immediately: bool = False, scheduler: schedule.Scheduler = None):
        """
        Start the scheduler loop

        Args:
            run_immediately: If True, run a daily divergence test before waiting
            scheduler: Scheduler to use (a fresh one if not provided)
        """
        scheduler = self.register_jobs(scheduler)
        schedules = self.config['schedules']
        logger.info(
            f"Scheduler started: daily at {schedules['daily_at']}, intraday every "
            f"{schedules['intraday_every_hours']}h, status check at {schedules['status_check_at']}"
        )

        if run_immediately:
            logger.info("Running initial divergence test...")
            self.run(TASK_DIVERGENCE_TEST, SCHEDULE_DAILY)

        # Run scheduler loop
        try:
            while True:
                scheduler.run_pending()
                time.sleep(60)  # Check every minute
        except KeyboardInterrupt:
            logger.info("Scheduler stopped by user")
