"""
Main entry point for CloakWatch
"""
import sys
import json
import logging
import argparse

from cloakwatch.storage.database import init_database
from cloakwatch.config.loader import load_watchdog_config
from cloakwatch.crawler.scheduler import (
    WorkerContext, ScheduledWorker, TASK_DIVERGENCE_TEST, TASK_STATUS_CHECK,
    SCHEDULE_DAILY, SCHEDULE_INTRADAY, SCHEDULE_MANUAL,
)


def main(argv=None):
    """Main entry point"""
    parser = argparse.ArgumentParser(description='CloakWatch landing-page divergence worker')
    parser.add_argument('--config', help='Path to watchdog.yaml (defaults to WATCHDOG_CONFIG or config/watchdog.yaml)')
    parser.add_argument('--init-db', action='store_true', help='Initialize database only')
    parser.add_argument('--run-once', action='store_true', help='Run a single batch and exit')
    parser.add_argument('--task-type', choices=[TASK_DIVERGENCE_TEST, TASK_STATUS_CHECK],
                        default=TASK_DIVERGENCE_TEST, help='Batch task for --run-once')
    parser.add_argument('--schedule-type', choices=[SCHEDULE_DAILY, SCHEDULE_INTRADAY, SCHEDULE_MANUAL],
                        default=SCHEDULE_DAILY, help='Ad selection for --run-once')
    parser.add_argument('--test-url', nargs='+', metavar=('AD_ID', 'URL'),
                        help='Run the divergence pipeline for one ad, optionally against another URL')
    parser.add_argument('--start-scheduler', action='store_true', help='Start the scheduler (default)')

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("CloakWatch")
    print("=" * 50)

    # Load configuration
    print("\n1. Loading configuration...")
    try:
        config = load_watchdog_config(args.config)
        print(f"   [OK] Loaded configuration ({config['worker']['max_workers']} worker(s), "
              f"{config['worker']['time_budget_seconds']}s budget)")
    except Exception as e:
        print(f"   [ERROR] Configuration loading failed: {e}")
        return 1

    # Initialize worker context
    print("\n2. Initializing database...")
    try:
        context = WorkerContext(config)
        init_database(context.engine)
        print("   [OK] Database initialized")
    except Exception as e:
        print(f"   [ERROR] Database initialization failed: {e}")
        return 1

    try:
        # If just initializing database, exit
        if args.init_db:
            print("\n" + "=" * 50)
            print("Database initialized. Exiting.")
            return 0

        worker = ScheduledWorker(context)
        print("\n" + "=" * 50)

        if args.test_url:
            if len(args.test_url) > 2:
                print("[ERROR] --test-url takes AD_ID and an optional URL")
                return 1
            ad_id = args.test_url[0]
            target_url = args.test_url[1] if len(args.test_url) > 1 else None
            print(f"Testing ad {ad_id}...")
            try:
                result = worker.test_ad(ad_id, target_url)
            except ValueError as e:
                print(f"[ERROR] {e}")
                return 1
            print(json.dumps(result, indent=2, default=str))
            return 0 if result['status'] != 'failed' else 1

        if args.run_once:
            print(f"Running {args.task_type} ({args.schedule_type})...")
            result = worker.run(args.task_type, args.schedule_type)
            if not result['success']:
                print(f"\n[ERROR] Run failed: {result['error']}")
                return 1
            print(f"\nRun complete:")
            print(f"  Processed: {result['processedCount']}")
            print(f"  Divergences found: {result['divergencesFound']}")
            print(f"  Errors: {result['errorsCount']}")
            print(f"  Skipped (budget): {result['skippedCount']}")
            return 0

        # Default: start scheduler
        print("Starting scheduler...")
        print("Press Ctrl+C to stop")
        print("=" * 50)
        worker.start_scheduler()
        return 0
    finally:
        context.close()


if __name__ == '__main__':
    sys.exit(main())
