"""
APScheduler configuration for finvault backups.

BackupScheduler owns four named cron jobs:
- incremental: incremental backup (daily)
- full: full backup (weekly)
- cleanup: retention sweep (daily)
- verification: integrity check of recent unverified backups (weekly)

A cadence never overlaps itself (max_instances=1, overlapping fires are
skipped) while different cadences run concurrently on a thread pool. Each
cadence catches its own failures so one never blocks or skips another.
"""

import logging
import re
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from finvault.backup.engine import BackupEngine
from finvault.backup.errors import BackupInProgress
from finvault.backup.retention import RetentionSweeper
from finvault.models import TYPE_FULL, TYPE_INCREMENTAL, TRIGGER_SCHEDULE
from finvault.notifications import BackupEvent, Notifier, OUTCOME_SUCCESS, OUTCOME_FAILURE


logger = logging.getLogger(__name__)

CADENCE_INCREMENTAL = 'incremental'
CADENCE_FULL = 'full'
CADENCE_CLEANUP = 'cleanup'
CADENCE_VERIFICATION = 'verification'

DEFAULT_CRONS = {
    CADENCE_INCREMENTAL: '0 2 * * *',   # daily at 02:00 UTC
    CADENCE_FULL: '0 3 * * 0',          # Sundays at 03:00 UTC
    CADENCE_CLEANUP: '0 4 * * *',       # daily at 04:00 UTC
    CADENCE_VERIFICATION: '0 5 * * 1',  # Mondays at 05:00 UTC
}

CADENCE_NAMES = {
    CADENCE_INCREMENTAL: 'Incremental Backup',
    CADENCE_FULL: 'Full Backup',
    CADENCE_CLEANUP: 'Retention Cleanup',
    CADENCE_VERIFICATION: 'Backup Verification',
}

# Standard crontab weekday numbers (0 and 7 are Sunday); APScheduler counts from Monday
CRON_WEEKDAYS = ['sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun']


def build_cron_trigger(expression: str) -> CronTrigger:
    """
    UTC CronTrigger for a standard 5-field crontab expression.

    Raises:
        ValueError: If the expression is invalid
    """
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Wrong number of fields in cron expression: {expression!r}")

    def weekday_name(match):
        number = int(match.group())
        if number >= len(CRON_WEEKDAYS):
            raise ValueError(f"Invalid day of week in cron expression: {expression!r}")
        return CRON_WEEKDAYS[number]

    fields[4] = re.sub(r'(?<![/\d])\d+', weekday_name, fields[4])
    return CronTrigger.from_crontab(' '.join(fields), timezone='UTC')


class BackupScheduler:
    """
    Drives the backup engine and retention sweeper on fixed cadences.

    Constructed once at process start. Only the scheduler sends
    notifications; notification failures never touch backup records.
    """

    def __init__(
        self,
        app,
        engine: BackupEngine,
        sweeper: RetentionSweeper,
        notifier: Notifier = None,
        crons: Dict[str, str] = None,
        verification_window_days: int = 7,
        verification_sample_size: int = 5,
        max_workers: int = 4,
        misfire_grace_time: int = 300
    ):
        """
        Args:
            app: Flask app (jobs run inside its app context)
            engine: Backup engine
            sweeper: Retention sweeper
            notifier: Outcome notifier (default: log-only Notifier)
            crons: Cron expression overrides per cadence
            verification_window_days: How far back to sample unverified backups
            verification_sample_size: Max backups verified per run
            max_workers: Thread pool size shared by all cadences
            misfire_grace_time: Seconds a late job may still start
        """
        self.app = app
        self.engine = engine
        self.sweeper = sweeper
        self.notifier = notifier or Notifier()
        self.crons = dict(DEFAULT_CRONS)
        self.crons.update(crons or {})
        self.verification_window_days = verification_window_days
        self.verification_sample_size = verification_sample_size

        self._tasks: Dict[str, Callable[[], None]] = {
            CADENCE_INCREMENTAL: self._run_incremental_backup,
            CADENCE_FULL: self._run_full_backup,
            CADENCE_CLEANUP: self._run_cleanup,
            CADENCE_VERIFICATION: self._run_verification,
        }
        self._active = set()
        self._last_runs: Dict[str, dict] = {}
        self._state_lock = threading.Lock()

        self.scheduler = BackgroundScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': ThreadPoolExecutor(max_workers=max_workers)},
            job_defaults={
                'coalesce': True,  # Combine multiple pending instances into one
                'max_instances': 1,  # Only one instance of a cadence at a time
                'misfire_grace_time': misfire_grace_time
            },
            timezone='UTC'
        )

        for name in self._tasks:
            self.scheduler.add_job(
                func=self.run_cadence,
                args=[name],
                trigger=build_cron_trigger(self.crons[name]),
                id=name,
                name=CADENCE_NAMES[name],
                replace_existing=True
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        """Start firing cadences."""
        if self.scheduler.running:
            logger.info("Backup scheduler already running")
            return

        self.scheduler.start()
        for job in self.scheduler.get_jobs():
            logger.info(f"Scheduled {job.id}: {job.name} (next run: {_iso(job.next_run_time)})")

    def shutdown(self, wait: bool = False):
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Backup scheduler stopped")

    def cancel(self, name: str) -> bool:
        """
        Cancel one cadence.

        Returns:
            True if the cadence was scheduled and is now removed
        """
        if self.scheduler.get_job(name) is None:
            return False
        self.scheduler.remove_job(name)
        logger.info(f"Cancelled scheduled job: {name}")
        return True

    def cancel_all(self):
        for name in list(self._tasks):
            self.cancel(name)

    def status(self) -> Dict[str, dict]:
        """
        Per-cadence introspection.

        Returns:
            {cadence: {'name', 'cron', 'scheduled', 'nextRun', 'running', 'lastRun'}}
        """
        now = datetime.now(timezone.utc)
        status = {}

        for name in self._tasks:
            job = self.scheduler.get_job(name)
            next_run = None
            if job is not None:
                next_run = getattr(job, 'next_run_time', None)
                if next_run is None and not self.scheduler.running:
                    next_run = job.trigger.get_next_fire_time(None, now)

            with self._state_lock:
                active = name in self._active
                last_run = self._last_runs.get(name)

            status[name] = {
                'name': CADENCE_NAMES[name],
                'cron': self.crons[name],
                'scheduled': job is not None,
                'nextRun': _iso(next_run),
                'running': active,
                'lastRun': last_run,
            }

        return status

    # ------------------------------------------------------------------
    # Cadence execution
    # ------------------------------------------------------------------

    def run_cadence(self, name: str) -> bool:
        """
        Run one cadence in the current thread inside the app context.

        A cadence that is already running is skipped.

        Returns:
            True if the cadence ran, False if it was skipped
        """
        if name not in self._tasks:
            raise ValueError(f"Unknown cadence: {name}")

        with self._state_lock:
            if name in self._active:
                logger.warning(f"Skipping {name}: previous run still in progress")
                return False
            self._active.add(name)

        started_at = datetime.utcnow()
        outcome = OUTCOME_SUCCESS
        error = None

        try:
            with self.app.app_context():
                self._tasks[name]()
        except Exception as e:
            outcome = OUTCOME_FAILURE
            error = str(e)
            logger.exception(f"Scheduled {name} run failed: {e}")
        finally:
            with self._state_lock:
                self._active.discard(name)
                self._last_runs[name] = {
                    'startedAt': started_at.isoformat(),
                    'finishedAt': datetime.utcnow().isoformat(),
                    'outcome': outcome,
                    'error': error,
                }

        return True

    def _run_full_backup(self):
        self._run_backup(TYPE_FULL, self.engine.create_full_backup)

    def _run_incremental_backup(self):
        self._run_backup(TYPE_INCREMENTAL, self.engine.create_incremental_backup)

    def _run_backup(self, backup_type: str, create: Callable):
        logger.info(f"Starting scheduled {backup_type} backup...")

        try:
            record = create(TRIGGER_SCHEDULE)
        except BackupInProgress as e:
            logger.warning(f"Skipping scheduled {backup_type} backup: {e}")
            return
        except Exception as e:
            logger.error(f"Scheduled {backup_type} backup failed: {e}")
            self._notify(BackupEvent(
                outcome=OUTCOME_FAILURE,
                type=f"{backup_type} backup",
                backup_id=getattr(e, 'backup_id', None),
                details={'error': str(e)}
            ))
            raise

        logger.info(f"{backup_type.capitalize()} backup completed: {record.backup_id}")
        self._notify(BackupEvent(
            outcome=OUTCOME_SUCCESS,
            type=f"{backup_type} backup",
            backup_id=record.backup_id,
            details={
                'size': record.size_bytes,
                'duration': record.duration_ms,
                'collections': len(record.collections or []),
                'storageKey': record.storage_key,
            }
        ))

    def _run_cleanup(self):
        logger.info("Starting scheduled backup cleanup...")
        summary = self.sweeper.enforce_retention()
        logger.info(f"Cleanup completed: {summary['deleted']} old backups removed")

        if summary['deleted'] or summary['failed']:
            self._notify(BackupEvent(
                outcome=OUTCOME_FAILURE if summary['failed'] else OUTCOME_SUCCESS,
                type='cleanup',
                details=summary
            ))

    def _run_verification(self):
        logger.info("Starting scheduled backup verification...")
        candidates = self.engine.catalog.find_unverified(
            window_days=self.verification_window_days,
            limit=self.verification_sample_size
        )

        results = []
        for record in candidates:
            backup_id = record.backup_id
            try:
                results.append(self.engine.verify_backup(backup_id))
            except Exception as e:
                logger.error(f"Verification failed for {backup_id}: {e}")
                results.append({'backupId': backup_id, 'verified': False, 'error': str(e)})

        logger.info(f"Verification completed: {len(results)} backups checked")

        if results:
            failed = [r for r in results if not r['verified']]
            self._notify(BackupEvent(
                outcome=OUTCOME_FAILURE if failed else OUTCOME_SUCCESS,
                type='verification',
                details={
                    'verified': len(results) - len(failed),
                    'failed': len(failed),
                    'results': results,
                }
            ))

    def _notify(self, event: BackupEvent):
        try:
            self.notifier.notify(event)
        except Exception as e:
            logger.error(f"Failed to send backup notification: {e}")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
