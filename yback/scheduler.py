"""
APScheduler wiring for yback.

Manages:
- Replication jobs (cron per ReplicationJob row)
- Device auto-backups (cron per Equipment with auto_backup_enabled)
- A once-a-minute sweep running jobs whose next_run has passed
- Manual triggers

The scheduler is an explicit object owned by the Flask app
(app.extensions['yback_scheduler']); it keeps its timer handles as instance
state and is torn down with shutdown().
"""

import os
import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError

from yback import db
from yback.models import Equipment, ReplicationJob, Backup, Provider
from yback.exceptions import YBackError, UploadFailure
from yback.backup.executor import BackupExecutor, ExecutionResult, credentials_for
from yback.backup.replication import ReplicationService
from yback.providers.storage import file_md5

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = 'due_job_sweep'
JOB_FIELDS = ('equipment_id', 'provider_id', 'cron_expr', 'active')


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Database timestamps are stored as naive UTC."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class BackupScheduler:
    """
    Owns the APScheduler instance and the live timer registries.

    Attributes:
        job_handles: ReplicationJob id -> APScheduler Job
        device_handles: Equipment id -> APScheduler Job
    """

    def __init__(self, app, scheduler=None, executor: Optional[BackupExecutor] = None,
                 replication: Optional[ReplicationService] = None):
        """
        Args:
            app: Flask app; callbacks run inside its app context
            scheduler: APScheduler scheduler (a BackgroundScheduler is built
                from the app config when omitted)
            executor: BackupExecutor used for every device run
            replication: ReplicationService used after job runs
        """
        self.app = app
        self.timezone = app.config.get('SCHEDULER_TIMEZONE', 'America/Sao_Paulo')
        self.scheduler = scheduler or self._build_scheduler(app.config)
        self.executor = executor or BackupExecutor.from_app_config(app.config)
        self.replication = replication or ReplicationService()

        self.job_handles = {}
        self.device_handles = {}

        self._lock = threading.RLock()
        self._initialized = False

    def _build_scheduler(self, config) -> BackgroundScheduler:
        executors = {
            'default': ThreadPoolExecutor(max_workers=config.get('SCHEDULER_MAX_WORKERS', 5))
        }

        job_defaults = {
            'coalesce': True,  # Combine multiple pending instances into one
            'max_instances': 1,  # Only one instance of a timer at a time
            'misfire_grace_time': config.get('SCHEDULER_MISFIRE_GRACE_TIME', 300)
        }

        return BackgroundScheduler(
            executors=executors,
            job_defaults=job_defaults,
            timezone=self.timezone
        )

    # Lifecycle

    def initialize(self):
        """
        Start the scheduler and register a timer for every active job and
        every device with auto-backup enabled. Calling it again does nothing.

        Must run inside an app context.
        """
        with self._lock:
            if self._initialized:
                return

            if not self.scheduler.running:
                self.scheduler.start()

            for job in ReplicationJob.query.filter_by(active=True).all():
                try:
                    self._install_job_timer(job)
                    job.next_run = self.next_run_time(job.cron_expr)
                except ValueError as e:
                    logger.error(f"Replication job {job.id} has an invalid cron expression '{job.cron_expr}': {e}")
            db.session.commit()

            for equipment in Equipment.query.filter_by(auto_backup_enabled=True).all():
                try:
                    self.schedule_device(equipment)
                except ValueError as e:
                    logger.error(f"Equipment {equipment.id} has an invalid auto-backup schedule: {e}")

            self.scheduler.add_job(
                func=self._sweep_callback,
                trigger=IntervalTrigger(minutes=1),
                id=SWEEP_JOB_ID,
                name='Due job sweep',
                replace_existing=True
            )

            self._initialized = True
            logger.info(
                f"Scheduler initialized: {len(self.job_handles)} replication jobs, "
                f"{len(self.device_handles)} device auto-backups (timezone {self.timezone})"
            )

    def shutdown(self):
        """Stop the scheduler and drop every timer handle."""
        with self._lock:
            if self.scheduler.running:
                self.scheduler.shutdown(wait=False)
                logger.info("Scheduler stopped")
            self.job_handles.clear()
            self.device_handles.clear()
            self._initialized = False

    # Cron helpers

    def cron_trigger(self, expr: str) -> CronTrigger:
        """
        Raises:
            ValueError: If expr is not a valid five-field cron expression
        """
        if not expr or not expr.strip():
            raise ValueError("Cron expression is required")
        return CronTrigger.from_crontab(expr.strip(), timezone=self.timezone)

    def next_run_time(self, expr: str) -> Optional[datetime]:
        trigger = self.cron_trigger(expr)
        return to_naive_utc(trigger.get_next_fire_time(None, datetime.now(timezone.utc)))

    # Replication job timers

    def _install_job_timer(self, job: ReplicationJob):
        with self._lock:
            self._remove_job_timer(job.id)
            trigger = self.cron_trigger(job.cron_expr)
            self.job_handles[job.id] = self.scheduler.add_job(
                func=self._job_callback,
                args=[job.id],
                trigger=trigger,
                id=f"replication_{job.id}",
                name=f"Replication job {job.id}",
                replace_existing=True
            )
            logger.info(f"Scheduled replication job {job.id} ({job.cron_expr})")

    def _remove_job_timer(self, job_id: int):
        with self._lock:
            handle = self.job_handles.pop(job_id, None)
            if handle is not None:
                self._cancel(handle)

    @staticmethod
    def _cancel(handle):
        try:
            handle.remove()
        except JobLookupError:
            logger.debug(f"Timer {handle.id} already gone")

    def _reconcile(self, job: ReplicationJob):
        """Make the live timer match the persisted row."""
        if job.active:
            self._install_job_timer(job)
            job.next_run = self.next_run_time(job.cron_expr)
        else:
            self._remove_job_timer(job.id)
            job.next_run = None
        db.session.commit()

    def add_job(self, data: dict) -> ReplicationJob:
        """
        Create a replication job and schedule it if active.

        Args:
            data: equipment_id, provider_id, cron_expr and optional active

        Raises:
            ValueError: If a field is missing or the cron expression is invalid
        """
        missing = [k for k in ('equipment_id', 'provider_id', 'cron_expr') if data.get(k) in (None, '')]
        if missing:
            raise ValueError(f"Missing required fields: {', '.join(missing)}")

        self.cron_trigger(data['cron_expr'])

        job = ReplicationJob(
            equipment_id=data['equipment_id'],
            provider_id=data['provider_id'],
            cron_expr=data['cron_expr'].strip(),
            active=bool(data.get('active', True)),
            status='pending'
        )
        db.session.add(job)
        db.session.commit()

        self._reconcile(job)
        return job

    def update_job(self, job_id: int, data: dict) -> ReplicationJob:
        """
        Update a replication job; the old timer is removed before a new one
        is installed.

        Raises:
            ValueError: If the job does not exist or the cron expression is invalid
        """
        job = self._get_job(job_id)

        if 'cron_expr' in data:
            self.cron_trigger(data['cron_expr'])
            data = dict(data, cron_expr=data['cron_expr'].strip())

        for field in JOB_FIELDS:
            if field in data:
                setattr(job, field, data[field])
        db.session.commit()

        self._reconcile(job)
        return job

    def remove_job(self, job_id: int):
        """Cancel the timer and delete the job row."""
        job = self._get_job(job_id)
        self._remove_job_timer(job_id)
        db.session.delete(job)
        db.session.commit()
        logger.info(f"Removed replication job {job_id}")

    def pause_job(self, job_id: int) -> ReplicationJob:
        """Deactivate a job and cancel its timer; the row is kept."""
        job = self._get_job(job_id)
        job.active = False
        db.session.commit()
        self._reconcile(job)
        logger.info(f"Paused replication job {job_id}")
        return job

    def resume_job(self, job_id: int) -> ReplicationJob:
        job = self._get_job(job_id)
        job.active = True
        db.session.commit()
        self._reconcile(job)
        logger.info(f"Resumed replication job {job_id}")
        return job

    def trigger_job_now(self, job_id: int):
        """
        Run a job once, one second from now, without touching its cron timer.

        Raises:
            ValueError: If job not found
        """
        self._get_job(job_id)
        now = datetime.now(timezone.utc)

        self.scheduler.add_job(
            func=self._job_callback,
            args=[job_id],
            trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
            id=f"manual_{job_id}_{int(now.timestamp())}",
            name=f"Manual: replication job {job_id}",
            replace_existing=False
        )
        logger.info(f"Manually triggered replication job {job_id}")

    @staticmethod
    def _get_job(job_id: int) -> ReplicationJob:
        job = db.session.get(ReplicationJob, job_id)
        if job is None:
            raise ValueError(f"Replication job not found: {job_id}")
        return job

    # Device auto-backup timers

    def schedule_device(self, equipment: Equipment):
        """
        Install (or replace) the auto-backup timer of a device. Devices with
        auto-backup disabled or without a schedule are unscheduled instead.

        Raises:
            ValueError: If the cron expression is invalid
        """
        with self._lock:
            self.unschedule_device(equipment.id)

            if not equipment.auto_backup_enabled or not equipment.auto_backup_cron:
                return

            trigger = self.cron_trigger(equipment.auto_backup_cron)
            self.device_handles[equipment.id] = self.scheduler.add_job(
                func=self._device_callback,
                args=[equipment.id],
                trigger=trigger,
                id=f"device_{equipment.id}",
                name=f"Auto-backup: {equipment.name}",
                replace_existing=True
            )
            logger.info(f"Scheduled auto-backup of {equipment.name} ({equipment.auto_backup_cron})")

    def unschedule_device(self, equipment_id: int):
        with self._lock:
            handle = self.device_handles.pop(equipment_id, None)
            if handle is not None:
                self._cancel(handle)

    # Execution

    def _credentials(self, equipment: Equipment):
        config = self.app.config
        return credentials_for(
            equipment,
            ssh_timeout=config.get('SSH_CONNECT_TIMEOUT', 10),
            ssh_command_timeout=config.get('SSH_COMMAND_TIMEOUT', 300),
            http_timeout=config.get('HTTP_TIMEOUT', 15),
            telnet_timeout=config.get('TELNET_TIMEOUT', 15)
        )

    def _persist_backup(self, equipment: Equipment, result: ExecutionResult, source: str) -> Backup:
        backup = Backup(
            equipment_id=equipment.id,
            filename=os.path.basename(result.local_path),
            local_path=result.local_path,
            provider_type='local',
            provider_path=result.local_path,
            size_bytes=os.path.getsize(result.local_path),
            checksum=file_md5(result.local_path),
            status='active',
            sync_status='pending',
            metadata_json=json.dumps({
                'source': source,
                'recipe': result.recipe_key,
                'remote_file': result.remote_file,
                'completed_at': result.completed_at.isoformat() if result.completed_at else None
            })
        )
        db.session.add(backup)
        db.session.commit()
        logger.info(f"Stored backup {backup.filename} for {equipment.name}")
        return backup

    def run_replication_job(self, job_id: int) -> bool:
        """
        Run one replication job: back up its device, record the Backup and
        replicate it to the job's provider.

        The job is claimed with a conditional UPDATE; if another worker holds
        it (status 'running') nothing happens.

        Returns:
            True if the job completed
        """
        started = datetime.utcnow()

        claimed = ReplicationJob.query.filter(
            ReplicationJob.id == job_id,
            ReplicationJob.status != 'running'
        ).update({
            ReplicationJob.status: 'running',
            ReplicationJob.last_error: None,
            ReplicationJob.updated_at: started
        }, synchronize_session=False)
        db.session.commit()

        if claimed != 1:
            logger.info(f"Replication job {job_id} is already running or gone, skipping")
            return False

        job = db.session.get(ReplicationJob, job_id)
        db.session.refresh(job)
        logger.info(f"Running replication job {job_id}")

        try:
            self._replicate(job)
            status, error = 'completed', None
        except Exception as e:
            logger.exception(f"Replication job {job_id} failed")
            db.session.rollback()
            status, error = 'failed', str(e)

        job.status = status
        job.last_error = error
        job.last_run = started
        try:
            job.next_run = self.next_run_time(job.cron_expr) if job.active else None
        except ValueError:
            job.next_run = None
        db.session.commit()

        logger.info(f"Replication job {job_id} finished with status {status}")
        return status == 'completed'

    def _replicate(self, job: ReplicationJob):
        equipment = job.equipment
        if equipment is None:
            raise YBackError(f"Equipment not found: {job.equipment_id}")

        provider = db.session.get(Provider, job.provider_id)
        if provider is None or not provider.active:
            raise UploadFailure(f"Provider {job.provider_id} not found or inactive")

        result = self.executor.run(equipment, self._credentials(equipment))
        if not result.success:
            raise YBackError(f"{result.error_type}: {result.error}")

        backup = self._persist_backup(equipment, result, source=f"replication_job:{job.id}")

        status = self.replication.sync(backup, provider)
        if status != 'synced':
            raise UploadFailure(backup.sync_error or f"Replication ended in state {status}")

    def run_device_backup(self, equipment_id: int) -> Optional[ExecutionResult]:
        """
        Back up one device; a Backup row is created only on success.

        Returns:
            ExecutionResult, or None if the device does not exist
        """
        equipment = db.session.get(Equipment, equipment_id)
        if equipment is None:
            logger.warning(f"Auto-backup skipped, equipment {equipment_id} not found")
            return None

        result = self.executor.run(equipment, self._credentials(equipment))

        if result.success:
            self._persist_backup(equipment, result, source='auto_backup')
        else:
            logger.warning(f"Auto-backup of {equipment.name} failed: {result.error}")

        return result

    def backup_device_now(self, equipment_id: int) -> ExecutionResult:
        """
        Back up a device synchronously and return the structured result.

        Raises:
            ValueError: If equipment not found
        """
        result = self.run_device_backup(equipment_id)
        if result is None:
            raise ValueError(f"Equipment not found: {equipment_id}")
        return result

    def check_provider(self, provider_id: int) -> dict:
        """
        Run the connection check of a storage provider.

        Raises:
            ValueError: If provider not found
        """
        provider = db.session.get(Provider, provider_id)
        if provider is None:
            raise ValueError(f"Provider not found: {provider_id}")
        return self.replication.check_provider(provider)

    def run_due_jobs(self) -> int:
        """
        Run every active job whose next_run has passed and is not running.

        Returns:
            Number of jobs that were claimed and ran
        """
        now = datetime.utcnow()
        due_ids = [
            job.id for job in ReplicationJob.query.filter(
                ReplicationJob.active.is_(True),
                ReplicationJob.next_run.isnot(None),
                ReplicationJob.next_run <= now,
                ReplicationJob.status != 'running'
            ).all()
        ]

        ran = 0
        for job_id in due_ids:
            try:
                if self.run_replication_job(job_id):
                    ran += 1
            except Exception:
                logger.exception(f"Due job sweep could not run job {job_id}")
                db.session.rollback()

        return ran

    # APScheduler callbacks, run in worker threads

    def _job_callback(self, job_id: int):
        with self.app.app_context():
            try:
                self.run_replication_job(job_id)
            except Exception:
                logger.exception(f"Replication job {job_id} callback crashed")
                db.session.rollback()

    def _device_callback(self, equipment_id: int):
        with self.app.app_context():
            try:
                self.run_device_backup(equipment_id)
            except Exception:
                logger.exception(f"Auto-backup callback for equipment {equipment_id} crashed")
                db.session.rollback()

    def _sweep_callback(self):
        with self.app.app_context():
            try:
                ran = self.run_due_jobs()
                if ran:
                    logger.info(f"Due job sweep ran {ran} job(s)")
            except Exception:
                logger.exception("Due job sweep crashed")
                db.session.rollback()

    # Introspection

    def get_scheduled_jobs(self) -> list:
        jobs = []

        for job in self.scheduler.get_jobs():
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
                'trigger': str(job.trigger)
            })

        return jobs

    def get_diagnostics(self) -> dict:
        """
        Returns:
            Dict with scheduler state, timer counts and scheduled jobs
        """
        return {
            'initialized': self._initialized,
            'running': bool(self.scheduler.running),
            'state': str(self.scheduler.state),
            'timezone': str(self.timezone),
            'replication_timers': sorted(self.job_handles),
            'device_timers': sorted(self.device_handles),
            'jobs': self.get_scheduled_jobs()
        }
