"""
Sync Scheduler

Decides which sync operations run on each timer tick:
- Skip the whole cycle when the last known 5-minute credit budget is low
- Bookings delta sync on every tick
- Calendar delta sync only on hours divisible by CALENDAR_SYNC_HOUR_MODULO
- Health check on every tick, with alerts written to the audit trail

Uses APScheduler for the hourly cron tick when the scheduler is enabled
inside the API process; otherwise an external timer calls run_scheduled().
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..database import SessionLocal
from ..models.channel_integration import SyncCheckpoint, EntityType, TokenType, DEFAULT_PROVIDER
from ..utils.dates import utcnow
from ..utils.logging_config import clear_trace_context, set_trace_context
from .audit_service import AuditLogger
from .beds24_client import Beds24Client, CreditTracker
from .delta_sync import DeltaSyncEngine, DeltaSyncResult, SYNC_ALL, SYNC_BOOKINGS, SYNC_CALENDAR
from .token_manager import TokenManager

logger = logging.getLogger(__name__)

HEALTH_OPERATION = "scheduler_health_check"

# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None
_last_run_time: Optional[datetime] = None
_last_run_result: Optional[Dict] = None


@dataclass
class HealthCheckResult:
    """Result of one health check"""
    name: str
    passed: bool
    message: str
    details: Optional[Dict] = None


@dataclass
class HealthReport:
    """Full health report"""
    overall_status: str  # "healthy", "degraded", "unhealthy"
    timestamp: str
    checks: List[HealthCheckResult]
    alerts: List[str]
    summary: Dict


@dataclass
class SchedulerRunResult:
    success: bool
    skipped: bool = False
    message: str = ""
    trace_id: Optional[str] = None
    credits_remaining: Optional[int] = None
    ran_calendar: bool = False
    syncs: List[DeltaSyncResult] = field(default_factory=list)
    health: Optional[HealthReport] = None


class SyncScheduler:

    def __init__(
        self,
        db: Session,
        client_factory: Optional[Callable[[str], Beds24Client]] = None,
        token_manager: Optional[TokenManager] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.audit = AuditLogger(db)
        self.client_factory = client_factory
        self.token_manager = token_manager
        self.now_fn = now_fn

    def _engine(self) -> DeltaSyncEngine:
        return DeltaSyncEngine(self.db, client_factory=self.client_factory, now_fn=self.now_fn)

    def _credits_remaining(self) -> Optional[int]:
        """Last persisted 5-minute budget, or None when unknown or the window has reset"""
        return CreditTracker.from_store(self.db, self.now_fn()).five_min_remaining

    def run_scheduled(self, trace_id: Optional[str] = None) -> SchedulerRunResult:
        now = self.now_fn()
        trace_id = set_trace_context(trace_id)
        result = SchedulerRunResult(success=True, trace_id=trace_id)

        credits = self._credits_remaining()
        result.credits_remaining = credits
        if credits is not None and credits < settings.scheduler_min_credits:
            result.skipped = True
            result.message = (
                f"Skipped cycle: {credits} credits remaining, "
                f"need at least {settings.scheduler_min_credits}"
            )
            logger.warning(result.message)
            return result

        engine = self._engine()
        bookings = engine.run(SYNC_BOOKINGS, trace_id=trace_id)
        result.syncs.append(bookings)
        result.success = bookings.success

        if now.hour % settings.calendar_sync_hour_modulo == 0:
            calendar = engine.run(SYNC_CALENDAR, trace_id=trace_id)
            result.syncs.append(calendar)
            result.ran_calendar = True
            result.success = result.success and calendar.success

        result.health = self.health_check()
        result.message = (
            f"Ran bookings{' and calendar' if result.ran_calendar else ''} sync; "
            f"health {result.health.overall_status}"
        )
        logger.info(f"Scheduled run finished: {result.message}")
        return result

    def manual_trigger(
        self,
        sync_type: str = SYNC_ALL,
        hotel_id: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> DeltaSyncResult:
        """Sync now, ignoring interval throttles"""
        logger.info(f"Manual {sync_type} sync triggered for hotel {hotel_id or 'all'}")
        return self._engine().run(sync_type, hotel_id=hotel_id, force_sync=True, trace_id=trace_id)

    # ==================
    # Health
    # ==================

    def health_check(self) -> HealthReport:
        checks: List[HealthCheckResult] = []
        alerts: List[str] = []
        summary: Dict = {
            "store_reachable": False,
            "read_token_valid": False,
            "write_token_valid": False,
            "eligible_hotels": 0,
            "errors_24h": 0,
            "credits_remaining": None,
        }

        try:
            self.db.execute(text("SELECT 1"))
            summary["store_reachable"] = True
            checks.append(HealthCheckResult("store", True, "Database reachable"))
        except SQLAlchemyError as e:
            self.db.rollback()
            checks.append(HealthCheckResult("store", False, f"Database unreachable: {e}"))
            alerts.append("Store unreachable")

        if summary["store_reachable"]:
            self._check_tokens(summary, checks, alerts)

            summary["eligible_hotels"] = self.db.query(SyncCheckpoint).filter(
                SyncCheckpoint.provider == DEFAULT_PROVIDER,
                SyncCheckpoint.bootstrap_completed.is_(True),
                SyncCheckpoint.sync_enabled.is_(True),
            ).count()
            checks.append(HealthCheckResult(
                "eligible_hotels", True, f"{summary['eligible_hotels']} hotels eligible for sync"
            ))

            errors = self.audit.count_recent_errors(settings.recovery_window_hours, now=self.now_fn())
            summary["errors_24h"] = errors
            errors_ok = errors <= settings.alert_error_count
            checks.append(HealthCheckResult("recent_errors", errors_ok, f"{errors} errors in last 24h"))
            if not errors_ok:
                alerts.append(f"High error rate: {errors} errors in 24h")

            credits = self._credits_remaining()
            summary["credits_remaining"] = credits
            credits_ok = credits is None or credits >= settings.alert_low_credits
            checks.append(HealthCheckResult(
                "credits", credits_ok,
                "Credit budget unknown" if credits is None else f"{credits} credits remaining",
            ))
            if not credits_ok:
                alerts.append(f"Low API credits: {credits} remaining")

        if not summary["store_reachable"]:
            overall = "unhealthy"
        elif alerts:
            overall = "degraded"
        else:
            overall = "healthy"

        report = HealthReport(
            overall_status=overall,
            timestamp=self.now_fn().isoformat(),
            checks=checks,
            alerts=alerts,
            summary=summary,
        )

        if alerts:
            for alert in alerts:
                logger.warning(f"Sync health alert: {alert}")
            self.audit.error(
                HEALTH_OPERATION, "; ".join(alerts),
                entity_type=EntityType.SYSTEM.value, action="health_check",
                response_payload=summary,
            )
        return report

    def _check_tokens(self, summary: Dict, checks: List[HealthCheckResult], alerts: List[str]):
        token_manager = self.token_manager or TokenManager(self.db)
        try:
            summary["read_token_valid"] = token_manager.is_valid(TokenType.READ.value)
            summary["write_token_valid"] = token_manager.is_valid(TokenType.WRITE.value)
        finally:
            if self.token_manager is None:
                token_manager.close()

        checks.append(HealthCheckResult(
            "read_token", summary["read_token_valid"],
            "Read token valid" if summary["read_token_valid"] else "Read token missing or expired",
        ))
        checks.append(HealthCheckResult(
            "write_token", summary["write_token_valid"],
            "Write token valid" if summary["write_token_valid"] else "Write token missing or expired",
        ))
        if not summary["read_token_valid"]:
            alerts.append("Read token invalid")


# ==================
# APScheduler wiring
# ==================

def _run_scheduled_cycle() -> Dict:
    global _last_run_time, _last_run_result

    db = SessionLocal()
    try:
        result = SyncScheduler(db).run_scheduled()
        _last_run_time = utcnow()
        _last_run_result = {
            "success": result.success,
            "skipped": result.skipped,
            "message": result.message,
            "trace_id": result.trace_id,
        }
        return _last_run_result
    finally:
        db.close()
        clear_trace_context()


def _run_integrity_repair() -> Dict:
    from .recovery import RecoveryEngine

    db = SessionLocal()
    engine = RecoveryEngine(db)
    try:
        return engine.repair_data_integrity().to_dict()
    finally:
        engine.close()
        db.close()
        clear_trace_context()


async def run_sync_scheduler_job():
    """
    Async job function called by the scheduler.

    The sync itself is blocking I/O, so it runs in a worker thread with
    its own database session.
    """
    logger.info("Running scheduled sync job...")
    try:
        result = await asyncio.to_thread(_run_scheduled_cycle)
        logger.info(f"Scheduled sync result: {result}")
    except Exception as e:
        logger.error(f"Scheduled sync job failed: {e}", exc_info=True)


async def run_integrity_repair_job():
    logger.info("Running scheduled data integrity repair...")
    try:
        result = await asyncio.to_thread(_run_integrity_repair)
        logger.info(f"Integrity repair result: {result}")
    except Exception as e:
        logger.error(f"Integrity repair job failed: {e}", exc_info=True)


def start_sync_scheduler() -> bool:
    """
    Start the hourly sync job (minute 0) and the daily repair job (03:30).

    Returns:
        True if scheduler started successfully, False otherwise
    """
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Sync scheduler is already running")
        return True

    timezone = settings.scheduler_timezone
    try:
        _scheduler = AsyncIOScheduler(timezone=timezone)
        _scheduler.add_job(
            run_sync_scheduler_job,
            CronTrigger(minute=0, timezone=timezone),
            id="channel_sync_hourly",
            name="Hourly channel sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        _scheduler.add_job(
            run_integrity_repair_job,
            CronTrigger(hour=3, minute=30, timezone=timezone),
            id="integrity_repair_daily",
            name="Daily data integrity repair",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        _scheduler.start()
        logger.info(f"Sync scheduler started (hourly at :00, repair at 03:30 {timezone})")
        return True
    except Exception as e:
        logger.error(f"Failed to start sync scheduler: {e}")
        _scheduler = None
        return False


def stop_sync_scheduler() -> bool:
    global _scheduler

    if _scheduler is None:
        logger.warning("Sync scheduler is not running")
        return True

    try:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Sync scheduler stopped")
        return True
    except Exception as e:
        logger.error(f"Failed to stop sync scheduler: {e}")
        return False


def get_scheduler_status() -> Dict:
    status = {
        "running": False,
        "timezone": settings.scheduler_timezone,
        "last_run": _last_run_time.isoformat() if _last_run_time else None,
        "last_run_result": _last_run_result,
        "jobs": [],
    }

    if _scheduler is not None and _scheduler.running:
        status["running"] = True
        for job in _scheduler.get_jobs():
            status["jobs"].append({
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            })
    return status
