"""Expiration Scheduler - Periodic approval reminder/expiry sweep

Runs ApprovalCoordinator.check_expirations on an interval in a background
thread. The engine is synchronous, so this uses APScheduler's BackgroundScheduler.
"""
from typing import Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import settings
from ..engine.engine import WorkflowEngine
from ..utils.idgen import generate_correlation_id
from ..utils.logger import get_logger, set_correlation_id

logger = get_logger(__name__)


class ExpirationScheduler:
    """
    Scheduler for approval reminders, escalations and expiry
    
    Each sweep takes the per-instance lock of every approval it touches, so it
    is safe to run alongside request/resolve calls in the same process.
    """
    
    def __init__(self, engine: WorkflowEngine, interval_seconds: Optional[int] = None):
        self.engine = engine
        self.interval_seconds = interval_seconds or settings.expiration_sweep_interval_seconds
        self.scheduler: Optional[BackgroundScheduler] = None
        self._is_running = False
    
    def start(self) -> None:
        """Start the scheduler"""
        if self._is_running:
            logger.warning("Scheduler already running")
            return
        
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id="check_approval_expirations",
            name="Check approval reminders and expirations",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.start()
        self._is_running = True
        logger.info(f"Expiration scheduler started (every {self.interval_seconds}s)")
    
    def stop(self) -> None:
        """Stop the scheduler"""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self._is_running = False
            logger.info("Expiration scheduler stopped")
    
    @property
    def is_running(self) -> bool:
        return self._is_running
    
    def run_once(self) -> Dict[str, int]:
        """One sweep; errors are logged so the job keeps its schedule"""
        set_correlation_id(generate_correlation_id())
        try:
            return self.engine.check_expirations()
        except Exception as e:
            logger.error(f"Error in approval expiration job: {e}", exc_info=True)
            return {}


# Global scheduler instance
_scheduler: Optional[ExpirationScheduler] = None


def get_scheduler(engine: Optional[WorkflowEngine] = None) -> ExpirationScheduler:
    """Get or create scheduler instance"""
    global _scheduler
    if _scheduler is None:
        _scheduler = ExpirationScheduler(engine or WorkflowEngine())
    return _scheduler


def start_scheduler(engine: Optional[WorkflowEngine] = None) -> ExpirationScheduler:
    """Start the global scheduler"""
    scheduler = get_scheduler(engine)
    scheduler.start()
    return scheduler


def stop_scheduler() -> None:
    """Stop the global scheduler"""
    global _scheduler
    if _scheduler:
        _scheduler.stop()
        _scheduler = None
