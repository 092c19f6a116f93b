"""
Periodic execution of sync cycles.

Schedules are given as a 5-field crontab expression, one of the descriptors
(@yearly, @annually, @monthly, @weekly, @daily, @midnight, @hourly) or
``@every <duration>`` with a duration such as ``90s`` or ``1h30m``.
At most one cycle runs at a time; a tick that fires while a cycle is still in
progress is skipped, never queued.
"""

import logging
import re
import signal
import threading
from datetime import datetime
from typing import Callable, Any, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

JOB_ID = 'gitea-ldap-sync'

DESCRIPTORS = {
    '@yearly': '0 0 1 1 *',
    '@annually': '0 0 1 1 *',
    '@monthly': '0 0 1 * *',
    '@weekly': '0 0 * * sun',
    '@daily': '0 0 * * *',
    '@midnight': '0 0 * * *',
    '@hourly': '0 * * * *',
}

_DURATION_UNITS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'ms': 1e-3,
    's': 1,
    'm': 60,
    'h': 3600,
}
_DURATION_PART = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)')


def parse_duration(value: str) -> float:
    """
    Parse a duration (``1h30m``, ``90s``, ``1.5h``) into seconds.

    Raises:
        ValueError: If the value is not a valid duration
    """
    text = value.strip()
    if not text:
        raise ValueError("empty duration")

    seconds = 0.0
    position = 0
    while position < len(text):
        match = _DURATION_PART.match(text, position)
        if not match:
            raise ValueError(f"invalid duration: {value}")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    return seconds


def parse_schedule(expression: str) -> BaseTrigger:
    """
    Turn a schedule expression into an APScheduler trigger.

    Raises:
        ValueError: If the expression cannot be parsed
    """
    expression = (expression or '').strip()
    if not expression:
        raise ValueError("empty schedule expression")

    if expression.startswith('@every'):
        seconds = parse_duration(expression[len('@every'):])
        if seconds <= 0:
            raise ValueError(f"non-positive interval in schedule: {expression}")
        return IntervalTrigger(seconds=seconds)

    if expression.startswith('@'):
        crontab = DESCRIPTORS.get(expression.lower())
        if crontab is None:
            raise ValueError(f"unknown schedule descriptor: {expression}")
        return CronTrigger.from_crontab(crontab)

    if len(expression.split()) != 5:
        raise ValueError(f"expected 5 crontab fields, got: {expression}")
    return CronTrigger.from_crontab(expression)


class SyncScheduler:
    """
    Runs a job on a schedule with a single worker.

    ``run_forever`` blocks the calling thread until SIGINT, SIGTERM or
    SIGQUIT is received, then stops scheduling and waits up to
    ``shutdown_timeout`` seconds for the cycle in progress.
    """

    def __init__(self, job: Callable[[], Any], schedule: str, shutdown_timeout: float = 60):
        self.job = job
        self.schedule = schedule
        self.trigger = parse_schedule(schedule)
        self.shutdown_timeout = shutdown_timeout

        self._cycle_lock = threading.Lock()
        self._stop_requested = threading.Event()

        self.scheduler = BackgroundScheduler(
            executors={'default': ThreadPoolExecutor(max_workers=1)},
            job_defaults={'max_instances': 1, 'coalesce': True},
        )

    def run_guarded(self) -> bool:
        """
        Run the job unless a previous run is still in progress.

        Returns:
            True if the job ran, False if the tick was skipped
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Previous sync cycle still running, skipping this tick")
            return False
        try:
            self.job()
        finally:
            self._cycle_lock.release()
        return True

    def start(self, run_immediately: bool = True):
        job_options = {}
        if run_immediately:
            job_options['next_run_time'] = datetime.now()

        self.scheduler.add_job(
            self.run_guarded,
            trigger=self.trigger,
            id=JOB_ID,
            name=JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            **job_options
        )
        self.scheduler.start()
        logger.info(f"Scheduler started with schedule: {self.schedule}")

    def request_stop(self, signum: Optional[int] = None, frame=None):
        if signum is not None:
            logger.info(f"Received signal {signal.Signals(signum).name}, shutting down")
        self._stop_requested.set()

    def install_signal_handlers(self):
        for name in ('SIGINT', 'SIGTERM', 'SIGQUIT'):
            signum = getattr(signal, name, None)
            if signum is not None:
                signal.signal(signum, self.request_stop)

    def wait(self):
        """Block until a stop is requested."""
        while not self._stop_requested.wait(timeout=1):
            pass

    def shutdown(self) -> bool:
        """
        Stop scheduling new cycles and wait for the running one.

        Returns:
            True if no cycle was left running when the timeout expired
        """
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        if not self._cycle_lock.acquire(timeout=self.shutdown_timeout):
            logger.warning(f"Sync cycle still running after {self.shutdown_timeout}s, exiting anyway")
            return False
        self._cycle_lock.release()
        logger.info("Scheduler stopped")
        return True

    def run_forever(self) -> bool:
        self.install_signal_handlers()
        self.start()
        self.wait()
        return self.shutdown()
