"""
Cron Supervisor - owns the stock notification jobs on an AsyncIOScheduler

Schedules come from the settings registry and are reloaded (debounced) when
the schedule section changes. The swap on reload removes every handle and
installs the new set without yielding to the event loop in between.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from canteen.core.errors import NotFoundError
from canteen.schemas.settings import JobSchedule, ScheduleSettings

logger = logging.getLogger(__name__)

RELOAD_DEBOUNCE_SECONDS = 0.2


class CronSupervisor:
    """
    Manages the scheduled stock notification jobs
    """

    def __init__(
        self,
        settings_service,
        job_registry: Dict[str, Callable],
        events=None,
        scheduler: Optional[AsyncIOScheduler] = None,
        debounce_seconds: float = RELOAD_DEBOUNCE_SECONDS,
    ):
        self.settings_service = settings_service
        self.job_registry = job_registry
        self.scheduler = scheduler or AsyncIOScheduler()
        self.debounce_seconds = debounce_seconds
        self.is_running = False
        self.using_defaults = False

        self._handles: Dict[str, Job] = {}
        self._specs: Dict[str, JobSchedule] = {}
        self._reload_lock = asyncio.Lock()
        self._run_locks: Dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in job_registry}
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._pending: set = set()
        self._unsubscribe = None

        if events is not None:
            self._unsubscribe = events.subscribe("schedule", self._on_config_changed)

    # ========== Lifecycle ==========

    def start(self):
        """Start the scheduler"""
        if not self.is_running:
            self.scheduler.start()
            self.is_running = True
            logger.info("Cron supervisor started")

    def stop(self):
        """Stop the scheduler"""
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self.is_running:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Cron supervisor stopped")

    # ========== Install / reload ==========

    def _build_triggers(self, schedule: ScheduleSettings) -> Dict[str, tuple]:
        """Validate every enabled job first; raises ValueError on a bad cron or timezone"""
        triggers = {}
        for name, spec in schedule.by_job_name().items():
            if name not in self.job_registry:
                logger.warning(f"No job body registered for {name}; skipping")
                continue
            if not spec.enabled:
                logger.info(f"Job {name} disabled")
                continue
            triggers[name] = (spec, CronTrigger.from_crontab(spec.cron, timezone=spec.tz))
        return triggers

    def _swap(self, triggers: Dict[str, tuple]):
        # No await in here: removal and installation happen in one loop step
        for name, job in list(self._handles.items()):
            try:
                job.remove()
            except LookupError:
                logger.debug(f"Job {name} was already removed")
        self._handles.clear()
        self._specs.clear()

        for name, (spec, trigger) in triggers.items():
            self._handles[name] = self.scheduler.add_job(
                func=self._run_job,
                trigger=trigger,
                args=[name],
                id=name,
                name=name,
                replace_existing=True,
                max_instances=1,  # Prevent overlapping runs of the same job
                coalesce=True,
                misfire_grace_time=60,
            )
            self._specs[name] = spec
            logger.info(f"Scheduled {name}: '{spec.cron}' ({spec.tz})")

    async def initialise(self):
        """Load the schedule and install every enabled job; defaults on failure"""
        async with self._reload_lock:
            try:
                schedule = await self.settings_service.get_schedule()
                triggers = self._build_triggers(schedule)
                self.using_defaults = False
            except Exception as e:
                logger.error(f"Failed to load stock e-mail schedule, using defaults: {e}")
                triggers = self._build_triggers(ScheduleSettings())
                self.using_defaults = True
            self._swap(triggers)
        logger.info(f"Cron supervisor installed {len(self._handles)} job(s)")

    async def reload(self):
        """Stop every handle and install the current schedule"""
        logger.info("Reloading stock e-mail schedule")
        await self.initialise()

    def _on_config_changed(self, section: str):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Schedule changed outside the event loop; reload skipped")
            return
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        self._debounce_handle = loop.call_later(self.debounce_seconds, self._spawn_reload)

    def _spawn_reload(self):
        self._debounce_handle = None
        task = asyncio.get_running_loop().create_task(self.reload())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # ========== Execution ==========

    async def _run_job(self, name: str):
        lock = self._run_locks.setdefault(name, asyncio.Lock())
        if lock.locked():
            logger.warning(f"Job {name} is still running; skipping this firing")
            return {"job": name, "skipped": True}

        spec = self._specs.get(name)
        tz = spec.tz if spec is not None else None
        async with lock:
            logger.info(f"Running job {name} (tz={tz})")
            try:
                return await self.job_registry[name](tz=tz)
            except Exception as e:
                logger.error(f"Job {name} failed: {e}")
                return {"job": name, "error": str(e)}

    async def run_now(self, name: str):
        """Run a job immediately, outside its schedule"""
        if name not in self.job_registry:
            raise NotFoundError(f"Unknown job {name}", code="JOB_NOT_FOUND")
        return await self._run_job(name)

    # ========== Introspection ==========

    def handle(self, name: str) -> Optional[Job]:
        return self._handles.get(name)

    def jobs(self) -> List[dict]:
        result = []
        for name, job in self._handles.items():
            spec = self._specs[name]
            next_run: Optional[datetime] = getattr(job, "next_run_time", None)
            result.append({
                "name": name,
                "cron": spec.cron,
                "tz": spec.tz,
                "next_run_time": next_run.isoformat() if next_run else None,
            })
        return result
