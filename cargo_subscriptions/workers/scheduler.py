"""
In-process job scheduler.

Each registered job ticks on its own daemon thread and sleeps on a stop event
between runs, so stop_job/stop_all return promptly; a run already in progress
finishes. Jobs are failure-isolated: an exception is logged (and recorded)
and the next tick still fires.

The Scheduler is an ordinary object; the application's composition root
builds it, starts it and stops it on shutdown.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4
import logging
import threading

from dateutil.relativedelta import relativedelta

from cargo_subscriptions.core.clock import business_tz, ensure_utc, utcnow
from cargo_subscriptions.core.logging import correlation_scope

logger = logging.getLogger(__name__)

JobFn = Callable[[datetime], Any]
RunRecorder = Callable[..., None]


@dataclass(frozen=True)
class Cadence:
    """When a job fires, cron-style, evaluated in a named timezone."""
    kind: str  # hourly | daily | weekly | monthly | interval
    minute: int = 0
    hour: int = 0
    weekday: int = 0  # Monday == 0
    day: int = 1
    seconds: float = 0
    tz: Optional[str] = None

    @classmethod
    def hourly(cls, minute: int = 0, tz: Optional[str] = None) -> "Cadence":
        return cls("hourly", minute=minute, tz=tz)

    @classmethod
    def daily(cls, hour: int, minute: int = 0, tz: Optional[str] = None) -> "Cadence":
        return cls("daily", hour=hour, minute=minute, tz=tz)

    @classmethod
    def weekly(cls, weekday: int, hour: int, minute: int = 0, tz: Optional[str] = None) -> "Cadence":
        return cls("weekly", weekday=weekday, hour=hour, minute=minute, tz=tz)

    @classmethod
    def monthly(cls, day: int, hour: int, minute: int = 0, tz: Optional[str] = None) -> "Cadence":
        return cls("monthly", day=day, hour=hour, minute=minute, tz=tz)

    @classmethod
    def every(cls, seconds: float) -> "Cadence":
        return cls("interval", seconds=seconds)

    def next_after(self, now: datetime) -> datetime:
        """First fire time strictly after `now`, in UTC."""
        now = ensure_utc(now)
        if self.kind == "interval":
            return now + timedelta(seconds=self.seconds)

        local = now.astimezone(business_tz(self.tz))
        at = dict(minute=self.minute, second=0, microsecond=0)
        if self.kind == "hourly":
            candidate = local + relativedelta(**at)
            step = relativedelta(hours=1)
        elif self.kind == "daily":
            candidate = local + relativedelta(hour=self.hour, **at)
            step = relativedelta(days=1)
        elif self.kind == "weekly":
            candidate = local + relativedelta(weekday=self.weekday, hour=self.hour, **at)
            step = relativedelta(weeks=1)
        elif self.kind == "monthly":
            candidate = local + relativedelta(day=self.day, hour=self.hour, **at)
            step = relativedelta(months=1, day=self.day)
        else:
            raise ValueError(f"Unknown cadence kind: {self.kind}")

        if candidate <= local:
            candidate = candidate + step
        return candidate.astimezone(timezone.utc)

    def describe(self) -> str:
        if self.kind == "interval":
            return f"every {self.seconds:g}s"
        if self.kind == "hourly":
            return f"hourly at :{self.minute:02d}"
        if self.kind == "daily":
            return f"daily at {self.hour:02d}:{self.minute:02d}"
        if self.kind == "weekly":
            days = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
            return f"weekly on {days[self.weekday]} at {self.hour:02d}:{self.minute:02d}"
        return f"monthly on day {self.day} at {self.hour:02d}:{self.minute:02d}"


@dataclass
class JobOutcome:
    name: str
    run_id: str
    started_at: datetime
    finished_at: datetime
    status: str  # success | failed
    result: Any = None
    error: Optional[str] = None


@dataclass
class ScheduledJob:
    name: str
    fn: JobFn
    cadence: Cadence
    description: str = ""
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_status: Optional[str] = None
    executing: bool = False
    _thread: Optional[threading.Thread] = field(default=None, repr=False)
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()


class Scheduler:
    def __init__(self, *, clock: Callable[[], datetime] = utcnow, recorder: Optional[RunRecorder] = None):
        self._clock = clock
        self._recorder = recorder
        self._jobs: Dict[str, ScheduledJob] = {}

    @property
    def job_names(self) -> List[str]:
        return list(self._jobs)

    def register(self, name: str, fn: JobFn, cadence: Cadence, description: str = "") -> ScheduledJob:
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        job = ScheduledJob(name=name, fn=fn, cadence=cadence, description=description)
        self._jobs[name] = job
        return job

    def _get(self, name: str) -> ScheduledJob:
        try:
            return self._jobs[name]
        except KeyError:
            raise KeyError(f"Unknown job: {name}") from None

    def start(self) -> None:
        """Start every registered job that is not already ticking."""
        for name in self._jobs:
            self.start_job(name)
        logger.info("[scheduler] started", extra={"jobs": ",".join(self._jobs)})

    def start_job(self, name: str) -> bool:
        job = self._get(name)
        if job.running:
            return False
        job._stop = threading.Event()
        job.next_run_at = job.cadence.next_after(self._clock())
        job._thread = threading.Thread(target=self._loop, args=(job,), name=f"scheduler:{name}", daemon=True)
        job._thread.start()
        logger.info(
            "[scheduler] job scheduled",
            extra={"job": name, "cadence": job.cadence.describe(), "next_run_at": job.next_run_at.isoformat()},
        )
        return True

    def stop_job(self, name: str, timeout: Optional[float] = 5.0) -> bool:
        """Stop future ticks of `name`. A run in progress is allowed to finish."""
        job = self._get(name)
        if job._thread is None:
            return False
        job._stop.set()
        if job._thread is not threading.current_thread():
            job._thread.join(timeout)
        job.next_run_at = None
        logger.info("[scheduler] job stopped", extra={"job": name})
        return True

    def stop_all(self, timeout: Optional[float] = 5.0) -> None:
        for job in self._jobs.values():
            job._stop.set()
        for name in self._jobs:
            self.stop_job(name, timeout)
        logger.info("[scheduler] all jobs stopped")

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Per job: running (ticking), scheduled (a next tick is pending), plus last-run details."""
        out = {}
        for name, job in self._jobs.items():
            running = job.running
            out[name] = {
                "running": running,
                "scheduled": running and job.next_run_at is not None,
                "executing": job.executing,
                "cadence": job.cadence.describe(),
                "next_run_at": job.next_run_at.isoformat() if job.next_run_at else None,
                "last_run_at": job.last_run_at.isoformat() if job.last_run_at else None,
                "last_status": job.last_status,
            }
        return out

    def run_job(self, name: str, now: Optional[datetime] = None) -> JobOutcome:
        """Execute one run of `name` synchronously, with the same isolation as a tick."""
        job = self._get(name)
        with job._lock:
            return self._execute(job, now)

    def _execute(self, job: ScheduledJob, now: Optional[datetime]) -> JobOutcome:
        run_id = f"job-{job.name}-{uuid4().hex[:12]}"
        started = ensure_utc(now) if now is not None else self._clock()
        job.executing = True
        with correlation_scope(run_id):
            logger.info(f"[scheduler] Running {job.name}", extra={"job": job.name, "run_id": run_id})
            try:
                result = job.fn(started)
                outcome = JobOutcome(job.name, run_id, started, self._clock(), "success", result=result)
                logger.info(f"[scheduler] Completed {job.name}", extra={"job": job.name, "run_id": run_id})
            except Exception as exc:
                outcome = JobOutcome(job.name, run_id, started, self._clock(), "failed", error=f"{type(exc).__name__}: {exc}")
                logger.error(f"[scheduler] {job.name} failed", exc_info=True, extra={"job": job.name, "run_id": run_id})
            finally:
                job.executing = False

        job.last_run_at = outcome.started_at
        job.last_status = outcome.status
        self._record(outcome)
        return outcome

    def _record(self, outcome: JobOutcome) -> None:
        if self._recorder is None:
            return
        try:
            self._recorder(
                job_name=outcome.name,
                run_id=outcome.run_id,
                started_at=outcome.started_at,
                finished_at=outcome.finished_at,
                status=outcome.status,
                stats=outcome.result if isinstance(outcome.result, dict) else None,
                error=outcome.error,
            )
        except Exception:
            logger.warning("[scheduler] failed to record job run", exc_info=True, extra={"job": outcome.name})

    def _loop(self, job: ScheduledJob) -> None:
        stop = job._stop
        while not stop.is_set():
            job.next_run_at = job.cadence.next_after(self._clock())
            wait = max(0.0, (job.next_run_at - self._clock()).total_seconds())
            if stop.wait(wait):
                break
            with job._lock:
                self._execute(job, None)
