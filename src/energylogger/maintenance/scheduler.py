"""Scheduler of the maintenance jobs.

One long-running background task owns the scheduling of rollup and compaction.

Responsibilities:
    - Keep a registry of ``JobState`` entries, each with its own cadence read live from the
      configuration: a number is an interval in seconds, an ``"HH:MM"`` string a daily
      wall-clock time, ``None`` disables the job.
    - Sleep until the earliest due instant, or until woken by a trigger or a finished job.
    - Recompute the next instant of a job from the wall clock after every run, whether the
      run was timer driven or triggered.
    - Serialize runs of the same job behind an ``asyncio.Lock``; a trigger that arrives
      while the job runs is queued once, further triggers are coalesced into it.
    - Track per-job state (next run, last run, duration, last error, run count) for status
      reports.
"""

from __future__ import annotations

import asyncio
import signal
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Optional, Union

from loguru import logger
from pendulum import DateTime
from starlette.concurrency import run_in_threadpool

from energylogger.utils.datetimeutil import next_daily_run, to_datetime, to_duration, to_time_of_day

NoArgsNoReturnAnyFuncT = Union[Callable[[], Any], Callable[[], Coroutine[Any, Any, Any]]]
ExcArgNoReturnAnyFuncT = Union[
    Callable[[Exception], None], Callable[[Exception], Coroutine[Any, Any, None]]
]
ConfigGetterFuncT = Callable[[str], Any]
ClockFuncT = Callable[[], DateTime]
CadenceT = Union[float, tuple[int, int]]

# Upper bound of one sleep, so configuration changes are picked up without a run
MAX_SLEEP_SECONDS = 60.0


def parse_cadence(value: Any) -> Optional[CadenceT]:
    """Interpret a configured cadence.

    Args:
        value: Interval in seconds, "HH:MM" time of day, or None.

    Returns:
        The interval as float, the time of day as (hour, minute), or None if disabled.

    Raises:
        ValueError: If the value is neither a positive number nor a time of day.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return to_time_of_day(value)
    interval = float(value)
    if interval <= 0:
        raise ValueError(f"Interval must be positive, got {value}")
    return interval


def format_cadence(cadence: Optional[CadenceT]) -> Optional[str]:
    if cadence is None:
        return None
    if isinstance(cadence, tuple):
        return f"daily at {cadence[0]:02d}:{cadence[1]:02d}"
    return f"every {cadence:g}s"


# ---------------------------------------------------------------------------
# Job state - one per registered maintenance job
# ---------------------------------------------------------------------------


@dataclass
class JobState:
    """Runtime state tracked for a single maintenance job.

    Attributes:
        name: Unique job name used in logs and status reports.
        func: The maintenance callable. Must accept no arguments.
        cadence_attr: Key passed to ``config_getter`` to retrieve the cadence.
        fallback_cadence: Cadence used when the key is missing or invalid.
        config_getter: Callable that accepts a string key and returns the configuration value.
        run_on_start: Run once as soon as the scheduler starts.
        trigger_signal: Process signal that triggers the job out of band.
        on_exception: Optional callable invoked with the raised exception whenever ``func``
            fails. May be sync or async.
        lock: Serializes runs of this job.
        trigger_pending: A triggered run is queued.
        next_run_at: Next scheduled instant, ``None`` while disabled.
        last_run_at: Start of the last run, ``None`` means never run.
        last_duration: How long the last run took, in seconds.
        last_error: String representation of the last exception, ``None`` if the last run
            succeeded.
        run_count: Total number of completed runs (successful or not).
        is_running: ``True`` while the job is executing.
    """

    name: str
    func: NoArgsNoReturnAnyFuncT
    cadence_attr: str
    fallback_cadence: Optional[Union[float, str]]
    config_getter: ConfigGetterFuncT
    run_on_start: bool = False
    trigger_signal: Optional[signal.Signals] = None
    on_exception: Optional[ExcArgNoReturnAnyFuncT] = None

    # mutable state
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    trigger_pending: bool = False
    next_run_at: Optional[DateTime] = None
    last_run_at: Optional[DateTime] = None
    last_duration: float = 0.0
    last_error: Optional[str] = None
    run_count: int = 0
    is_running: bool = False

    def cadence(self) -> Optional[CadenceT]:
        """Retrieve the current cadence from the configuration.

        Returns ``None`` when the config value is ``None``, which disables the job. Falls
        back to ``fallback_cadence`` when the key is not found or the value is invalid.
        """
        try:
            return parse_cadence(self.config_getter(self.cadence_attr))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Scheduler: config key '{}' failed with {!r}, using fallback {}",
                self.cadence_attr,
                exc,
                self.fallback_cadence,
            )
            return parse_cadence(self.fallback_cadence)

    def next_after(self, now: DateTime, cadence: Optional[CadenceT] = None) -> Optional[DateTime]:
        """Next scheduled instant after `now`, or ``None`` if the job is disabled."""
        if cadence is None:
            cadence = self.cadence()
        if cadence is None:
            return None
        if isinstance(cadence, tuple):
            return next_daily_run(now, cadence)
        return now + to_duration(cadence)

    def summary(self) -> dict:
        """Serialisable snapshot of the job's state."""
        return {
            "name": self.name,
            "cadence_attr": self.cadence_attr,
            "cadence": format_cadence(self.cadence()),
            "next_run_at": self.next_run_at.to_iso8601_string() if self.next_run_at else None,
            "last_run_at": self.last_run_at.to_iso8601_string() if self.last_run_at else None,
            "last_duration_s": round(self.last_duration, 4),
            "last_error": self.last_error,
            "run_count": self.run_count,
            "is_running": self.is_running,
            "trigger_pending": self.trigger_pending,
        }


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class MaintenanceScheduler:
    """Drives the maintenance jobs on their cadence and on demand.

    Jobs are launched as independent ``asyncio.Task`` objects; synchronous jobs run in a
    worker thread so the event loop stays responsive to signals while a job blocks on the
    database. Call `shutdown` during teardown to wait for in-flight jobs.

    Args:
        config_getter: Callable that accepts a string key and returns the corresponding
            configuration value, e.g. ``get_config().get_nested_value``.
        timezone: Timezone of daily wall-clock cadences. None is the host timezone.
        clock: Returns the current instant. Defaults to the wall clock.
        shutdown_timeout: Maximum seconds `shutdown` waits for in-flight jobs. Jobs still
            running after the timeout are reported by name but not cancelled.
    """

    def __init__(
        self,
        config_getter: ConfigGetterFuncT,
        *,
        timezone: Optional[str] = None,
        clock: Optional[ClockFuncT] = None,
        shutdown_timeout: float = 30.0,
    ) -> None:
        self._config_getter = config_getter
        self._timezone = timezone
        self._clock = clock
        self._shutdown_timeout = shutdown_timeout
        self._jobs: dict[str, JobState] = {}
        self._running_tasks: set[asyncio.Task] = set()
        self._wake = asyncio.Event()
        self._bound_signals: list[signal.Signals] = []

    def now(self) -> DateTime:
        """Current instant in the scheduler timezone."""
        return to_datetime(self._clock() if self._clock else None, in_timezone=self._timezone)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        name: str,
        func: NoArgsNoReturnAnyFuncT,
        *,
        cadence_attr: str,
        fallback_cadence: Optional[Union[float, str]] = None,
        run_on_start: bool = False,
        trigger_signal: Optional[signal.Signals] = None,
        on_exception: Optional[ExcArgNoReturnAnyFuncT] = None,
    ) -> JobState:
        """Register a maintenance function.

        Args:
            name: Unique job name.
            func: The maintenance callable. Must accept no arguments.
            cadence_attr: Key passed to ``config_getter`` to retrieve the cadence. A
                ``None`` value disables the job.
            fallback_cadence: Cadence used when the key is missing or invalid.
            run_on_start: Run once as soon as `run` starts.
            trigger_signal: Process signal that triggers the job while `run` is active.
            on_exception: Optional callable invoked with the raised exception whenever
                ``func`` fails.

        Returns:
            JobState: The state of the registered job.

        Raises:
            ValueError: If the name is already registered or the fallback is invalid.
        """
        if name in self._jobs:
            raise ValueError(f"Scheduler: job '{name}' is already registered")
        parse_cadence(fallback_cadence)

        try:
            self._config_getter(cadence_attr)
        except (KeyError, IndexError):
            logger.warning(
                "Scheduler: config key '{}' not found at registration of job '{}', will use fallback {}",
                cadence_attr,
                name,
                fallback_cadence,
            )

        job = JobState(
            name=name,
            func=func,
            cadence_attr=cadence_attr,
            fallback_cadence=fallback_cadence,
            config_getter=self._config_getter,
            run_on_start=run_on_start,
            trigger_signal=trigger_signal,
            on_exception=on_exception,
        )
        self._jobs[name] = job
        logger.info("Scheduler: registered job '{}' (config: {})", name, cadence_attr)
        return job

    def jobs(self) -> list[str]:
        return list(self._jobs)

    # ------------------------------------------------------------------
    # Scheduling loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run the scheduling loop until the task is cancelled.

        On cancellation the signal handlers are removed and `shutdown` is awaited so an
        in-flight job can finish before the loop exits.
        """
        loop = asyncio.get_running_loop()
        self._bind_signals(loop)

        now = self.now()
        for job in self._jobs.values():
            cadence = job.cadence()
            if cadence is None:
                job.next_run_at = None
            elif job.run_on_start:
                job.next_run_at = now
            else:
                job.next_run_at = job.next_after(now, cadence)
            logger.info(
                "Scheduler: job '{}' {}, next run {}",
                job.name,
                format_cadence(cadence) or "disabled",
                job.next_run_at,
            )

        try:
            while True:
                self._wake.clear()
                now = self.now()
                for job in self._jobs.values():
                    self._refresh(job, now)
                    if self._is_due(job, now):
                        self._launch(job)
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self._sleep_seconds(now))
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Scheduler: loop cancelled, shutting down...")
            self._unbind_signals(loop)
            await self.shutdown()
            raise

    def _refresh(self, job: JobState, now: DateTime) -> None:
        # Follow jobs being enabled or disabled in the configuration
        if job.lock.locked():
            return
        cadence = job.cadence()
        if cadence is None:
            job.next_run_at = None
        elif job.next_run_at is None:
            job.next_run_at = job.next_after(now, cadence)

    @staticmethod
    def _is_due(job: JobState, now: DateTime) -> bool:
        if job.lock.locked():
            return False
        if job.trigger_pending:
            return True
        return job.next_run_at is not None and job.next_run_at <= now

    def _sleep_seconds(self, now: DateTime) -> float:
        # A running job is rescheduled by run_job, its past instant must not cut the sleep short
        pending = [
            job.next_run_at
            for job in self._jobs.values()
            if job.next_run_at is not None and not job.lock.locked()
        ]
        if not pending:
            return MAX_SLEEP_SECONDS
        seconds = (min(pending) - now).total_seconds()
        return min(max(seconds, 0.0), MAX_SLEEP_SECONDS)

    def _launch(self, job: JobState) -> None:
        job.trigger_pending = False
        job.next_run_at = None  # recomputed when the run finishes
        task = asyncio.ensure_future(self.run_job(job.name))
        task.set_name(job.name)  # used by shutdown() to report timed-out jobs by name
        self._running_tasks.add(task)
        task.add_done_callback(self._running_tasks.discard)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def trigger(self, name: Optional[str] = None) -> None:
        """Request an immediate run of one job, or of all jobs if `name` is None.

        The run starts on the next loop iteration, or after the current run of the job
        has finished. Triggers arriving while a triggered run is already queued are
        coalesced into it.

        Raises:
            KeyError: If no job with the given name is registered.
        """
        names = [name] if name is not None else list(self._jobs)
        for job_name in names:
            job = self._jobs[job_name]
            if job.trigger_pending:
                logger.debug("Scheduler: trigger of '{}' coalesced with queued run", job_name)
                continue
            job.trigger_pending = True
            if job.lock.locked():
                logger.info("Scheduler: job '{}' is running, triggered run queued", job_name)
            else:
                logger.info("Scheduler: job '{}' triggered", job_name)
        self._wake.set()

    def _bind_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        for job in self._jobs.values():
            if job.trigger_signal is None:
                continue
            try:
                loop.add_signal_handler(job.trigger_signal, self.trigger, job.name)
            except (NotImplementedError, RuntimeError, ValueError) as exc:
                logger.warning(
                    "Scheduler: cannot bind {} to job '{}': {}", job.trigger_signal, job.name, exc
                )
                continue
            self._bound_signals.append(job.trigger_signal)
            logger.info("Scheduler: {} triggers job '{}'", signal.Signals(job.trigger_signal).name, job.name)

    def _unbind_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self._bound_signals:
            loop.remove_signal_handler(sig)
        self._bound_signals.clear()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_job(self, name: str) -> None:
        """Execute a job now and update its state regardless of outcome.

        Runs of the same job are serialized. Exceptions from the job are caught, logged,
        stored on the job and forwarded to ``on_exception``, so a failing job never
        disrupts the scheduler. Afterwards the next instant is recomputed from the clock.

        Raises:
            KeyError: If no job with the given name is registered.
        """
        job = self._jobs[name]
        async with job.lock:
            job.is_running = True
            job.last_run_at = self.now()
            start = time.monotonic()
            logger.debug("Scheduler: starting job '{}'", job.name)
            try:
                if asyncio.iscoroutinefunction(job.func):
                    await job.func()
                else:
                    await run_in_threadpool(job.func)

                job.last_error = None
                logger.debug(
                    "Scheduler: job '{}' completed in {:.3f}s", job.name, time.monotonic() - start
                )

            except Exception as exc:  # noqa: BLE001
                job.last_error = str(exc)
                logger.exception("Scheduler: job '{}' raised an exception: {}", job.name, exc)
                await self._notify_exception(job, exc)

            finally:
                job.last_duration = time.monotonic() - start
                job.run_count += 1
                job.is_running = False
                job.next_run_at = job.next_after(self.now())
                self._wake.set()

    @staticmethod
    async def _notify_exception(job: JobState, exc: Exception) -> None:
        if job.on_exception is None:
            return
        try:
            if asyncio.iscoroutinefunction(job.on_exception):
                await job.on_exception(exc)
            else:
                await run_in_threadpool(job.on_exception, exc)
        except Exception:  # noqa: BLE001
            logger.exception("Scheduler: exception hook of job '{}' failed", job.name)

    async def shutdown(self) -> None:
        """Wait for all currently running job tasks to complete.

        Waits up to shutdown_timeout seconds. Jobs still running after the timeout are
        logged by name and left running.
        """
        if not self._running_tasks:
            return

        logger.info(
            "Scheduler: shutdown - waiting up to {}s for {} job(s) to finish",
            self._shutdown_timeout,
            len(self._running_tasks),
        )

        done, pending = await asyncio.wait(self._running_tasks, timeout=self._shutdown_timeout)

        if pending:
            pending_names = [t.get_name() for t in pending]
            logger.error(
                "Scheduler: shutdown timed out after {}s - {} job(s) still running: {}",
                self._shutdown_timeout,
                len(pending),
                pending_names,
            )
        else:
            logger.info("Scheduler: all jobs finished, shutdown complete")

        self._running_tasks.clear()

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def status(self) -> list[dict]:
        """Snapshot of every job's state, one dictionary per registered job."""
        return [job.summary() for job in self._jobs.values()]

    def __repr__(self) -> str:  # pragma: no cover
        return f"<MaintenanceScheduler jobs={list(self._jobs)}>"
