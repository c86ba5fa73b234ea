import argparse
import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import async_sessionmaker

from saheli.infra.db import get_session_factory
from saheli.infra.email import resolve_email_adapter
from saheli.infra.logging import clear_log_context, configure_logging, update_log_context
from saheli.infra.metrics import configure_metrics
from saheli.jobs import lifecycle
from saheli.jobs.heartbeat import record_heartbeat, record_job_result
from saheli.settings import settings

logger = logging.getLogger(__name__)

Runner = Callable[[object], Awaitable[dict[str, int]]]

JOB_INTERVALS = {
    "expire-pending": 300,
    "auto-start": 60,
    "auto-complete": 120,
    "booking-reminders": 300,
}


@dataclass
class ScheduledJob:
    name: str
    interval_seconds: int
    runner: Runner
    last_run: float | None = None

    def is_due(self, now: float) -> bool:
        return self.last_run is None or now - self.last_run >= self.interval_seconds


def _job_runner(name: str, adapter) -> Runner:
    if name == "expire-pending":
        return lambda session: lifecycle.run_expire_pending(session, adapter)
    if name == "auto-start":
        return lambda session: lifecycle.run_auto_start(session, adapter)
    if name == "auto-complete":
        return lambda session: lifecycle.run_auto_complete(session, adapter)
    if name == "booking-reminders":
        return lambda session: lifecycle.run_booking_reminders(session, adapter)
    raise ValueError(f"unknown_job:{name}")


async def run_job(session_factory: async_sessionmaker, job: ScheduledJob) -> dict[str, int] | None:
    update_log_context(job=job.name)
    try:
        async with session_factory() as session:
            result = await job.runner(session)
        logger.info("job_complete", extra={"extra": {"job": job.name, **result}})
        await record_job_result(session_factory, job.name, success=True, result=result)
        return result
    except Exception as exc:  # noqa: BLE001
        logger.warning("job_failed", extra={"extra": {"job": job.name, "reason": type(exc).__name__}})
        await record_job_result(session_factory, job.name, success=False, error_reason=type(exc).__name__)
        return None
    finally:
        clear_log_context()


async def run_due_jobs(
    session_factory: async_sessionmaker, jobs: list[ScheduledJob], *, now: float | None = None
) -> list[str]:
    now = time.monotonic() if now is None else now
    ran: list[str] = []
    for job in jobs:
        if not job.is_due(now):
            continue
        await run_job(session_factory, job)
        job.last_run = now
        ran.append(job.name)
    await record_heartbeat(session_factory)
    return ran


def build_jobs(names: list[str] | None, adapter) -> list[ScheduledJob]:
    selected = names or list(JOB_INTERVALS)
    return [ScheduledJob(name, JOB_INTERVALS[name], _job_runner(name, adapter)) for name in selected]


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run booking lifecycle sweeps")
    parser.add_argument(
        "--job", action="append", dest="jobs", choices=sorted(JOB_INTERVALS), help="Job name to run"
    )
    parser.add_argument("--tick", type=int, default=30, help="Seconds between scheduler ticks")
    parser.add_argument("--once", action="store_true", help="Run every selected job once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()
    jobs = build_jobs(args.jobs, resolve_email_adapter(settings))

    while True:
        await run_due_jobs(session_factory, jobs)
        if args.once:
            break
        await asyncio.sleep(max(args.tick, 1))


if __name__ == "__main__":
    asyncio.run(main())
