import socket
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import async_sessionmaker

from saheli.domain.ops.db_models import RUNNER_HEARTBEAT_NAME, JobHeartbeat
from saheli.infra.metrics import metrics


def _resolve_runner_id(runner_id: str | None = None) -> str:
    if runner_id and runner_id.strip():
        return runner_id.strip()
    return socket.gethostname()


async def record_heartbeat(
    session_factory: async_sessionmaker, name: str = RUNNER_HEARTBEAT_NAME, *, runner_id: str | None = None
) -> None:
    now = datetime.now(tz=timezone.utc)
    resolved_runner_id = _resolve_runner_id(runner_id)
    async with session_factory() as session:
        heartbeat = await session.get(JobHeartbeat, name)
        if heartbeat is None:
            heartbeat = JobHeartbeat(
                name=name,
                last_heartbeat=now,
                last_success_at=now,
                runner_id=resolved_runner_id,
                consecutive_failures=0,
                updated_at=now,
            )
            session.add(heartbeat)
        else:
            heartbeat.last_heartbeat = now
            heartbeat.last_success_at = now
            heartbeat.runner_id = resolved_runner_id
            heartbeat.consecutive_failures = 0
            heartbeat.last_error = None
            heartbeat.last_error_at = None
        await session.commit()
    metrics.record_job_heartbeat(name, now.timestamp())


async def record_job_result(
    session_factory: async_sessionmaker,
    job: str,
    *,
    success: bool,
    result: dict[str, int] | None = None,
    error_reason: str | None = None,
) -> None:
    now = datetime.now(tz=timezone.utc)
    async with session_factory() as session:
        record = await session.get(JobHeartbeat, job)
        if record is None:
            record = JobHeartbeat(name=job, consecutive_failures=0, last_heartbeat=now, updated_at=now)
            session.add(record)
        record.last_heartbeat = now
        if success:
            record.last_success_at = now
            record.last_result = result
            record.consecutive_failures = 0
            record.last_error = None
            record.last_error_at = None
        else:
            record.consecutive_failures = (record.consecutive_failures or 0) + 1
            record.last_error = (error_reason or record.last_error or "unknown")[:128]
            record.last_error_at = now
        await session.commit()
    if success:
        metrics.record_job_success(job, now.timestamp())
    else:
        metrics.record_job_error(job, error_reason or "unknown")
