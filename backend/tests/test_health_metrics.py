import asyncio

import pytest

from saheli.infra.metrics import configure_metrics
from saheli.jobs.heartbeat import record_heartbeat
from saheli.settings import settings


@pytest.fixture()
def metrics_enabled():
    configure_metrics(True)
    yield
    configure_metrics(False)


def test_healthz_is_always_ok(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_readyz_checks_database_and_skips_jobs_by_default(client):
    settings.job_heartbeat_required = False

    response = client.get("/readyz")

    assert response.status_code == 200
    checks = {check["name"]: check for check in response.json()["checks"]}
    assert checks["db"]["ok"] is True
    assert checks["jobs"]["detail"]["enabled"] is False


def test_readyz_requires_fresh_runner_heartbeat(client, async_session_maker):
    settings.job_heartbeat_required = True
    settings.job_heartbeat_ttl_seconds = 300

    missing = client.get("/readyz")
    assert missing.status_code == 503
    jobs = next(check for check in missing.json()["checks"] if check["name"] == "jobs")
    assert jobs["detail"]["message"] == "job heartbeat missing"

    asyncio.run(record_heartbeat(async_session_maker, runner_id="worker-1"))

    ready = client.get("/readyz")
    assert ready.status_code == 200
    jobs = next(check for check in ready.json()["checks"] if check["name"] == "jobs")
    assert jobs["detail"]["runner_id"] == "worker-1"


def test_metrics_hidden_when_disabled(client):
    configure_metrics(False)

    assert client.get("/metrics").status_code == 404


def test_metrics_exposes_booking_counters(client, metrics_enabled):
    from saheli.infra.metrics import metrics

    metrics.record_booking("created")

    response = client.get("/metrics")

    assert response.status_code == 200
    assert 'bookings_total{action="created"} 1.0' in response.text


def test_metrics_require_token_in_prod(client, metrics_enabled):
    settings.app_env = "prod"
    settings.metrics_token = "scrape-token"

    assert client.get("/metrics").status_code == 401
    assert client.get("/metrics", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/metrics", headers={"Authorization": "Bearer scrape-token"}).status_code == 200

    settings.metrics_token = None
    assert client.get("/metrics").status_code == 500
