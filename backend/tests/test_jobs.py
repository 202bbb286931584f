"""Job dispatch: CLI parsing, job handlers, the Redis queue and the worker."""

import json
from datetime import date

import pytest

from rxopps import cli, worker
from rxopps.jobs import JOB_HANDLERS, parse_pharmacy_scope, run_profile_update
from rxopps.services import job_queue
from tests.factories import make_patient, make_pharmacy, make_record


class FakeRedis:
    """In-memory stand-in for the handful of commands the queue uses."""

    def __init__(self):
        self.hashes: dict[str, dict] = {}
        self.lists: dict[str, list] = {}
        self.ttls: dict[str, int] = {}
        self.closed = 0

    async def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def expire(self, key, seconds):
        self.ttls[key] = seconds

    async def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)

    async def aclose(self):
        self.closed += 1


@pytest.fixture
def fake_redis(monkeypatch):
    fake = FakeRedis()

    async def _get_redis():
        return fake

    monkeypatch.setattr(job_queue, "get_redis", _get_redis)
    return fake


class TestPharmacyScope:
    @pytest.mark.parametrize("value, expected", [
        (None, None),
        ("all", None),
        ("3", [3]),
        ("1, 2,5", [1, 2, 5]),
        ([4, "7"], [4, 7]),
    ])
    def test_parse(self, value, expected):
        assert parse_pharmacy_scope(value) == expected

    def test_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_pharmacy_scope("north")


class TestCliParser:
    def test_discovery_thresholds(self):
        args = cli.build_parser().parse_args(["run-discovery-scan", "--max-avg-gp", "-5", "--max-results", "10"])
        assert cli._thresholds(args) == {"max_avg_gp": -5.0, "max_results": 10}

    def test_review_requires_reviewer(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["approve", "POT-1"])

    def test_enqueue_rejects_unknown_type(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["enqueue", "reindex"])

    def test_invalid_thresholds_fail_before_any_work(self, monkeypatch):
        called = []

        async def _never(*args, **kwargs):
            called.append(kwargs)
            return {}

        monkeypatch.setitem(JOB_HANDLERS, "discovery_scan", _never)

        assert cli.main(["run-discovery-scan", "--max-avg-gp", "3"]) == 1
        assert called == []

    def test_enqueue_prints_job(self, fake_redis, capsys):
        assert cli.main(["enqueue", "coverage_scan", "--trigger", "PITA"]) == 0

        out = json.loads(capsys.readouterr().out)
        assert out["status"] == "queued"
        assert out["job_id"].startswith("SJOB-")


# ── Queue ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestJobQueue:
    async def test_enqueue_records_status_and_pushes(self, fake_redis):
        job_id = await job_queue.enqueue_job("opportunity_scan", {"pharmacy": "all"})

        status = await job_queue.get_job_status(job_id)
        assert status["status"] == "queued"
        assert status["job_type"] == "opportunity_scan"
        assert fake_redis.ttls[f"{job_queue.JOB_KEY_PREFIX}{job_id}"] == job_queue.JOB_TTL_SECONDS
        [raw] = fake_redis.lists[job_queue.QUEUE_KEY]
        assert json.loads(raw) == {"job_id": job_id, "job_type": "opportunity_scan", "payload": {"pharmacy": "all"}}

    async def test_unknown_job_type(self, fake_redis):
        with pytest.raises(ValueError):
            await job_queue.enqueue_job("reindex")
        assert fake_redis.lists == {}

    async def test_missing_job(self, fake_redis):
        assert await job_queue.get_job_status("SJOB-NOPE") is None


@pytest.mark.asyncio
class TestWorker:
    async def test_completed_job(self, fake_redis, monkeypatch):
        async def _handler(session_factory, **payload):
            return {"batch_id": "scan_1", "status": "completed", "errored": 2, "seen": payload}

        monkeypatch.setitem(JOB_HANDLERS, "opportunity_scan", _handler)

        ok = await worker.process_job(
            {"job_id": "SJOB-1", "job_type": "opportunity_scan", "payload": {"pharmacy": "3"}},
            session_factory=None,
        )

        assert ok
        stored = fake_redis.hashes[f"{job_queue.JOB_KEY_PREFIX}SJOB-1"]
        assert stored["status"] == "completed"
        assert stored["batch_id"] == "scan_1"
        assert stored["errors"] == "2"
        assert json.loads(stored["result"])["seen"] == {"pharmacy": "3"}

    async def test_failed_job(self, fake_redis, monkeypatch):
        async def _boom(session_factory, **payload):
            raise RuntimeError("database unavailable")

        monkeypatch.setitem(JOB_HANDLERS, "coverage_scan", _boom)

        ok = await worker.process_job({"job_id": "SJOB-2", "job_type": "coverage_scan"}, session_factory=None)

        assert not ok
        stored = fake_redis.hashes[f"{job_queue.JOB_KEY_PREFIX}SJOB-2"]
        assert stored["status"] == "failed"
        assert "database unavailable" in stored["result"]

    async def test_unknown_job_type(self, fake_redis):
        ok = await worker.process_job({"job_id": "SJOB-3", "job_type": "reindex"}, session_factory=None)

        assert not ok
        assert fake_redis.hashes[f"{job_queue.JOB_KEY_PREFIX}SJOB-3"]["status"] == "failed"


@pytest.mark.asyncio
class TestProfileJob:
    async def test_runs_per_pharmacy(self, session_factory):
        async with session_factory() as session:
            pharmacy = await make_pharmacy(session)
            patient = await make_patient(session, pharmacy)
            await make_record(session, patient, "METFORMIN 500MG", dispensed_date=date.today())
            await session.commit()

        result = await run_profile_update(session_factory, pharmacy=str(pharmacy.id))

        assert result == {"status": "completed", "patients_updated": 1}
