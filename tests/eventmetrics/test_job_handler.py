"""Tests for JobHandler — quota-limited dispatch of queued jobs."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
import structlog

from eventmetrics.core.logging import job_context
from eventmetrics.engines.event_processor import ProcessResult
from eventmetrics.engines.job_handler import JobHandler
from eventmetrics.services import (
    AlreadyQueuedError,
    ComputationError,
    ConflictError,
    InsufficientQuotaError,
    NotFoundError,
)
from factories import make_context, make_job

# ── Helpers ──────────────────────────────────────────────────────────────────


class Harness:
    def __init__(self, *, quota: int = 5, jobs=None) -> None:
        self.jobs = jobs if jobs is not None else []
        self.job_service = MagicMock()
        self.job_service.list_queued = AsyncMock(
            side_effect=lambda session, limit: self.jobs[:limit]
        )
        self.job_service.mark_started = AsyncMock(return_value=True)
        self.job_service.remove = AsyncMock(return_value=True)
        self.job_service.get = AsyncMock()
        self.job_service.enqueue = AsyncMock()

        self.event_service = MagicMock()
        self.event_service.get_context = AsyncMock(
            side_effect=lambda session, event_id: make_context()
        )
        self.event_service.list_contexts = AsyncMock(return_value=[])

        self.processor = MagicMock()
        self.processor.process = AsyncMock(
            side_effect=lambda session, ctx: ProcessResult(event_id=ctx.id)
        )

        self.quota = MagicMock()
        self.quota.available_quota = AsyncMock(return_value=quota)

        self.handler = JobHandler(
            self.job_service, self.event_service, self.processor, self.quota
        )


# ── spawn_all ────────────────────────────────────────────────────────────────


class TestSpawnAll:
    async def test_no_quota_leaves_queue_untouched(self, session_factory):
        h = Harness(quota=0, jobs=[make_job()])

        assert await h.handler.spawn_all(session_factory) == 0

        h.job_service.list_queued.assert_not_awaited()
        h.job_service.mark_started.assert_not_awaited()
        assert session_factory.sessions == []

    async def test_empty_queue(self, session_factory):
        h = Harness(quota=3)

        assert await h.handler.spawn_all(session_factory) == 0
        h.processor.process.assert_not_awaited()

    async def test_runs_at_most_quota_jobs(self, session_factory):
        jobs = [make_job() for _ in range(5)]
        h = Harness(quota=2, jobs=jobs)

        assert await h.handler.spawn_all(session_factory) == 2

        h.job_service.list_queued.assert_awaited_once()
        assert h.job_service.list_queued.call_args.args[1] == 2
        started = [c.args[1] for c in h.job_service.mark_started.call_args_list]
        assert started == [jobs[0].id, jobs[1].id]
        assert h.processor.process.await_count == 2

    async def test_busy_flag_committed_before_processing(self, session_factory):
        job = make_job()
        h = Harness(quota=1, jobs=[job])

        await h.handler.spawn_all(session_factory)

        # list, mark started, process
        _, mark_session, process_session = session_factory.sessions
        mark_session.commit.assert_awaited_once()
        process_session.commit.assert_awaited_once()
        h.event_service.get_context.assert_awaited_once_with(process_session, job.event_id)

    async def test_job_taken_by_another_dispatcher_is_skipped(self, session_factory):
        jobs = [make_job(), make_job()]
        h = Harness(quota=2, jobs=jobs)
        h.job_service.mark_started.side_effect = [False, True]

        assert await h.handler.spawn_all(session_factory) == 1
        assert h.processor.process.await_count == 1
        h.event_service.get_context.assert_awaited_once()
        assert h.event_service.get_context.call_args.args[1] == jobs[1].event_id

    async def test_failure_removes_job_and_continues(self, session_factory):
        jobs = [make_job(), make_job()]
        h = Harness(quota=2, jobs=jobs)
        h.processor.process.side_effect = [
            RuntimeError("replica gone"),
            ProcessResult(uuid.uuid4()),
        ]

        assert await h.handler.spawn_all(session_factory) == 2

        h.job_service.remove.assert_awaited_once()
        assert h.job_service.remove.call_args.args[1] == jobs[0].id

    async def test_failed_removal_is_logged_not_raised(self, session_factory):
        h = Harness(quota=1, jobs=[make_job()])
        h.processor.process.side_effect = RuntimeError("boom")
        h.job_service.remove.side_effect = RuntimeError("db down")

        assert await h.handler.spawn_all(session_factory) == 1


# ── spawn ────────────────────────────────────────────────────────────────────


class TestSpawn:
    async def test_unknown_job(self, session_factory):
        h = Harness()
        h.job_service.get.side_effect = NotFoundError("job not found")

        with pytest.raises(NotFoundError):
            await h.handler.spawn(session_factory, uuid.uuid4())
        h.quota.available_quota.assert_not_awaited()

    async def test_insufficient_quota(self, session_factory):
        job = make_job()
        h = Harness(quota=0)
        h.job_service.get.return_value = job

        with pytest.raises(InsufficientQuotaError):
            await h.handler.spawn(session_factory, job.id)
        h.job_service.mark_started.assert_not_awaited()

    async def test_job_already_running(self, session_factory):
        job = make_job()
        h = Harness()
        h.job_service.get.return_value = job
        h.job_service.mark_started.return_value = False

        with pytest.raises(ConflictError):
            await h.handler.spawn(session_factory, job.id)
        h.processor.process.assert_not_awaited()

    async def test_failure_raises_computation_error(self, session_factory):
        job = make_job()
        h = Harness()
        h.job_service.get.return_value = job
        cause = RuntimeError("replica gone")
        h.processor.process.side_effect = cause

        with pytest.raises(ComputationError) as exc_info:
            await h.handler.spawn(session_factory, job.id)

        assert exc_info.value.__cause__ is cause
        h.job_service.remove.assert_awaited_once()
        assert h.job_service.remove.call_args.args[1] == job.id

    async def test_success(self, session_factory):
        job = make_job()
        h = Harness()
        h.job_service.get.return_value = job

        result = await h.handler.spawn(session_factory, job.id)

        assert isinstance(result, ProcessResult)
        h.job_service.remove.assert_not_awaited()

    async def test_log_context_bound_while_processing(self, session_factory):
        job = make_job()
        h = Harness()
        h.job_service.get.return_value = job
        seen: list[dict] = []

        async def process(session, ctx):
            seen.append(dict(structlog.contextvars.get_contextvars()))
            return ProcessResult(event_id=ctx.id)

        h.processor.process.side_effect = process

        await h.handler.spawn(session_factory, job.id)

        assert seen == [{"job_id": str(job.id), "event_id": str(job.event_id)}]
        assert "job_id" not in structlog.contextvars.get_contextvars()

    async def test_log_context_unbound_after_failure(self, session_factory):
        job = make_job()
        h = Harness()
        h.job_service.get.return_value = job
        h.processor.process.side_effect = RuntimeError("replica gone")

        with pytest.raises(ComputationError):
            await h.handler.spawn(session_factory, job.id)

        assert structlog.contextvars.get_contextvars() == {}


# ── create_jobs_for_all_eligible_events ──────────────────────────────────────


class TestCreateJobs:
    def _contexts(self):
        eligible = make_context()
        queued = make_context(job=make_job())
        invalid = make_context(participants=[])
        return eligible, queued, invalid

    async def test_only_valid_jobless_events_queued(self, session_factory):
        eligible, queued, invalid = self._contexts()
        h = Harness(quota=0)
        h.event_service.list_contexts.return_value = [eligible, queued, invalid]

        assert await h.handler.create_jobs_for_all_eligible_events(session_factory) == 1

        h.job_service.enqueue.assert_awaited_once()
        assert h.job_service.enqueue.call_args.args[1] is eligible
        session_factory.sessions[0].commit.assert_awaited_once()

    async def test_spawns_after_creating(self, session_factory):
        h = Harness()
        h.handler.spawn_all = AsyncMock(return_value=0)

        await h.handler.create_jobs_for_all_eligible_events(session_factory)

        h.handler.spawn_all.assert_awaited_once_with(session_factory)

    async def test_no_spawn(self, session_factory):
        h = Harness()
        h.handler.spawn_all = AsyncMock(return_value=0)

        await h.handler.create_jobs_for_all_eligible_events(session_factory, no_spawn=True)

        h.handler.spawn_all.assert_not_awaited()

    async def test_concurrently_queued_event_skipped(self, session_factory):
        first, second = make_context(), make_context()
        h = Harness(quota=0)
        h.event_service.list_contexts.return_value = [first, second]
        h.job_service.enqueue.side_effect = [AlreadyQueuedError("taken"), make_job(second.id)]

        assert await h.handler.create_jobs_for_all_eligible_events(session_factory) == 1


# ── process_event ────────────────────────────────────────────────────────────


class TestProcessEvent:
    async def test_bypasses_quota(self, session_factory):
        h = Harness(quota=0)
        event_id = uuid.uuid4()

        result = await h.handler.process_event(session_factory, event_id)

        assert isinstance(result, ProcessResult)
        h.quota.available_quota.assert_not_awaited()
        (session,) = session_factory.sessions
        h.event_service.get_context.assert_awaited_once_with(session, event_id)
        session.commit.assert_awaited_once()

    async def test_unknown_event(self, session_factory):
        h = Harness()
        h.event_service.get_context.side_effect = NotFoundError("event not found")

        with pytest.raises(NotFoundError):
            await h.handler.process_event(session_factory, uuid.uuid4())
        h.processor.process.assert_not_awaited()


# ── job_context ──────────────────────────────────────────────────────────────


class TestJobContext:
    def test_binds_and_unbinds(self):
        job_id, event_id = uuid.uuid4(), uuid.uuid4()
        structlog.contextvars.bind_contextvars(request="r1")
        try:
            with job_context(job_id, event_id):
                bound = structlog.contextvars.get_contextvars()
                assert bound["job_id"] == str(job_id)
                assert bound["event_id"] == str(event_id)
            assert structlog.contextvars.get_contextvars() == {"request": "r1"}
        finally:
            structlog.contextvars.clear_contextvars()
