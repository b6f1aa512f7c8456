"""Property-based tests for the job record store.

Properties: progress never regresses; ``succeeded`` iff progress is 100 with a
result reference; ``failed -> running`` only through ``reset_for_resume``.
"""

import asyncio
from datetime import timedelta
from typing import List

import pytest
from hypothesis import given, settings, strategies as st
from pydantic import ValidationError

from chronicle.models.job import BookJobInput, utcnow
from chronicle.services.job_store import JobStore
from chronicle.utils.errors import InvalidTransition, NotFound, ProgressRegression
from tests.support import MockSupabaseClient, mystery_input


def new_store() -> JobStore:
    return JobStore(MockSupabaseClient())


class TestProgressMonotonic:
    """*For any* sequence of checkpoints, stored progress never decreases."""

    @settings(max_examples=100, deadline=None)
    @given(values=st.lists(st.integers(min_value=0, max_value=99), min_size=1, max_size=20))
    def test_checkpoints_never_lower_progress(self, values: List[int]) -> None:
        async def run_test() -> None:
            store = new_store()
            job = await store.create("owner-1", mystery_input())
            await store.mark_running(job.id)

            highest = 0
            for value in values:
                if value < highest:
                    with pytest.raises(ProgressRegression):
                        await store.checkpoint(job.id, "step", value, "m")
                else:
                    record = await store.checkpoint(job.id, "step", value, "m")
                    highest = value
                    assert record.progress == value

                assert (await store.get(job.id)).progress == highest

        asyncio.run(run_test())

    @settings(max_examples=50, deadline=None)
    @given(value=st.integers(min_value=100, max_value=1000))
    def test_checkpoint_cannot_claim_completion(self, value: int) -> None:
        async def run_test() -> None:
            store = new_store()
            job = await store.create("owner-1", mystery_input())
            await store.mark_running(job.id)
            with pytest.raises(InvalidTransition):
                await store.checkpoint(job.id, "finalize", value, "done?")
            assert (await store.get(job.id)).status == "running"

        asyncio.run(run_test())


class TestSucceededIffComplete:
    @pytest.mark.asyncio
    async def test_mark_succeeded_sets_progress_and_result(self) -> None:
        store = new_store()
        job = await store.create("owner-1", mystery_input())
        assert (job.status, job.progress) == ("queued", 0)

        await store.mark_running(job.id)
        await store.checkpoint(job.id, "polish", 66, "Polishing")
        done = await store.mark_succeeded(job.id, "doc-1")

        assert done.status == "succeeded"
        assert done.progress == 100
        assert done.result_ref == "doc-1"
        assert done.error is None

    @pytest.mark.asyncio
    async def test_succeeded_job_rejects_checkpoints(self) -> None:
        store = new_store()
        job = await store.create("owner-1", mystery_input())
        await store.mark_running(job.id)
        await store.mark_succeeded(job.id, "doc-1")

        with pytest.raises(InvalidTransition):
            await store.checkpoint(job.id, "outline", 16, "late")
        with pytest.raises(InvalidTransition):
            await store.mark_failed(job.id, "late failure")
        assert (await store.get(job.id)).progress == 100

    @pytest.mark.asyncio
    async def test_queued_job_cannot_succeed_directly(self) -> None:
        store = new_store()
        job = await store.create("owner-1", mystery_input())
        with pytest.raises(InvalidTransition):
            await store.mark_succeeded(job.id, "doc-1")


class TestResetForResume:
    @pytest.mark.asyncio
    async def test_reset_on_running_job_is_rejected(self) -> None:
        store = new_store()
        job = await store.create("owner-1", mystery_input())
        await store.mark_running(job.id)

        with pytest.raises(InvalidTransition):
            await store.reset_for_resume(job.id)

    @pytest.mark.asyncio
    async def test_reset_revives_failed_job_keeping_step(self) -> None:
        store = new_store()
        job = await store.create("owner-1", mystery_input())
        await store.mark_running(job.id)
        await store.checkpoint(job.id, "chapter-draft-2", 50, "Writing chapter 2...")
        failed = await store.mark_failed(job.id, "provider timed out")
        assert failed.error == "provider timed out"

        revived = await store.reset_for_resume(job.id)
        assert revived.status == "running"
        assert revived.error is None
        assert revived.step == "chapter-draft-2"
        assert revived.progress == 50

    @pytest.mark.asyncio
    async def test_failed_job_rejects_checkpoints_until_reset(self) -> None:
        store = new_store()
        job = await store.create("owner-1", mystery_input())
        await store.mark_running(job.id)
        await store.mark_failed(job.id, "boom")

        with pytest.raises(InvalidTransition):
            await store.checkpoint(job.id, "outline", 16, "m")


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_unknown_job_raises_not_found(self) -> None:
        with pytest.raises(NotFound):
            await new_store().get("job-missing")

    @pytest.mark.asyncio
    async def test_list_stuck_and_expire_stale(self) -> None:
        client = MockSupabaseClient()
        store = JobStore(client)
        old = await store.create("owner-1", mystery_input())
        fresh = await store.create("owner-2", mystery_input())
        long_ago = (utcnow() - timedelta(hours=2)).isoformat()
        client.patch_row("jobs", (old.id,), updated_at=long_ago)

        cutoff = utcnow() - timedelta(minutes=5)
        stuck = await store.list_stuck(cutoff)
        assert [job.id for job in stuck] == [old.id]

        expired = await store.expire_stale(cutoff, "timed out")
        assert expired == [old.id]
        assert (await store.get(old.id)).status == "failed"
        assert (await store.get(fresh.id)).status == "queued"

    @pytest.mark.asyncio
    async def test_find_active_for_owner_prefers_newest(self) -> None:
        client = MockSupabaseClient()
        store = JobStore(client)
        first = await store.create("owner-1", mystery_input())
        second = await store.create("owner-1", mystery_input())
        client.patch_row("jobs", (first.id,), created_at=(utcnow() - timedelta(minutes=10)).isoformat())
        await store.create("owner-2", mystery_input())

        active = await store.find_active_for_owner("owner-1")
        assert active is not None and active.id == second.id

        await store.mark_running(second.id)
        await store.mark_failed(second.id, "boom")
        active = await store.find_active_for_owner("owner-1")
        assert active is not None and active.id == first.id

        assert await store.find_active_for_owner("nobody") is None

    @pytest.mark.asyncio
    async def test_list_failed_resumable_respects_cap(self) -> None:
        client = MockSupabaseClient()
        store = JobStore(client)
        capped = await store.create("owner-1", mystery_input())
        open_job = await store.create("owner-1", mystery_input())
        for job in (capped, open_job):
            await store.mark_running(job.id)
            await store.mark_failed(job.id, "boom")
        client.patch_row("jobs", (capped.id,), auto_resume_attempts=3)

        resumable = await store.list_failed_resumable(max_attempts=3)
        assert [job.id for job in resumable] == [open_job.id]

    @pytest.mark.asyncio
    async def test_increment_auto_resume_counts_up(self) -> None:
        store = new_store()
        job = await store.create("owner-1", mystery_input())
        assert await store.increment_auto_resume(job.id) == 1
        assert await store.increment_auto_resume(job.id) == 2
        assert (await store.get(job.id)).auto_resume_attempts == 2


class TestJobInput:
    @settings(max_examples=50)
    @given(steps=st.integers(min_value=5, max_value=54))
    def test_steps_convert_to_chapters(self, steps: int) -> None:
        job_input = BookJobInput.model_validate({"genre": "mystery", "steps": steps})
        assert job_input.chapters == steps - 4

    @settings(max_examples=20)
    @given(steps=st.integers(min_value=-5, max_value=4))
    def test_too_few_steps_rejected(self, steps: int) -> None:
        with pytest.raises(ValidationError):
            BookJobInput.model_validate({"genre": "mystery", "steps": steps})

    @settings(max_examples=20)
    @given(genre=st.text(alphabet=" \t\n", min_size=1, max_size=5))
    def test_whitespace_genre_rejected(self, genre: str) -> None:
        with pytest.raises(ValidationError):
            BookJobInput(genre=genre)
