"""Pytest fixtures for Chronicle tests."""

import pytest

from tests.support import FakeClock, MockSupabaseClient, ScriptedWriter, make_services


@pytest.fixture
def supabase() -> MockSupabaseClient:
    """Fresh in-memory Supabase client."""
    return MockSupabaseClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def writer() -> ScriptedWriter:
    return ScriptedWriter()


@pytest.fixture
def services(supabase, writer, clock):
    """The full orchestration core wired around the mock client."""
    return make_services(client=supabase, writer=writer, clock=clock)


@pytest.fixture
def sample_job_input() -> dict:
    """Sample job input payload as a client would send it."""
    return {
        "genre": "mystery",
        "prompt": "A bookkeeper notices a ledger that balances too well.",
        "steps": 6,
    }
