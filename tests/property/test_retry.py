"""Property-based tests for retry behavior.

Provider calls are wrapped in ``with_retry``: delays follow exponential
backoff (delay_n = base_delay * 2^n, optionally capped) and the number of
attempts never exceeds ``max_attempts``.
"""

import asyncio
from typing import List, Optional, Tuple
from unittest.mock import patch

from hypothesis import given, settings, strategies as st

from chronicle.utils.retry import with_retry

SLEEP = "chronicle.utils.retry.asyncio.sleep"


class TestExponentialBackoffRetry:
    """*For any* sequence of failures up to the retry limit, the delay between
    retries follows exponential backoff and the total number of attempts does
    not exceed max_attempts.
    """

    @settings(max_examples=100, deadline=None)
    @given(
        max_attempts=st.integers(min_value=1, max_value=5),
        num_failures=st.integers(min_value=0, max_value=10),
    )
    def test_retry_attempts_not_exceed_max(self, max_attempts: int, num_failures: int) -> None:
        call_count = 0

        async def mock_sleep(delay: float) -> None:
            pass

        @with_retry(max_attempts=max_attempts, base_delay=0.001)
        async def failing_func() -> str:
            nonlocal call_count
            call_count += 1
            if call_count <= num_failures:
                raise ValueError("Simulated failure")
            return "success"

        async def run_test() -> None:
            with patch(SLEEP, mock_sleep):
                try:
                    await failing_func()
                except ValueError:
                    pass  # Expected if num_failures >= max_attempts

        asyncio.run(run_test())
        assert call_count <= max_attempts

    @settings(max_examples=100, deadline=None)
    @given(
        max_attempts=st.integers(min_value=2, max_value=5),
        base_delay=st.floats(min_value=0.001, max_value=0.05),
    )
    def test_exponential_backoff_delays(self, max_attempts: int, base_delay: float) -> None:
        recorded_delays: List[float] = []

        async def mock_sleep(delay: float) -> None:
            recorded_delays.append(delay)

        @with_retry(max_attempts=max_attempts, base_delay=base_delay)
        async def always_fails() -> str:
            raise ValueError("Always fails")

        async def run_test() -> None:
            with patch(SLEEP, mock_sleep):
                try:
                    await always_fails()
                except ValueError:
                    pass

        asyncio.run(run_test())

        # No delay after the last attempt
        assert len(recorded_delays) == max_attempts - 1
        for i, delay in enumerate(recorded_delays):
            expected_delay = base_delay * (2**i)
            assert abs(delay - expected_delay) < 0.0001, f"Delay {i} was {delay}, expected {expected_delay}"

    @settings(max_examples=50, deadline=None)
    @given(
        max_attempts=st.integers(min_value=2, max_value=6),
        max_delay=st.floats(min_value=0.5, max_value=4.0),
    )
    def test_delays_are_capped(self, max_attempts: int, max_delay: float) -> None:
        recorded_delays: List[float] = []

        async def mock_sleep(delay: float) -> None:
            recorded_delays.append(delay)

        @with_retry(max_attempts=max_attempts, base_delay=1.0, max_delay=max_delay)
        async def always_fails() -> str:
            raise ValueError("Always fails")

        async def run_test() -> None:
            with patch(SLEEP, mock_sleep):
                try:
                    await always_fails()
                except ValueError:
                    pass

        asyncio.run(run_test())
        assert all(delay <= max_delay for delay in recorded_delays)

    @settings(max_examples=100, deadline=None)
    @given(
        max_attempts=st.integers(min_value=1, max_value=5),
        success_on_attempt=st.integers(min_value=1, max_value=5),
    )
    def test_success_after_failures(self, max_attempts: int, success_on_attempt: int) -> None:
        call_count = 0

        async def mock_sleep(delay: float) -> None:
            pass

        @with_retry(max_attempts=max_attempts, base_delay=0.001)
        async def eventually_succeeds() -> str:
            nonlocal call_count
            call_count += 1
            if call_count < success_on_attempt:
                raise ValueError("Not yet")
            return "success"

        async def run_test() -> Tuple[Optional[str], bool]:
            with patch(SLEEP, mock_sleep):
                try:
                    return await eventually_succeeds(), True
                except ValueError:
                    return None, False

        result, succeeded = asyncio.run(run_test())

        if success_on_attempt <= max_attempts:
            assert succeeded
            assert result == "success"
            assert call_count == success_on_attempt
        else:
            assert not succeeded
            assert call_count == max_attempts

    @settings(max_examples=100, deadline=None)
    @given(max_attempts=st.integers(min_value=1, max_value=5))
    def test_raises_last_exception_on_exhaustion(self, max_attempts: int) -> None:
        call_count = 0

        async def mock_sleep(delay: float) -> None:
            pass

        @with_retry(max_attempts=max_attempts, base_delay=0.001)
        async def always_fails() -> str:
            nonlocal call_count
            call_count += 1
            raise ValueError(f"Failure {call_count}")

        async def run_test() -> str:
            with patch(SLEEP, mock_sleep):
                try:
                    await always_fails()
                    return ""
                except ValueError as e:
                    return str(e)

        assert asyncio.run(run_test()) == f"Failure {max_attempts}"
        assert call_count == max_attempts

    @settings(max_examples=100, deadline=None)
    @given(max_attempts=st.integers(min_value=1, max_value=5))
    def test_only_catches_specified_exceptions(self, max_attempts: int) -> None:
        call_count = 0

        async def mock_sleep(delay: float) -> None:
            pass

        @with_retry(max_attempts=max_attempts, base_delay=0.001, exceptions=(ValueError,))
        async def raises_type_error() -> str:
            nonlocal call_count
            call_count += 1
            raise TypeError("Not caught")

        async def run_test() -> bool:
            with patch(SLEEP, mock_sleep):
                try:
                    await raises_type_error()
                    return False
                except TypeError:
                    return True

        assert asyncio.run(run_test())
        assert call_count == 1  # No retries for uncaught exception type
