"""RetryPolicy と RateLimitState のテスト"""

import pytest
from requests.structures import CaseInsensitiveDict

from asana_exporter.data.retry import RateLimitState, RetryPolicy
from asana_exporter.data.throttle import ThrottleGate
from asana_exporter.utils.error_handler import APIError, RateLimitError, RateLimitExceededError

from conftest import RecordingSleep


def rate_limited(retry_after=0.0):
    return RateLimitError("429", rate_limit=RateLimitState(retry_after=retry_after))


class TestRateLimitState:
    """レート制限ヘッダー解析のテスト"""

    def test_defaults_without_headers(self):
        state = RateLimitState.from_headers(None)

        assert state == RateLimitState(remaining=100, limit=100, reset=0, retry_after=0.0)

    def test_reads_headers_case_insensitively(self):
        headers = CaseInsensitiveDict({
            'X-RateLimit-Remaining': '7',
            'X-RateLimit-Limit': '150',
            'X-RateLimit-Reset': '1700000000',
            'Retry-After': '5',
        })

        state = RateLimitState.from_headers(headers)

        assert state.remaining == 7
        assert state.limit == 150
        assert state.reset == 1700000000
        assert state.retry_after == 5.0

    def test_unparsable_value_falls_back_to_default(self):
        state = RateLimitState.from_headers({'retry-after': 'Wed, 21 Oct 2015 07:28:00 GMT'})

        assert state.retry_after == 0.0


class TestRetryPolicy:
    """429 に対する再試行のテスト"""

    def test_backoff_doubles_from_base_delay(self):
        policy = RetryPolicy(ThrottleGate(), sleep=RecordingSleep())

        assert [policy.backoff_delay(n, None) for n in range(5)] == [2.0, 4.0, 8.0, 16.0, 32.0]

    def test_backoff_honours_retry_after(self):
        policy = RetryPolicy(ThrottleGate(), sleep=RecordingSleep())

        assert policy.backoff_delay(0, RateLimitState(retry_after=5)) == 5
        assert policy.backoff_delay(3, RateLimitState(retry_after=5)) == 16.0

    @pytest.mark.asyncio
    async def test_retry_after_then_success(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(ThrottleGate(), sleep=sleep)
        attempts = []

        async def attempt():
            attempts.append(1)
            if len(attempts) == 1:
                raise rate_limited(retry_after=5)
            return "ok"

        result = await policy.execute(attempt, "GET tasks")

        assert result == "ok"
        assert len(attempts) == 2
        assert len(sleep.delays) == 1
        assert sleep.delays[0] >= 5
        assert policy.rate_limited_count == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(ThrottleGate(), sleep=sleep)
        attempts = []

        async def attempt():
            attempts.append(1)
            raise rate_limited()

        with pytest.raises(RateLimitExceededError) as exc_info:
            await policy.execute(attempt)

        assert len(attempts) == RetryPolicy.MAX_RETRIES + 1
        assert exc_info.value.attempts == RetryPolicy.MAX_RETRIES + 1
        assert exc_info.value.status_code == 429
        assert sleep.delays == [2.0, 4.0, 8.0, 16.0, 32.0]

    @pytest.mark.asyncio
    async def test_zero_retries_fails_on_first_429(self):
        policy = RetryPolicy(ThrottleGate(), max_retries=0, sleep=RecordingSleep())

        async def attempt():
            raise rate_limited()

        with pytest.raises(RateLimitExceededError) as exc_info:
            await policy.execute(attempt)
        assert exc_info.value.attempts == 1

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(ThrottleGate(), sleep=sleep)
        attempts = []

        async def attempt():
            attempts.append(1)
            raise APIError("サーバーエラー", status_code=500)

        with pytest.raises(APIError) as exc_info:
            await policy.execute(attempt)

        assert exc_info.value.status_code == 500
        assert len(attempts) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_slot_not_held_while_backing_off(self):
        gate = ThrottleGate(1)
        in_flight_during_sleep = []
        sleep = RecordingSleep(on_sleep=lambda delay: in_flight_during_sleep.append(gate.in_flight))
        policy = RetryPolicy(gate, sleep=sleep)
        attempts = []

        async def attempt():
            attempts.append(gate.in_flight)
            if len(attempts) < 3:
                raise rate_limited()
            return "done"

        assert await policy.execute(attempt) == "done"
        assert in_flight_during_sleep == [0, 0]
        assert attempts == [1, 1, 1]
        assert gate.in_flight == 0
