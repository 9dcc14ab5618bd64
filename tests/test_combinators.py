"""Tests for resilience, transform and orchestration combinators."""

import asyncio

import pytest

from taskwell import (
    AbortError,
    CancellationSource,
    CancellationToken,
    TaskTimeoutError,
    all_,
    backoff,
    catch_error,
    concat,
    defer,
    exponential_delay,
    flat_map,
    map_,
    map_error,
    pipe,
    race,
    retry,
    retry_when,
    sequence,
    tap,
    tap_abort,
    tap_error,
    timeout,
    timeout_abort,
    timeout_with,
    zip_,
)


def flaky(failures: int, result: str = "ok"):
    """Operation failing ``failures`` times before succeeding."""
    calls: list = []

    async def operation(token: CancellationToken, *args: object) -> str:
        calls.append(args)
        if len(calls) <= failures:
            raise RuntimeError(f"failure {len(calls)}")
        return result

    return operation, calls


def after(delay: float, value: object = None, error: BaseException | None = None):
    """Operation settling after ``delay`` seconds."""

    async def operation(token: CancellationToken, *args: object) -> object:
        await asyncio.sleep(delay)
        if error is not None:
            raise error
        return value

    return operation


class TestTransforms:
    async def test_map(self) -> None:
        op = pipe(after(0, 2), map_(lambda x: x * 10))
        assert await op(None) == 20

    async def test_flat_map_receives_token(self) -> None:
        """Test that the chained step receives the caller's token."""
        seen: list = []

        async def follow_up(value: int, token: CancellationToken) -> int:
            seen.append(token)
            return value + 1

        source = CancellationSource()
        op = pipe(after(0, 1), flat_map(follow_up))
        assert await op(source.token) == 2
        assert seen == [source.token]

    async def test_tap_sees_value(self) -> None:
        seen: list = []
        op = pipe(after(0, "v"), tap(seen.append))
        assert await op(None) == "v"
        assert seen == ["v"]

    async def test_tap_error_skips_abort(self) -> None:
        """Test that tap_error ignores cancellation."""
        seen: list = []
        failing = pipe(after(0, error=ValueError("x")), tap_error(seen.append))
        aborting = pipe(after(0, error=AbortError()), tap_error(seen.append))
        with pytest.raises(ValueError):
            await failing(None)
        with pytest.raises(AbortError):
            await aborting(None)
        assert len(seen) == 1
        assert isinstance(seen[0], ValueError)

    async def test_tap_abort_only_sees_abort(self) -> None:
        """Test that tap_abort ignores ordinary failures."""
        seen: list = []
        failing = pipe(after(0, error=ValueError("x")), tap_abort(seen.append))
        aborting = pipe(after(0, error=AbortError()), tap_abort(seen.append))
        with pytest.raises(ValueError):
            await failing(None)
        with pytest.raises(AbortError):
            await aborting(None)
        assert len(seen) == 1
        assert isinstance(seen[0], AbortError)

    async def test_map_error(self) -> None:
        op = pipe(
            after(0, error=ValueError("raw")),
            map_error(lambda err: KeyError(str(err))),
        )
        with pytest.raises(KeyError):
            await op(None)

    async def test_map_error_normalizes_non_exceptions(self) -> None:
        """Test that a non-exception result of the mapper is wrapped."""
        op = pipe(after(0, error=ValueError("raw")), map_error(lambda err: "text"))
        with pytest.raises(Exception, match="text"):
            await op(None)

    async def test_map_error_skips_abort(self) -> None:
        op = pipe(after(0, error=AbortError()), map_error(lambda err: KeyError()))
        with pytest.raises(AbortError):
            await op(None)

    async def test_catch_error_value_and_callable(self) -> None:
        failing = after(0, error=ValueError("x"))
        assert await pipe(failing, catch_error("fallback"))(None) == "fallback"
        assert await pipe(failing, catch_error(lambda err: str(err)))(None) == "x"

        async def recover(err: Exception) -> str:
            return "async"

        assert await pipe(failing, catch_error(recover))(None) == "async"

    async def test_catch_error_never_catches_abort(self) -> None:
        """Test that cancellation is never recovered."""
        op = pipe(after(0, error=AbortError()), catch_error("fallback"))
        with pytest.raises(AbortError):
            await op(None)

    def test_pipe_order(self) -> None:
        assert pipe(1, lambda x: x + 1, lambda x: x * 3) == 6
        assert pipe("same") == "same"


class TestRetry:
    async def test_retry_two_means_three_calls(self) -> None:
        """Test that retry(2) calls the operation three times."""
        op, calls = flaky(5)
        with pytest.raises(RuntimeError, match="failure 3"):
            await retry(2)(op)(None)
        assert len(calls) == 3

    async def test_retry_succeeds_eventually(self) -> None:
        op, calls = flaky(2)
        seen: list = []
        wrapped = retry(2, on_retry=lambda err, attempt: seen.append(attempt))(op)
        assert await wrapped(None, "arg") == "ok"
        assert calls == [("arg",)] * 3
        assert seen == [1, 2]

    async def test_retry_never_retries_abort(self) -> None:
        """Test that cancellation is never retried."""
        calls = 0

        async def op(token: CancellationToken) -> None:
            nonlocal calls
            calls += 1
            raise AbortError()

        with pytest.raises(AbortError):
            await retry(3)(op)(None)
        assert calls == 1

    async def test_retry_checks_token_before_attempt(self) -> None:
        """Test that a token cancelled between attempts stops retrying."""
        source = CancellationSource()

        async def op(token: CancellationToken) -> None:
            source.cancel()
            raise RuntimeError("fails then cancels")

        with pytest.raises(AbortError):
            await retry(3)(op)(source.token)

    async def test_negative_attempts_clamped(self) -> None:
        op, calls = flaky(1)
        with pytest.raises(RuntimeError):
            await retry(-1)(op)(None)
        assert len(calls) == 1

    async def test_retry_when_predicate(self) -> None:
        op, calls = flaky(5)
        wrapped = retry_when(lambda err, attempt: attempt < 2)(op)
        with pytest.raises(RuntimeError, match="failure 2"):
            await wrapped(None)
        assert len(calls) == 2

    async def test_retry_when_async_predicate_and_cap(self) -> None:
        """Test that max_attempts caps retries after the first call."""
        async def always(err: Exception, attempt: int) -> bool:
            return True

        op, calls = flaky(10)
        with pytest.raises(RuntimeError):
            await retry_when(always, max_attempts=2)(op)(None)
        assert len(calls) == 3

    async def test_retry_when_delay_is_cancellable(self) -> None:
        """Test that the wait between attempts ends when the token fires."""
        source = CancellationSource()
        op, calls = flaky(10)
        wrapped = retry_when(
            lambda err, attempt: True, delay=lambda attempt, err: "10s"
        )(op)
        asyncio.get_running_loop().call_later(0.01, source.cancel)
        with pytest.raises(AbortError):
            await asyncio.wait_for(wrapped(source.token), timeout=1)
        assert len(calls) == 1

    async def test_backoff(self) -> None:
        op, calls = flaky(2)
        assert await backoff(attempts=3, delay=1)(op)(None) == "ok"
        assert len(calls) == 3

    async def test_backoff_should_retry(self) -> None:
        op, calls = flaky(5)
        wrapped = backoff(
            attempts=5, delay="1ms", should_retry=lambda err: "1" in str(err)
        )(op)
        with pytest.raises(RuntimeError, match="failure 2"):
            await wrapped(None)

    def test_exponential_delay(self) -> None:
        """Test that delays double and stop at max_delay."""
        delay = exponential_delay(base=100, factor=2, max_delay=500)
        err = RuntimeError()
        assert [delay(n, err) for n in range(1, 5)] == [100, 200, 400, 500]

    def test_exponential_delay_jitter_bounds(self) -> None:
        delay = exponential_delay(base=100, jitter=True)
        for _ in range(20):
            assert 50 <= delay(1, RuntimeError()) <= 150


class TestTimeout:
    async def test_fast_operation_passes(self) -> None:
        assert await timeout(200)(after(0, "fast"))(None) == "fast"

    async def test_timeout_does_not_cancel_operation(self) -> None:
        """Test that timeout() leaves the operation running."""
        tokens: list = []
        finished = asyncio.Event()

        async def slow(token: CancellationToken) -> str:
            tokens.append(token)
            await asyncio.sleep(0.05)
            finished.set()
            return "late"

        source = CancellationSource()
        with pytest.raises(TaskTimeoutError) as info:
            await timeout(10)(slow)(source.token)
        assert info.value.timeout == 10
        assert tokens[0] is source.token
        assert tokens[0].cancelled is False
        await asyncio.wait_for(finished.wait(), timeout=1)

    async def test_timeout_error_is_a_timeout_error(self) -> None:
        with pytest.raises(TimeoutError):
            await timeout("5ms")(after(0.05))(None)

    async def test_timeout_external_abort(self) -> None:
        """Test that the external token aborts the wait."""
        source = CancellationSource()
        asyncio.get_running_loop().call_later(0.01, source.cancel)
        with pytest.raises(AbortError):
            await timeout("1s")(after(0.05))(source.token)

    async def test_timeout_rejects_cancelled_token(self) -> None:
        source = CancellationSource()
        source.cancel()
        calls: list = []

        async def op(token: CancellationToken) -> None:
            calls.append(token)

        with pytest.raises(AbortError):
            await timeout(100)(op)(source.token)
        assert calls == []

    async def test_timeout_abort_cancels_operation(self) -> None:
        """Test that the deadline fires the operation's token."""
        tokens: list = []

        async def slow(token: CancellationToken) -> None:
            tokens.append(token)
            await token.wait()
            raise AbortError(token.reason or "Aborted")

        with pytest.raises(TaskTimeoutError):
            await timeout_abort(10)(slow)(None)
        assert tokens[0].cancelled is True

    async def test_timeout_abort_external_cancel_is_abort(self) -> None:
        """Test that an external cancel is not reported as a timeout."""
        tokens: list = []

        async def slow(token: CancellationToken) -> None:
            tokens.append(token)
            await token.wait()
            raise AbortError()

        source = CancellationSource()
        asyncio.get_running_loop().call_later(0.01, source.cancel, "user")
        with pytest.raises(AbortError) as info:
            await timeout_abort("1s")(slow)(source.token)
        assert not isinstance(info.value, TaskTimeoutError)
        assert tokens[0].cancelled is True

    async def test_timeout_with_fallback(self) -> None:
        async def fallback(token: CancellationToken, name: str) -> str:
            return f"fallback {name}"

        wrapped = timeout_with(10, fallback)(after(0.05, "slow"))
        assert await wrapped(None, "x") == "fallback x"

    async def test_timeout_with_only_handles_timeouts(self) -> None:
        """Test that ordinary failures skip the fallback."""
        async def fallback(token: CancellationToken) -> str:
            return "fallback"

        wrapped = timeout_with(100, fallback)(after(0, error=ValueError("boom")))
        with pytest.raises(ValueError):
            await wrapped(None)


class TestOrchestration:
    async def test_zip_returns_tuple_in_order(self) -> None:
        op = zip_(after(0.02, "a"), after(0, "b"))
        assert await op(None) == ("a", "b")

    async def test_zip_fails_fast_and_cancels_rest(self) -> None:
        """Test that the first failure cancels the other operations."""
        cancelled = asyncio.Event()

        async def slow(token: CancellationToken) -> None:
            try:
                await asyncio.sleep(1)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        op = zip_(slow, after(0, error=ValueError("first")))
        with pytest.raises(ValueError, match="first"):
            await op(None)
        await asyncio.wait_for(cancelled.wait(), timeout=1)

    async def test_all_returns_list(self) -> None:
        assert await all_([after(0, 1), after(0, 2)])(None) == [1, 2]
        assert await all_([])(None) == []

    async def test_race_first_settled_wins(self) -> None:
        op = race(after(0.05, "slow"), after(0, "fast"))
        assert await op(None) == "fast"

    async def test_race_first_failure_wins(self) -> None:
        """Test that a failure settling first is raised."""
        op = race([after(0.05, "slow"), after(0, error=ValueError("quick"))])
        with pytest.raises(ValueError, match="quick"):
            await op(None)

    def test_race_requires_operations(self) -> None:
        with pytest.raises(ValueError):
            race()

    async def test_sequence_runs_in_order(self) -> None:
        order: list = []

        def step(name: str, delay: float):
            async def op(token: CancellationToken, arg: str) -> str:
                order.append(f"start {name}")
                await asyncio.sleep(delay)
                order.append(f"end {name}")
                return f"{name}:{arg}"

            return op

        op = sequence(step("a", 0.01), step("b", 0))
        assert await op(None, "x") == ["a:x", "b:x"]
        assert order == ["start a", "end a", "start b", "end b"]
        assert concat is sequence

    async def test_sequence_stops_when_cancelled(self) -> None:
        """Test that no further step starts after cancellation."""
        source = CancellationSource()
        calls: list = []

        async def cancels(token: CancellationToken) -> int:
            calls.append(1)
            source.cancel()
            return 1

        async def never(token: CancellationToken) -> int:
            calls.append(2)
            return 2

        with pytest.raises(AbortError):
            await sequence(cancels, never)(source.token)
        assert calls == [1]

    async def test_defer_builds_at_call_time(self) -> None:
        """Test that the factory runs on every call."""
        built: list = []

        def factory():
            built.append(1)
            return after(0, len(built))

        op = defer(factory)
        assert built == []
        assert await op(None) == 1
        assert await op(None) == 2
