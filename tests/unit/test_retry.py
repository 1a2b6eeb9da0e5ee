import pytest

from shopcore.utils.retry import retry


class Flaky(Exception):
    pass


async def test_retries_until_success():
    calls = []

    async def fn():
        calls.append(1)
        if len(calls) < 3:
            raise Flaky()
        return "ok"

    assert await retry(fn, attempts=3, base_ms=0, jitter_ms=0, retry_on=(Flaky,)) == "ok"
    assert len(calls) == 3


async def test_gives_up_after_attempts():
    calls = []

    async def fn():
        calls.append(1)
        raise Flaky()

    with pytest.raises(Flaky):
        await retry(fn, attempts=2, base_ms=0, jitter_ms=0, retry_on=(Flaky,))
    assert len(calls) == 2


async def test_other_errors_are_not_retried():
    calls = []

    async def fn():
        calls.append(1)
        raise KeyError("boom")

    with pytest.raises(KeyError):
        await retry(fn, attempts=5, base_ms=0, jitter_ms=0, retry_on=(Flaky,))
    assert len(calls) == 1


async def test_attempts_must_be_positive():
    async def fn():
        return 1

    with pytest.raises(ValueError):
        await retry(fn, attempts=0)
