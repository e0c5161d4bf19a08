"""
재시도/폴링 유틸리티 테스트
"""

import pytest

from k8s_multicloud.errors import CommandError, TransientRemoteError, VerificationTimeout
from k8s_multicloud.retry import poll_until, retry_call


def test_retry_call_backoff():
    """지수 백오프 후 성공"""
    delays = []
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise TransientRemoteError("blip")
        return "ok"

    result = retry_call(flaky, attempts=5, backoff=2.0, retry_on=(TransientRemoteError,), sleep=delays.append)

    assert result == "ok"
    assert delays == [2.0, 4.0]


def test_retry_call_gives_up():
    delays = []

    def always():
        raise TransientRemoteError("down")

    with pytest.raises(TransientRemoteError):
        retry_call(always, attempts=3, backoff=1.0, retry_on=(TransientRemoteError,), sleep=delays.append)
    assert delays == [1.0, 2.0]


def test_retry_call_does_not_retry_other_errors():
    delays = []

    def broken():
        raise CommandError("exit 1")

    with pytest.raises(CommandError):
        retry_call(broken, attempts=3, backoff=1.0, retry_on=(TransientRemoteError,), sleep=delays.append)
    assert delays == []


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def test_poll_until_success():
    clock = Clock()
    answers = iter([(False, "a"), (False, "b"), (True, "done")])
    assert poll_until(lambda: next(answers), timeout=60, interval=5, description="x",
                      sleep=clock.sleep, clock=clock) == "done"
    assert clock.now == 10


def test_poll_until_timeout_keeps_last_condition():
    """타임아웃 시 마지막 상태 포함"""
    clock = Clock()
    with pytest.raises(VerificationTimeout) as exc_info:
        poll_until(lambda: (False, "NotReady"), timeout=30, interval=10, description="wait",
                   sleep=clock.sleep, clock=clock)
    assert exc_info.value.last_condition == "NotReady"
    assert "NotReady" in str(exc_info.value)
