"""
재시도 및 폴링 유틸리티
"""

import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from .errors import VerificationTimeout

T = TypeVar("T")


def retry_call(
    fn: Callable[[], T],
    *,
    attempts: int,
    backoff: float,
    retry_on: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """멱등 작업 재시도

    attempts: 최대 시도 횟수
    backoff: 첫 재시도 전 대기 시간(초). 시도마다 두 배
    retry_on: 재시도할 예외 타입. 그 외 예외는 즉시 전파
    on_retry: callback(attempt, exception)
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if attempt == attempts:
                raise
            if on_retry:
                on_retry(attempt, exc)
            sleep(backoff * (2 ** (attempt - 1)))
    raise ValueError("attempts must be at least 1")


def poll_until(
    check: Callable[[], Tuple[bool, str]],
    *,
    timeout: float,
    interval: float,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """조건이 만족될 때까지 폴링

    check는 (완료 여부, 현재 상태 설명)을 반환한다.

    Returns:
        str: 마지막 상태 설명

    Raises:
        VerificationTimeout: timeout 안에 조건이 만족되지 않음
    """
    deadline = clock() + timeout
    last = ""
    while True:
        done, last = check()
        if done:
            return last
        if clock() >= deadline:
            raise VerificationTimeout(f"{description}: {timeout}초 안에 완료되지 않음", last_condition=last)
        sleep(interval)
