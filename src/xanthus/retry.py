"""
Bounded exponential backoff, shared by provisioning, bootstrap and
certificate polling and by SSH connection retries.

Usage:
    policy = Backoff(initial=2, max_delay=30, timeout=300)
    server = poll_until(lambda: provider.get_instance(sid) if ready else None,
                        policy, describe="server running")
    conn = retry_call(connect, Backoff(max_attempts=3), retry_if=is_transient)
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, TypeVar

from .errors import OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Backoff:
    """Backoff policy. At least one of max_attempts / timeout bounds it."""
    initial: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0
    max_attempts: Optional[int] = None
    timeout: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts is None and self.timeout is None:
            raise ValueError("Backoff needs max_attempts or timeout")
        if self.initial < 0 or self.factor < 1:
            raise ValueError("Backoff needs initial >= 0 and factor >= 1")

    def delays(self) -> Iterator[float]:
        delay = self.initial
        while True:
            yield min(delay, self.max_delay)
            delay *= self.factor


def poll_until(
    probe: Callable[[], Optional[T]],
    policy: Backoff,
    describe: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Call ``probe`` until it returns something other than None.

    Exceptions raised by the probe propagate immediately. Raises
    OperationTimeoutError once the attempt count or overall deadline is
    exhausted; the final sleep is clipped so the deadline is never
    overshot by more than one probe.
    """
    start = clock()
    attempt = 0
    for delay in policy.delays():
        attempt += 1
        value = probe()
        if value is not None:
            if attempt > 1:
                logger.info(f"{describe}: satisfied after {attempt} attempts")
            return value

        if policy.max_attempts is not None and attempt >= policy.max_attempts:
            break
        if policy.timeout is not None:
            remaining = policy.timeout - (clock() - start)
            if remaining <= 0:
                break
            delay = min(delay, remaining)

        logger.debug(f"{describe}: not yet (attempt {attempt}), sleeping {delay:.1f}s")
        sleep(delay)

    elapsed = clock() - start
    raise OperationTimeoutError(
        f"Timed out waiting for {describe}",
        detail=f"{attempt} attempts over {elapsed:.1f}s",
    )


def retry_call(
    fn: Callable[[], T],
    policy: Backoff,
    retry_if: Callable[[Exception], bool],
    describe: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Call ``fn`` and retry it while it raises an error accepted by
    ``retry_if``. Errors not accepted propagate at once; when the policy
    is exhausted the last error propagates.
    """
    start = clock()
    attempt = 0
    for delay in policy.delays():
        attempt += 1
        try:
            return fn()
        except Exception as e:
            if not retry_if(e):
                raise
            exhausted = policy.max_attempts is not None and attempt >= policy.max_attempts
            if policy.timeout is not None:
                remaining = policy.timeout - (clock() - start)
                if remaining <= 0:
                    exhausted = True
                delay = min(delay, max(remaining, 0))
            if exhausted:
                logger.warning(f"{describe}: giving up after {attempt} attempts: {e}")
                raise
            logger.warning(f"{describe}: attempt {attempt} failed ({e}), retrying in {delay:.1f}s")
            sleep(delay)
    raise AssertionError("unreachable")  # delays() is infinite
