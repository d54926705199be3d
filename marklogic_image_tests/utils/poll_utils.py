"""Bounded retry of checks that need time to converge.

Container start-up and cluster formation are asynchronous. Every "should contain" or
"should be" check in the framework is a plain function raising on failure, and it is
retried here with a fixed interval until it passes or the total time budget is spent.
"""

import dataclasses
import logging
import time
import typing as tp

import requests

from marklogic_image_tests.utils import errors

LOGGER = logging.getLogger(__name__)

T = tp.TypeVar("T")

# Failures that mean "not converged yet", anything else propagates immediately
RETRY_ON: tuple[type[BaseException], ...] = (
    errors.ScenarioError,
    AssertionError,
    requests.RequestException,
)


@dataclasses.dataclass(frozen=True, order=True)
class RetryPolicy:
    timeout: float
    interval: float

    def __post_init__(self) -> None:
        if self.timeout <= 0 or self.interval <= 0:
            msg = f"Invalid retry policy {self}: timeout and interval must be positive"
            raise ValueError(msg)


class Deadline:
    """Point in time after which no new attempt is started.

    Passed to the polled action, so the action can bound its own blocking calls (e.g.
    process or HTTP timeouts) by the time that is left.
    """

    def __init__(self, timeout: float, *, clock: tp.Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.start = clock()
        self.end = self.start + timeout

    def elapsed(self) -> float:
        return self._clock() - self.start

    def remaining(self) -> float:
        return max(0.0, self.end - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self.end


def poll_until_success(
    action: tp.Callable[[Deadline], T],
    *,
    policy: RetryPolicy,
    description: str = "",
    retry_on: tuple[type[BaseException], ...] = RETRY_ON,
    clock: tp.Callable[[], float] = time.monotonic,
    sleep: tp.Callable[[float], None] = time.sleep,
) -> T:
    """Call `action` until it returns without raising, or until `policy.timeout` elapses.

    Args:
        action: A check that raises one of `retry_on` exceptions when the expected state
            was not reached yet. It gets the `Deadline` of this poll as its only argument.
        policy: Total time budget and a fixed interval between attempts.
        description: What is being waited for, used in log and error messages.
        retry_on: Exceptions that trigger another attempt.
        clock: Monotonic clock, replaceable in tests.
        sleep: Sleep function, replaceable in tests.

    Returns:
        T: Value returned by the first successful attempt.

    Raises:
        PollTimeout: When the time budget was spent. The exception raised by the last
            attempt is chained to it.
    """
    description = description or getattr(action, "__name__", "condition")
    deadline = Deadline(policy.timeout, clock=clock)
    attempt = 0
    last_error: BaseException | None = None

    while True:
        attempt += 1
        try:
            return action(deadline)
        except retry_on as exc:
            last_error = exc
            # With interval >= timeout there is no time left for a second attempt
            if deadline.expired() or policy.interval >= policy.timeout:
                break
            LOGGER.warning(
                f"Attempt {attempt} of waiting for {description} failed, "
                f"retrying in {policy.interval}s: {exc}"
            )
            sleep(policy.interval)

    elapsed = deadline.elapsed()
    msg = (
        f"Timed out after {elapsed:.1f}s ({attempt} attempts) waiting for {description}.\n"
        f"Last failure: {last_error}"
    )
    raise errors.PollTimeout(
        msg, last_error=last_error, attempts=attempt, elapsed=elapsed
    ) from last_error
