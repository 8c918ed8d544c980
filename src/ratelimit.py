"""
Database operation throttling for the migration engine.

Provides the pacing primitives (fixed rate, token bucket, adaptive) and a
circuit breaker, combined by RateLimitedExecutor to protect the live
database from being overwhelmed during migration.

Every instance is owned by a single run (or a single tenant within a
parallel run). Nothing here is process-global.
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Iterable, List, Optional, TypeVar

from cancellation import CancellationToken
from errors import CircuitOpenError, MigrationCancelled, StepExecutionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_OPS_PER_SECOND = 10.0
DEFAULT_BURST_SIZE = 20
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_CIRCUIT_THRESHOLD = 5
DEFAULT_CIRCUIT_COOLDOWN = 30.0


def backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    max_delay: float = 60.0,
) -> float:
    """
    Exponential backoff delay for a given attempt.

    Args:
        attempt: Attempt number (0-based or 1-based, caller's choice)
        base_delay: Delay for attempt 0
        multiplier: Growth factor per attempt
        max_delay: Upper bound on the delay

    Returns:
        min(max_delay, base_delay * multiplier ** attempt)
    """
    return min(max_delay, base_delay * (multiplier**attempt))


class FixedRateLimiter:
    """N operations per second, simple and predictable."""

    def __init__(
        self,
        ops_per_second: float = DEFAULT_OPS_PER_SECOND,
        token: Optional[CancellationToken] = None,
    ):
        if ops_per_second <= 0:
            raise ValueError("ops_per_second must be positive")
        self.ops_per_second = ops_per_second
        self.token = token or CancellationToken()

    def acquire(self, n: int = 1) -> float:
        wait = n / self.ops_per_second
        self.token.sleep(wait)
        return wait


class TokenBucket:
    """
    Token bucket rate limiter: bursts up to `capacity`, refilled at
    `refill_rate` tokens per second.

    Safe under concurrent acquirers; the token count never goes negative
    and never exceeds capacity.
    """

    def __init__(
        self,
        capacity: float = DEFAULT_BURST_SIZE,
        refill_rate: float = DEFAULT_OPS_PER_SECOND,
        clock: Callable[[], float] = time.monotonic,
        token: Optional[CancellationToken] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        self.capacity = float(capacity)
        self.refill_rate = float(refill_rate)
        self.clock = clock
        self.token = token or CancellationToken()
        self.tokens = float(capacity)
        self.last_refill = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self.clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def available(self) -> float:
        with self._lock:
            self._refill()
            return self.tokens

    def try_acquire(self, n: float = 1) -> bool:
        """Consume `n` tokens if available right now, without waiting."""
        with self._lock:
            self._refill()
            if self.tokens >= n:
                self.tokens -= n
                return True
            return False

    def acquire(self, n: float = 1) -> float:
        """
        Consume `n` tokens, blocking until enough have been refilled.

        Args:
            n: Number of tokens required

        Returns:
            Total seconds spent waiting

        Raises:
            ValueError: If `n` exceeds the bucket capacity
            MigrationCancelled: If the run is cancelled while waiting
        """
        if n > self.capacity:
            raise ValueError(f"Cannot acquire {n} tokens from bucket of {self.capacity}")

        waited = 0.0
        while True:
            with self._lock:
                self._refill()
                if self.tokens >= n:
                    self.tokens -= n
                    return waited
                wait = (n - self.tokens) / self.refill_rate
            # Another acquirer may win the race; re-check after waiting
            self.token.sleep(wait)
            waited += wait


def load_multiplier(load_percentage: float) -> float:
    """Rate multiplier for a downstream load percentage."""
    if load_percentage < 30:
        return 1.0
    if load_percentage < 60:
        return 0.7
    if load_percentage < 80:
        return 0.4
    return 0.2


class AdaptiveRateLimiter:
    """
    Scales a base rate by sampled downstream load (e.g. the active
    connection percentage of the database).
    """

    FALLBACK_LOAD = 50.0

    def __init__(
        self,
        load_sampler: Callable[[], float],
        base_ops_per_second: float = DEFAULT_OPS_PER_SECOND,
        token: Optional[CancellationToken] = None,
    ):
        if base_ops_per_second <= 0:
            raise ValueError("base_ops_per_second must be positive")
        self.load_sampler = load_sampler
        self.base_ops_per_second = base_ops_per_second
        self.token = token or CancellationToken()
        self.last_load: Optional[float] = None

    def sample_load(self) -> float:
        try:
            load = float(self.load_sampler())
        except Exception as e:
            logger.warning(
                f"[RATE LIMITER] Could not sample database load ({e}), "
                f"assuming {self.FALLBACK_LOAD:.0f}%"
            )
            load = self.FALLBACK_LOAD
        self.last_load = max(0.0, min(100.0, load))
        return self.last_load

    def current_rate(self) -> float:
        load = self.sample_load()
        rate = self.base_ops_per_second * load_multiplier(load)
        if rate != self.base_ops_per_second:
            logger.info(
                f"[RATE LIMITER] DB load: {load:.0f}%, rate adjusted: "
                f"{self.base_ops_per_second} -> {rate:.2f} ops/sec"
            )
        return rate

    def acquire(self, n: int = 1) -> float:
        wait = n / self.current_rate()
        self.token.sleep(wait)
        return wait


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Failure-triggered safety valve.

    CLOSED -> OPEN after `threshold` consecutive failures. While OPEN,
    `allow()` refuses until `cooldown` seconds have passed, then moves to
    HALF_OPEN and admits exactly one trial. A trial success closes the
    circuit; a trial failure reopens it immediately.
    """

    def __init__(
        self,
        threshold: int = DEFAULT_CIRCUIT_THRESHOLD,
        cooldown: float = DEFAULT_CIRCUIT_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
        name: str = "database",
    ):
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold
        self.cooldown = cooldown
        self.clock = clock
        self.name = name
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.last_transition = clock()
        self._trial_in_flight = False
        self._lock = threading.Lock()

    def _transition(self, state: CircuitState) -> None:
        if state != self.state:
            logger.warning(
                f"[CIRCUIT BREAKER] {self.name}: {self.state.value} -> {state.value}"
            )
        self.state = state
        self.last_transition = self.clock()
        if state == CircuitState.CLOSED:
            self.consecutive_failures = 0

    def allow(self) -> bool:
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return True

            if self.state == CircuitState.OPEN:
                elapsed = self.clock() - self.last_transition
                if elapsed < self.cooldown:
                    logger.info(
                        f"[CIRCUIT BREAKER] {self.name}: OPEN (blocking operations "
                        f"for {self.cooldown - elapsed:.0f}s)"
                    )
                    return False
                self._transition(CircuitState.HALF_OPEN)
                self._trial_in_flight = True
                return True

            # HALF_OPEN: only one trial at a time
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def release_trial(self) -> None:
        """Abandon an in-flight trial without a verdict; the next `allow()` admits a new one."""
        with self._lock:
            self._trial_in_flight = False

    def on_success(self) -> None:
        with self._lock:
            self._trial_in_flight = False
            self._transition(CircuitState.CLOSED)

    def on_failure(self) -> None:
        with self._lock:
            self._trial_in_flight = False
            self.consecutive_failures += 1
            if self.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif (
                self.state == CircuitState.CLOSED
                and self.consecutive_failures >= self.threshold
            ):
                logger.error(
                    f"[CIRCUIT BREAKER] {self.name}: too many failures "
                    f"({self.consecutive_failures})"
                )
                self._transition(CircuitState.OPEN)
            else:
                logger.warning(
                    f"[CIRCUIT BREAKER] {self.name}: failure count "
                    f"{self.consecutive_failures}/{self.threshold}"
                )


class RateLimitedExecutor:
    """
    Runs operations against a protected resource: breaker check, pacing,
    bounded retry with exponential backoff, breaker update per attempt.
    """

    def __init__(
        self,
        limiter,
        breaker: CircuitBreaker,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = 1.0,
        multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
        max_delay: float = 60.0,
        token: Optional[CancellationToken] = None,
    ):
        """
        Set up the executor.

        Args:
            limiter: Any object with an `acquire(n)` method
            breaker: Circuit breaker guarding the resource
            max_retries: Total attempts per operation
            base_delay: Backoff base delay (seconds)
            multiplier: Backoff multiplier
            max_delay: Backoff cap (seconds)
            token: Cancellation token for backoff waits
        """
        self.limiter = limiter
        self.breaker = breaker
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.token = token or CancellationToken()

    def execute(self, operation: Callable[[], T], description: str = "operation") -> T:
        """
        Execute a protected operation.

        Raises:
            CircuitOpenError: If the breaker refuses the operation
            StepExecutionError: If every attempt failed
            MigrationCancelled: If cancelled while pacing or backing off
        """
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_retries + 1):
            if not self.breaker.allow():
                raise CircuitOpenError(
                    f"Circuit breaker '{self.breaker.name}' is OPEN, "
                    f"refusing {description}"
                )

            try:
                self.limiter.acquire(1)
                result = operation()
            except MigrationCancelled:
                self.breaker.release_trial()
                raise
            except Exception as e:
                last_error = e
                self.breaker.on_failure()
                if attempt < self.max_retries:
                    delay = backoff_delay(
                        attempt, self.base_delay, self.multiplier, self.max_delay
                    )
                    logger.warning(
                        f"[RATE LIMITER] {description} failed (attempt "
                        f"{attempt}/{self.max_retries}): {e}, retrying in {delay:.1f}s"
                    )
                    self.token.sleep(delay)
                    continue
                logger.error(
                    f"[RATE LIMITER] {description} failed after "
                    f"{self.max_retries} attempts: {e}"
                )
                break
            else:
                self.breaker.on_success()
                return result

        raise StepExecutionError(
            f"{description} failed after {self.max_retries} attempts: {last_error}"
        ) from last_error

    def execute_batch(
        self,
        items: Iterable[T],
        operation: Callable[[T], object],
        batch_size: int = 10,
        description: str = "item",
    ) -> int:
        """
        Process items in batches, each item as a protected operation.

        Returns:
            Number of items processed
        """
        pending: List[T] = list(items)
        total = len(pending)
        processed = 0
        if total == 0:
            return 0

        logger.info(
            f"[RATE LIMITER] Processing {total} {description}(s) in batches of {batch_size}"
        )
        for start in range(0, total, batch_size):
            batch = pending[start : start + batch_size]
            logger.info(
                f"[RATE LIMITER] Batch {start // batch_size + 1}: "
                f"processing {len(batch)} {description}(s)"
            )
            for item in batch:
                self.execute(lambda: operation(item), description=f"{description} {item}")
                processed += 1
            logger.info(
                f"[RATE LIMITER] Progress: {processed}/{total} "
                f"({processed * 100 // total}%)"
            )

        return processed


def build_rate_limiter(
    strategy: str,
    ops_per_second: float = DEFAULT_OPS_PER_SECOND,
    burst: int = DEFAULT_BURST_SIZE,
    load_sampler: Optional[Callable[[], float]] = None,
    token: Optional[CancellationToken] = None,
):
    """
    Build a pacing limiter for a strategy name.

    Args:
        strategy: "fixed", "token_bucket" or "adaptive"
        ops_per_second: Base rate
        burst: Token bucket capacity
        load_sampler: Database load probe, required for "adaptive"
        token: Cancellation token for waits

    Returns:
        Limiter instance exposing `acquire(n)`
    """
    if strategy == "token_bucket":
        return TokenBucket(capacity=burst, refill_rate=ops_per_second, token=token)
    if strategy == "adaptive":
        if load_sampler is None:
            logger.warning(
                "[RATE LIMITER] Adaptive strategy requires a database load probe, "
                "falling back to fixed"
            )
            return FixedRateLimiter(ops_per_second, token=token)
        return AdaptiveRateLimiter(load_sampler, ops_per_second, token=token)
    if strategy != "fixed":
        logger.warning(f"[RATE LIMITER] Unknown strategy '{strategy}', using fixed")
    return FixedRateLimiter(ops_per_second, token=token)
