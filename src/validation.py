"""
Metrics-gated validation for canary and blue-green rollouts.

A gate queries the metrics store for request volume, error rate and p99
latency over a time window and renders a PASS / FAIL / INCONCLUSIVE
verdict. Too little traffic is INCONCLUSIVE: it blocks advancement but is
not counted as a breach.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from cancellation import CancellationToken
from clients import HealthClient
from models import GateVerdict, PhaseValidation

logger = logging.getLogger(__name__)

# Consecutive failed polls that abort an observation period
MAX_CONSECUTIVE_FAILURES = 3


class CheckResult:
    """Result of a single metric check."""

    def __init__(
        self,
        check_name: str,
        verdict: GateVerdict,
        message: str,
        value: Optional[float] = None,
        threshold: Optional[float] = None,
    ):
        self.check_name = check_name
        self.verdict = verdict
        self.message = message
        self.value = value
        self.threshold = threshold
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict:
        """Convert to dictionary for logging/reporting."""
        return {
            "check_name": self.check_name,
            "verdict": self.verdict.value,
            "message": self.message,
            "value": self.value,
            "threshold": self.threshold,
            "timestamp": self.timestamp.isoformat(),
        }


class ValidationGate:
    """Pass/fail/inconclusive decision derived from live service metrics."""

    def __init__(
        self,
        metrics,
        thresholds: Optional[PhaseValidation] = None,
        window: str = "5m",
        labels: Optional[Dict[str, str]] = None,
        token: Optional[CancellationToken] = None,
        health: Optional[HealthClient] = None,
    ):
        """
        Set up the gate.

        Args:
            metrics: Metrics client exposing `query_scalar(query)`
            thresholds: Error rate / latency / volume thresholds
            window: Default PromQL range window (e.g. "5m")
            labels: Extra label matchers scoping the queries
            token: Cancellation token for polling waits
            health: HTTP health probe client
        """
        self.metrics = metrics
        self.thresholds = thresholds or PhaseValidation()
        self.window = window
        self.labels = dict(labels or {})
        self.token = token or CancellationToken()
        self.health = health or HealthClient()
        self.last_results: List[CheckResult] = []

    def for_phase(
        self, thresholds: PhaseValidation, labels: Optional[Dict[str, str]] = None
    ) -> "ValidationGate":
        """Gate sharing this gate's clients, with different thresholds/scope."""
        return ValidationGate(
            metrics=self.metrics,
            thresholds=thresholds,
            window=self.window,
            labels=self.labels if labels is None else labels,
            token=self.token,
            health=self.health,
        )

    def _matchers(self, extra: str = "") -> str:
        parts = [extra] if extra else []
        parts.extend(f'{k}="{v}"' for k, v in sorted(self.labels.items()))
        return "{" + ",".join(parts) + "}" if parts else ""

    def volume_query(self, window: str) -> str:
        return f"sum(increase(http_requests_total{self._matchers()}[{window}]))"

    def error_rate_query(self, window: str) -> str:
        errors = self._matchers('status=~"5.."')
        total = self._matchers()
        return (
            f"sum(rate(http_requests_total{errors}[{window}])) / "
            f"sum(rate(http_requests_total{total}[{window}]))"
        )

    def latency_p99_query(self, window: str) -> str:
        return (
            "histogram_quantile(0.99, sum(rate("
            f"http_request_duration_seconds_bucket{self._matchers()}[{window}])) by (le)) * 1000"
        )

    def _query(self, query: str) -> Optional[float]:
        return self.metrics.query_scalar(query)

    def check_volume(self, window: Optional[str] = None) -> CheckResult:
        window = window or self.window
        minimum = self.thresholds.min_requests
        count = self._query(self.volume_query(window))
        observed = count or 0.0

        if observed < minimum:
            return CheckResult(
                "min_requests",
                GateVerdict.INCONCLUSIVE,
                f"Insufficient requests: {observed:.0f} < {minimum} (need more data)",
                value=observed,
                threshold=minimum,
            )
        return CheckResult(
            "min_requests",
            GateVerdict.PASS,
            f"Request count OK: {observed:.0f} >= {minimum}",
            value=observed,
            threshold=minimum,
        )

    def check_error_rate(self, window: Optional[str] = None) -> CheckResult:
        window = window or self.window
        threshold = self.thresholds.error_rate_threshold
        rate = self._query(self.error_rate_query(window))

        if rate is None:
            return CheckResult(
                "error_rate", GateVerdict.PASS, "No error rate data available",
                threshold=threshold,
            )
        if rate <= threshold:
            return CheckResult(
                "error_rate", GateVerdict.PASS,
                f"Error rate OK: {rate:.4f} <= {threshold}",
                value=rate, threshold=threshold,
            )
        return CheckResult(
            "error_rate", GateVerdict.FAIL,
            f"Error rate EXCEEDED: {rate:.4f} > {threshold}",
            value=rate, threshold=threshold,
        )

    def check_latency_p99(self, window: Optional[str] = None) -> CheckResult:
        window = window or self.window
        threshold = self.thresholds.latency_p99_threshold_ms
        p99 = self._query(self.latency_p99_query(window))

        if p99 is None:
            return CheckResult(
                "latency_p99", GateVerdict.PASS, "No latency data available",
                threshold=threshold,
            )
        if p99 <= threshold:
            return CheckResult(
                "latency_p99", GateVerdict.PASS,
                f"p99 latency OK: {p99:.0f}ms <= {threshold:.0f}ms",
                value=p99, threshold=threshold,
            )
        return CheckResult(
            "latency_p99", GateVerdict.FAIL,
            f"p99 latency EXCEEDED: {p99:.0f}ms > {threshold:.0f}ms",
            value=p99, threshold=threshold,
        )

    def gate(self, window: Optional[str] = None) -> GateVerdict:
        """
        Evaluate all checks for a window.

        Returns:
            PASS only if volume is sufficient and both error rate and p99
            latency are within threshold; INCONCLUSIVE if volume is too low
            or the metrics store could not be queried; FAIL otherwise.
        """
        window = window or self.window
        self.last_results = []

        if self.metrics is None:
            logger.warning("  [gate] No metrics source configured")
            return GateVerdict.INCONCLUSIVE

        try:
            volume = self.check_volume(window)
            self.last_results.append(volume)
            logger.info(f"  [gate] {volume.check_name}: {volume.message}")
            if volume.verdict != GateVerdict.PASS:
                return GateVerdict.INCONCLUSIVE

            checks = [self.check_error_rate(window), self.check_latency_p99(window)]
        except RuntimeError as e:
            logger.warning(f"  [gate] Metrics unavailable: {e}")
            return GateVerdict.INCONCLUSIVE

        self.last_results.extend(checks)
        for check in checks:
            logger.info(f"  [gate] {check.check_name}: {check.message}")

        if any(c.verdict == GateVerdict.FAIL for c in checks):
            return GateVerdict.FAIL
        return GateVerdict.PASS

    def wait_conclusive(self, timeout: float, interval: float = 30.0) -> GateVerdict:
        """
        Poll the gate until it is PASS or FAIL, or `timeout` elapses.

        Returns:
            The first conclusive verdict, or INCONCLUSIVE at timeout
        """
        elapsed = 0.0
        while True:
            verdict = self.gate()
            if verdict != GateVerdict.INCONCLUSIVE:
                return verdict
            if elapsed >= timeout:
                logger.warning(
                    f"Validation still inconclusive after {elapsed:.0f}s (timeout {timeout:.0f}s)"
                )
                return GateVerdict.INCONCLUSIVE
            step = min(interval, timeout - elapsed)
            self.token.sleep(step)
            elapsed += step

    def observe(self, total_duration: float, interval: float = 30.0) -> GateVerdict:
        """
        Continuously validate metrics during an observation period.

        Three consecutive FAIL polls abort the observation with FAIL
        regardless of remaining duration; a PASS resets the counter.

        Returns:
            FAIL on abort, PASS if any poll passed, otherwise INCONCLUSIVE
        """
        logger.info(
            f"Starting observation period ({total_duration:.0f}s, "
            f"check interval: {interval:.0f}s)"
        )
        elapsed = 0.0
        failures = 0
        passed = False

        while True:
            logger.info(f"Observation check at {elapsed:.0f}s / {total_duration:.0f}s")
            verdict = self.gate()

            if verdict == GateVerdict.FAIL:
                failures += 1
                logger.warning(f"Validation failure count: {failures}")
                if failures >= MAX_CONSECUTIVE_FAILURES:
                    logger.error(
                        f"Too many validation failures ({failures}), aborting observation"
                    )
                    return GateVerdict.FAIL
            elif verdict == GateVerdict.PASS:
                failures = 0
                passed = True

            if elapsed >= total_duration:
                break
            step = min(interval, total_duration - elapsed)
            self.token.sleep(step)
            elapsed += step

        if passed:
            logger.info("✓ Observation period completed successfully")
            return GateVerdict.PASS
        logger.warning("Observation period completed without sufficient traffic")
        return GateVerdict.INCONCLUSIVE

    def check_health_endpoint(
        self, url: str, retries: int = 3, interval: float = 5.0
    ) -> bool:
        """
        Check that a health endpoint returns 200 OK.

        Returns:
            True on HTTP 200 within `retries` attempts
        """
        logger.info(f"Health check: {url}")
        for attempt in range(1, retries + 1):
            code = self.health.check(url)
            if code == 200:
                logger.info(f"✓ Health check passed (HTTP {code})")
                return True
            logger.warning(f"Health check attempt {attempt}/{retries} failed (HTTP {code})")
            if attempt < retries:
                self.token.sleep(interval)
        logger.error(f"Health check failed after {retries} attempts")
        return False
