"""
REST clients used by the migration engine: a Prometheus-compatible
instant-query client and an HTTP health probe.
"""

import logging
import time
from typing import Dict, Optional

import google.auth
import requests
from google.auth.transport.requests import AuthorizedSession

logger = logging.getLogger(__name__)

# Google Cloud Managed Service for Prometheus query frontend
MANAGED_PROMETHEUS_BASE = "https://monitoring.googleapis.com/v1"


class PrometheusClient:
    """Instant-query client for a Prometheus-compatible metrics store."""

    RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

    def __init__(
        self,
        base_url: Optional[str] = None,
        project_id: Optional[str] = None,
        timeout_s: int = 30,
        max_retries: int = 3,
        base_delay: float = 2.0,
    ):
        """
        Initialize the Prometheus client.

        Exactly one of `base_url` (self-hosted Prometheus) or `project_id`
        (Google Managed Prometheus, authenticated with application default
        credentials) must be given.

        Args:
            base_url: Prometheus base URL, e.g. http://prometheus:9090
            project_id: GCP project ID for Managed Prometheus
            timeout_s: Request timeout in seconds
            max_retries: Maximum number of retries for transient errors
            base_delay: Base delay for exponential backoff
        """
        if bool(base_url) == bool(project_id):
            raise ValueError("Specify exactly one of base_url or project_id")

        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.project_id = project_id

        if project_id:
            creds, _ = google.auth.default(
                scopes=["https://www.googleapis.com/auth/monitoring.read"]
            )
            self.session = AuthorizedSession(creds)
            self.base_url = (
                f"{MANAGED_PROMETHEUS_BASE}/projects/{project_id}"
                "/location/global/prometheus"
            )
        else:
            self.session = requests.Session()
            self.base_url = base_url.rstrip("/")

    def _url(self, path: str) -> str:
        """Construct full API URL from path."""
        return f"{self.base_url}/{path.lstrip('/')}"

    def _request_with_retry(self, url: str, params: Dict) -> requests.Response:
        """
        Execute a GET request with exponential backoff retry for transient errors.

        Args:
            url: Request URL
            params: Query parameters

        Returns:
            The final response

        Raises:
            RuntimeError: If max retries exceeded
        """
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                resp = self.session.get(url, params=params, timeout=self.timeout_s)

                if resp.status_code in self.RETRYABLE_STATUS_CODES:
                    delay = self._calculate_delay(attempt, resp)
                    logger.warning(
                        f"Retryable error {resp.status_code} from metrics store, "
                        f"attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                    )
                    last_error = f"HTTP {resp.status_code}: {resp.text[:200]}"
                    time.sleep(delay)
                    continue

                return resp

            except requests.RequestException as e:
                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Metrics request error: {e}, attempt {attempt + 1}/"
                    f"{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                last_error = str(e)
                time.sleep(delay)

        raise RuntimeError(f"Max retries exceeded. Last error: {last_error}")

    def _calculate_delay(self, attempt: int, resp=None) -> float:
        """
        Calculate delay with exponential backoff and jitter.

        Args:
            attempt: Current attempt number
            resp: Optional response object (to check Retry-After header)

        Returns:
            Delay in seconds
        """
        if resp is not None and "Retry-After" in resp.headers:
            try:
                return float(resp.headers["Retry-After"])
            except ValueError:
                pass

        delay = self.base_delay * (2**attempt)
        jitter = delay * 0.2 * (0.5 - time.time() % 1)
        return min(delay + jitter, 60.0)

    def query_instant(self, query: str, at: Optional[float] = None) -> Dict:
        """
        Run an instant query.

        Args:
            query: PromQL expression
            at: Optional evaluation timestamp (unix seconds)

        Returns:
            The `data` object of the response

        Raises:
            RuntimeError: If the query fails
        """
        params = {"query": query}
        if at is not None:
            params["time"] = at

        resp = self._request_with_retry(self._url("api/v1/query"), params)
        if resp.status_code != 200:
            raise RuntimeError(f"Query failed ({resp.status_code}): {resp.text}")

        body = resp.json()
        if body.get("status") != "success":
            raise RuntimeError(f"Query error: {body.get('error', 'unknown error')}")
        return body.get("data", {})

    def query_scalar(self, query: str) -> Optional[float]:
        """
        Run an instant query and return its first value as a float.

        Returns:
            The value, or None if the result is empty or not a number
        """
        data = self.query_instant(query)
        result = data.get("result")
        result_type = data.get("resultType")

        if result_type == "scalar":
            value = result[1] if result else None
        elif result:
            value = result[0].get("value", [None, None])[1]
        else:
            value = None

        if value is None:
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        if number != number:  # NaN, e.g. 0/0 with no traffic
            return None
        return number


class HealthClient:
    """HTTP health endpoint probe."""

    def __init__(self, timeout_s: float = 10.0, session: Optional[requests.Session] = None):
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def check(self, url: str) -> int:
        """
        Probe a health endpoint.

        Returns:
            HTTP status code, or 0 if the endpoint could not be reached
        """
        try:
            resp = self.session.get(url, timeout=self.timeout_s)
            return resp.status_code
        except requests.RequestException as e:
            logger.debug(f"Health probe {url} failed: {e}")
            return 0
