"""
Monitoring Service — counters, alert thresholds and periodic metric snapshots.

Tracking calls update counters inline and evaluate alert thresholds
immediately. A background task appends one immutable ``MetricSnapshot`` per
interval to a history pruned by a retention window; reports aggregate that
history for an hour, a day or a week.

Monitoring is best-effort: every tracking call catches and logs its own
errors so the request path being instrumented is never affected.
"""
import copy
import time
import uuid
import logging
import threading
from collections import deque
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import RotationEvent
from .utils import PeriodicTask

logger = logging.getLogger("navigator.apikeys.monitoring")

HOUR = 3600.0
DAY = 24 * HOUR

REPORT_PERIODS = {
    "hour": HOUR,
    "day": DAY,
    "week": 7 * DAY,
}

MAX_ALERTS = 100


class AlertType(str, Enum):
    ERROR_RATE = "ERROR_RATE"
    RESPONSE_TIME = "RESPONSE_TIME"
    QUOTA_USAGE = "QUOTA_USAGE"
    ROTATION_FAILURE = "ROTATION_FAILURE"


class AlertThresholds(BaseModel):
    """Alert thresholds; rates are fractions, response time is in seconds."""

    error_rate: float = Field(default=0.1, gt=0, le=1)
    min_requests: int = Field(default=10, ge=1)
    window_size: int = Field(default=100, ge=1)
    response_time: float = Field(default=1.0, gt=0)
    quota_usage: float = Field(default=0.7, gt=0, le=1)
    rotation_failures: int = Field(default=3, ge=1)


class Alert(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: AlertType
    timestamp: float
    service: Optional[str] = None
    payload: dict = Field(default_factory=dict)


class MetricSnapshot(BaseModel):
    """Counts observed during one collection interval."""

    model_config = ConfigDict(frozen=True)

    timestamp: float
    requests: dict
    rotations: dict
    response_time: dict
    per_service: dict


def _service_counters() -> dict:
    return {
        "requests": 0,
        "success": 0,
        "failed": 0,
        "response_time_total": 0.0,
        "response_time_max": 0.0,
        "rotations": 0,
        "rotation_failures": 0,
        "modules": {},
    }


class _Counters:
    """Mutable counters behind the service lock."""

    def __init__(self):
        self.requests = {"total": 0, "success": 0, "failed": 0}
        self.rotations = {"total": 0, "success": 0, "failed": 0}
        self.response_time = {"count": 0, "total": 0.0, "max": 0.0}
        self.services: dict[str, dict] = {}

    def service(self, service: str) -> dict:
        return self.services.setdefault(service, _service_counters())

    def record_access(self, service: str, module: Optional[str], success: bool, duration: float) -> None:
        outcome = "success" if success else "failed"
        self.requests["total"] += 1
        self.requests[outcome] += 1
        self.response_time["count"] += 1
        self.response_time["total"] += duration
        self.response_time["max"] = max(self.response_time["max"], duration)
        counters = self.service(service)
        counters["requests"] += 1
        counters[outcome] += 1
        counters["response_time_total"] += duration
        counters["response_time_max"] = max(counters["response_time_max"], duration)
        if module:
            counters["modules"][module] = counters["modules"].get(module, 0) + 1

    def record_rotation(self, service: str, success: bool) -> None:
        self.rotations["total"] += 1
        self.rotations["success" if success else "failed"] += 1
        counters = self.service(service)
        if success:
            counters["rotations"] += 1
        else:
            counters["rotation_failures"] += 1

    def snapshot(self, timestamp: float) -> MetricSnapshot:
        return MetricSnapshot(
            timestamp=timestamp,
            requests=dict(self.requests),
            rotations=dict(self.rotations),
            response_time=dict(self.response_time),
            per_service=copy.deepcopy(self.services),
        )


class _ServiceHealth:
    """Sliding window and alert state used for threshold evaluation."""

    def __init__(self, window_size: int):
        self.window: deque = deque(maxlen=window_size)
        self.consecutive_rotation_failures = 0
        self.quota: Optional[dict] = None


class MonitoringService:
    """Tracks API key access, rotation and quota usage and raises alerts."""

    def __init__(
        self,
        thresholds: Optional[AlertThresholds] = None,
        interval: float = 60,
        retention: float = 7 * DAY,
        max_alerts: int = MAX_ALERTS,
        clock: Callable[[], float] = time.time,
    ):
        self.thresholds = thresholds or AlertThresholds()
        self.retention = retention
        self._clock = clock
        self._lock = threading.RLock()
        self._interval = _Counters()
        self._totals = _Counters()
        self._health: dict[str, _ServiceHealth] = {}
        self._firing: set[tuple[AlertType, str]] = set()
        self._history: deque[MetricSnapshot] = deque()
        self._alerts: deque[Alert] = deque(maxlen=max_alerts)
        self._subscribers: list[Callable[[Alert], Any]] = []
        self._started_at = clock()
        self._collector = PeriodicTask("metrics-collector", interval, self.collect_metrics)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[Alert], Any]) -> None:
        """Register a callable invoked synchronously with every new Alert."""
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[Alert], Any]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def _health_for(self, service: str) -> _ServiceHealth:
        health = self._health.get(service)
        if health is None:
            health = self._health[service] = _ServiceHealth(self.thresholds.window_size)
        return health

    def track_api_key_access(
        self,
        service: str,
        module: Optional[str] = None,
        success: bool = True,
        duration: float = 0.0,
    ) -> None:
        """Record one key access and evaluate error-rate and response-time alerts."""
        try:
            with self._lock:
                self._interval.record_access(service, module, success, duration)
                self._totals.record_access(service, module, success, duration)
                health = self._health_for(service)
                health.window.append((success, duration))
                self._check_access_thresholds(service, health)
        except Exception as err:
            logger.exception("Failed to track API key access for %s: %s", service, err)

    def track_api_key_rotation(
        self, service: str, success: bool = True, error: Optional[str] = None,
    ) -> None:
        """Record one rotation outcome and evaluate consecutive-failure alerts."""
        try:
            with self._lock:
                self._interval.record_rotation(service, success)
                self._totals.record_rotation(service, success)
                health = self._health_for(service)
                if success:
                    health.consecutive_rotation_failures = 0
                    self._firing.discard((AlertType.ROTATION_FAILURE, service))
                    return
                health.consecutive_rotation_failures += 1
                if health.consecutive_rotation_failures == self.thresholds.rotation_failures:
                    self._raise_alert(AlertType.ROTATION_FAILURE, service, {
                        "consecutive_failures": health.consecutive_rotation_failures,
                        "threshold": self.thresholds.rotation_failures,
                        "error": error,
                    })
        except Exception as err:
            logger.exception("Failed to track API key rotation for %s: %s", service, err)

    def track_api_key_quota(self, service: str, quota: float, used: float) -> None:
        """Record quota usage and evaluate the quota-usage alert."""
        try:
            with self._lock:
                usage = used / quota if quota else 1.0
                health = self._health_for(service)
                health.quota = {"quota": quota, "used": used, "usage": usage}
                self._evaluate(
                    AlertType.QUOTA_USAGE, service,
                    usage >= self.thresholds.quota_usage,
                    {"quota": quota, "used": used, "usage": usage,
                     "threshold": self.thresholds.quota_usage},
                )
        except Exception as err:
            logger.exception("Failed to track API key quota for %s: %s", service, err)

    def observe_rotation(self, event: RotationEvent) -> None:
        """Rotation observer: feeds rotation events into the counters."""
        self.track_api_key_rotation(event.service, success=event.success, error=event.error)

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def _check_access_thresholds(self, service: str, health: _ServiceHealth) -> None:
        window = health.window
        if len(window) < self.thresholds.min_requests:
            return
        failed = sum(1 for success, _ in window if not success)
        error_rate = failed / len(window)
        self._evaluate(
            AlertType.ERROR_RATE, service,
            error_rate > self.thresholds.error_rate,
            {"error_rate": error_rate, "window": len(window),
             "threshold": self.thresholds.error_rate},
        )
        average = sum(duration for _, duration in window) / len(window)
        self._evaluate(
            AlertType.RESPONSE_TIME, service,
            average > self.thresholds.response_time,
            {"average": average, "window": len(window),
             "threshold": self.thresholds.response_time},
        )

    def _evaluate(self, alert_type: AlertType, service: str, breached: bool, payload: dict) -> None:
        """Fire once when a condition is crossed; re-arm when it clears."""
        key = (alert_type, service)
        if not breached:
            self._firing.discard(key)
            return
        if key in self._firing:
            return
        self._firing.add(key)
        self._raise_alert(alert_type, service, payload)

    def _raise_alert(self, alert_type: AlertType, service: Optional[str], payload: dict) -> Alert:
        alert = Alert(
            id=uuid.uuid4().hex,
            type=alert_type,
            timestamp=self._clock(),
            service=service,
            payload=payload,
        )
        self._alerts.append(alert)
        logger.warning("Alert %s for service=%s: %s", alert_type.value, service, payload)
        for callback in list(self._subscribers):
            try:
                callback(alert)
            except Exception as err:
                logger.exception("Alert subscriber failed: %s", err)
        return alert

    def get_alerts(self, limit: Optional[int] = None) -> list[Alert]:
        """Alerts newest first."""
        with self._lock:
            alerts = sorted(self._alerts, key=lambda a: a.timestamp, reverse=True)
        return alerts[:limit] if limit else alerts

    def clear_alerts(self) -> None:
        with self._lock:
            self._alerts.clear()
            self._firing.clear()

    # ------------------------------------------------------------------
    # Snapshots & reports
    # ------------------------------------------------------------------

    def collect_metrics(self) -> Optional[MetricSnapshot]:
        """Append the interval's snapshot to history and prune old snapshots."""
        try:
            with self._lock:
                now = self._clock()
                snapshot = self._interval.snapshot(now)
                self._interval = _Counters()
                self._history.append(snapshot)
                horizon = now - self.retention
                while self._history and self._history[0].timestamp < horizon:
                    self._history.popleft()
            return snapshot
        except Exception as err:
            logger.exception("Failed to collect API key metrics: %s", err)
            return None

    @property
    def history(self) -> list[MetricSnapshot]:
        with self._lock:
            return list(self._history)

    @staticmethod
    def _aggregate(snapshots: list[MetricSnapshot]) -> dict:
        requests = {"total": 0, "success": 0, "failed": 0}
        rotations = {"total": 0, "success": 0, "failed": 0}
        response = {"count": 0, "total": 0.0, "max": 0.0}
        services: dict[str, dict] = {}
        for snapshot in snapshots:
            for name in requests:
                requests[name] += snapshot.requests.get(name, 0)
                rotations[name] += snapshot.rotations.get(name, 0)
            response["count"] += snapshot.response_time.get("count", 0)
            response["total"] += snapshot.response_time.get("total", 0.0)
            response["max"] = max(response["max"], snapshot.response_time.get("max", 0.0))
            for service, counters in snapshot.per_service.items():
                merged = services.setdefault(service, _service_counters())
                for name, value in counters.items():
                    if name == "modules":
                        for module, count in value.items():
                            merged["modules"][module] = merged["modules"].get(module, 0) + count
                    elif name == "response_time_max":
                        merged[name] = max(merged[name], value)
                    else:
                        merged[name] += value
        return {
            "requests": requests,
            "rotations": rotations,
            "response_time": response,
            "services": services,
        }

    @staticmethod
    def _format_services(services: dict, quotas: dict) -> dict:
        report = {}
        for service, counters in sorted(services.items()):
            requests = counters["requests"]
            report[service] = {
                "requests": requests,
                "success": counters["success"],
                "failed": counters["failed"],
                "error_rate": counters["failed"] / requests if requests else 0.0,
                "average_response_time": (
                    counters["response_time_total"] / requests if requests else 0.0
                ),
                "max_response_time": counters["response_time_max"],
                "rotations": counters["rotations"],
                "rotation_failures": counters["rotation_failures"],
                "modules": dict(sorted(counters["modules"].items())),
                "quota": quotas.get(service),
            }
        return report

    def generate_metrics_report(self, period: str = "day") -> dict:
        """Aggregate metrics of the last hour, day or week.

        Returns:
            ``{"period", "generated_at", "requests", "services", "rotations",
            "response_time", "alerts"}``.

        Raises:
            ValueError: If ``period`` is not one of hour, day or week.
        """
        if period not in REPORT_PERIODS:
            raise ValueError(
                f"Unknown report period {period!r}; expected one of {sorted(REPORT_PERIODS)}"
            )
        with self._lock:
            now = self._clock()
            since = now - REPORT_PERIODS[period]
            snapshots = [s for s in self._history if s.timestamp >= since]
            snapshots.append(self._interval.snapshot(now))
            quotas = {
                service: dict(health.quota)
                for service, health in self._health.items() if health.quota
            }
            alerts = {a.id: a for a in self._alerts if a.timestamp >= since}
        totals = self._aggregate(snapshots)
        response = totals["response_time"]
        return {
            "period": period,
            "generated_at": now,
            "requests": totals["requests"],
            "services": self._format_services(totals["services"], quotas),
            "rotations": totals["rotations"],
            "response_time": {
                "count": response["count"],
                "average": response["total"] / response["count"] if response["count"] else 0.0,
                "max": response["max"],
            },
            "alerts": [
                alert.model_dump(mode="json")
                for alert in sorted(alerts.values(), key=lambda a: a.timestamp, reverse=True)
            ],
        }

    def get_current_metrics(self) -> dict:
        """Cumulative counters since the service was created."""
        with self._lock:
            snapshot = self._totals.snapshot(self._clock())
            alerts = len(self._alerts)
        return {
            "since": self._started_at,
            "requests": snapshot.requests,
            "rotations": snapshot.rotations,
            "response_time": snapshot.response_time,
            "services": snapshot.per_service,
            "alerts": alerts,
            "snapshots": len(self._history),
        }

    # ------------------------------------------------------------------
    # Background collection
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._collector.start()

    async def stop(self) -> None:
        await self._collector.stop()
