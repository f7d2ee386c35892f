"""
Alert Hub

Central append-only log of typed notifications with read/unread state,
per-job filtering and publish/subscribe fan-out to listeners (the dashboard).

Features:
- Typed alerts (error, warning, info, success)
- Synchronous fan-out in subscription order
- Subscriber failure isolation
- Newest-first listing with job/type/unread filters
- Bounded history (oldest alerts dropped first)

Usage:
    from parcelflow.core.alerting import AlertHub
    from parcelflow.core.models import AlertType

    hub = AlertHub(history_limit=1000)
    unsubscribe = hub.subscribe(lambda alert: print(alert.message))

    hub.publish(AlertType.ERROR, "Job county-sync failed", job_id=job.id)
    hub.list(unread_only=True)
    unsubscribe()
"""
from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

from parcelflow.core import metrics
from parcelflow.core.errors import ResourceNotFoundError
from parcelflow.core.models import Alert, AlertType, new_id

logger = logging.getLogger(__name__)

AlertListener = Callable[[Alert], None]


class AlertHub:
    """
    Append-only alert log with synchronous subscriber fan-out.

    A single publish delivers its alert to every subscriber before the next
    publish starts delivering, so two alerts are never interleaved.
    """

    def __init__(self, history_limit: int = 1000):
        self.history_limit = history_limit
        self._alerts: "OrderedDict[str, Alert]" = OrderedDict()
        self._listeners: List[AlertListener] = []
        self._lock = threading.Lock()
        # Held across append + fan-out; re-entrant so a listener may publish.
        self._delivery_lock = threading.RLock()

    # =========================================================================
    # Publish / Subscribe
    # =========================================================================

    def publish(
        self,
        alert_type: AlertType,
        message: str,
        job_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Alert:
        alert = Alert(
            id=new_id("alert"),
            type=AlertType(alert_type),
            message=message,
            job_id=job_id,
            details=details,
        )

        with self._delivery_lock:
            with self._lock:
                self._alerts[alert.id] = alert
                while len(self._alerts) > self.history_limit:
                    self._alerts.popitem(last=False)
                listeners = list(self._listeners)

            metrics.record_alert(alert.type.value)
            log = logger.warning if alert.type in (AlertType.ERROR, AlertType.WARNING) else logger.info
            log(f"Alert [{alert.type.value}] {message}")

            for listener in listeners:
                try:
                    listener(alert)
                except Exception as e:
                    logger.error(f"Alert subscriber {listener!r} failed: {e}")

        return alert

    def success(self, message: str, job_id: Optional[str] = None, details=None) -> Alert:
        return self.publish(AlertType.SUCCESS, message, job_id, details)

    def error(self, message: str, job_id: Optional[str] = None, details=None) -> Alert:
        return self.publish(AlertType.ERROR, message, job_id, details)

    def warning(self, message: str, job_id: Optional[str] = None, details=None) -> Alert:
        return self.publish(AlertType.WARNING, message, job_id, details)

    def info(self, message: str, job_id: Optional[str] = None, details=None) -> Alert:
        return self.publish(AlertType.INFO, message, job_id, details)

    def subscribe(self, listener: AlertListener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # =========================================================================
    # Queries
    # =========================================================================

    def list(
        self,
        job_id: Optional[str] = None,
        alert_type: Optional[AlertType] = None,
        unread_only: bool = False,
        limit: Optional[int] = None,
    ) -> List[Alert]:
        """Alerts newest-first."""
        with self._lock:
            alerts = list(reversed(self._alerts.values()))

        if job_id is not None:
            alerts = [a for a in alerts if a.job_id == job_id]
        if alert_type is not None:
            alerts = [a for a in alerts if a.type == AlertType(alert_type)]
        if unread_only:
            alerts = [a for a in alerts if not a.is_read]
        if limit is not None:
            alerts = alerts[:limit]
        return alerts

    def get(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            return self._alerts.get(alert_id)

    def mark_read(self, alert_id: str) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return False
            alert.is_read = True
            return True

    def require(self, alert_id: str) -> Alert:
        alert = self.get(alert_id)
        if alert is None:
            raise ResourceNotFoundError("PFLW-2005", alert_id=alert_id)
        return alert

    def mark_all_read(self, job_id: Optional[str] = None) -> int:
        count = 0
        with self._lock:
            for alert in self._alerts.values():
                if alert.is_read or (job_id is not None and alert.job_id != job_id):
                    continue
                alert.is_read = True
                count += 1
        return count

    def unread_count(self, job_id: Optional[str] = None) -> int:
        with self._lock:
            return sum(
                1 for a in self._alerts.values()
                if not a.is_read and (job_id is None or a.job_id == job_id)
            )

    def clear(self):
        with self._lock:
            self._alerts.clear()
