import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, asdict

log = logging.getLogger(__name__)

ACTIVITY_WINDOW = 5 * 60
ACTIVITY_THRESHOLD = 10
ALERT_RETENTION = 24 * 60 * 60
EVENT_RETENTION = 1000

LOW, MEDIUM, HIGH, CRITICAL = 'LOW', 'MEDIUM', 'HIGH', 'CRITICAL'

SEVERITY = {
    'SUSPICIOUS_ACTIVITY': MEDIUM,
    'RATE_LIMIT_EXCEEDED': HIGH,
    'UNAUTHORIZED_ACCESS': HIGH,
    'MALICIOUS_INPUT': HIGH,
    'SYSTEM_ERROR': LOW,
    'PERMISSION_VIOLATION': MEDIUM,
}


@dataclass
class SecurityEvent:
    timestamp: float
    type: str
    identity: str | None
    outcome: str
    detail: dict = field(default_factory=dict)


@dataclass
class Alert:
    id: str
    type: str
    severity: str
    data: dict
    timestamp: float
    acknowledged: bool = False


def threat_level(alerts):
    high = sum(1 for a in alerts if a.severity == HIGH and not a.acknowledged)
    medium = sum(1 for a in alerts if a.severity == MEDIUM and not a.acknowledged)
    if high >= 3:
        return CRITICAL
    if high >= 1 or medium >= 5:
        return HIGH
    if medium >= 2:
        return MEDIUM
    return LOW


class SecurityMonitor:
    def __init__(self, clock=time.time, event_retention=EVENT_RETENTION):
        self._clock = clock
        self._lock = threading.RLock()
        self._alerts: list[Alert] = []
        self._activity: dict[str, list[float]] = {}
        self._events: list[SecurityEvent] = []
        self._event_retention = event_retention
        self.threat_level = LOW
        self.metrics = {
            'total_scans': 0,
            'failed_scans': 0,
            'suspicious_activities': 0,
            'security_alerts': 0,
        }

    def record_event(self, type, identity, outcome, **detail):
        event = SecurityEvent(self._clock(), type, identity, outcome, detail)
        with self._lock:
            self._events.append(event)
            if len(self._events) > self._event_retention:
                del self._events[:len(self._events) - self._event_retention]
        log.debug('security event %s identity=%s outcome=%s', type, identity, outcome)
        return event

    def count(self, metric, n=1):
        with self._lock:
            self.metrics[metric] = self.metrics.get(metric, 0) + n

    def events(self, limit=100):
        with self._lock:
            return list(self._events[-limit:])

    def clear_events(self):
        with self._lock:
            self._events.clear()

    def track_activity(self, identity, activity, details=None):
        key = f'{identity}:{activity}'
        now = self._clock()
        with self._lock:
            recent = [ts for ts in self._activity.get(key, []) if now - ts < ACTIVITY_WINDOW]
            recent.append(now)
            self._activity[key] = recent
            if len(recent) < ACTIVITY_THRESHOLD:
                return None
            self.metrics['suspicious_activities'] += 1
            return self.create_alert('SUSPICIOUS_ACTIVITY', {
                'identity': identity,
                'activity': activity,
                'count': len(recent),
                'details': details or {},
            })

    def create_alert(self, type, data):
        alert = Alert(uuid.uuid4().hex, type, SEVERITY.get(type, LOW), data, self._clock())
        with self._lock:
            self._alerts.append(alert)
            self.metrics['security_alerts'] += 1
            self.threat_level = threat_level(self._alerts)
        log.warning('security alert %s severity=%s threat=%s', type, alert.severity, self.threat_level)
        return alert

    def acknowledge_alert(self, alert_id):
        with self._lock:
            for alert in self._alerts:
                if alert.id == alert_id:
                    alert.acknowledged = True
                    self.threat_level = threat_level(self._alerts)
                    return True
        return False

    def alerts(self, include_acknowledged=False):
        with self._lock:
            return [a for a in self._alerts if include_acknowledged or not a.acknowledged]

    def clear_old_alerts(self):
        cutoff = self._clock() - ALERT_RETENTION
        with self._lock:
            before = len(self._alerts)
            self._alerts = [a for a in self._alerts if a.timestamp > cutoff]
            self.threat_level = threat_level(self._alerts)
            return before - len(self._alerts)

    def prune_activity(self):
        now = self._clock()
        with self._lock:
            stale = [k for k, stamps in self._activity.items() if not stamps or now - stamps[-1] >= ACTIVITY_WINDOW]
            for k in stale:
                del self._activity[k]
        return len(stale)

    def status(self):
        now = self._clock()
        with self._lock:
            return {
                'threat_level': self.threat_level,
                'alerts': [asdict(a) for a in self._alerts if not a.acknowledged],
                'metrics': dict(self.metrics),
                'suspicious_activities': sum(1 for stamps in self._activity.values()
                                             if stamps and now - stamps[-1] < ACTIVITY_WINDOW),
                'events': len(self._events),
            }
