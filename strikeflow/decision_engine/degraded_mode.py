"""
Degraded Mode Tracker

Records which optional data services are failing so health endpoints can
report partial operation. Decisions continue with the failed inputs
defaulted to neutral.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional
import logging
import threading

from strikeflow.signals.schemas import utcnow

LOG = logging.getLogger(__name__)

SERVICES = ('CONTEXT', 'POSITIONING', 'GEX', 'PRICE', 'DATABASE')


@dataclass
class ServiceStatus:
    name: str
    healthy: bool = True
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    failure_count: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'name': self.name,
            'healthy': self.healthy,
            'last_error': self.last_error,
            'last_error_time': self.last_error_time.isoformat() if self.last_error_time else None,
            'last_success_time': self.last_success_time.isoformat() if self.last_success_time else None,
            'failure_count': self.failure_count,
        }


class DegradedModeTracker:
    """Thread-safe per-service health tracker"""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._lock = threading.RLock()
        self._services: Dict[str, ServiceStatus] = {name: ServiceStatus(name) for name in SERVICES}

    def record_failure(self, service: str, error: str):
        with self._lock:
            status = self._services.setdefault(service, ServiceStatus(service))
            was_healthy = status.healthy
            status.healthy = False
            status.last_error = error
            status.last_error_time = self._clock()
            status.failure_count += 1
        if was_healthy:
            LOG.warning(f"DEGRADED MODE: {service} service impaired ({error})")

    def record_success(self, service: str):
        with self._lock:
            status = self._services.setdefault(service, ServiceStatus(service))
            recovered = not status.healthy
            status.healthy = True
            status.last_error = None
            status.last_error_time = None
            status.last_success_time = self._clock()
        if recovered:
            LOG.info(f"{service} service recovered")

    def is_service_healthy(self, service: str) -> bool:
        with self._lock:
            status = self._services.get(service)
            return status.healthy if status else False

    def degraded_services(self) -> List[str]:
        with self._lock:
            return [s.name for s in self._services.values() if not s.healthy]

    def get_status(self) -> dict:
        with self._lock:
            unhealthy = self.degraded_services()
            if unhealthy:
                message = f"System degraded: {', '.join(unhealthy)} service(s) impaired"
            else:
                message = "All services operational"
            return {
                'degraded': bool(unhealthy),
                'services': [s.to_dict() for s in self._services.values()],
                'message': message,
            }

    def reset(self):
        with self._lock:
            for name in list(self._services):
                self.record_success(name)
