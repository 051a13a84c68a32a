"""
Endpoint Manager
Per-mirror circuit breakers with priority-ordered failover

States:
- closed: healthy, eligible
- open: tripped after consecutive errors, skipped until the recovery timeout
- half_open: probing after recovery; closes after enough probes, reopens on any error
"""
import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from ..models.endpoint import CircuitState, Endpoint, EndpointConfig
from .event_bus import EventBus, Events

logger = logging.getLogger(__name__)


class EndpointManager:
    """Single lock-guarded authority over mirror health"""

    def __init__(
        self,
        endpoints: Iterable[Union[EndpointConfig, str]],
        error_threshold: int = 3,
        recovery_timeout: float = 300.0,
        half_open_max_probes: int = 2,
        clock: Callable[[], float] = time.monotonic,
        event_bus: Optional[EventBus] = None,
    ):
        configs = self._normalize_configs(endpoints)
        if not configs:
            raise ValueError("EndpointManager requires at least one endpoint")

        self._lock = threading.RLock()
        self._clock = clock
        self.event_bus = event_bus
        self._error_threshold = max(1, int(error_threshold))
        self._recovery_timeout = max(0.0, float(recovery_timeout))
        self._half_open_max_probes = max(1, int(half_open_max_probes))

        self._endpoints: Dict[str, Endpoint] = {}
        for cfg in sorted(configs, key=lambda c: c.priority):
            self._endpoints[cfg.id] = Endpoint(id=cfg.id, base_url=cfg.base_url.rstrip("/"), priority=cfg.priority)

    @classmethod
    def from_settings(cls, settings, event_bus: Optional[EventBus] = None, clock=time.monotonic) -> "EndpointManager":
        return cls(
            settings.get_endpoint_configs(),
            error_threshold=settings.get("circuit_error_threshold", 3),
            recovery_timeout=settings.get("circuit_recovery_seconds", 300.0),
            half_open_max_probes=settings.get("circuit_half_open_probes", 2),
            clock=clock,
            event_bus=event_bus,
        )

    @staticmethod
    def _normalize_configs(endpoints) -> List[EndpointConfig]:
        configs = []
        for idx, item in enumerate(endpoints or [], start=1):
            if isinstance(item, EndpointConfig):
                configs.append(item)
                continue
            url = str(item or "").strip().rstrip("/")
            if url:
                configs.append(EndpointConfig(
                    id="primary" if not configs else f"mirror_{len(configs)}",
                    base_url=url,
                    priority=idx,
                ))
        return configs

    def select(self) -> Endpoint:
        """
        Best eligible endpoint (lowest priority number among closed/half_open).

        Open endpoints past the recovery timeout move to half_open here. Picking
        a half_open endpoint counts as a probe. With every circuit open the
        highest-priority endpoint is returned anyway.
        """
        with self._lock:
            now = self._clock()
            for endpoint in self._ordered():
                self._maybe_half_open(endpoint, now)

            for endpoint in self._ordered():
                if not endpoint.is_eligible:
                    continue
                if endpoint.circuit_state == CircuitState.HALF_OPEN:
                    endpoint.half_open_probe_count += 1
                return endpoint.snapshot()

            primary = self._ordered()[0]
            logger.warning("All circuits open, forcing primary endpoint %s", primary.id)
            return primary.snapshot()

    def report_success(self, url: str):
        transition = None
        with self._lock:
            endpoint = self._find_by_url(url)
            if endpoint is None:
                logger.debug("Success reported for unknown endpoint %s", url)
                return
            endpoint.consecutive_error_count = 0
            endpoint.last_success_at = self._clock()
            if (
                endpoint.circuit_state == CircuitState.HALF_OPEN
                and endpoint.half_open_probe_count >= self._half_open_max_probes
            ):
                endpoint.circuit_state = CircuitState.CLOSED
                endpoint.half_open_probe_count = 0
                endpoint.opened_at = None
                logger.info("Circuit closed for %s, endpoint recovered", endpoint.id)
                transition = (Events.CIRCUIT_CLOSED, endpoint.to_dict())
        self._emit(transition)

    def report_error(self, url: str):
        transition = None
        with self._lock:
            endpoint = self._find_by_url(url)
            if endpoint is None:
                logger.warning("Error reported for unknown endpoint %s", url)
                return
            now = self._clock()
            endpoint.consecutive_error_count += 1
            endpoint.last_error_at = now

            if endpoint.circuit_state == CircuitState.HALF_OPEN:
                self._open(endpoint, now)
                logger.warning("Probe failed for %s, circuit reopened", endpoint.id)
                transition = (Events.CIRCUIT_OPENED, endpoint.to_dict())
            elif (
                endpoint.circuit_state == CircuitState.CLOSED
                and endpoint.consecutive_error_count >= self._error_threshold
            ):
                self._open(endpoint, now)
                logger.warning(
                    "Circuit open for %s after %d errors, failing over for %ds",
                    endpoint.id, endpoint.consecutive_error_count, int(self._recovery_timeout),
                )
                transition = (Events.CIRCUIT_OPENED, endpoint.to_dict())
            else:
                logger.debug(
                    "%s: error_count=%d state=%s",
                    endpoint.id, endpoint.consecutive_error_count, endpoint.circuit_state.value,
                )
        self._emit(transition)

    def status(self) -> List[Endpoint]:
        """Copies of every endpoint, priority order"""
        with self._lock:
            return [e.snapshot() for e in self._ordered()]

    def reset_all(self):
        with self._lock:
            for endpoint in self._endpoints.values():
                endpoint.circuit_state = CircuitState.CLOSED
                endpoint.consecutive_error_count = 0
                endpoint.half_open_probe_count = 0
                endpoint.opened_at = None
                endpoint.last_error_at = None
        logger.info("All circuit breakers reset")

    def all_endpoints(self) -> List[Tuple[str, str]]:
        with self._lock:
            return [(e.id, e.base_url) for e in self._ordered()]

    def get(self, endpoint_id: str) -> Optional[Endpoint]:
        with self._lock:
            endpoint = self._endpoints.get(endpoint_id)
            return endpoint.snapshot() if endpoint else None

    def _ordered(self) -> List[Endpoint]:
        return sorted(self._endpoints.values(), key=lambda e: e.priority)

    def _find_by_url(self, url: str) -> Optional[Endpoint]:
        normalized = str(url or "").rstrip("/")
        for endpoint in self._endpoints.values():
            if endpoint.base_url == normalized:
                return endpoint
        return None

    def _open(self, endpoint: Endpoint, now: float):
        endpoint.circuit_state = CircuitState.OPEN
        endpoint.opened_at = now
        endpoint.half_open_probe_count = 0

    def _maybe_half_open(self, endpoint: Endpoint, now: float):
        if endpoint.circuit_state != CircuitState.OPEN:
            return
        opened_at = endpoint.opened_at if endpoint.opened_at is not None else now
        if now - opened_at >= self._recovery_timeout:
            endpoint.circuit_state = CircuitState.HALF_OPEN
            endpoint.half_open_probe_count = 0
            logger.info("Circuit half-open for %s, probing", endpoint.id)
            if self.event_bus:
                self.event_bus.emit(Events.CIRCUIT_HALF_OPEN, endpoint.to_dict())

    def _emit(self, transition):
        if transition and self.event_bus:
            self.event_bus.emit(*transition)
