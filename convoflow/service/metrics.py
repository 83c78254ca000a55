from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from typing import Dict, Optional


@dataclass
class TurnMetrics:
    tokens_used: int
    processing_time_ms: float = 0.0
    nodes_visited: int = 0
    error_code: Optional[str] = None
    flow_id: Optional[str] = None
    node_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TenantMetrics:
    turns: int = 0
    tokens_used: int = 0
    errors: int = 0
    nodes_visited: int = 0
    total_processing_ms: float = 0.0
    error_codes: Dict[str, int] = field(default_factory=dict)

    @property
    def average_processing_ms(self) -> float:
        return self.total_processing_ms / self.turns if self.turns else 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["average_processing_ms"] = round(self.average_processing_ms, 3)
        return data


class MetricsAggregator:
    """Per-tenant running totals of turn metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tenants: Dict[str, TenantMetrics] = {}

    def record(self, tenant_id: str, metrics: TurnMetrics) -> None:
        with self._lock:
            totals = self._tenants.setdefault(tenant_id, TenantMetrics())
            totals.turns += 1
            totals.tokens_used += metrics.tokens_used
            totals.nodes_visited += metrics.nodes_visited
            totals.total_processing_ms += metrics.processing_time_ms
            if metrics.error_code:
                totals.errors += 1
                totals.error_codes[metrics.error_code] = (
                    totals.error_codes.get(metrics.error_code, 0) + 1
                )

    def get(self, tenant_id: str) -> dict:
        with self._lock:
            totals = self._tenants.get(tenant_id) or TenantMetrics()
            return totals.to_dict()

    def reset(self, tenant_id: Optional[str] = None) -> None:
        with self._lock:
            if tenant_id is None:
                self._tenants.clear()
            else:
                self._tenants.pop(tenant_id, None)
