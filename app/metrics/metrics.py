from prometheus_client import CollectorRegistry, Counter, Histogram, REGISTRY

from typing import Optional

# =====================================
# METRICS COLLECTOR
# =====================================

class MetricsCollector:
    """Prometheus metrics collector for the authorization engine"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        registry = registry if registry is not None else REGISTRY

        # Counter metrics
        self.permission_checks_total = Counter(
            'permission_checks_total',
            'Total permission checks',
            ['source', 'granted'],  # source=systemadmin|admin_role|cache|authority
            registry=registry,
        )

        self.permission_cache_errors_total = Counter(
            'permission_cache_errors_total',
            'Cache store failures recovered by falling through to the authority',
            ['operation'],  # operation=get|set|delete|delete_pattern
            registry=registry,
        )

        self.permission_cache_invalidations_total = Counter(
            'permission_cache_invalidations_total',
            'Cache invalidations by scope',
            ['scope'],  # scope=role|user|resource|all|derived
            registry=registry,
        )

        self.permission_version_bumps_total = Counter(
            'permission_version_bumps_total',
            'Role permission version bumps',
            ['role'],
            registry=registry,
        )

        # Histogram metrics
        self.permission_check_duration = Histogram(
            'permission_check_duration_seconds',
            'Time taken to resolve a permission check',
            ['method'],
            registry=registry,
        )

    def record_permission_check(self, source: str, granted: bool):
        """Record permission check"""
        self.permission_checks_total.labels(
            source=source,
            granted=str(granted).lower(),
        ).inc()

    def record_cache_error(self, operation: str):
        self.permission_cache_errors_total.labels(operation=operation).inc()

    def record_invalidation(self, scope: str):
        self.permission_cache_invalidations_total.labels(scope=scope).inc()

    def record_version_bump(self, role: str):
        self.permission_version_bumps_total.labels(role=role).inc()

    def observe_check_duration(self, method: str, duration: float):
        self.permission_check_duration.labels(method=method).observe(duration)

# Global metrics instance, created lazily so importing never registers collectors
_metrics_collector: Optional[MetricsCollector] = None

def get_metrics() -> MetricsCollector:
    """Dependency to get metrics collector"""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector
