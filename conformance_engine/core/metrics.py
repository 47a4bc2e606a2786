"""
Metrics for the conformance engine.

Validation counts and latency, issue volume by severity and kind, and
package loading results.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Generator, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info

if TYPE_CHECKING:
    from .outcome import Outcome
    from .package_loader import LoadSummary


class ConformanceMetrics:
    """
    Domain-specific metrics collector.

    Tracks:
    - Validation calls and their pass/fail result
    - Issues by severity and kind
    - Package loads and per-artifact results
    - Fatal (configuration class) errors
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.validations_total = Counter(
            "conformance_validations_total",
            "Validation calls by resource type and result",
            labelnames=["resource_type", "result"],
            registry=self.registry
        )

        self.validation_duration = Histogram(
            "conformance_validation_duration_seconds",
            "Time spent validating one instance",
            labelnames=["resource_type"],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
            registry=self.registry
        )

        self.issues_total = Counter(
            "conformance_issues_total",
            "Validation issues by severity and kind",
            labelnames=["severity", "code"],
            registry=self.registry
        )

        self.package_loads = Counter(
            "conformance_package_loads_total",
            "Package load attempts",
            labelnames=["package", "status"],
            registry=self.registry
        )

        self.artifacts_loaded = Counter(
            "conformance_artifacts_total",
            "Package artifacts by load status",
            labelnames=["status"],
            registry=self.registry
        )

        self.fatal_errors = Counter(
            "conformance_fatal_errors_total",
            "Configuration or loader errors that aborted a call",
            labelnames=["category", "error_code"],
            registry=self.registry
        )

        self.service_info = Info(
            "conformance_service",
            "Conformance engine service information",
            registry=self.registry
        )

    def record_validation(
        self,
        resource_type: str,
        outcome: "Outcome"
    ):
        """Record a completed validation call."""
        result = "valid" if outcome.is_valid() else "invalid"
        self.validations_total.labels(resource_type=resource_type, result=result).inc()
        for issue in outcome.issues:
            self.issues_total.labels(severity=issue.severity.value, code=issue.code).inc()

    def record_package_load(self, summary: "LoadSummary"):
        """Record a package load and its artifact counts."""
        status = "partial" if summary.failures else "success"
        self.package_loads.labels(package=summary.package, status=status).inc()
        self.artifacts_loaded.labels(status="loaded").inc(summary.loaded)
        self.artifacts_loaded.labels(status="skipped").inc(summary.skipped)
        self.artifacts_loaded.labels(status="ignored").inc(summary.ignored)
        self.artifacts_loaded.labels(status="failed").inc(summary.failed)

    def record_fatal_error(self, category: str, error_code: str):
        """Record a call-aborting error."""
        self.fatal_errors.labels(category=category, error_code=error_code).inc()

    @contextmanager
    def time_validation(self, resource_type: str) -> Generator[float, None, None]:
        """Context manager to time a validation call."""
        start_time = time.time()
        try:
            yield start_time
        finally:
            duration = time.time() - start_time
            self.validation_duration.labels(resource_type=resource_type).observe(duration)

    def set_service_info(self, **info_labels: str):
        """Set service information labels."""
        self.service_info.info(info_labels)


# Global metrics instance
metrics = ConformanceMetrics()
