"""
Service health requirement evaluated against per-node health reports.

A requirement decides whether a cluster service is healthy enough given
which nodes report it as healthy. The health-check framework that gathers
the reports lives outside this package; the `status` command feeds bucket
node statuses through the same requirement.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum


class HealthStatus(Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class NodeHealth:
    """Health report for one service endpoint on one node."""

    node: str
    healthy: bool


@dataclass(frozen=True)
class HealthCheckResult:
    status: HealthStatus
    message: str = ""

    @property
    def is_healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY


@dataclass
class ServiceHealthNodeRequirement:
    """
    Node-count requirement for a service.

    Attributes:
        min_healthy_nodes: Fewer healthy nodes than this fails the check
        max_unhealthy_nodes: More unhealthy nodes than this fails the check;
            None means unlimited
    """

    min_healthy_nodes: int = 1
    max_unhealthy_nodes: int | None = None

    def evaluate(self, service: str, reports: Iterable[NodeHealth]) -> HealthCheckResult:
        """
        Evaluate node reports for one service.

        A node counts as healthy if any of its reports is healthy; reports
        for the same node are merged.

        Args:
            service: Service name used in the failure message
            reports: Per-node health reports

        Returns:
            HealthCheckResult, with a message naming unhealthy nodes on failure
        """
        all_nodes: list[str] = []
        healthy: set[str] = set()
        for report in reports:
            if report.node not in all_nodes:
                all_nodes.append(report.node)
            if report.healthy:
                healthy.add(report.node)

        unhealthy = [n for n in all_nodes if n not in healthy]
        too_few = len(healthy) < self.min_healthy_nodes
        too_many = (
            self.max_unhealthy_nodes is not None
            and len(unhealthy) > self.max_unhealthy_nodes
        )
        if not (too_few or too_many):
            return HealthCheckResult(HealthStatus.HEALTHY)

        message = f"Health check failed for service {service}"
        if not all_nodes:
            message += ", no nodes available."
        elif not unhealthy:
            message += f", {len(healthy)} healthy nodes."
        else:
            message += f" for nodes {', '.join(unhealthy)}."
        return HealthCheckResult(HealthStatus.UNHEALTHY, message)
