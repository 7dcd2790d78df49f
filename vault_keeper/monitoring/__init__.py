"""
Monitoring module for the Vault Keeper.

Prometheus metrics for keeper cycles. Metrics live in their own registry so
that several keepers (and the test suite) can create them independently.
"""

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

from vault_keeper.core.models import CycleReport, StepStatus

logger = structlog.get_logger(__name__)

NAMESPACE = "vault_keeper"


class KeeperMetrics:
    """Counters and gauges updated after every cycle."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()

        self.cycles = Counter(
            "cycles",
            "Keeper cycles run, by outcome",
            ["outcome"],
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.step_failures = Counter(
            "step_failures",
            "Failed cycle steps",
            ["step"],
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.harvested = Counter(
            "harvested_amount",
            "Withheld fees harvested, in raw token units",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.distributed = Counter(
            "distributed_amount",
            "Reward asset sent to holders, the project wallet and the keeper",
            ["asset"],
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.undistributed = Gauge(
            "undistributed_amount",
            "Value recorded as undistributed, by asset",
            ["asset"],
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.keeper_balance = Gauge(
            "keeper_balance_lamports",
            "Keeper operating balance",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.fee_bps = Gauge(
            "transfer_fee_bps",
            "Active transfer fee",
            namespace=NAMESPACE,
            registry=self.registry,
        )

    def observe_cycle(self, report: CycleReport, reward_asset: str | None = None) -> None:
        """Record the outcome of a finished cycle."""
        if report.cancelled:
            outcome = "cancelled"
        elif report.complete:
            outcome = "complete"
        else:
            outcome = "incomplete"
        self.cycles.labels(outcome=outcome).inc()

        for step, step_outcome in report.steps.items():
            if step_outcome.status == StepStatus.FAILED:
                self.step_failures.labels(step=step).inc()

        if report.harvested:
            self.harvested.inc(report.harvested)
        if report.distributed and reward_asset:
            self.distributed.labels(asset=reward_asset).inc(report.distributed)

    def set_undistributed(self, totals: dict[str, int]) -> None:
        for asset, amount in totals.items():
            self.undistributed.labels(asset=asset).set(amount)


def start_metrics_server(port: int, metrics: KeeperMetrics) -> None:
    """Expose the metrics registry over HTTP."""
    logger.info("Starting metrics server", port=port)
    start_http_server(port, registry=metrics.registry)


__all__ = ["KeeperMetrics", "start_metrics_server"]
