"""
commonsgov/metrics.py

Prometheus metrics collection for commonsgov.

Exposes ledger, weight snapshot and proposal state of a GovernanceEngine
in Prometheus text format.
"""

import logging
from typing import TYPE_CHECKING, Dict, List

if TYPE_CHECKING:
    from .engine import GovernanceEngine

logger = logging.getLogger("commonsgov.metrics")


class MetricsCollector:
    """
    Prometheus metrics collector for commonsgov.

    Usage:
        from commonsgov import GovernanceEngine
        from commonsgov.metrics import MetricsCollector

        engine = GovernanceEngine()
        metrics = MetricsCollector(engine)

        # Get metrics in Prometheus format
        prometheus_output = metrics.collect()
    """

    # Metric definitions
    METRICS = {
        "commonsgov_contributions_total": {
            "type": "counter",
            "help": "Contributions recorded in the ledger",
        },
        "commonsgov_contributors": {
            "type": "gauge",
            "help": "Distinct contributors in the ledger",
        },
        "commonsgov_duplicate_proofs_total": {
            "type": "counter",
            "help": "Replayed proofs with identical fields",
        },
        "commonsgov_proof_conflicts_total": {
            "type": "counter",
            "help": "Replayed proofs with conflicting fields (manual review)",
        },
        "commonsgov_rejected_contributions_total": {
            "type": "counter",
            "help": "Contributions rejected as invalid",
        },
        "commonsgov_system_total_weight": {
            "type": "gauge",
            "help": "System total raw weight of the latest snapshot run",
        },
        "commonsgov_snapshot_age_seconds": {
            "type": "gauge",
            "help": "Seconds since the latest snapshot run",
        },
        "commonsgov_proposals": {
            "type": "gauge",
            "help": "Proposals by status",
        },
        "commonsgov_rounds_closed_total": {
            "type": "counter",
            "help": "Voting rounds closed",
        },
        "commonsgov_rounds_veto_blocked_total": {
            "type": "counter",
            "help": "Voting rounds blocked by a veto",
        },
        "commonsgov_zap_votes_total": {
            "type": "counter",
            "help": "Zap votes recorded",
        },
        "commonsgov_economic_nodes": {
            "type": "gauge",
            "help": "Active economic nodes",
        },
    }

    def __init__(self, engine: "GovernanceEngine"):
        """
        Initialize metrics collector.

        Args:
            engine: GovernanceEngine to collect metrics from
        """
        self.engine = engine

    def collect(self) -> str:
        """
        Collect all metrics and return in Prometheus format.

        Returns:
            Prometheus-formatted metrics string
        """
        lines: List[str] = []
        described = set()

        def add_metric(name: str, value: float, labels: Dict[str, str] = None):
            if name not in described:
                metric_def = self.METRICS.get(name, {})
                lines.append(f"# HELP {name} {metric_def.get('help', '')}")
                lines.append(f"# TYPE {name} {metric_def.get('type', 'gauge')}")
                described.add(name)

            if labels:
                label_str = ",".join(f'{k}="{v}"' for k, v in labels.items())
                lines.append(f"{name}{{{label_str}}} {value}")
            else:
                lines.append(f"{name} {value}")

        stats = self.engine.get_stats()
        ledger = stats["ledger"]
        add_metric("commonsgov_contributions_total", ledger["contributions"])
        add_metric("commonsgov_contributors", ledger["contributors"])
        add_metric("commonsgov_duplicate_proofs_total", ledger["duplicates_seen"])
        add_metric("commonsgov_proof_conflicts_total", ledger["conflicts_seen"])
        add_metric("commonsgov_rejected_contributions_total", ledger["rejected"])

        snapshots = stats["snapshots"]
        add_metric("commonsgov_system_total_weight", snapshots["system_total_weight"])
        if snapshots["latest_computed_at"] is not None:
            age = max(0, self.engine.now() - snapshots["latest_computed_at"])
            add_metric("commonsgov_snapshot_age_seconds", age)

        proposals = stats["proposals"]
        for status, count in proposals["by_status"].items():
            add_metric("commonsgov_proposals", count, {"status": status})
        add_metric("commonsgov_rounds_closed_total", proposals["rounds_closed"])
        add_metric("commonsgov_rounds_veto_blocked_total", proposals["rounds_veto_blocked"])

        add_metric("commonsgov_zap_votes_total", stats["zap_votes"])
        add_metric("commonsgov_economic_nodes", stats["economic_nodes"])

        logger.debug(f"Collected {len(described)} metric families")
        return "\n".join(lines) + "\n"
