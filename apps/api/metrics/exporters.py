"""Render the metrics registry for scraping."""
from __future__ import annotations

import logging

from .registry import CounterMetric, MetricsRegistry

logger = logging.getLogger(__name__)


class PrometheusExporter:
    """Generate Prometheus text exposition output."""

    content_type = "text/plain; version=0.0.4"

    def __init__(self, registry: MetricsRegistry) -> None:
        self.registry = registry

    def build_payload(self) -> str:
        lines: list[str] = []
        for metric in sorted(self.registry.metrics(), key=lambda m: m.name):
            metric_type = "counter" if isinstance(metric, CounterMetric) else "summary"
            lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric_type}")
            for labels, values in sorted(metric.snapshot().items()):
                label_text = ""
                if labels:
                    pairs = [f'{name}="{value}"' for name, value in zip(metric.label_names, labels)]
                    label_text = "{" + ",".join(pairs) + "}"
                if "value" in values:
                    lines.append(f"{metric.name}{label_text} {values['value']}")
                else:
                    lines.append(f"{metric.name}_count{label_text} {values['count']}")
                    lines.append(f"{metric.name}_sum{label_text} {values['sum']}")
        payload = "\n".join(lines) + "\n"
        logger.debug("Rendered %d metric lines", len(lines))
        return payload
