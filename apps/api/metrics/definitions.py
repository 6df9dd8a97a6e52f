"""Metric definitions used across the help-desk engine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

TICKETS_CREATED = "helpdesk_tickets_created_total"
STATUS_TRANSITIONS = "helpdesk_status_transitions_total"
AUDIT_ENTRIES = "helpdesk_audit_entries_total"
AUDIT_FAILURES = "helpdesk_audit_failures_total"
NOTIFICATIONS_WRITTEN = "helpdesk_notifications_written_total"
FAN_OUT_FAILURES = "helpdesk_fan_out_failures_total"
FAN_OUT_DURATION = "helpdesk_fan_out_duration_seconds"
PROFILES_CREATED = "helpdesk_profiles_created_total"
BOOTSTRAP_PROMOTIONS = "helpdesk_bootstrap_promotions_total"
SYNC_REFETCHES = "helpdesk_sync_refetches_total"
SYNC_EVENTS_COALESCED = "helpdesk_sync_events_coalesced_total"


@dataclass(frozen=True)
class MetricDefinition:
    """Describe a metric that should exist in the registry."""

    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()


DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(TICKETS_CREATED, "counter", "Tickets opened."),
    MetricDefinition(
        STATUS_TRANSITIONS,
        "counter",
        "Lifecycle transitions applied, by target status.",
        label_names=("status",),
    ),
    MetricDefinition(AUDIT_ENTRIES, "counter", "Audit log entries persisted."),
    MetricDefinition(AUDIT_FAILURES, "counter", "Audit log writes that failed."),
    MetricDefinition(NOTIFICATIONS_WRITTEN, "counter", "Notification rows written by fan-out."),
    MetricDefinition(
        FAN_OUT_FAILURES,
        "counter",
        "Fan-out attempts that failed and were skipped.",
        label_names=("event",),
    ),
    MetricDefinition(FAN_OUT_DURATION, "distribution", "Duration of notification fan-out in seconds."),
    MetricDefinition(PROFILES_CREATED, "counter", "Profiles created on first authenticated contact."),
    MetricDefinition(BOOTSTRAP_PROMOTIONS, "counter", "Profiles promoted to ADMIN by the bootstrap rule."),
    MetricDefinition(
        SYNC_REFETCHES,
        "counter",
        "Collection refetches triggered by change events.",
        label_names=("collection",),
    ),
    MetricDefinition(SYNC_EVENTS_COALESCED, "counter", "Change events folded into an already pending refetch."),
)
