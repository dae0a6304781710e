"""Prometheus metrics for the sync engine and the presence tracker.

The module bundles all counters in one place so importing side-effects
(metric registration) happen exactly once per process.  Services simply
``from contactsync.metrics import …`` and increment.
"""

from __future__ import annotations

from prometheus_client import Counter
from prometheus_client import Gauge

live_pushes_total = Counter(
    "contactsync_live_pushes_total",
    "Change notifications handed to a live device connection",
)

queued_messages_total = Counter(
    "contactsync_queued_messages_total",
    "Change notifications appended to an offline device's queue",
)

acknowledged_messages_total = Counter(
    "contactsync_acknowledged_messages_total",
    "Queued messages acknowledged by devices",
)

expired_messages_total = Counter(
    "contactsync_expired_messages_total",
    "Queued messages removed by the retention policy",
    labelnames=("reason",),
)

sync_conflicts_total = Counter(
    "contactsync_sync_conflicts_total",
    "Equal-timestamp conflicts surfaced by bulk reconciliation",
)

delta_pulls_total = Counter(
    "contactsync_delta_pulls_total",
    "Delta pull sessions by outcome",
    labelnames=("outcome",),
)

stale_devices_total = Counter(
    "contactsync_stale_devices_total",
    "Devices force-detached by the liveness sweep",
)

devices_online = Gauge(
    "contactsync_devices_online",
    "Devices currently holding a live connection to this process",
)
