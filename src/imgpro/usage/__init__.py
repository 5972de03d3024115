"""Per-site usage aggregation feeding the billing database.

Served images are submitted to a ``UsageDispatcher``; each site's counters
live in a single ``SiteUsageTracker`` that persists every change and flushes
deltas to billing on a durable schedule.
"""

from .billing import BillingSink
from .dispatcher import UsageDispatcher
from .store import UsageStateStore
from .tracker import SiteUsageTracker

__all__ = ["BillingSink", "SiteUsageTracker", "UsageDispatcher", "UsageStateStore"]
