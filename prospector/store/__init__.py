"""Store module -- persistence managers over the prospector tables.

Public API: one manager class per table family.
"""

from prospector.store.jobs import JobStore
from prospector.store.leads import LEAD_STATUSES, LeadStore
from prospector.store.notifications import NotificationStore
from prospector.store.tasks import TaskStore
from prospector.store.threads import ThreadStore

__all__ = [
    "LEAD_STATUSES",
    "JobStore",
    "LeadStore",
    "NotificationStore",
    "TaskStore",
    "ThreadStore",
]
