"""
Wiring of the workflow services over one store and one email sender.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .clearance_workflow import ClearanceWorkflow
from .email_sender import EmailSender, get_email_sender
from .invoices import InvoiceLedger
from .media_library import MediaLibrary
from .meetings import MeetingLog
from .notification_dispatch import NotificationDispatcher
from .profiles import ProfileDirectory
from .project_aggregation import ProjectAggregator
from .store import DataStore, get_store
from .task_rollup import TaskStatusRollup
from .task_store import TaskStore

logger = logging.getLogger("services")


@dataclass
class Services:
    store: DataStore
    profiles: ProfileDirectory
    dispatcher: NotificationDispatcher
    tasks: TaskStore
    rollup: TaskStatusRollup
    clearances: ClearanceWorkflow
    projects: ProjectAggregator
    meetings: MeetingLog
    invoices: InvoiceLedger
    media: MediaLibrary


def build_services(store: DataStore, email_sender: EmailSender) -> Services:
    profiles = ProfileDirectory(store)
    dispatcher = NotificationDispatcher(store, profiles, email_sender)
    tasks = TaskStore(store, profiles, notifier=dispatcher.record)
    rollup = TaskStatusRollup(store)
    return Services(
        store=store,
        profiles=profiles,
        dispatcher=dispatcher,
        tasks=tasks,
        rollup=rollup,
        clearances=ClearanceWorkflow(store, tasks, rollup, notifier=dispatcher.record),
        projects=ProjectAggregator(store),
        meetings=MeetingLog(store, dispatcher),
        invoices=InvoiceLedger(store),
        media=MediaLibrary(store),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    """Get or create the service container."""
    global _services
    if _services is None:
        _services = build_services(get_store(), get_email_sender())
        logger.info("Workflow services initialized")
    return _services


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services


def reset_services() -> None:
    set_services(None)
