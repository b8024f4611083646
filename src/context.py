"""
Reconcile Context - Capabilities handed to every stage of a pass.

Replaces global client handles: the platform, the member admin client, the
event recorder and the shutdown signal are threaded explicitly through each
stage call.
"""

import asyncio
from typing import Optional

from admin import BrokerAdminClient
from errors import ReconcileCancelled
from events import EventRecorder
from kube import Platform


class ReconcileContext:
    """
    Context provided to each reconcile stage by the controller.

    Gives stages access to the platform API, the member admin API,
    event recording and the shared shutdown signal.
    """

    def __init__(
        self,
        platform: Platform,
        admin: BrokerAdminClient,
        recorder: Optional[EventRecorder] = None,
        shutdown_event: Optional[asyncio.Event] = None,
    ):
        self.platform = platform
        self.admin = admin
        self.recorder = recorder or EventRecorder(platform)
        self.shutdown_event = shutdown_event or asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self.shutdown_event.is_set()

    def check_cancelled(self) -> None:
        """
        Abort the pass if shutdown was requested.

        Raises:
            ReconcileCancelled: If the shutdown event is set
        """
        if self.shutdown_event.is_set():
            raise ReconcileCancelled("Shutdown requested, abandoning pass")
