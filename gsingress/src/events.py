from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoreV1Api

from gsingress.src.gameserver import AGONES_GROUP, AGONES_VERSION, GAMESERVER_KIND, GameServer

COMPONENT = "octops-controller"
EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class EventRecorder:
    """Publishes Kubernetes Events against GameServers.

    Recording is best effort: API failures are logged and swallowed so a
    broken event sink never fails a reconcile step.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        component: str = COMPONENT,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.core_api = core_api
        self.component = component
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def record(self, gs: GameServer, event_type: str, reason: str, message: str) -> None:
        timestamp = self.now_fn()
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {"generateName": f"{gs.name}.", "namespace": gs.namespace},
            "involvedObject": {
                "apiVersion": f"{AGONES_GROUP}/{AGONES_VERSION}",
                "kind": GAMESERVER_KIND,
                "name": gs.name,
                "namespace": gs.namespace,
                "uid": gs.uid,
                "resourceVersion": gs.resource_version,
            },
            "reason": reason,
            "message": message,
            "type": event_type,
            "source": {"component": self.component},
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
        }
        try:
            self.core_api.create_namespaced_event(namespace=gs.namespace, body=body)
        except Exception:
            # Transport errors included; a lost event never fails a step.
            self.logger.exception(
                "Failed to record %s event %s for %s", event_type, reason, gs.key
            )

    def normal(self, gs: GameServer, reason: str, message: str) -> None:
        self.record(gs, EVENT_NORMAL, reason, message)

    def warning(self, gs: GameServer, reason: str, message: str) -> None:
        self.record(gs, EVENT_WARNING, reason, message)
