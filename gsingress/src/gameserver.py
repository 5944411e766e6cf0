from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from gsingress.src.annotations import ANNOTATION_INGRESS_MODE, Annotations

AGONES_GROUP = "agones.dev"
AGONES_VERSION = "v1"
GAMESERVER_PLURAL = "gameservers"
GAMESERVER_KIND = "GameServer"
GAMESERVER_LABEL = "agones.dev/gameserver"

STATE_SCHEDULED = "Scheduled"
STATE_REQUEST_READY = "RequestReady"
STATE_READY = "Ready"
STATE_SHUTDOWN = "Shutdown"

# Only these states trigger a reconcile; earlier states are still provisioning.
RECONCILE_STATES = frozenset({STATE_SCHEDULED, STATE_REQUEST_READY, STATE_READY})

SKIP_MISSING_ANNOTATION = "missing_annotation"
SKIP_SHUTDOWN = "shutdown"
SKIP_DISALLOWED_STATE = "disallowed_state"


@dataclass(frozen=True)
class GameServerPort:
    name: str
    container_port: int


@dataclass(frozen=True)
class GameServer:
    """Immutable snapshot of an Agones GameServer as seen by the controller.

    Only the fields the controller reads are lifted out of the raw object;
    ``raw`` keeps the original payload for anything else.
    """

    namespace: str
    name: str
    state: str = ""
    uid: str = ""
    resource_version: str = ""
    annotations: Annotations = field(default_factory=Annotations)
    labels: dict[str, str] = field(default_factory=dict)
    ports: tuple[GameServerPort, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def key(self) -> str:
        return namespaced(self.namespace, self.name)

    @classmethod
    def from_object(cls, obj: Any) -> GameServer:
        """Build a snapshot from a watch payload (dict or kubernetes model).

        Raises ``ValueError`` when the object has no namespace or name.
        """
        if hasattr(obj, "to_dict") and not isinstance(obj, dict):
            obj = obj.to_dict()
        if not isinstance(obj, dict):
            raise ValueError(f"unsupported GameServer payload type {type(obj).__name__}")

        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace")
        name = metadata.get("name")
        if not namespace or not name:
            raise ValueError("GameServer is missing metadata.namespace or metadata.name")

        status = obj.get("status") or {}
        spec = obj.get("spec") or {}

        ports: list[GameServerPort] = []
        for index, port in enumerate(spec.get("ports") or []):
            if not isinstance(port, dict):
                continue
            container_port = port.get("containerPort", port.get("container_port"))
            if container_port is None:
                continue
            ports.append(
                GameServerPort(
                    name=str(port.get("name") or f"port-{index}"),
                    container_port=int(container_port),
                )
            )

        labels = metadata.get("labels") or {}
        return cls(
            namespace=namespace,
            name=name,
            state=str(status.get("state") or ""),
            uid=str(metadata.get("uid") or ""),
            resource_version=str(
                metadata.get("resourceVersion") or metadata.get("resource_version") or ""
            ),
            annotations=Annotations(metadata.get("annotations")),
            labels={k: str(v) for k, v in labels.items() if isinstance(k, str)},
            ports=tuple(ports),
            raw=obj,
        )


def namespaced(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def owner_reference(gs: GameServer) -> dict[str, Any]:
    """Owner reference that lets the garbage collector remove derived objects."""
    return {
        "apiVersion": f"{AGONES_GROUP}/{AGONES_VERSION}",
        "kind": GAMESERVER_KIND,
        "name": gs.name,
        "uid": gs.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def has_ingress_mode(gs: GameServer) -> bool:
    return gs.annotations.has_flag(ANNOTATION_INGRESS_MODE)


def is_shutdown(gs: GameServer) -> bool:
    return gs.state == STATE_SHUTDOWN


def must_reconcile(gs: GameServer) -> bool:
    return gs.state in RECONCILE_STATES


def skip_reason(gs: GameServer) -> str | None:
    """Return why *gs* must not be reconciled, or None when it is eligible.

    Checks run in a fixed order so the reported reason is stable: a missing
    annotation wins over Shutdown, which wins over any other disallowed state.
    """
    if not has_ingress_mode(gs):
        return SKIP_MISSING_ANNOTATION
    if is_shutdown(gs):
        return SKIP_SHUTDOWN
    if not must_reconcile(gs):
        return SKIP_DISALLOWED_STATE
    return None


def is_eligible(gs: GameServer) -> bool:
    return skip_reason(gs) is None
