from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from hashlib import sha256
from typing import Any

from gsingress.src.annotations import (
    ANNOTATION_INGRESS_CLASS_NAME,
    ANNOTATION_INGRESS_DOMAIN,
    ANNOTATION_INGRESS_FQDN,
    ANNOTATION_INGRESS_MODE,
    ANNOTATION_INGRESS_READY,
    ANNOTATION_INGRESS_URL,
    ANNOTATION_ISSUER_TLS_NAME,
    ANNOTATION_SPEC_HASH,
    ANNOTATION_TERMINATE_TLS,
    ANNOTATION_TLS_SECRET_NAME,
    PASSTHROUGH_PREFIX,
)
from gsingress.src.events import EventRecorder
from gsingress.src.gameserver import GAMESERVER_LABEL, GameServer, owner_reference
from gsingress.src.stores import ObjectStore

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "octops-controller"
CERT_MANAGER_ISSUER_ANNOTATION = "cert-manager.io/cluster-issuer"

INGRESS_MODE_DOMAIN = "domain"
INGRESS_MODE_PATH = "path"


class IngressConfigError(ValueError):
    """Raised when a GameServer's ingress annotations cannot produce a valid Ingress."""


class GameServerNotFoundError(LookupError):
    """Raised when the GameServer disappeared before its status could be written."""


@dataclass(frozen=True)
class ReconcileOutcome:
    """Result of one reconcile step: the resulting object and whether it was written."""

    obj: Any
    changed: bool


@dataclass(frozen=True)
class IngressRoute:
    host: str
    path: str
    tls: bool

    @property
    def url(self) -> str:
        scheme = "https" if self.tls else "http"
        return f"{scheme}://{self.host}{self.path}"


def ingress_route(gs: GameServer) -> IngressRoute:
    """Resolve the host and path under which *gs* is exposed.

    ``domain`` mode gives every game server its own host
    (``<name>.<domain>``); ``path`` mode shares one host and routes on
    ``/<name>``.
    """
    mode = gs.annotations.get(ANNOTATION_INGRESS_MODE, "").strip().lower()
    tls = gs.annotations.is_true(ANNOTATION_TERMINATE_TLS)

    if mode == INGRESS_MODE_DOMAIN:
        domain = gs.annotations.get(ANNOTATION_INGRESS_DOMAIN, "").strip().strip(".")
        if not domain:
            raise IngressConfigError(
                f"{gs.key}: annotation {ANNOTATION_INGRESS_DOMAIN} is required in domain mode"
            )
        return IngressRoute(host=f"{gs.name}.{domain}", path="/", tls=tls)

    if mode == INGRESS_MODE_PATH:
        fqdn = gs.annotations.get(ANNOTATION_INGRESS_FQDN, "").strip().strip(".")
        if not fqdn:
            raise IngressConfigError(
                f"{gs.key}: annotation {ANNOTATION_INGRESS_FQDN} is required in path mode"
            )
        return IngressRoute(host=fqdn, path=f"/{gs.name}", tls=tls)

    raise IngressConfigError(
        f"{gs.key}: unsupported {ANNOTATION_INGRESS_MODE} value {mode!r}, "
        f"expected {INGRESS_MODE_DOMAIN!r} or {INGRESS_MODE_PATH!r}"
    )


def spec_hash(payload: dict[str, Any]) -> str:
    """Return a SHA-256 hex digest of *payload* serialized with sorted keys."""
    stable_payload = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return sha256(stable_payload.encode("utf-8")).hexdigest()


def _object_field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def object_annotations(obj: Any) -> dict[str, str]:
    """Extract metadata annotations from a kubernetes model or a plain dict."""
    annotations = _object_field(_object_field(obj, "metadata"), "annotations")
    if not isinstance(annotations, dict):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in annotations.items() if isinstance(k, str)}


def _resource_version(obj: Any) -> str | None:
    metadata = _object_field(obj, "metadata")
    return _object_field(metadata, "resource_version") or _object_field(
        metadata, "resourceVersion"
    )


def _managed_metadata(gs: GameServer, annotations: dict[str, str] | None = None) -> dict[str, Any]:
    return {
        "name": gs.name,
        "namespace": gs.namespace,
        "labels": {MANAGED_BY_LABEL: MANAGED_BY, GAMESERVER_LABEL: gs.name},
        "annotations": dict(annotations or {}),
        "ownerReferences": [owner_reference(gs)],
    }


def _stamp_hash(body: dict[str, Any]) -> str:
    digest = spec_hash(body)
    body["metadata"]["annotations"][ANNOTATION_SPEC_HASH] = digest
    return digest


class ServiceReconciler:
    """Keeps one ClusterIP Service per GameServer pointing at its pod."""

    def __init__(
        self,
        store: ObjectStore,
        recorder: EventRecorder,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def desired(gs: GameServer) -> dict[str, Any]:
        ports = [
            {
                "name": port.name,
                "port": port.container_port,
                "targetPort": port.container_port,
                "protocol": "TCP",
            }
            for port in gs.ports
        ]
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": _managed_metadata(gs),
            "spec": {
                "type": "ClusterIP",
                "selector": {GAMESERVER_LABEL: gs.name},
                "ports": ports,
            },
        }

    def reconcile(self, gs: GameServer) -> ReconcileOutcome:
        if not gs.ports:
            raise IngressConfigError(f"{gs.key}: GameServer exposes no ports")

        body = self.desired(gs)
        digest = _stamp_hash(body)
        existing = self.store.get_service(gs.namespace, gs.name)

        if existing is None:
            created = self.store.create_service(gs.namespace, body)
            self.logger.info("Created service %s", gs.key)
            self.recorder.normal(gs, "ServiceCreated", f"Service {gs.key} created")
            return ReconcileOutcome(obj=created, changed=True)

        if object_annotations(existing).get(ANNOTATION_SPEC_HASH) == digest:
            self.logger.debug("Service %s already up to date", gs.key)
            return ReconcileOutcome(obj=existing, changed=False)

        replacement = copy.deepcopy(body)
        resource_version = _resource_version(existing)
        if resource_version:
            replacement["metadata"]["resourceVersion"] = resource_version
        # clusterIP is immutable once allocated
        existing_spec = _object_field(existing, "spec")
        cluster_ip = _object_field(existing_spec, "cluster_ip") or _object_field(
            existing_spec, "clusterIP"
        )
        if cluster_ip:
            replacement["spec"]["clusterIP"] = cluster_ip

        updated = self.store.replace_service(gs.namespace, gs.name, replacement)
        self.logger.info("Updated service %s", gs.key)
        self.recorder.normal(gs, "ServiceUpdated", f"Service {gs.key} updated")
        return ReconcileOutcome(obj=updated, changed=True)


class IngressReconciler:
    """Keeps one Ingress per GameServer routing to the GameServer's Service."""

    def __init__(
        self,
        store: ObjectStore,
        recorder: EventRecorder,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def desired(gs: GameServer) -> dict[str, Any]:
        if not gs.ports:
            raise IngressConfigError(f"{gs.key}: GameServer exposes no ports")

        route = ingress_route(gs)
        annotations = gs.annotations.with_prefix(PASSTHROUGH_PREFIX)
        issuer = gs.annotations.get(ANNOTATION_ISSUER_TLS_NAME, "").strip()
        if issuer:
            annotations[CERT_MANAGER_ISSUER_ANNOTATION] = issuer

        spec: dict[str, Any] = {
            "rules": [
                {
                    "host": route.host,
                    "http": {
                        "paths": [
                            {
                                "path": route.path,
                                "pathType": "Prefix",
                                "backend": {
                                    "service": {
                                        "name": gs.name,
                                        "port": {"number": gs.ports[0].container_port},
                                    }
                                },
                            }
                        ]
                    },
                }
            ]
        }

        ingress_class = gs.annotations.get(ANNOTATION_INGRESS_CLASS_NAME, "").strip()
        if ingress_class:
            spec["ingressClassName"] = ingress_class

        if route.tls:
            secret_name = gs.annotations.get(ANNOTATION_TLS_SECRET_NAME, "").strip()
            spec["tls"] = [
                {
                    "hosts": [route.host],
                    "secretName": secret_name or f"{route.host.replace('.', '-')}-tls",
                }
            ]

        return {
            "apiVersion": "networking.k8s.io/v1",
            "kind": "Ingress",
            "metadata": _managed_metadata(gs, annotations),
            "spec": spec,
        }

    def reconcile(self, gs: GameServer) -> ReconcileOutcome:
        body = self.desired(gs)
        digest = _stamp_hash(body)
        existing = self.store.get_ingress(gs.namespace, gs.name)

        if existing is None:
            created = self.store.create_ingress(gs.namespace, body)
            self.logger.info("Created ingress %s", gs.key)
            self.recorder.normal(gs, "IngressCreated", f"Ingress {gs.key} created")
            return ReconcileOutcome(obj=created, changed=True)

        if object_annotations(existing).get(ANNOTATION_SPEC_HASH) == digest:
            self.logger.debug("Ingress %s already up to date", gs.key)
            return ReconcileOutcome(obj=existing, changed=False)

        resource_version = _resource_version(existing)
        if resource_version:
            body["metadata"]["resourceVersion"] = resource_version
        updated = self.store.replace_ingress(gs.namespace, gs.name, body)
        self.logger.info("Updated ingress %s", gs.key)
        self.recorder.normal(gs, "IngressUpdated", f"Ingress {gs.key} updated")
        return ReconcileOutcome(obj=updated, changed=True)


class GameServerReconciler:
    """Writes the ingress status annotations back onto the GameServer."""

    def __init__(
        self,
        store: ObjectStore,
        recorder: EventRecorder,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.logger = logger or logging.getLogger(__name__)

    def reconcile(self, gs: GameServer) -> ReconcileOutcome:
        current = self.store.get_gameserver(gs.namespace, gs.name)
        if current is None:
            raise GameServerNotFoundError(f"GameServer {gs.key} not found")

        snapshot = GameServer.from_object(current)
        desired = {
            ANNOTATION_INGRESS_READY: "true",
            ANNOTATION_INGRESS_URL: ingress_route(gs).url,
        }
        if all(snapshot.annotations.get(k) == v for k, v in desired.items()):
            return ReconcileOutcome(obj=snapshot, changed=False)

        patched = self.store.patch_gameserver(
            gs.namespace, gs.name, {"metadata": {"annotations": desired}}
        )
        self.logger.info("Updated ingress status on gameserver %s", gs.key)
        self.recorder.normal(
            gs, "GameServerUpdated", f"Ingress available at {desired[ANNOTATION_INGRESS_URL]}"
        )
        return ReconcileOutcome(obj=GameServer.from_object(patched), changed=True)
