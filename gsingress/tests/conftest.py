from __future__ import annotations

import copy
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest

from gsingress.src.annotations import ANNOTATION_INGRESS_DOMAIN, ANNOTATION_INGRESS_MODE


class FakeStore:
    """In-memory stand-in for ObjectStore that mimics API server versioning."""

    def __init__(self) -> None:
        self.services: dict[tuple[str, str], dict[str, Any]] = {}
        self.ingresses: dict[tuple[str, str], dict[str, Any]] = {}
        self.gameservers: dict[tuple[str, str], dict[str, Any]] = {}
        self.writes: list[tuple[str, str]] = []
        self._version = 0

    def _stored(self, body: dict[str, Any]) -> dict[str, Any]:
        self._version += 1
        stored = copy.deepcopy(body)
        stored["metadata"]["resourceVersion"] = str(self._version)
        return stored

    def get_service(self, namespace: str, name: str) -> dict[str, Any] | None:
        return copy.deepcopy(self.services.get((namespace, name)))

    def create_service(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        name = body["metadata"]["name"]
        stored = self._stored(body)
        stored["spec"]["clusterIP"] = "10.0.0.10"
        self.services[(namespace, name)] = stored
        self.writes.append(("create_service", name))
        return copy.deepcopy(stored)

    def replace_service(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        stored = self._stored(body)
        self.services[(namespace, name)] = stored
        self.writes.append(("replace_service", name))
        return copy.deepcopy(stored)

    def get_ingress(self, namespace: str, name: str) -> dict[str, Any] | None:
        return copy.deepcopy(self.ingresses.get((namespace, name)))

    def create_ingress(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        name = body["metadata"]["name"]
        self.ingresses[(namespace, name)] = self._stored(body)
        self.writes.append(("create_ingress", name))
        return copy.deepcopy(self.ingresses[(namespace, name)])

    def replace_ingress(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        self.ingresses[(namespace, name)] = self._stored(body)
        self.writes.append(("replace_ingress", name))
        return copy.deepcopy(self.ingresses[(namespace, name)])

    def get_gameserver(self, namespace: str, name: str) -> dict[str, Any] | None:
        return copy.deepcopy(self.gameservers.get((namespace, name)))

    def patch_gameserver(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        current = self.gameservers[(namespace, name)]
        annotations = current["metadata"].setdefault("annotations", {})
        annotations.update(body.get("metadata", {}).get("annotations", {}))
        self._version += 1
        current["metadata"]["resourceVersion"] = str(self._version)
        self.writes.append(("patch_gameserver", name))
        return copy.deepcopy(current)

    def add_gameserver(self, obj: dict[str, Any]) -> None:
        metadata = obj["metadata"]
        self.gameservers[(metadata["namespace"], metadata["name"])] = copy.deepcopy(obj)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def recorder() -> MagicMock:
    return MagicMock()


@pytest.fixture
def make_gameserver() -> Callable[..., dict[str, Any]]:
    """Factory for raw GameServer payloads as delivered by the watch API."""

    def _make(
        name: str = "game-1",
        namespace: str = "ns",
        state: str = "Ready",
        annotations: dict[str, str] | None = None,
        ports: list[dict[str, Any]] | None = None,
        resource_version: str = "1",
    ) -> dict[str, Any]:
        if annotations is None:
            annotations = {
                ANNOTATION_INGRESS_MODE: "domain",
                ANNOTATION_INGRESS_DOMAIN: "example.com",
            }
        return {
            "apiVersion": "agones.dev/v1",
            "kind": "GameServer",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "uid": f"uid-{name}",
                "resourceVersion": resource_version,
                "annotations": dict(annotations),
            },
            "spec": {
                "ports": ports
                if ports is not None
                else [{"name": "default", "containerPort": 7654}]
            },
            "status": {"state": state},
        }

    return _make
