from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest

from gsingress.src.annotations import ANNOTATION_INGRESS_MODE
from gsingress.src.gameserver import (
    SKIP_DISALLOWED_STATE,
    SKIP_MISSING_ANNOTATION,
    SKIP_SHUTDOWN,
    GameServer,
    GameServerPort,
    is_eligible,
    is_shutdown,
    must_reconcile,
    owner_reference,
    skip_reason,
)


def make_gameserver_object(
    state: str = "Ready",
    annotations: dict[str, str] | None = None,
    namespace: str = "ns",
    name: str = "game-1",
) -> dict[str, Any]:
    return {
        "apiVersion": "agones.dev/v1",
        "kind": "GameServer",
        "metadata": {
            "namespace": namespace,
            "name": name,
            "uid": "uid-1",
            "resourceVersion": "7",
            "labels": {"agones.dev/fleet": "fleet-a"},
            "annotations": annotations if annotations is not None else {},
        },
        "spec": {"ports": [{"name": "default", "containerPort": 7654, "protocol": "UDP"}]},
        "status": {"state": state},
    }


def test_from_object_reads_identity_state_and_ports() -> None:
    gs = GameServer.from_object(
        make_gameserver_object(annotations={ANNOTATION_INGRESS_MODE: "domain"})
    )

    assert gs.key == "ns/game-1"
    assert gs.state == "Ready"
    assert gs.uid == "uid-1"
    assert gs.resource_version == "7"
    assert gs.labels == {"agones.dev/fleet": "fleet-a"}
    assert gs.ports == (GameServerPort(name="default", container_port=7654),)
    assert gs.annotations.has_flag(ANNOTATION_INGRESS_MODE)


def test_from_object_accepts_models_with_to_dict() -> None:
    model = SimpleNamespace(to_dict=lambda: make_gameserver_object(state="Scheduled"))

    gs = GameServer.from_object(model)

    assert gs.state == "Scheduled"


def test_from_object_names_unnamed_ports_by_index() -> None:
    obj = make_gameserver_object()
    obj["spec"]["ports"] = [{"containerPort": 7000}, {"name": "skip-me"}]

    gs = GameServer.from_object(obj)

    assert gs.ports == (GameServerPort(name="port-0", container_port=7000),)


@pytest.mark.parametrize("payload", [{}, {"metadata": {"name": "x"}}, "not-an-object"])
def test_from_object_rejects_objects_without_identity(payload: Any) -> None:
    with pytest.raises(ValueError):
        GameServer.from_object(payload)


def test_missing_status_yields_empty_state() -> None:
    obj = make_gameserver_object()
    del obj["status"]

    assert GameServer.from_object(obj).state == ""


@pytest.mark.parametrize("state", ["Scheduled", "RequestReady", "Ready"])
def test_annotated_gameserver_in_allowed_state_is_eligible(state: str) -> None:
    gs = GameServer.from_object(
        make_gameserver_object(state=state, annotations={ANNOTATION_INGRESS_MODE: "path"})
    )

    assert must_reconcile(gs)
    assert skip_reason(gs) is None
    assert is_eligible(gs)


@pytest.mark.parametrize("state", ["Scheduled", "RequestReady", "Ready", "Shutdown", "Allocated"])
def test_gameserver_without_annotation_is_never_eligible(state: str) -> None:
    gs = GameServer.from_object(make_gameserver_object(state=state, annotations={}))

    assert skip_reason(gs) == SKIP_MISSING_ANNOTATION
    assert not is_eligible(gs)


def test_shutdown_gameserver_is_never_eligible() -> None:
    gs = GameServer.from_object(
        make_gameserver_object(state="Shutdown", annotations={ANNOTATION_INGRESS_MODE: "domain"})
    )

    assert is_shutdown(gs)
    assert skip_reason(gs) == SKIP_SHUTDOWN


@pytest.mark.parametrize(
    "state",
    [
        "PortAllocation",
        "Creating",
        "Starting",
        "Requested",
        "Allocated",
        "Reserved",
        "Unhealthy",
        "",
    ],
)
def test_disallowed_states_are_skipped(state: str) -> None:
    gs = GameServer.from_object(
        make_gameserver_object(state=state, annotations={ANNOTATION_INGRESS_MODE: "domain"})
    )

    assert skip_reason(gs) == SKIP_DISALLOWED_STATE


def test_owner_reference_points_at_gameserver() -> None:
    gs = GameServer.from_object(make_gameserver_object())

    assert owner_reference(gs) == {
        "apiVersion": "agones.dev/v1",
        "kind": "GameServer",
        "name": "game-1",
        "uid": "uid-1",
        "controller": True,
        "blockOwnerDeletion": True,
    }
