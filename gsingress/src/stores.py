from __future__ import annotations

from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi, NetworkingV1Api

from gsingress.src.gameserver import AGONES_GROUP, AGONES_VERSION, GAMESERVER_PLURAL


def _read_or_none(read: Callable[..., Any], **kwargs: Any) -> Any:
    try:
        return read(**kwargs)
    except ApiException as exc:
        if exc.status == 404:
            return None
        raise


class ObjectStore:
    """Thin adapter over the Kubernetes API for the objects the reconcilers touch.

    Lookups return ``None`` for objects that do not exist; every other API
    failure propagates to the caller.  Writes are plain create/replace/patch
    calls: the API server's resourceVersion checks are the only concurrency
    control.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        networking_api: NetworkingV1Api,
        custom_api: CustomObjectsApi,
    ) -> None:
        self.core_api = core_api
        self.networking_api = networking_api
        self.custom_api = custom_api

    def get_service(self, namespace: str, name: str) -> Any:
        return _read_or_none(self.core_api.read_namespaced_service, name=name, namespace=namespace)

    def create_service(self, namespace: str, body: dict[str, Any]) -> Any:
        return self.core_api.create_namespaced_service(namespace=namespace, body=body)

    def replace_service(self, namespace: str, name: str, body: dict[str, Any]) -> Any:
        return self.core_api.replace_namespaced_service(name=name, namespace=namespace, body=body)

    def get_ingress(self, namespace: str, name: str) -> Any:
        return _read_or_none(
            self.networking_api.read_namespaced_ingress, name=name, namespace=namespace
        )

    def create_ingress(self, namespace: str, body: dict[str, Any]) -> Any:
        return self.networking_api.create_namespaced_ingress(namespace=namespace, body=body)

    def replace_ingress(self, namespace: str, name: str, body: dict[str, Any]) -> Any:
        return self.networking_api.replace_namespaced_ingress(
            name=name, namespace=namespace, body=body
        )

    def get_gameserver(self, namespace: str, name: str) -> dict[str, Any] | None:
        return _read_or_none(
            self.custom_api.get_namespaced_custom_object,
            group=AGONES_GROUP,
            version=AGONES_VERSION,
            namespace=namespace,
            plural=GAMESERVER_PLURAL,
            name=name,
        )

    def patch_gameserver(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        return self.custom_api.patch_namespaced_custom_object(
            group=AGONES_GROUP,
            version=AGONES_VERSION,
            namespace=namespace,
            plural=GAMESERVER_PLURAL,
            name=name,
            body=body,
        )
