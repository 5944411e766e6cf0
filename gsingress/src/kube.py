from __future__ import annotations

import logging
from dataclasses import dataclass

from kubernetes import client, config
from kubernetes.client import CoreV1Api, CustomObjectsApi, NetworkingV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubeClients:
    core: CoreV1Api
    networking: NetworkingV1Api
    custom: CustomObjectsApi


def load_kube_configuration(kubeconfig: str | None = None, master: str | None = None) -> None:
    """Load Kubernetes client configuration.

    An explicit ``kubeconfig`` is used as-is; like ``KUBECONFIG`` it may list
    several files separated by ``os.pathsep``, which the client merges.
    Otherwise in-cluster config is tried first (running inside a pod), falling
    back to the local kubeconfig for development.  ``master`` overrides the API server address.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
    else:
        try:
            config.load_incluster_config()
            LOGGER.info("Loaded in-cluster Kubernetes configuration")
        except ConfigException:
            config.load_kube_config()
            LOGGER.info("Loaded local kubeconfig")

    if master:
        configuration = client.Configuration.get_default_copy()
        configuration.host = master
        client.Configuration.set_default(configuration)
        LOGGER.info("Using API server %s", master)


def build_clients() -> KubeClients:
    """Return the API clients used by the controller using the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        networking=client.NetworkingV1Api(),
        custom=client.CustomObjectsApi(),
    )
