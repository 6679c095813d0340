from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

APP_GROUP = "kappctrl.k14s.io"
APP_VERSION = "v1alpha1"
APP_PLURAL = "apps"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def get_app(custom_api: CustomObjectsApi, namespace: str, name: str) -> dict[str, Any]:
    """Fetch a fresh copy of an App; raises ``ApiException`` (404 when gone)."""
    return custom_api.get_namespaced_custom_object(
        group=APP_GROUP,
        version=APP_VERSION,
        namespace=namespace,
        plural=APP_PLURAL,
        name=name,
    )


def patch_app_status(
    custom_api: CustomObjectsApi,
    namespace: str,
    name: str,
    status: dict[str, Any],
) -> None:
    """Merge-patch the App ``status`` subresource."""
    custom_api.patch_namespaced_custom_object_status(
        group=APP_GROUP,
        version=APP_VERSION,
        namespace=namespace,
        plural=APP_PLURAL,
        name=name,
        body={"status": status},
    )


@dataclass(frozen=True)
class ListSource:
    """A list API method plus its positional arguments.

    Kept unbound (rather than a ``functools.partial``) because
    ``kubernetes.watch.Watch`` reads the method docstring to decide how to
    deserialize watch events.
    """

    func: Callable[..., Any]
    args: tuple[Any, ...] = ()

    def list(self, **kwargs: Any) -> Any:
        return self.func(*self.args, **kwargs)


def app_list_source(custom_api: CustomObjectsApi, namespace: str | None) -> ListSource:
    """Return the source used to list and watch Apps in ``namespace`` (or all)."""
    if namespace:
        return ListSource(
            custom_api.list_namespaced_custom_object,
            (APP_GROUP, APP_VERSION, namespace, APP_PLURAL),
        )
    return ListSource(
        custom_api.list_cluster_custom_object,
        (APP_GROUP, APP_VERSION, APP_PLURAL),
    )


def secret_list_source(core_api: CoreV1Api, namespace: str | None) -> ListSource:
    if namespace:
        return ListSource(core_api.list_namespaced_secret, (namespace,))
    return ListSource(core_api.list_secret_for_all_namespaces)


def config_map_list_source(core_api: CoreV1Api, namespace: str | None) -> ListSource:
    if namespace:
        return ListSource(core_api.list_namespaced_config_map, (namespace,))
    return ListSource(core_api.list_config_map_for_all_namespaces)


def object_field(obj: Any, *path: str) -> Any:
    """Read a nested field from either a raw dict or a generated client model.

    ``path`` uses the camelCase wire names; model attributes are looked up
    via their snake_case equivalents.
    """
    current = obj
    for key in path:
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(key)
        else:
            current = getattr(current, _snake_case(key), None)
    return current


def _snake_case(name: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in name)
