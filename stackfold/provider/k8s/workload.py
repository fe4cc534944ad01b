from __future__ import annotations

import contextlib
from functools import cached_property
from typing import Any, Callable, Dict, Iterator, NamedTuple, Optional, Tuple

from kubernetes import client
from kubernetes import config as k8s_config
from kubernetes.client.exceptions import ApiException

from stackfold.errors import ProviderError, ResourceNotFound
from stackfold.logger import logger
from stackfold.provider.base import Provider, ProviderResult

DEFAULT_NAMESPACE = "default"

SUPPORTED_KINDS = ("Deployment", "Service", "ConfigMap", "Secret", "ServiceAccount")


class _Methods(NamedTuple):
    create: Callable[..., Any]
    read: Callable[..., Any]
    patch: Callable[..., Any]
    delete: Callable[..., Any]


@contextlib.contextmanager
def api_errors() -> Iterator[None]:
    """
    Translates Kubernetes API errors into provider errors. Rate limiting and server
    errors are retryable, a 404 raises `ResourceNotFound`.
    """
    try:
        yield
    except ApiException as e:
        if e.status == 404:
            raise ResourceNotFound(f"{e.status} {e.reason}") from e
        retryable = e.status == 429 or (e.status is not None and e.status >= 500)
        raise ProviderError(f"{e.status} {e.reason}: {e.body}", retryable=retryable) from e


def manifest_identity(attrs: Dict[str, Any]) -> Tuple[str, str, str]:
    """
    Returns the kind, name and namespace of the manifest of a workload.

    Raises:
        ProviderError: If the manifest has no kind or name, or the kind is unsupported.
    """
    manifest = attrs.get("manifest") or {}
    kind = manifest.get("kind")
    metadata = manifest.get("metadata") or {}
    name = metadata.get("name")
    if not kind or not name:
        raise ProviderError("The manifest must declare a kind and metadata.name")
    if kind not in SUPPORTED_KINDS:
        raise ProviderError(f"Unsupported kind: {kind}")
    namespace = metadata.get("namespace") or attrs.get("namespace") or DEFAULT_NAMESPACE
    return kind, name, namespace


class WorkloadProvider(Provider):
    """
    Applies a namespaced Kubernetes manifest.

    Attributes:
        manifest: The manifest, as a mapping. Its kind must be one of `SUPPORTED_KINDS`.
        namespace: Optional. Used when the manifest has no namespace.

    Outputs `name`, `namespace` and `uid`.
    """

    kind = "workload"
    retryable_timeouts = frozenset(["read", "delete"])

    @cached_property
    def api_client(self) -> client.ApiClient:
        return k8s_config.new_client_from_config(config_file=self.config.kubeconfig)

    def _methods(self, kind: str) -> _Methods:
        if kind == "Deployment":
            apps_v1_api = client.AppsV1Api(self.api_client)
            return _Methods(
                apps_v1_api.create_namespaced_deployment,
                apps_v1_api.read_namespaced_deployment,
                apps_v1_api.patch_namespaced_deployment,
                apps_v1_api.delete_namespaced_deployment,
            )

        core_v1_api = client.CoreV1Api(self.api_client)
        if kind == "Service":
            return _Methods(
                core_v1_api.create_namespaced_service,
                core_v1_api.read_namespaced_service,
                core_v1_api.patch_namespaced_service,
                core_v1_api.delete_namespaced_service,
            )
        elif kind == "ConfigMap":
            return _Methods(
                core_v1_api.create_namespaced_config_map,
                core_v1_api.read_namespaced_config_map,
                core_v1_api.patch_namespaced_config_map,
                core_v1_api.delete_namespaced_config_map,
            )
        elif kind == "Secret":
            return _Methods(
                core_v1_api.create_namespaced_secret,
                core_v1_api.read_namespaced_secret,
                core_v1_api.patch_namespaced_secret,
                core_v1_api.delete_namespaced_secret,
            )
        elif kind == "ServiceAccount":
            return _Methods(
                core_v1_api.create_namespaced_service_account,
                core_v1_api.read_namespaced_service_account,
                core_v1_api.patch_namespaced_service_account,
                core_v1_api.delete_namespaced_service_account,
            )
        raise ProviderError(f"Unsupported kind: {kind}")

    def _body(self, attrs: Dict[str, Any], namespace: str) -> Dict[str, Any]:
        body = dict(attrs["manifest"])
        body["metadata"] = {**(body.get("metadata") or {}), "namespace": namespace}
        return body

    def create(self, attrs: Dict[str, Any]) -> ProviderResult:
        kind, name, namespace = manifest_identity(attrs)
        methods = self._methods(kind)
        with api_errors():
            response = methods.create(namespace, self._body(attrs, namespace))
        logger.info(f"{kind} '{name}' created.")

        return ProviderResult(
            provider_ids={"kind": kind, "name": name, "namespace": namespace},
            outputs=_outputs(response, name, namespace),
        )

    def identify(self, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            kind, name, namespace = manifest_identity(attrs)
        except ProviderError:
            return None
        return {"kind": kind, "name": name, "namespace": namespace}

    def read(self, provider_ids: Dict[str, Any]) -> Dict[str, Any]:
        kind, name, namespace = _ids(provider_ids)
        with api_errors():
            response = self._methods(kind).read(name, namespace)
        return {"namespace": namespace, **_outputs(response, name, namespace)}

    def update(
        self, provider_ids: Dict[str, Any], attrs: Dict[str, Any]
    ) -> Dict[str, Any]:
        kind, name, namespace = _ids(provider_ids)
        new_kind, new_name, new_namespace = manifest_identity(attrs)
        if (new_kind, new_name, new_namespace) != (kind, name, namespace):
            raise ProviderError(
                f"Cannot move {kind} {namespace}/{name} to {new_kind} "
                f"{new_namespace}/{new_name} in place"
            )

        with api_errors():
            response = self._methods(kind).patch(
                name, namespace, self._body(attrs, namespace)
            )
        logger.info(f"{kind} '{name}' updated.")
        return _outputs(response, name, namespace)

    def delete(self, provider_ids: Dict[str, Any]) -> None:
        kind, name, namespace = _ids(provider_ids)
        with api_errors():
            self._methods(kind).delete(name, namespace)
        logger.info(f"{kind} '{name}' deleted.")


def _ids(provider_ids: Dict[str, Any]) -> Tuple[str, str, str]:
    try:
        return provider_ids["kind"], provider_ids["name"], provider_ids["namespace"]
    except KeyError as e:
        raise ProviderError(f"workload: missing provider identifier {e}") from e


def _outputs(response: Any, name: str, namespace: str) -> Dict[str, Any]:
    metadata = getattr(response, "metadata", None)
    return {
        "name": name,
        "namespace": namespace,
        "uid": getattr(metadata, "uid", None),
    }
