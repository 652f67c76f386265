from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from reloader.src.metrics import METRICS
from reloader.src.models import TargetRef

LOGGER = logging.getLogger(__name__)


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


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


@dataclass(frozen=True)
class KindApi:
    """List and patch entry points of one resource kind on the generated clients."""

    kind: str
    list_namespaced: Callable[..., Any]
    list_all_namespaces: Callable[..., Any]
    patch: Callable[..., Any] | None = None

    def lister(self, namespace: str) -> tuple[Callable[..., Any], dict[str, Any]]:
        """Return the list function and its scoping kwargs for *namespace* (empty = all)."""
        if namespace:
            return self.list_namespaced, {"namespace": namespace}
        return self.list_all_namespaces, {}


def kind_apis(core_api: CoreV1Api, apps_api: AppsV1Api) -> dict[str, KindApi]:
    return {
        "Secret": KindApi(
            kind="Secret",
            list_namespaced=core_api.list_namespaced_secret,
            list_all_namespaces=core_api.list_secret_for_all_namespaces,
        ),
        "Deployment": KindApi(
            kind="Deployment",
            list_namespaced=apps_api.list_namespaced_deployment,
            list_all_namespaces=apps_api.list_deployment_for_all_namespaces,
            patch=apps_api.patch_namespaced_deployment,
        ),
        "StatefulSet": KindApi(
            kind="StatefulSet",
            list_namespaced=apps_api.list_namespaced_stateful_set,
            list_all_namespaces=apps_api.list_stateful_set_for_all_namespaces,
            patch=apps_api.patch_namespaced_stateful_set,
        ),
        "DaemonSet": KindApi(
            kind="DaemonSet",
            list_namespaced=apps_api.list_namespaced_daemon_set,
            list_all_namespaces=apps_api.list_daemon_set_for_all_namespaces,
            patch=apps_api.patch_namespaced_daemon_set,
        ),
        "PodTemplate": KindApi(
            kind="PodTemplate",
            list_namespaced=core_api.list_namespaced_pod_template,
            list_all_namespaces=core_api.list_pod_template_for_all_namespaces,
            patch=core_api.patch_namespaced_pod_template,
        ),
    }


class PatchOutcome(enum.Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    TRANSIENT_ERROR = "transient_error"


def annotation_patch_body(
    kind: str, annotation_key: str, value: str, resource_version: str | None
) -> dict[str, Any]:
    """Build a patch setting one pod-template annotation.

    Changing a pod template annotation is the same mechanism used by
    ``kubectl rollout restart``: the workload controller rolls new pods.
    Including ``metadata.resourceVersion`` turns the patch into a conditional
    update; the API server answers ``409 Conflict`` when the object changed
    since it was observed.
    """
    template = {"metadata": {"annotations": {annotation_key: value}}}
    body: dict[str, Any] = (
        {"template": template} if kind == "PodTemplate" else {"spec": {"template": template}}
    )
    if resource_version:
        body["metadata"] = {"resourceVersion": resource_version}
    return body


class PatchClient:
    """Issue conditional fingerprint patches and classify the result."""

    def __init__(self, core_api: CoreV1Api, apps_api: AppsV1Api) -> None:
        self._apis = {
            kind: api for kind, api in kind_apis(core_api, apps_api).items() if api.patch
        }

    def patch_annotation(self, target: TargetRef, annotation_key: str, value: str) -> PatchOutcome:
        kind_api = self._apis.get(target.key.kind)
        if kind_api is None or kind_api.patch is None:
            raise ValueError(f"unsupported target kind: {target.key.kind}")

        body = annotation_patch_body(
            target.key.kind, annotation_key, value, target.resource_version
        )
        try:
            kind_api.patch(name=target.key.name, namespace=target.key.namespace, body=body)
            outcome = PatchOutcome.SUCCESS
        except ApiException as exc:
            if exc.status == 409:
                outcome = PatchOutcome.CONFLICT
            elif exc.status == 404:
                outcome = PatchOutcome.NOT_FOUND
            else:
                LOGGER.warning(
                    "Patch of %s failed (status=%s reason=%s)",
                    target.key,
                    exc.status,
                    exc.reason,
                    extra={"target": str(target.key)},
                )
                outcome = PatchOutcome.TRANSIENT_ERROR
        except HTTPError:
            LOGGER.warning(
                "Patch of %s failed at transport level",
                target.key,
                exc_info=True,
                extra={"target": str(target.key)},
            )
            outcome = PatchOutcome.TRANSIENT_ERROR

        METRICS.patches_total.labels(kind=target.key.kind, outcome=outcome.value).inc()
        return outcome
