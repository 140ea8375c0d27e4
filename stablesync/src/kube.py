from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.client import CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

ROLLOUT_GROUP = "argoproj.io"
ROLLOUT_VERSION = "v1alpha1"
ROLLOUT_PLURAL = "rollouts"


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
    """Return the CoreV1 client for pods and the custom-objects client for rollouts."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def patch_pod_label(
    core_api: CoreV1Api,
    namespace: str,
    pod_name: str,
    label_key: str,
    label_value: str,
) -> None:
    """Set (or overwrite) a single label on a pod.

    The client sends dict bodies for pods as a strategic merge patch, so only
    the named label is touched and every other label is preserved.
    """
    body = {
        "metadata": {
            "labels": {
                label_key: label_value
            }
        }
    }

    core_api.patch_namespaced_pod(
        name=pod_name,
        namespace=namespace,
        body=body,
    )
