"""Kubernetes execution backend: one Pod per replica instance."""

import asyncio
import logging
from typing import Any, Optional

from kubernetes import client, config
from kubernetes.client import CoreV1Api, V1Container, V1ContainerPort, V1EnvVar
from kubernetes.client import V1ObjectMeta, V1Pod, V1PodSpec, V1ResourceRequirements
from kubernetes.client.exceptions import ApiException

from .errors import TransientError
from .executor import ExecutionBackend
from .models import HealthSignal, Revision

logger = logging.getLogger(__name__)

MANAGED_BY = "sentinel-rollout"


def load_core_v1(kubeconfig_path: Optional[str] = None) -> CoreV1Api:
    """
    Build a CoreV1Api client.

    Uses in-cluster configuration when available, otherwise the kubeconfig.

    Args:
        kubeconfig_path: Optional kubeconfig file path
    """
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config(config_file=kubeconfig_path)
    return client.CoreV1Api()


class KubernetesPodBackend(ExecutionBackend):
    """
    Runs each replica instance as a bare Pod.

    The revision template payload carries the container definition:
    ``image`` (required), ``command``, ``args``, ``env``, ``ports`` and
    ``resources``, plus extra pod ``labels``.
    """

    def __init__(self, core_v1: CoreV1Api, namespace: str = "default"):
        """
        Initialize pod backend.

        Args:
            core_v1: Kubernetes core API client
            namespace: Namespace the pods are created in
        """
        self.core_v1 = core_v1
        self.namespace = namespace

    def build_pod(self, revision: Revision, instance_id: str) -> V1Pod:
        """
        Build the Pod manifest for an instance.

        Args:
            revision: Revision whose template the pod runs
            instance_id: Pod name

        Returns:
            V1Pod manifest
        """
        payload: dict[str, Any] = revision.template.payload
        if "image" not in payload:
            raise ValueError(f"Revision {revision.id} template has no image")

        container = V1Container(
            name=revision.workload,
            image=payload["image"],
            command=payload.get("command"),
            args=payload.get("args"),
            env=[V1EnvVar(name=k, value=str(v)) for k, v in payload.get("env", {}).items()],
            ports=[V1ContainerPort(**port) for port in payload.get("ports", [])],
        )
        if payload.get("resources"):
            container.resources = V1ResourceRequirements(**payload["resources"])

        labels = {
            "managed-by": MANAGED_BY,
            "workload": revision.workload,
            "revision": revision.id,
            **payload.get("labels", {}),
        }

        return V1Pod(
            api_version="v1",
            kind="Pod",
            metadata=V1ObjectMeta(
                name=instance_id,
                namespace=self.namespace,
                labels=labels,
                annotations={"sentinel-rollout/template-hash": revision.template_hash},
            ),
            spec=V1PodSpec(containers=[container]),
        )

    async def create_instance(self, revision: Revision, instance_id: str) -> str:
        pod = self.build_pod(revision, instance_id)
        try:
            await asyncio.to_thread(
                self.core_v1.create_namespaced_pod, namespace=self.namespace, body=pod
            )
            logger.info(f"Created pod {instance_id} for revision {revision.id}")
        except ApiException as e:
            if e.status == 409:
                logger.debug(f"Pod {instance_id} already exists")
                return instance_id
            if e.status is not None and e.status >= 500:
                raise TransientError(f"Pod create failed: {e.reason}") from e
            raise
        return instance_id

    async def delete_instance(self, instance_id: str) -> None:
        try:
            await asyncio.to_thread(
                self.core_v1.delete_namespaced_pod, instance_id, self.namespace
            )
            logger.info(f"Deleted pod {instance_id}")
        except ApiException as e:
            if e.status == 404:
                return
            if e.status is not None and e.status >= 500:
                raise TransientError(f"Pod delete failed: {e.reason}") from e
            raise

    async def get_instance_health(self, instance_id: str) -> HealthSignal:
        try:
            pod = await asyncio.to_thread(
                self.core_v1.read_namespaced_pod_status, instance_id, self.namespace
            )
        except ApiException as e:
            if e.status == 404:
                return HealthSignal.UNKNOWN
            raise TransientError(f"Pod status read failed: {e.reason}") from e

        status = pod.status
        if status is None:
            return HealthSignal.UNKNOWN
        if status.phase in ("Failed", "Succeeded"):
            return HealthSignal.NOT_READY

        for condition in status.conditions or []:
            if condition.type == "Ready":
                return HealthSignal.READY if condition.status == "True" else HealthSignal.NOT_READY
        return HealthSignal.NOT_READY
