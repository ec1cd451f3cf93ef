"""
Kubernetes client initialization and utilities.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
import logging
from typing import Optional

from orchestrator.src.errors import EnvironmentProvisionError

logger = logging.getLogger(__name__)

class KubernetesClient:
    """Batch and core API handles bound to one namespace."""

    def __init__(
        self,
        namespace: str,
        batch_v1: Optional[client.BatchV1Api] = None,
        core_v1: Optional[client.CoreV1Api] = None,
    ):
        self.namespace = namespace
        self._batch_v1 = batch_v1
        self._core_v1 = core_v1

    @classmethod
    def connect(cls, namespace: str, in_cluster: bool = False) -> "KubernetesClient":
        """Load cluster credentials and verify the API server is reachable."""
        try:
            if in_cluster:
                # Running inside Kubernetes
                config.load_incluster_config()
                logger.info("Loaded in-cluster Kubernetes config")
            else:
                # Running locally (Docker Desktop, minikube, etc.)
                config.load_kube_config()
                logger.info("Loaded local Kubernetes config")

            api_client = client.ApiClient()
            k8s = cls(namespace, client.BatchV1Api(api_client), client.CoreV1Api(api_client))

            # Test connection
            k8s.core.list_namespace(limit=1)
            logger.info("Kubernetes client initialized successfully")
            return k8s
        except (ApiException, ConfigException) as e:
            raise EnvironmentProvisionError(f"Failed to initialize Kubernetes client: {e}") from e

    @property
    def batch(self) -> client.BatchV1Api:
        """BatchV1 API client for Job operations."""
        return self._batch_v1

    @property
    def core(self) -> client.CoreV1Api:
        """CoreV1 API client for Pod operations."""
        return self._core_v1

    def ensure_namespace(self):
        """Ensure the target namespace exists."""
        try:
            self.core.read_namespace(name=self.namespace)
            logger.info(f"Namespace '{self.namespace}' exists")
        except ApiException as e:
            if e.status == 404:
                namespace = client.V1Namespace(
                    metadata=client.V1ObjectMeta(name=self.namespace)
                )
                self.core.create_namespace(body=namespace)
                logger.info(f"Created namespace '{self.namespace}'")
            else:
                raise

    def delete_job(self, job_name: str):
        """Delete a job and its pods."""
        try:
            self.batch.delete_namespaced_job(
                name=job_name,
                namespace=self.namespace,
                body=client.V1DeleteOptions(
                    propagation_policy="Foreground"
                )
            )
            logger.info(f"Deleted job {job_name}")
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to delete job {job_name}: {e}")

    def delete_secret(self, name: str):
        """Delete a secret, ignoring one that is already gone."""
        try:
            self.core.delete_namespaced_secret(name=name, namespace=self.namespace)
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to delete secret {name}: {e}")
