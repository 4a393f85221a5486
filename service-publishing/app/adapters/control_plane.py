"""Control-plane client for policy objects.

Blocking ``apply``/``delete``/``get`` primitives keyed by deterministic
object names. Callers run them in worker threads; nothing here is async.

Implementations
- ``KubernetesControlPlane``: the ``kubernetes`` dynamic client with
  server-side apply, so repeated applies of the same manifest are no-ops
- ``InMemoryControlPlane``: dictionary-backed, for tests and local runs
"""

import copy
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import structlog
from kubernetes import config as k8s_config
from kubernetes import dynamic
from kubernetes.client import api_client
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic.exceptions import DynamicApiError, ResourceNotFoundError
from kubernetes.dynamic.exceptions import NotFoundError as KubernetesNotFoundError
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from ..runtime.models import ObjectRef

logger = structlog.get_logger("publishing.control_plane")

FIELD_MANAGER = "model-publishing"

# Conflicts, throttling and server-side failures clear up on their own
_RETRYABLE_STATUSES = frozenset({409, 429, 500, 502, 503, 504})


class ControlPlaneCallError(Exception):
    """A control-plane call failed in a way retrying will not fix."""

    retryable = False

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientControlPlaneError(ControlPlaneCallError):
    """A control-plane call failed but may succeed if repeated."""

    retryable = True


def ref_for(manifest: Dict[str, Any]) -> ObjectRef:
    metadata = manifest["metadata"]
    return ObjectRef(
        api_version=manifest["apiVersion"],
        kind=manifest["kind"],
        namespace=metadata.get("namespace", ""),
        name=metadata["name"],
    )


class ControlPlane(ABC):
    """Abstract control-plane client."""

    @abstractmethod
    def apply(self, manifest: Dict[str, Any]) -> None:
        """Create or update an object to match ``manifest``."""
        pass

    @abstractmethod
    def delete(self, ref: ObjectRef) -> bool:
        """Delete an object. Returns ``False`` when it was already absent."""
        pass

    @abstractmethod
    def get(self, ref: ObjectRef) -> Optional[Dict[str, Any]]:
        """Fetch an object, or ``None`` when absent."""
        pass

    def health_check(self) -> bool:
        return True


class KubernetesControlPlane(ControlPlane):
    """Control plane backed by the Kubernetes API server."""

    def __init__(
        self,
        kubeconfig: Optional[str] = None,
        in_cluster: bool = False,
        field_manager: str = FIELD_MANAGER,
        client: Optional[dynamic.DynamicClient] = None,
    ):
        """Configure the Kubernetes client.

        Parameters
        - kubeconfig: Path to a kubeconfig file (default location when empty)
        - in_cluster: Use the pod's service account instead of a kubeconfig
        - field_manager: Server-side apply field manager name
        - client: Pre-built dynamic client (mainly for tests)
        """
        self.kubeconfig = kubeconfig or None
        self.in_cluster = in_cluster
        self.field_manager = field_manager
        self._client = client
        self._lock = threading.Lock()

    def _get_client(self) -> dynamic.DynamicClient:
        with self._lock:
            if self._client is None:
                try:
                    if self.in_cluster:
                        k8s_config.load_incluster_config()
                    else:
                        k8s_config.load_kube_config(config_file=self.kubeconfig)
                except ConfigException as e:
                    raise ControlPlaneCallError(f"Kubernetes configuration unavailable: {e}")
                self._client = dynamic.DynamicClient(api_client.ApiClient())
                logger.info("Created Kubernetes dynamic client", in_cluster=self.in_cluster)
            return self._client

    def _resource(self, api_version: str, kind: str):
        try:
            return self._get_client().resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError:
            raise ControlPlaneCallError(f"Resource type {api_version}/{kind} is not installed")
        except (DynamicApiError, Urllib3HTTPError) as e:
            raise TransientControlPlaneError(f"Discovery of {api_version}/{kind} failed: {e}") from e

    @staticmethod
    def _translate(verb: str, ref: ObjectRef, error: Exception) -> ControlPlaneCallError:
        if isinstance(error, DynamicApiError):
            status = getattr(error, "status", None)
            message = f"{verb} {ref} failed with status {status}: {getattr(error, 'reason', error)}"
            if status in _RETRYABLE_STATUSES:
                return TransientControlPlaneError(message, status=status)
            return ControlPlaneCallError(message, status=status)
        return TransientControlPlaneError(f"{verb} {ref} failed: {error}")

    def apply(self, manifest: Dict[str, Any]) -> None:
        ref = ref_for(manifest)
        resource = self._resource(ref.api_version, ref.kind)
        try:
            resource.patch(
                body=manifest,
                name=ref.name,
                namespace=ref.namespace,
                content_type="application/apply-patch+yaml",
                field_manager=self.field_manager,
                force_conflicts=True,
            )
        except KubernetesNotFoundError as e:
            # Namespace missing; not something a retry fixes
            raise ControlPlaneCallError(f"apply {ref} failed: {e.reason}", status=404)
        except (DynamicApiError, Urllib3HTTPError) as e:
            raise self._translate("apply", ref, e) from e
        logger.debug("Applied object", object=str(ref))

    def delete(self, ref: ObjectRef) -> bool:
        resource = self._resource(ref.api_version, ref.kind)
        try:
            resource.delete(name=ref.name, namespace=ref.namespace)
        except KubernetesNotFoundError:
            return False
        except (DynamicApiError, Urllib3HTTPError) as e:
            raise self._translate("delete", ref, e) from e
        logger.debug("Deleted object", object=str(ref))
        return True

    def get(self, ref: ObjectRef) -> Optional[Dict[str, Any]]:
        resource = self._resource(ref.api_version, ref.kind)
        try:
            obj = resource.get(name=ref.name, namespace=ref.namespace)
        except KubernetesNotFoundError:
            return None
        except (DynamicApiError, Urllib3HTTPError) as e:
            raise self._translate("get", ref, e) from e
        return obj.to_dict()

    def health_check(self) -> bool:
        try:
            self._get_client().version
            return True
        except (ControlPlaneCallError, DynamicApiError, Urllib3HTTPError) as e:
            logger.warning("Control plane health check failed", error=str(e))
            return False


class InMemoryControlPlane(ControlPlane):
    """Dictionary-backed control plane.

    Failures and latency can be injected per object name so tests can
    exercise rollback, retries and per-key serialization.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.calls: List[Tuple[str, str]] = []
        self._objects: Dict[ObjectRef, Dict[str, Any]] = {}
        self._failures: Dict[Tuple[str, str], List[ControlPlaneCallError]] = {}
        self._lock = threading.Lock()

    def fail(self, verb: str, name: str, times: int = 1, retryable: bool = True) -> None:
        """Make the next ``times`` calls of ``verb`` on object ``name`` fail."""
        with self._lock:
            queue = self._failures.setdefault((verb, name), [])
            error_class = TransientControlPlaneError if retryable else ControlPlaneCallError
            queue.extend(error_class(f"injected {verb} failure for {name}") for _ in range(times))

    def _check(self, verb: str, ref: ObjectRef) -> None:
        if self.latency:
            time.sleep(self.latency)
        with self._lock:
            self.calls.append((verb, ref.name))
            queue = self._failures.get((verb, ref.name))
            if queue:
                raise queue.pop(0)

    def apply(self, manifest: Dict[str, Any]) -> None:
        ref = ref_for(manifest)
        self._check("apply", ref)
        with self._lock:
            self._objects[ref] = copy.deepcopy(manifest)

    def delete(self, ref: ObjectRef) -> bool:
        self._check("delete", ref)
        with self._lock:
            return self._objects.pop(ref, None) is not None

    def get(self, ref: ObjectRef) -> Optional[Dict[str, Any]]:
        with self._lock:
            obj = self._objects.get(ref)
            return copy.deepcopy(obj) if obj is not None else None

    def names(self) -> List[str]:
        """Names of every stored object, sorted."""
        with self._lock:
            return sorted(ref.name for ref in self._objects)

    def objects(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(obj)
                for ref, obj in sorted(self._objects.items(), key=lambda item: str(item[0]))
                if kind is None or ref.kind == kind
            ]


def create_control_plane(config) -> ControlPlane:
    """Create the control plane selected by ``PublishingConfig``."""
    backend = config.ml_publishing_control_plane
    if backend == "kubernetes":
        return KubernetesControlPlane(
            kubeconfig=config.ml_publishing_kubeconfig,
            in_cluster=config.ml_publishing_in_cluster,
        )
    if backend == "memory":
        logger.warning("Using in-memory control plane - no objects reach a cluster")
        return InMemoryControlPlane()
    raise ValueError(f"Unsupported control plane: {backend}")
