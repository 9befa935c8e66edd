"""
Object store boundary.

ObjectStore is the only way the protocol touches the platform. Public methods
retry TransientStoreError through RetryHandler; subclasses implement the
underscored primitives.
"""

import enum
import logging
from collections.abc import Callable
from typing import Any, NamedTuple

import kubernetes
import urllib3
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.stream import stream

from kubectl_hibernate.config import HibernationConfig
from kubectl_hibernate.errors import (
    ConfigError,
    ObjectAlreadyExistsError,
    StoreRequestError,
    TransientStoreError,
)
from kubectl_hibernate.model import CLUSTER_GROUP, CLUSTER_PLURAL, CLUSTER_VERSION
from kubectl_hibernate.retry import RetryHandler

logger = logging.getLogger(__name__)


class Kind(enum.Enum):
    CLUSTER = "cluster"
    POD = "pod"
    PVC = "pvc"
    CONFIGMAP = "configmap"
    SECRET = "secret"
    ROLE = "role"
    ROLEBINDING = "rolebinding"


class ObjectRef(NamedTuple):
    kind: Kind
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.namespace}/{self.name}"


class ObjectStore:
    def __init__(self, retry: RetryHandler):
        self.retry = retry

    # ---- public, retried ----

    def get(self, ref: ObjectRef) -> dict[str, Any] | None:
        """Return the object, or None if it does not exist."""
        return self.retry.execute_with_retry(self._get, ref)

    def exists(self, ref: ObjectRef) -> bool:
        return self.get(ref) is not None

    def list_objects(
        self, kind: Kind, namespace: str, labels: dict[str, str] | None = None
    ) -> list[dict[str, Any]]:
        return self.retry.execute_with_retry(self._list, kind, namespace, labels or {})

    def create(self, kind: Kind, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        """Raises ObjectAlreadyExistsError when the name is taken."""
        return self.retry.execute_with_retry(self._create, kind, namespace, body)

    def update(self, ref: ObjectRef, body: dict[str, Any]) -> dict[str, Any]:
        """
        Replace the object. body carries the resourceVersion it was read at,
        so this is not retried here: callers retry the whole
        read-modify-write.
        """
        return self._update(ref, body)

    def delete(self, ref: ObjectRef) -> bool:
        """Request deletion. Returns False if the object was already gone."""
        return self.retry.execute_with_retry(self._delete, ref)

    def exec(
        self, namespace: str, pod: str, container: str, command: list[str]
    ) -> str:
        return self.retry.execute_with_retry(
            self._exec, namespace, pod, container, command
        )

    # ---- primitives ----

    def _get(self, ref: ObjectRef) -> dict[str, Any] | None:
        raise NotImplementedError

    def _list(
        self, kind: Kind, namespace: str, labels: dict[str, str]
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    def _create(
        self, kind: Kind, namespace: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        raise NotImplementedError

    def _update(self, ref: ObjectRef, body: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def _delete(self, ref: ObjectRef) -> bool:
        raise NotImplementedError

    def _exec(
        self, namespace: str, pod: str, container: str, command: list[str]
    ) -> str:
        raise NotImplementedError


# ----------------------------
# Kubernetes implementation
# ----------------------------

TRANSIENT_STATUSES = {429, 500, 502, 503, 504}

# kind -> (API class attribute, method suffix) for the typed core APIs
_TYPED_KINDS: dict[Kind, tuple[str, str]] = {
    Kind.POD: ("core", "pod"),
    Kind.PVC: ("core", "persistent_volume_claim"),
    Kind.CONFIGMAP: ("core", "config_map"),
    Kind.SECRET: ("core", "secret"),
    Kind.ROLE: ("rbac", "role"),
    Kind.ROLEBINDING: ("rbac", "role_binding"),
}


def _label_selector(labels: dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def translate_api_error(e: ApiException, what: str) -> Exception:
    if e.status in TRANSIENT_STATUSES:
        return TransientStoreError(f"{what}: HTTP {e.status} {e.reason}")
    if e.status == 409:
        # Update conflicts clear up on a fresh read-modify-write
        return TransientStoreError(f"{what}: conflict ({e.reason})")
    return StoreRequestError(f"{what}: HTTP {e.status} {e.reason}")


class KubernetesObjectStore(ObjectStore):
    def __init__(
        self,
        retry: RetryHandler,
        context: str | None = None,
        api_client: client.ApiClient | None = None,
    ):
        super().__init__(retry)
        if api_client is None:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                try:
                    config.load_kube_config(context=context)
                except config.ConfigException as e:
                    raise ConfigError(f"cannot load kubeconfig: {e}") from e
            api_client = client.ApiClient()

        self.api_client = api_client
        self.core = client.CoreV1Api(api_client)
        self.rbac = client.RbacAuthorizationV1Api(api_client)
        self.custom = client.CustomObjectsApi(api_client)

    @classmethod
    def from_config(
        cls, hibernation_config: HibernationConfig, context: str | None = None
    ) -> "KubernetesObjectStore":
        return cls(RetryHandler(hibernation_config), context=context)

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    def _call(self, what: str, fn: Callable, *args, **kwargs) -> Any:
        try:
            return fn(*args, **kwargs)
        except (urllib3.exceptions.HTTPError, ConnectionError) as e:
            raise TransientStoreError(f"{what}: {e}") from e

    def _typed(self, kind: Kind, verb: str) -> Callable:
        api_name, suffix = _TYPED_KINDS[kind]
        api = getattr(self, api_name)
        return getattr(api, f"{verb}_namespaced_{suffix}")

    # ---- primitives ----

    def _get(self, ref: ObjectRef) -> dict[str, Any] | None:
        try:
            if ref.kind is Kind.CLUSTER:
                obj = self._call(
                    f"get {ref}",
                    self.custom.get_namespaced_custom_object,
                    CLUSTER_GROUP,
                    CLUSTER_VERSION,
                    ref.namespace,
                    CLUSTER_PLURAL,
                    ref.name,
                )
            else:
                obj = self._call(
                    f"get {ref}", self._typed(ref.kind, "read"), ref.name, ref.namespace
                )
        except ApiException as e:
            if e.status == 404:
                return None
            raise translate_api_error(e, f"get {ref}") from e
        return self._to_dict(obj)

    def _list(
        self, kind: Kind, namespace: str, labels: dict[str, str]
    ) -> list[dict[str, Any]]:
        selector = _label_selector(labels)
        what = f"list {kind.value} in {namespace}"
        try:
            if kind is Kind.CLUSTER:
                result = self._call(
                    what,
                    self.custom.list_namespaced_custom_object,
                    CLUSTER_GROUP,
                    CLUSTER_VERSION,
                    namespace,
                    CLUSTER_PLURAL,
                    label_selector=selector,
                )
                return list(result.get("items", []))
            result = self._call(
                what, self._typed(kind, "list"), namespace, label_selector=selector
            )
        except ApiException as e:
            raise translate_api_error(e, what) from e
        return [self._to_dict(item) for item in result.items or []]

    def _create(
        self, kind: Kind, namespace: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        name = body.get("metadata", {}).get("name", "<unknown>")
        ref = ObjectRef(kind, namespace, name)
        try:
            if kind is Kind.CLUSTER:
                obj = self._call(
                    f"create {ref}",
                    self.custom.create_namespaced_custom_object,
                    CLUSTER_GROUP,
                    CLUSTER_VERSION,
                    namespace,
                    CLUSTER_PLURAL,
                    body,
                )
            else:
                obj = self._call(
                    f"create {ref}", self._typed(kind, "create"), namespace, body
                )
        except ApiException as e:
            if e.status == 409:
                raise ObjectAlreadyExistsError(ref) from e
            raise translate_api_error(e, f"create {ref}") from e
        logger.debug("Created %s", ref)
        return self._to_dict(obj)

    def _update(self, ref: ObjectRef, body: dict[str, Any]) -> dict[str, Any]:
        try:
            if ref.kind is Kind.CLUSTER:
                obj = self._call(
                    f"update {ref}",
                    self.custom.replace_namespaced_custom_object,
                    CLUSTER_GROUP,
                    CLUSTER_VERSION,
                    ref.namespace,
                    CLUSTER_PLURAL,
                    ref.name,
                    body,
                )
            else:
                obj = self._call(
                    f"update {ref}",
                    self._typed(ref.kind, "replace"),
                    ref.name,
                    ref.namespace,
                    body,
                )
        except ApiException as e:
            raise translate_api_error(e, f"update {ref}") from e
        return self._to_dict(obj)

    def _delete(self, ref: ObjectRef) -> bool:
        try:
            if ref.kind is Kind.CLUSTER:
                self._call(
                    f"delete {ref}",
                    self.custom.delete_namespaced_custom_object,
                    CLUSTER_GROUP,
                    CLUSTER_VERSION,
                    ref.namespace,
                    CLUSTER_PLURAL,
                    ref.name,
                )
            else:
                self._call(
                    f"delete {ref}",
                    self._typed(ref.kind, "delete"),
                    ref.name,
                    ref.namespace,
                )
        except ApiException as e:
            if e.status == 404:
                return False
            raise translate_api_error(e, f"delete {ref}") from e
        logger.debug("Deletion requested for %s", ref)
        return True

    def _exec(
        self, namespace: str, pod: str, container: str, command: list[str]
    ) -> str:
        what = f"exec {command[0]} in pod/{namespace}/{pod}"
        try:
            return self._call(
                what,
                stream,
                self.core.connect_get_namespaced_pod_exec,
                pod,
                namespace,
                container=container,
                command=command,
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
            )
        except ApiException as e:
            raise translate_api_error(e, what) from e
        except kubernetes.client.exceptions.OpenApiException as e:
            raise StoreRequestError(f"{what}: {e}") from e
