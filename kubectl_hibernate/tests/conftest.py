import copy
import itertools
import logging
from typing import Any

import pytest

from kubectl_hibernate.config import HibernationConfig
from kubectl_hibernate.errors import (
    ObjectAlreadyExistsError,
    StoreRequestError,
    TransientStoreError,
)
from kubectl_hibernate.hibernation import Hibernator
from kubectl_hibernate.model import (
    CLUSTER_API_VERSION,
    CLUSTER_KIND,
    CLUSTER_LABEL,
    INSTANCE_NAME_LABEL,
    MONITORING_CONFIGMAP_NAME,
    PHASE_HEALTHY,
    PVC_ROLE_LABEL,
    PVC_ROLE_PG_DATA,
    PVC_ROLE_PG_WAL,
    get_pvc_name,
    owner_reference,
)
from kubectl_hibernate.retry import Poller, RetryHandler
from kubectl_hibernate.store import Kind, ObjectRef, ObjectStore

logger = logging.getLogger(__name__)

PG_CONTROLDATA_OUTPUT = """\
pg_control version number:            1300
Catalog version number:               202307071
Database system identifier:           7291637489123456789
Database cluster state:               in production
Latest checkpoint location:           0/3000060
Latest checkpoint's TimeLineID:       1
"""


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class InMemoryObjectStore(ObjectStore):
    """
    Simulates the platform's object store: uids, resource versions,
    deletion that takes a number of reads to complete, objects that never
    go away, injected transient failures and a reconciler that marks a
    recreated Cluster ready.
    """

    def __init__(self, retry: RetryHandler | None = None):
        super().__init__(retry or RetryHandler(HibernationConfig(), sleep=lambda s: None))
        self.objects: dict[tuple[Kind, str, str], dict[str, Any]] = {}
        self.namespaces: set[str] = set()
        self.volumes: dict[str, list[str]] = {}  # claim uid -> table rows

        self.deletion_delay: dict[Kind, int] = {}
        self.stuck: set[tuple[Kind, str, str]] = set()
        self._dying: dict[tuple[Kind, str, str], int] = {}

        self.ready_after: int | None = 2
        self._readiness: dict[tuple[Kind, str, str], int] = {}

        self.failures: list[Exception] = []
        self.calls: list[tuple[str, str]] = []
        self.exec_output = PG_CONTROLDATA_OUTPUT

        self._uids = itertools.count(1)
        self._versions = itertools.count(1)
        self._timestamps = itertools.count(1)

    # ---- test helpers ----

    def create_namespace(self, name: str) -> None:
        self.namespaces.add(name)

    def delete_namespace(self, name: str) -> None:
        for key in [k for k in self.objects if k[1] == name]:
            del self.objects[key]
        self.namespaces.discard(name)

    def dump(self, namespace: str) -> list[str]:
        return [
            f"{kind.value}/{name}: {obj.get('metadata')}"
            for (kind, ns, name), obj in sorted(
                self.objects.items(), key=lambda kv: (kv[0][0].value, kv[0][2])
            )
            if ns == namespace
        ]

    def names(self, kind: Kind, namespace: str) -> list[str]:
        return sorted(name for (k, ns, name) in self.objects if k is kind and ns == namespace)

    def raw(self, kind: Kind, namespace: str, name: str) -> dict[str, Any] | None:
        return self.objects.get((kind, namespace, name))

    def write_rows(self, namespace: str, claim: str, rows: list[str]) -> None:
        uid = self.objects[(Kind.PVC, namespace, claim)]["metadata"]["uid"]
        self.volumes.setdefault(uid, []).extend(rows)

    def read_rows(self, namespace: str, claim: str) -> list[str]:
        uid = self.objects[(Kind.PVC, namespace, claim)]["metadata"]["uid"]
        return list(self.volumes.get(uid, []))

    def schedule_ready(self, namespace: str, name: str, reads: int = 1) -> None:
        """The operator finishes reconciling the Cluster after `reads` reads."""
        self._readiness[(Kind.CLUSTER, namespace, name)] = reads

    def mutations(self, verb: str | None = None) -> list[tuple[str, str]]:
        mutating = ("create", "update", "delete")
        return [c for c in self.calls if c[0] in mutating and (verb is None or c[0] == verb)]

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    def _timestamp(self) -> str:
        n = next(self._timestamps)
        return f"2024-01-01T{n // 3600:02d}:{n // 60 % 60:02d}:{n % 60:02d}Z"

    # ---- primitives ----

    def _get(self, ref: ObjectRef) -> dict[str, Any] | None:
        self._maybe_fail()
        self.calls.append(("get", str(ref)))
        key = (ref.kind, ref.namespace, ref.name)

        if key in self._dying:
            self._dying[key] -= 1
            if self._dying[key] <= 0:
                del self._dying[key]
                self._remove(key)

        if key in self._readiness:
            self._readiness[key] -= 1
            if self._readiness[key] <= 0:
                del self._readiness[key]
                self._mark_ready(key)

        obj = self.objects.get(key)
        return copy.deepcopy(obj) if obj is not None else None

    def _list(self, kind, namespace, labels):
        self._maybe_fail()
        self.calls.append(("list", f"{kind.value}/{namespace}"))
        result = []
        for (k, ns, _name), obj in sorted(self.objects.items(), key=lambda kv: kv[0][2]):
            if k is not kind or ns != namespace:
                continue
            obj_labels = obj.get("metadata", {}).get("labels") or {}
            if all(obj_labels.get(lk) == lv for lk, lv in labels.items()):
                result.append(copy.deepcopy(obj))
        return result

    def _create(self, kind, namespace, body):
        self._maybe_fail()
        name = body["metadata"]["name"]
        key = (kind, namespace, name)
        ref = ObjectRef(kind, namespace, name)
        if key in self.objects:
            raise ObjectAlreadyExistsError(ref)

        self.calls.append(("create", str(ref)))
        obj = copy.deepcopy(body)
        metadata = obj.setdefault("metadata", {})
        metadata["namespace"] = namespace
        metadata["uid"] = f"uid-{next(self._uids)}"
        metadata["resourceVersion"] = str(next(self._versions))
        metadata["creationTimestamp"] = self._timestamp()
        self.objects[key] = obj

        if kind is Kind.CLUSTER and self.ready_after is not None:
            self._readiness[key] = self.ready_after
        return copy.deepcopy(obj)

    def _update(self, ref, body):
        self._maybe_fail()
        key = (ref.kind, ref.namespace, ref.name)
        current = self.objects.get(key)
        if current is None:
            raise StoreRequestError(f"update {ref}: HTTP 404 Not Found")
        if body["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise TransientStoreError(f"update {ref}: conflict")

        self.calls.append(("update", str(ref)))
        obj = copy.deepcopy(body)
        obj["metadata"]["uid"] = current["metadata"]["uid"]
        obj["metadata"]["resourceVersion"] = str(next(self._versions))
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def _delete(self, ref):
        self._maybe_fail()
        key = (ref.kind, ref.namespace, ref.name)
        if key not in self.objects:
            return False

        self.calls.append(("delete", str(ref)))
        delay = self.deletion_delay.get(ref.kind, 0)
        if key in self.stuck or delay > 0:
            self.objects[key]["metadata"]["deletionTimestamp"] = self._timestamp()
            if key not in self.stuck:
                self._dying.setdefault(key, delay)
        else:
            self._remove(key)
        return True

    def _exec(self, namespace, pod, container, command):
        self._maybe_fail()
        self.calls.append(("exec", f"{namespace}/{pod}:{' '.join(command)}"))
        if (Kind.POD, namespace, pod) not in self.objects:
            raise StoreRequestError(f"exec in pod/{namespace}/{pod}: HTTP 404 Not Found")
        return self.exec_output

    def _remove(self, key) -> None:
        obj = self.objects.pop(key, None)
        if obj is not None and key[0] is Kind.PVC:
            self.volumes.pop(obj["metadata"]["uid"], None)

    def _mark_ready(self, key) -> None:
        cluster = self.objects.get(key)
        if cluster is None:
            return
        instances = cluster.get("spec", {}).get("instances", 1)
        data_claims = sorted(
            name
            for (k, ns, name), obj in self.objects.items()
            if k is Kind.PVC
            and ns == key[1]
            and obj["metadata"].get("labels", {}).get(PVC_ROLE_LABEL) == PVC_ROLE_PG_DATA
        )
        cluster["status"] = {
            "phase": PHASE_HEALTHY,
            "instances": instances,
            "readyInstances": instances,
            "currentPrimary": data_claims[0] if data_claims else f"{key[2]}-1",
        }


def seed_cluster(
    store: InMemoryObjectStore,
    namespace: str,
    name: str,
    instances: int = 3,
    wal: bool = True,
    primary_index: int = 1,
) -> dict[str, Any]:
    """
    Create a healthy, running cluster with every dependent object the
    operator would have created.
    """
    spec: dict[str, Any] = {
        "instances": instances,
        "imageName": "ghcr.io/cloudnative-pg/postgresql:16.2",
        "storage": {"size": "1Gi", "storageClass": "standard"},
        "bootstrap": {"initdb": {"database": "app", "owner": "app"}},
    }
    if wal:
        spec["walStorage"] = {"size": "1Gi", "storageClass": "standard"}

    saved = store.ready_after
    store.ready_after = None
    cluster = store.create(
        Kind.CLUSTER,
        namespace,
        {
            "apiVersion": CLUSTER_API_VERSION,
            "kind": CLUSTER_KIND,
            "metadata": {"name": name, "namespace": namespace},
            "spec": spec,
        },
    )
    store.ready_after = saved

    primary = f"{name}-{primary_index}"
    key = (Kind.CLUSTER, namespace, name)
    store.objects[key]["status"] = {
        "phase": PHASE_HEALTHY,
        "instances": instances,
        "readyInstances": instances,
        "currentPrimary": primary,
        "targetPrimary": primary,
    }
    cluster = copy.deepcopy(store.objects[key])
    owner = owner_reference(cluster)

    def meta(obj_name: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
        return {
            "name": obj_name,
            "labels": {CLUSTER_LABEL: name, **(labels or {})},
            "ownerReferences": [dict(owner)],
        }

    roles = [PVC_ROLE_PG_DATA] + ([PVC_ROLE_PG_WAL] if wal else [])
    for index in range(1, instances + 1):
        instance = f"{name}-{index}"
        store.create(
            Kind.POD,
            namespace,
            {"metadata": meta(instance, {INSTANCE_NAME_LABEL: instance}), "spec": {}},
        )
        for role in roles:
            store.create(
                Kind.PVC,
                namespace,
                {
                    "metadata": meta(
                        get_pvc_name(instance, role),
                        {INSTANCE_NAME_LABEL: instance, PVC_ROLE_LABEL: role},
                    ),
                    "spec": {"resources": {"requests": {"storage": "1Gi"}}},
                    "status": {"phase": "Bound"},
                },
            )

    for suffix in ("app", "superuser", "ca", "server", "replication"):
        store.create(Kind.SECRET, namespace, {"metadata": meta(f"{name}-{suffix}")})

    store.create(
        Kind.CONFIGMAP,
        namespace,
        {"metadata": {"name": MONITORING_CONFIGMAP_NAME}, "data": {"queries": ""}},
    )
    store.create(Kind.ROLE, namespace, {"metadata": meta(name), "rules": []})
    store.create(Kind.ROLEBINDING, namespace, {"metadata": meta(name)})

    store.calls.clear()
    return cluster


# ----------------------------
# Fixtures
# ----------------------------


@pytest.hookimpl(hookwrapper=True, tryfirst=True)
def pytest_runtest_makereport(item, call):
    outcome = yield
    report = outcome.get_result()
    setattr(item, f"rep_{report.when}", report)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return HibernationConfig()


@pytest.fixture
def store(config):
    return InMemoryObjectStore(RetryHandler(config, sleep=lambda s: None))


@pytest.fixture
def poller(config, clock):
    return Poller(
        config.poll_interval,
        config.max_poll_interval,
        clock=clock.monotonic,
        sleep=clock.sleep,
    )


@pytest.fixture
def hibernator(store, config, poller):
    return Hibernator(store, config, poller=poller)


@pytest.fixture
def namespace(store, request):
    """
    Acquire a namespace for the test and release it on every exit path,
    dumping its objects first when the test failed.
    """
    name = getattr(request, "param", "ns1")
    store.create_namespace(name)
    try:
        yield name
    finally:
        report = getattr(request.node, "rep_call", None)
        if report is not None and report.failed:
            for line in store.dump(name):
                logger.error("%s", line)
        store.delete_namespace(name)


@pytest.fixture
def seed(store, namespace):
    def _seed(name: str = "c1", **kwargs) -> dict[str, Any]:
        return seed_cluster(store, namespace, name, **kwargs)

    return _seed
