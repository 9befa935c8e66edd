import secrets
from dataclasses import dataclass, field
from typing import Any

from kubectl_hibernate.codec import reconstruct
from kubectl_hibernate.config import HibernationConfig
from kubectl_hibernate.model import (
    CLUSTER_GROUP,
    CLUSTER_LABEL,
    CLUSTER_PLURAL,
    INSTANCE_NAME_LABEL,
    MONITORING_CONFIGMAP_NAME,
    PVC_ROLE_PG_DATA,
    PVC_ROLE_PG_WAL,
    get_name,
    get_namespace,
    is_owned_by,
    owner_reference,
    pvc_role,
)
from kubectl_hibernate.store import Kind, ObjectRef, ObjectStore

# role -> (volume name, mount path) inside the instance pod
ROLE_VOLUMES = {
    PVC_ROLE_PG_DATA: ("pgdata", "/var/lib/postgresql/data"),
    PVC_ROLE_PG_WAL: ("pg-wal", "/var/lib/postgresql/wal"),
}

DEFAULT_MONITORING_QUERIES = """\
backends:
  query: "SELECT count(*) AS total FROM pg_catalog.pg_stat_activity"
  metrics:
    - total:
        usage: "GAUGE"
        description: "Number of backends"
"""


@dataclass
class RestoreContext:
    """
    Everything a resource needs to render its objects on resume.
    `cluster` is the manifest until the Cluster object has been recreated,
    then the live object (with its new uid).
    """

    manifest: dict[str, Any]
    claims: list[dict[str, Any]]
    config: HibernationConfig
    cluster: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return get_name(self.manifest)

    @property
    def namespace(self) -> str:
        return get_namespace(self.manifest)

    def metadata(self, name: str, labels: dict[str, str] | None = None) -> dict:
        meta: dict[str, Any] = {
            "name": name,
            "namespace": self.namespace,
            "labels": {CLUSTER_LABEL: self.name, **(labels or {})},
        }
        if self.cluster.get("metadata", {}).get("uid"):
            meta["ownerReferences"] = [owner_reference(self.cluster)]
        return meta


class DependentResource:
    """
    One variant of the objects a Cluster owns. Subclasses declare the kind,
    the teardown stage and how to find and rebuild their objects; deletion,
    verification and creation are generic (see sweep.py).
    """

    name: str = "BaseResource"
    kind: Kind
    stage: int = 100
    recreate: bool = True

    def targets(
        self, store: ObjectStore, cluster: dict[str, Any], exclude: set[ObjectRef]
    ) -> list[ObjectRef]:
        raise NotImplementedError

    def render(self, ctx: RestoreContext) -> list[dict[str, Any]]:
        return []


class NamedResource(DependentResource):
    """A single object whose name derives from the cluster name."""

    def object_name(self, cluster_name: str) -> str:
        return cluster_name

    def targets(self, store, cluster, exclude):
        ref = ObjectRef(
            self.kind, get_namespace(cluster), self.object_name(get_name(cluster))
        )
        if ref in exclude or not store.exists(ref):
            return []
        return [ref]


class OwnedResource(DependentResource):
    """Every object of the kind labelled with, or owned by, the cluster."""

    def targets(self, store, cluster, exclude):
        namespace = get_namespace(cluster)
        cluster_name = get_name(cluster)
        refs = [
            ObjectRef(self.kind, namespace, get_name(obj))
            for obj in store.list_objects(self.kind, namespace)
            if is_owned_by(obj, cluster_name)
        ]
        return [ref for ref in refs if ref not in exclude]


# ----------------------------
# Variants
# ----------------------------


class ClusterObject(NamedResource):
    name = "cluster"
    kind = Kind.CLUSTER
    stage = 0

    def render(self, ctx):
        cluster = reconstruct(ctx.manifest)
        cluster["metadata"]["namespace"] = ctx.namespace
        return [cluster]


class InstancePods(OwnedResource):
    name = "instances"
    kind = Kind.POD
    stage = 10

    def render(self, ctx):
        spec = ctx.manifest.get("spec", {})
        data_claims = [c for c in ctx.claims if pvc_role(c) == PVC_ROLE_PG_DATA]
        if not data_claims:
            return []
        instance = get_name(data_claims[0])

        volumes = []
        mounts = []
        for claim in sorted(ctx.claims, key=get_name):
            role = pvc_role(claim)
            if role not in ROLE_VOLUMES:
                continue
            volume_name, mount_path = ROLE_VOLUMES[role]
            volumes.append(
                {
                    "name": volume_name,
                    "persistentVolumeClaim": {"claimName": get_name(claim)},
                }
            )
            mounts.append({"name": volume_name, "mountPath": mount_path})

        return [
            {
                "apiVersion": "v1",
                "kind": "Pod",
                "metadata": ctx.metadata(
                    instance,
                    {INSTANCE_NAME_LABEL: instance, "cnpg.io/instanceRole": "primary"},
                ),
                "spec": {
                    "serviceAccountName": ctx.name,
                    "containers": [
                        {
                            "name": ctx.config.postgres_container,
                            "image": spec.get("imageName") or ctx.config.default_image,
                            "env": [
                                {"name": "PGDATA", "value": ctx.config.pgdata_path}
                            ],
                            "volumeMounts": mounts,
                        }
                    ],
                    "volumes": volumes,
                },
            }
        ]


class InstanceClaims(OwnedResource):
    """Non-primary claims. Storage is re-attached on resume, never recreated."""

    name = "claims"
    kind = Kind.PVC
    stage = 20
    recreate = False


class MonitoringConfigMap(NamedResource):
    name = "monitoring"
    kind = Kind.CONFIGMAP
    stage = 30

    def object_name(self, cluster_name):
        return MONITORING_CONFIGMAP_NAME

    def render(self, ctx):
        return [
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": ctx.metadata(
                    MONITORING_CONFIGMAP_NAME, {"cnpg.io/reload": ""}
                ),
                "data": {"queries": DEFAULT_MONITORING_QUERIES},
            }
        ]


class ClusterSecrets(OwnedResource):
    """
    Credentials are not part of the manifest, so resume renders new
    passwords. The database roles still hold the passwords set before
    hibernation and must be reset to the new secret values after resume.
    """

    name = "secrets"
    kind = Kind.SECRET
    stage = 30

    def _basic_auth(self, ctx: RestoreContext, name: str, username: str) -> dict:
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "kubernetes.io/basic-auth",
            "metadata": ctx.metadata(name),
            "stringData": {
                "username": username,
                "password": secrets.token_urlsafe(24),
            },
        }

    def render(self, ctx):
        spec = ctx.manifest.get("spec", {})
        initdb = spec.get("bootstrap", {}).get("initdb", {})
        owner = initdb.get("owner") or initdb.get("database") or "app"

        rendered = [self._basic_auth(ctx, f"{ctx.name}-app", owner)]
        if spec.get("enableSuperuserAccess"):
            rendered.append(
                self._basic_auth(ctx, f"{ctx.name}-superuser", "postgres")
            )
        return rendered


class ClusterRole(NamedResource):
    name = "role"
    kind = Kind.ROLE
    stage = 30

    def render(self, ctx):
        return [
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "Role",
                "metadata": ctx.metadata(ctx.name),
                "rules": [
                    {
                        "apiGroups": [""],
                        "resources": ["configmaps", "secrets"],
                        "verbs": ["get", "list", "watch"],
                    },
                    {
                        "apiGroups": [CLUSTER_GROUP],
                        "resources": [CLUSTER_PLURAL],
                        "verbs": ["get", "list", "watch"],
                        "resourceNames": [ctx.name],
                    },
                    {
                        "apiGroups": [CLUSTER_GROUP],
                        "resources": [f"{CLUSTER_PLURAL}/status"],
                        "verbs": ["get", "patch", "update"],
                        "resourceNames": [ctx.name],
                    },
                ],
            }
        ]


class ClusterRoleBinding(NamedResource):
    name = "rolebinding"
    kind = Kind.ROLEBINDING
    stage = 30

    def render(self, ctx):
        return [
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "RoleBinding",
                "metadata": ctx.metadata(ctx.name),
                "roleRef": {
                    "apiGroup": "rbac.authorization.k8s.io",
                    "kind": "Role",
                    "name": ctx.name,
                },
                "subjects": [
                    {
                        "kind": "ServiceAccount",
                        "name": ctx.name,
                        "namespace": ctx.namespace,
                    }
                ],
            }
        ]


DEPENDENT_RESOURCES: list[DependentResource] = [
    ClusterObject(),
    InstancePods(),
    InstanceClaims(),
    MonitoringConfigMap(),
    ClusterSecrets(),
    ClusterRole(),
    ClusterRoleBinding(),
]
