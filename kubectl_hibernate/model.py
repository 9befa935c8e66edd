from typing import Any

# ----------------------------
# Stable identifiers
# ----------------------------

# Annotation keys shared by hibernate on/off/status. Changing them breaks
# resume of clusters hibernated by earlier releases.
CLUSTER_MANIFEST_ANNOTATION = "cnpg.io/hibernateClusterManifest"
PG_CONTROL_DATA_ANNOTATION = "cnpg.io/hibernatePgControlData"

CLUSTER_LABEL = "cnpg.io/cluster"
INSTANCE_NAME_LABEL = "cnpg.io/instanceName"
PVC_ROLE_LABEL = "cnpg.io/pvcRole"

CLUSTER_GROUP = "postgresql.cnpg.io"
CLUSTER_VERSION = "v1"
CLUSTER_PLURAL = "clusters"
CLUSTER_KIND = "Cluster"
CLUSTER_API_VERSION = f"{CLUSTER_GROUP}/{CLUSTER_VERSION}"

MONITORING_CONFIGMAP_NAME = "cnpg-default-monitoring"

PHASE_HEALTHY = "Cluster in healthy state"

# ----------------------------
# Storage roles
# ----------------------------

PVC_ROLE_PG_DATA = "PG_DATA"
PVC_ROLE_PG_WAL = "PG_WAL"

# role -> (name suffix, Cluster spec field that requests it)
# PG_DATA is always requested; extend this table for new roles.
PVC_ROLES: dict[str, tuple[str, str | None]] = {
    PVC_ROLE_PG_DATA: ("", None),
    PVC_ROLE_PG_WAL: ("-wal", "walStorage"),
}

# ----------------------------
# Accessors
# ----------------------------


def get_name(obj: dict[str, Any]) -> str:
    return obj.get("metadata", {}).get("name", "<unknown>")


def get_namespace(obj: dict[str, Any]) -> str:
    return obj.get("metadata", {}).get("namespace", "default")


def get_uid(obj: dict[str, Any]) -> str | None:
    return obj.get("metadata", {}).get("uid")


def get_labels(obj: dict[str, Any]) -> dict[str, str]:
    return obj.get("metadata", {}).get("labels") or {}


def get_annotations(obj: dict[str, Any]) -> dict[str, str]:
    return obj.get("metadata", {}).get("annotations") or {}


def get_current_primary(cluster: dict[str, Any]) -> str | None:
    return cluster.get("status", {}).get("currentPrimary") or None


def is_being_deleted(obj: dict[str, Any]) -> bool:
    return bool(obj.get("metadata", {}).get("deletionTimestamp"))


def requested_roles(cluster: dict[str, Any]) -> list[str]:
    """
    Storage roles the Cluster spec asks each instance to have.
    """
    spec = cluster.get("spec", {})
    roles = []
    for role, (_suffix, field) in PVC_ROLES.items():
        if field is None or spec.get(field):
            roles.append(role)
    return roles


def get_pvc_name(instance: str, role: str) -> str:
    suffix, _field = PVC_ROLES[role]
    return f"{instance}{suffix}"


def pvc_role(pvc: dict[str, Any]) -> str | None:
    return get_labels(pvc).get(PVC_ROLE_LABEL)


def is_hibernation_annotated(pvc: dict[str, Any]) -> bool:
    annotations = get_annotations(pvc)
    return (
        CLUSTER_MANIFEST_ANNOTATION in annotations
        and PG_CONTROL_DATA_ANNOTATION in annotations
    )


def is_owned_by(obj: dict[str, Any], cluster_name: str) -> bool:
    """
    True if the object carries the cluster label or an owner reference to
    the Cluster named cluster_name.
    """
    if get_labels(obj).get(CLUSTER_LABEL) == cluster_name:
        return True
    for ref in obj.get("metadata", {}).get("ownerReferences") or []:
        if ref.get("kind") == CLUSTER_KIND and ref.get("name") == cluster_name:
            return True
    return False


def owner_reference(cluster: dict[str, Any]) -> dict[str, Any]:
    return {
        "apiVersion": CLUSTER_API_VERSION,
        "kind": CLUSTER_KIND,
        "name": get_name(cluster),
        "uid": get_uid(cluster),
        "controller": True,
        "blockOwnerDeletion": True,
    }


def is_cluster_ready(cluster: dict[str, Any]) -> bool:
    """
    Ready means every requested instance is ready, a primary is elected and
    the operator reports the healthy phase.
    """
    status = cluster.get("status", {})
    instances = cluster.get("spec", {}).get("instances", 1)
    return (
        status.get("phase") == PHASE_HEALTHY
        and bool(status.get("currentPrimary"))
        and status.get("readyInstances", 0) >= instances
    )
