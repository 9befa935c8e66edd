import copy
import json
from typing import Any

from kubectl_hibernate.errors import ManifestCorruptError, SerializationError
from kubectl_hibernate.model import CLUSTER_KIND

# Metadata the API server fills in; never part of a creatable object
SERVER_POPULATED_METADATA = (
    "uid",
    "resourceVersion",
    "creationTimestamp",
    "generation",
    "managedFields",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "ownerReferences",
    "selfLink",
)

# ----------------------------
# Manifest encoding
# ----------------------------


def encode(cluster: Any) -> str:
    """
    Serialize a Cluster object into the HibernationManifest annotation value.
    """
    if not isinstance(cluster, dict):
        raise SerializationError(
            f"Cluster must be a mapping, got {type(cluster).__name__}"
        )

    # Never write a manifest that decode would reject on resume
    try:
        validate_manifest(cluster)
    except ManifestCorruptError as e:
        raise SerializationError(f"Cluster cannot be stored: {e.message}") from e

    name = cluster["metadata"]["name"]
    try:
        return json.dumps(cluster, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Cluster {name} is not serializable: {e}") from e


def validate_manifest(manifest: Any) -> None:
    if not isinstance(manifest, dict):
        raise ManifestCorruptError("Manifest must be a JSON object")

    kind = manifest.get("kind")
    if kind != CLUSTER_KIND:
        raise ManifestCorruptError(f"Manifest kind must be {CLUSTER_KIND!r}, got {kind!r}")

    metadata = manifest.get("metadata")
    if not isinstance(metadata, dict):
        raise ManifestCorruptError("Manifest metadata must be an object")
    if not isinstance(metadata.get("name"), str) or not metadata["name"]:
        raise ManifestCorruptError("Manifest metadata.name must be a non-empty string")

    spec = manifest.get("spec")
    if not isinstance(spec, dict):
        raise ManifestCorruptError("Manifest spec must be an object")

    instances = spec.get("instances", 1)
    if isinstance(instances, bool) or not isinstance(instances, int) or instances < 1:
        raise ManifestCorruptError(
            f"Manifest spec.instances must be a positive integer, got {instances!r}"
        )


def decode(text: Any) -> dict[str, Any]:
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ManifestCorruptError(f"Manifest is not UTF-8: {e}") from e

    if not isinstance(text, str):
        raise ManifestCorruptError(f"Manifest must be text, got {type(text).__name__}")

    try:
        manifest = json.loads(text)
    except ValueError as e:
        raise ManifestCorruptError(f"Manifest is not valid JSON: {e}") from e

    validate_manifest(manifest)
    return manifest


def reconstruct(manifest: dict[str, Any]) -> dict[str, Any]:
    """
    Creatable copy of a decoded manifest: server-populated metadata and
    status removed, spec untouched.
    """
    cluster = copy.deepcopy(manifest)
    cluster.pop("status", None)

    metadata = cluster.setdefault("metadata", {})
    for key in SERVER_POPULATED_METADATA:
        metadata.pop(key, None)

    # Annotations written by kubectl apply describe the old object
    annotations = metadata.get("annotations")
    if annotations:
        annotations.pop("kubectl.kubernetes.io/last-applied-configuration", None)
        if not annotations:
            metadata.pop("annotations")

    return cluster
