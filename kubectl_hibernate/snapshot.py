import enum
import functools
import logging
from typing import Any

from kubectl_hibernate.codec import decode
from kubectl_hibernate.errors import ManifestCorruptError
from kubectl_hibernate.model import (
    CLUSTER_MANIFEST_ANNOTATION,
    PG_CONTROL_DATA_ANNOTATION,
    PVC_ROLE_PG_DATA,
    get_annotations,
    get_name,
    get_pvc_name,
    get_uid,
    is_being_deleted,
    is_cluster_ready,
    is_hibernation_annotated,
    is_owned_by,
    pvc_role,
    requested_roles,
)
from kubectl_hibernate.store import Kind, ObjectRef, ObjectStore

logger = logging.getLogger(__name__)


class HibernationState(enum.Enum):
    ACTIVE = "Active"
    HIBERNATING = "Hibernating"
    HIBERNATED = "Hibernated"
    RESUMING = "Resuming"
    NOT_FOUND = "NotFound"
    INCONSISTENT = "Inconsistent"


class ClusterSnapshot:
    """
    Normalized view of everything that decides the hibernation state of one
    cluster identity: the live Cluster object (if any) and its claims.
    """

    def __init__(
        self,
        namespace: str,
        name: str,
        cluster: dict[str, Any] | None,
        claims: list[dict[str, Any]],
    ):
        self.namespace = namespace
        self.name = name
        self.cluster = cluster
        self.claims = sorted(claims, key=get_name)

    @classmethod
    def discover(cls, store: ObjectStore, namespace: str, name: str) -> "ClusterSnapshot":
        cluster = store.get(ObjectRef(Kind.CLUSTER, namespace, name))
        claims = [
            pvc for pvc in store.list_objects(Kind.PVC, namespace) if is_owned_by(pvc, name)
        ]
        return cls(namespace, name, cluster, claims)

    # ----------------------------
    # Hibernation metadata
    # ----------------------------

    @functools.cached_property
    def _candidates(self) -> list[tuple[dict[str, Any], dict[str, Any]]]:
        """
        (data claim, decoded manifest) for every annotated data claim.
        More than one exists only while an older cycle's claims await deletion.

        Unreadable manifests are skipped. They are fatal only when no live
        Cluster exists and no readable manifest is left to resume from.
        """
        candidates = []
        corrupt: list[tuple[dict[str, Any], ManifestCorruptError]] = []
        for claim in self.claims:
            if pvc_role(claim) != PVC_ROLE_PG_DATA or not is_hibernation_annotated(claim):
                continue
            try:
                manifest = decode(get_annotations(claim)[CLUSTER_MANIFEST_ANNOTATION])
            except ManifestCorruptError as e:
                corrupt.append((claim, e))
                continue
            candidates.append((claim, manifest))

        if corrupt and self.cluster is None and not candidates:
            raise corrupt[0][1]
        for claim, e in corrupt:
            logger.warning(
                "Ignoring unreadable hibernation manifest on claim %s: %s",
                get_name(claim),
                e.message,
            )
        return candidates

    @functools.cached_property
    def _selected(self) -> tuple[dict[str, Any], dict[str, Any]] | None:
        if not self._candidates:
            return None

        # An interrupted hibernation of the live object wins
        live_uid = get_uid(self.cluster) if self.cluster else None
        for claim, manifest in self._candidates:
            if live_uid and get_uid(manifest) == live_uid:
                return claim, manifest

        # Otherwise the newest cycle: each resume creates a newer Cluster
        return max(
            self._candidates,
            key=lambda c: (
                c[1].get("metadata", {}).get("creationTimestamp") or "",
                get_name(c[0]),
            ),
        )

    @property
    def data_claim(self) -> dict[str, Any] | None:
        return self._selected[0] if self._selected else None

    @property
    def manifest(self) -> dict[str, Any] | None:
        return self._selected[1] if self._selected else None

    @property
    def manifest_text(self) -> str | None:
        if self.data_claim is None:
            return None
        return get_annotations(self.data_claim)[CLUSTER_MANIFEST_ANNOTATION]

    @property
    def control_data(self) -> str:
        if self.data_claim is None:
            return ""
        return get_annotations(self.data_claim)[PG_CONTROL_DATA_ANNOTATION]

    @property
    def expected_claim_names(self) -> list[str]:
        """One claim per requested role of the last-known primary."""
        if self.data_claim is None:
            return []
        instance = get_name(self.data_claim)
        return sorted(
            get_pvc_name(instance, role) for role in requested_roles(self.manifest)
        )

    @property
    def primary_claims(self) -> list[dict[str, Any]]:
        """Expected claims carrying the same manifest as the data claim."""
        expected = set(self.expected_claim_names)
        return [
            claim
            for claim in self.claims
            if get_name(claim) in expected
            and get_annotations(claim).get(CLUSTER_MANIFEST_ANNOTATION)
            == self.manifest_text
            and PG_CONTROL_DATA_ANNOTATION in get_annotations(claim)
        ]

    @property
    def missing_claims(self) -> list[str]:
        present = {get_name(c) for c in self.primary_claims}
        return [n for n in self.expected_claim_names if n not in present]

    @property
    def extra_claims(self) -> list[str]:
        expected = set(self.expected_claim_names)
        return [get_name(c) for c in self.claims if get_name(c) not in expected]

    # ----------------------------
    # State
    # ----------------------------

    @property
    def state(self) -> HibernationState:
        if self.cluster is None:
            if self.manifest is None:
                return HibernationState.NOT_FOUND
            if self.missing_claims:
                return HibernationState.INCONSISTENT
            if self.extra_claims:
                return HibernationState.HIBERNATING
            return HibernationState.HIBERNATED

        if self.manifest is None:
            return HibernationState.ACTIVE
        live_uid = get_uid(self.cluster)
        if is_being_deleted(self.cluster) or (
            live_uid and get_uid(self.manifest) == live_uid
        ):
            return HibernationState.HIBERNATING
        if is_cluster_ready(self.cluster):
            return HibernationState.ACTIVE
        return HibernationState.RESUMING
