"""
Hibernation protocol: hibernate on / off / status for one cluster identity.

hibernate on   annotate the primary's claims with the Cluster manifest and
               pg_controldata output, then delete everything else.
hibernate off  recreate the Cluster and its dependents from the manifest on
               the preserved claims, then wait until it is ready.

Every operation starts by discovering the current state (snapshot.py), so
any of them can be rerun after an interruption.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from kubectl_hibernate.codec import decode, encode
from kubectl_hibernate.config import HibernationConfig
from kubectl_hibernate.errors import (
    ClusterNotFoundError,
    InconsistentStateError,
    ManifestCorruptError,
    NoHibernatedClusterError,
    ReadinessTimeoutError,
    TransientStoreError,
)
from kubectl_hibernate.model import (
    CLUSTER_KIND,
    CLUSTER_MANIFEST_ANNOTATION,
    PG_CONTROL_DATA_ANNOTATION,
    get_annotations,
    get_current_primary,
    get_name,
    get_pvc_name,
    get_uid,
    is_cluster_ready,
    is_hibernation_annotated,
    requested_roles,
)
from kubectl_hibernate.retry import Poller, RetryHandler
from kubectl_hibernate.snapshot import ClusterSnapshot, HibernationState
from kubectl_hibernate.status import StatusReport, StatusReporter
from kubectl_hibernate.store import Kind, ObjectRef, ObjectStore
from kubectl_hibernate.sweep import ResourceSweeper

logger = logging.getLogger(__name__)

MODES = ("on", "off", "status")


@dataclass
class HibernationResult:
    namespace: str
    name: str
    state: HibernationState
    changed: bool
    preserved_claims: list[str] = field(default_factory=list)
    removed: list[ObjectRef] = field(default_factory=list)


class Hibernator:
    def __init__(
        self,
        store: ObjectStore,
        config: HibernationConfig | None = None,
        poller: Poller | None = None,
        retry: RetryHandler | None = None,
    ):
        self.store = store
        self.config = config or HibernationConfig()
        self.poller = poller or Poller(
            self.config.poll_interval, self.config.max_poll_interval
        )
        self.retry = retry or RetryHandler(self.config, sleep=self.poller.sleep)
        self.sweeper = ResourceSweeper(store, self.config, poller=self.poller)
        self.reporter = StatusReporter(store)

    def snapshot(self, namespace: str, name: str) -> ClusterSnapshot:
        return ClusterSnapshot.discover(self.store, namespace, name)

    def run(self, mode: str, namespace: str, name: str) -> HibernationResult | StatusReport:
        if mode == "on":
            return self.hibernate_on(namespace, name)
        if mode == "off":
            return self.hibernate_off(namespace, name)
        if mode == "status":
            return self.status(namespace, name)
        raise ValueError(f"unknown hibernation mode {mode!r}, expected one of {MODES}")

    def status(self, namespace: str, name: str) -> StatusReport:
        return self.reporter.report(namespace, name)

    # ----------------------------
    # hibernate on
    # ----------------------------

    def hibernate_on(self, namespace: str, name: str) -> HibernationResult:
        snap = self.snapshot(namespace, name)
        state = snap.state
        where = f"{namespace}/{name}"
        logger.info("Cluster %s is %s, hibernating", where, state.value)

        if state is HibernationState.HIBERNATED:
            logger.info("Cluster %s is already hibernated", where)
            return HibernationResult(
                namespace,
                name,
                state,
                changed=False,
                preserved_claims=snap.expected_claim_names,
            )

        if state is HibernationState.NOT_FOUND:
            raise ClusterNotFoundError(f"cluster {where} not found")

        if state is HibernationState.INCONSISTENT:
            raise InconsistentStateError(
                f"cluster {where} is gone but primary claim(s) "
                f"{', '.join(snap.missing_claims)} are missing"
            )

        if snap.cluster is None:
            # Interrupted after the Cluster was deleted: finish from the manifest
            cluster = snap.manifest
            preserved = snap.expected_claim_names
        else:
            cluster = snap.cluster
            preserved = self._annotate_primary_claims(cluster)

        # Annotations are confirmed at this point; only now may deletion start
        keep = {ObjectRef(Kind.PVC, namespace, claim) for claim in preserved}
        removed = self.sweeper.teardown(cluster, exclude=keep)

        logger.info(
            "Cluster %s hibernated, preserved claims: %s", where, ", ".join(preserved)
        )
        return HibernationResult(
            namespace,
            name,
            HibernationState.HIBERNATED,
            changed=True,
            preserved_claims=preserved,
            removed=removed,
        )

    def _annotate_primary_claims(self, cluster: dict[str, Any]) -> list[str]:
        namespace = cluster.get("metadata", {}).get("namespace")
        name = get_name(cluster)
        primary = get_current_primary(cluster)
        if not primary:
            raise InconsistentStateError(
                f"cluster {namespace}/{name} has no elected primary"
            )

        claims = []
        for role in requested_roles(cluster):
            ref = ObjectRef(Kind.PVC, namespace, get_pvc_name(primary, role))
            claim = self.store.get(ref)
            if claim is None:
                raise InconsistentStateError(f"primary claim {ref} not found")
            claims.append(claim)

        uid = get_uid(cluster)
        done = [c for c in claims if self._annotated_for(c, uid)]
        pending = [c for c in claims if not self._annotated_for(c, uid)]

        if pending:
            if done:
                # Retry of an interrupted write: keep every claim identical
                annotations = get_annotations(done[0])
                manifest = annotations[CLUSTER_MANIFEST_ANNOTATION]
                control_data = annotations[PG_CONTROL_DATA_ANNOTATION]
            else:
                manifest = encode(cluster)
                control_data = self._capture_control_data(namespace, primary)

            for claim in pending:
                ref = ObjectRef(Kind.PVC, namespace, get_name(claim))
                self.retry.execute_with_retry(
                    self._write_annotations, ref, name, manifest, control_data
                )

        return sorted(get_name(c) for c in claims)

    def _annotated_for(self, claim: dict[str, Any], uid: str | None) -> bool:
        if not is_hibernation_annotated(claim):
            return False
        try:
            manifest = decode(get_annotations(claim)[CLUSTER_MANIFEST_ANNOTATION])
        except ManifestCorruptError as e:
            logger.warning(
                "Claim %s carries an unreadable manifest, rewriting it: %s",
                get_name(claim),
                e.message,
            )
            return False
        return uid is not None and get_uid(manifest) == uid

    def _capture_control_data(self, namespace: str, primary: str) -> str:
        command = ["pg_controldata", "-D", self.config.pgdata_path]
        logger.info("Capturing pg_controldata from pod %s/%s", namespace, primary)
        return self.store.exec(
            namespace, primary, self.config.postgres_container, command
        )

    def _write_annotations(
        self, ref: ObjectRef, cluster_name: str, manifest: str, control_data: str
    ) -> None:
        claim = self.store.get(ref)
        if claim is None:
            raise InconsistentStateError(f"primary claim {ref} disappeared")

        body = copy.deepcopy(claim)
        metadata = body.setdefault("metadata", {})
        annotations = metadata.get("annotations") or {}
        annotations[CLUSTER_MANIFEST_ANNOTATION] = manifest
        annotations[PG_CONTROL_DATA_ANNOTATION] = control_data
        metadata["annotations"] = annotations

        # Detach from the Cluster so garbage collection keeps the claim
        owners = metadata.get("ownerReferences") or []
        metadata["ownerReferences"] = [
            o
            for o in owners
            if not (o.get("kind") == CLUSTER_KIND and o.get("name") == cluster_name)
        ]

        self.store.update(ref, body)

        confirmed = get_annotations(self.store.get(ref) or {})
        if (
            confirmed.get(CLUSTER_MANIFEST_ANNOTATION) != manifest
            or confirmed.get(PG_CONTROL_DATA_ANNOTATION) != control_data
        ):
            raise TransientStoreError(f"hibernation annotations on {ref} not confirmed")
        logger.info("Wrote hibernation metadata to %s", ref)

    # ----------------------------
    # hibernate off
    # ----------------------------

    def hibernate_off(self, namespace: str, name: str) -> HibernationResult:
        snap = self.snapshot(namespace, name)
        state = snap.state
        where = f"{namespace}/{name}"
        logger.info("Cluster %s is %s, resuming", where, state.value)

        if state is HibernationState.NOT_FOUND:
            raise NoHibernatedClusterError(
                f"no hibernated cluster {where}: no claim carries hibernation metadata"
            )

        if state is HibernationState.INCONSISTENT:
            raise NoHibernatedClusterError(
                f"hibernated cluster {where} is missing primary claim(s): "
                f"{', '.join(snap.missing_claims)}"
            )

        if state is HibernationState.HIBERNATING:
            raise InconsistentStateError(
                f"hibernation of {where} has not completed, run hibernate on again"
            )

        if state is HibernationState.ACTIVE:
            if snap.manifest is None:
                raise NoHibernatedClusterError(f"cluster {where} is not hibernated")
            logger.info("Cluster %s already resumed", where)
            return HibernationResult(namespace, name, state, changed=False)

        # HIBERNATED, or RESUMING after an interrupted resume
        claims = snap.primary_claims
        self.sweeper.restore(snap.manifest, claims)
        self.wait_ready(namespace, name)

        logger.info("Cluster %s resumed", where)
        return HibernationResult(
            namespace,
            name,
            HibernationState.ACTIVE,
            changed=True,
            preserved_claims=[get_name(c) for c in claims],
        )

    def wait_ready(self, namespace: str, name: str) -> dict[str, Any]:
        ref = ObjectRef(Kind.CLUSTER, namespace, name)
        deadline = self.poller.deadline(self.config.readiness_timeout)
        last: dict[str, Any] = {}

        def ready() -> bool:
            last.clear()
            last.update(self.store.get(ref) or {})
            logger.debug(
                "Cluster %s phase: %s", ref, last.get("status", {}).get("phase")
            )
            return is_cluster_ready(last)

        if not self.poller.until(ready, deadline):
            raise ReadinessTimeoutError(
                ref, self.config.readiness_timeout, last.get("status", {}).get("phase")
            )
        return dict(last)
