"""
Hibernation status report.

The report is a fixed schema rather than a free-form tree: consumers of
`status -o json` parse it back with StatusReport.from_dict, which validates
once and fails with StatusSchemaError naming the offending field.
"""

import json
from dataclasses import dataclass, field
from typing import Any

from kubectl_hibernate.errors import NoHibernatedClusterError, StatusSchemaError
from kubectl_hibernate.model import get_name
from kubectl_hibernate.snapshot import ClusterSnapshot, HibernationState
from kubectl_hibernate.store import ObjectStore

SUMMARY_MESSAGES: dict[HibernationState, str] = {
    HibernationState.ACTIVE: "No Hibernation. Cluster Deployed.",
    HibernationState.HIBERNATED: "Cluster Hibernated",
    HibernationState.HIBERNATING: "Cluster Hibernation In Progress",
    HibernationState.RESUMING: "Cluster Resuming From Hibernation",
}

REPORTABLE_STATES = {state.value for state in SUMMARY_MESSAGES}


def _require(payload: dict[str, Any], key: str, kind: type, where: str) -> Any:
    if key not in payload:
        raise StatusSchemaError(f"{where}.{key} is missing")
    value = payload[key]
    if not isinstance(value, kind):
        raise StatusSchemaError(
            f"{where}.{key} must be {kind.__name__}, got {type(value).__name__}"
        )
    return value


@dataclass
class StatusSummary:
    status: str
    cluster_name: str
    namespace: str
    state: str
    preserved_claims: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.status not in SUMMARY_MESSAGES.values():
            raise StatusSchemaError(f"summary.status {self.status!r} is not a known message")
        if self.state not in REPORTABLE_STATES:
            raise StatusSchemaError(f"summary.state {self.state!r} is not reportable")

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "clusterName": self.cluster_name,
            "namespace": self.namespace,
            "state": self.state,
            "preservedClaims": list(self.preserved_claims),
        }

    @classmethod
    def from_dict(cls, payload: Any) -> "StatusSummary":
        if not isinstance(payload, dict):
            raise StatusSchemaError("summary must be an object")
        claims = _require(payload, "preservedClaims", list, "summary")
        if not all(isinstance(c, str) for c in claims):
            raise StatusSchemaError("summary.preservedClaims must hold strings")
        return cls(
            status=_require(payload, "status", str, "summary"),
            cluster_name=_require(payload, "clusterName", str, "summary"),
            namespace=_require(payload, "namespace", str, "summary"),
            state=_require(payload, "state", str, "summary"),
            preserved_claims=claims,
        )


@dataclass
class StatusReport:
    cluster: dict[str, Any]
    summary: StatusSummary
    pg_control_data: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster": self.cluster,
            "summary": self.summary.to_dict(),
            "pgControlData": self.pg_control_data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, payload: Any) -> "StatusReport":
        if not isinstance(payload, dict):
            raise StatusSchemaError("report must be an object")
        unknown = set(payload) - {"cluster", "summary", "pgControlData"}
        if unknown:
            raise StatusSchemaError(f"report has unknown sections: {sorted(unknown)}")
        return cls(
            cluster=_require(payload, "cluster", dict, "report"),
            summary=StatusSummary.from_dict(_require(payload, "summary", dict, "report")),
            pg_control_data=_require(payload, "pgControlData", str, "report"),
        )

    @classmethod
    def from_json(cls, text: str) -> "StatusReport":
        try:
            payload = json.loads(text)
        except ValueError as e:
            raise StatusSchemaError(f"report is not valid JSON: {e}") from e
        return cls.from_dict(payload)


class StatusReporter:
    def __init__(self, store: ObjectStore):
        self.store = store

    def report(self, namespace: str, name: str) -> StatusReport:
        return self.from_snapshot(ClusterSnapshot.discover(self.store, namespace, name))

    def from_snapshot(self, snapshot: ClusterSnapshot) -> StatusReport:
        state = snapshot.state
        where = f"{snapshot.namespace}/{snapshot.name}"

        if state is HibernationState.NOT_FOUND:
            raise NoHibernatedClusterError(
                f"cluster {where} not found and no claim carries hibernation metadata"
            )
        if state is HibernationState.INCONSISTENT:
            raise NoHibernatedClusterError(
                f"hibernated cluster {where} is missing primary claim(s): "
                f"{', '.join(snapshot.missing_claims)}"
            )

        hibernated = state is HibernationState.HIBERNATED
        cluster = snapshot.cluster if snapshot.cluster is not None else snapshot.manifest
        preserved = (
            [get_name(c) for c in snapshot.primary_claims]
            if snapshot.cluster is None
            else []
        )

        return StatusReport(
            cluster=cluster or {},
            summary=StatusSummary(
                status=SUMMARY_MESSAGES[state],
                cluster_name=snapshot.name,
                namespace=snapshot.namespace,
                state=state.value,
                preserved_claims=preserved,
            ),
            pg_control_data=snapshot.control_data if hibernated else "",
        )
