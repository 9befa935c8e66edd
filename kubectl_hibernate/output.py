from typing import Any

import yaml

from kubectl_hibernate.hibernation import HibernationResult
from kubectl_hibernate.model import get_current_primary
from kubectl_hibernate.status import StatusReport

FORMATS = ("text", "json", "yaml")

# ----------------------------
# Output formatting
# ----------------------------


def output_report(report: StatusReport, fmt: str = "text") -> None:
    """
    Prints a hibernation status report.
    - json/yaml emit the report structure and nothing else
    - text shows the summary, the cluster topology and pg_controldata output
    """
    if fmt == "json":
        print(report.to_json())
        return

    if fmt == "yaml":
        print(yaml.safe_dump(report.to_dict(), sort_keys=False))
        return

    summary = report.summary
    spec: dict[str, Any] = report.cluster.get("spec", {})

    print(f"Cluster: {summary.namespace}/{summary.cluster_name}")
    print(f"Status: {summary.status}")
    print(f"Instances: {spec.get('instances', 1)}")

    primary = get_current_primary(report.cluster)
    if primary:
        print(f"Primary: {primary}")

    if summary.preserved_claims:
        print("\nPreserved claims:")
        for claim in sorted(summary.preserved_claims):
            print(f"  - {claim}")

    if report.pg_control_data:
        print("\nPostgreSQL control data:")
        for line in report.pg_control_data.splitlines():
            print(f"  {line}")


def output_result(result: HibernationResult) -> None:
    where = f"{result.namespace}/{result.name}"
    if not result.changed:
        print(f"Cluster {where}: nothing to do ({result.state.value})")
        return

    print(f"Cluster {where}: {result.state.value}")
    for claim in result.preserved_claims:
        print(f"  preserved: {claim}")
    for ref in result.removed:
        print(f"  removed: {ref}")
