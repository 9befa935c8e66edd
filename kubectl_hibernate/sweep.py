import itertools
import logging
from typing import Any

from kubectl_hibernate.config import HibernationConfig
from kubectl_hibernate.errors import (
    InconsistentStateError,
    ObjectAlreadyExistsError,
    TeardownIncompleteError,
)
from kubectl_hibernate.model import get_name, get_namespace
from kubectl_hibernate.resources import (
    DEPENDENT_RESOURCES,
    DependentResource,
    RestoreContext,
)
from kubectl_hibernate.retry import Poller
from kubectl_hibernate.store import Kind, ObjectRef, ObjectStore

logger = logging.getLogger(__name__)


class ResourceSweeper:
    """
    Deletes and recreates the objects of one cluster, stage by stage.

    A stage starts only after every object of the previous stage is
    confirmed gone, so claims (stage 20) are never deleted while instance
    pods (stage 10) still exist.
    """

    def __init__(
        self,
        store: ObjectStore,
        config: HibernationConfig,
        poller: Poller | None = None,
        resources: list[DependentResource] | None = None,
    ):
        self.store = store
        self.config = config
        self.poller = poller or Poller(config.poll_interval, config.max_poll_interval)
        self.resources = sorted(
            resources if resources is not None else DEPENDENT_RESOURCES,
            key=lambda r: r.stage,
        )

    def stages(self) -> list[list[DependentResource]]:
        return [
            list(group)
            for _stage, group in itertools.groupby(self.resources, key=lambda r: r.stage)
        ]

    # ----------------------------
    # Teardown
    # ----------------------------

    def teardown(
        self, cluster: dict[str, Any], exclude: set[ObjectRef]
    ) -> list[ObjectRef]:
        """
        Delete every dependent object of cluster except the references in
        exclude, and confirm each is gone. Returns the deleted references.
        """
        deadline = self.poller.deadline(self.config.teardown_timeout)
        stages = self.stages()
        removed: list[ObjectRef] = []

        for index, group in enumerate(stages):
            refs = self._targets(group, cluster, exclude)
            if not refs:
                continue

            for ref in refs:
                if self.store.delete(ref):
                    logger.info("Deleting %s", ref)

            pending = self._wait_absent(refs, deadline)
            if pending:
                # Report everything still standing, including later stages
                for later in stages[index + 1 :]:
                    pending.extend(self._targets(later, cluster, exclude))
                raise TeardownIncompleteError(pending, self.config.teardown_timeout)

            removed.extend(refs)

        logger.info(
            "Removed %d object(s) of cluster %s/%s",
            len(removed),
            get_namespace(cluster),
            get_name(cluster),
        )
        return removed

    def _targets(
        self,
        group: list[DependentResource],
        cluster: dict[str, Any],
        exclude: set[ObjectRef],
    ) -> list[ObjectRef]:
        refs: list[ObjectRef] = []
        for resource in group:
            refs.extend(resource.targets(self.store, cluster, exclude))
        return refs

    def _wait_absent(self, refs: list[ObjectRef], deadline: float) -> list[ObjectRef]:
        pending = list(refs)

        def gone() -> bool:
            pending[:] = [ref for ref in pending if self.store.exists(ref)]
            if pending:
                logger.debug("Waiting for deletion of %s", ", ".join(map(str, pending)))
            return not pending

        self.poller.until(gone, deadline)
        return pending

    # ----------------------------
    # Restore
    # ----------------------------

    def restore(
        self, manifest: dict[str, Any], claims: list[dict[str, Any]]
    ) -> dict[str, Any]:
        """
        Recreate the Cluster from its manifest, then every other dependent
        object, tolerating objects that already exist. Returns the Cluster.
        """
        ctx = RestoreContext(manifest=manifest, claims=claims, config=self.config)

        for resource in self.resources:
            if not resource.recreate:
                continue
            for body in resource.render(ctx):
                obj = self._apply(resource.kind, ctx.namespace, body)
                if resource.kind is Kind.CLUSTER:
                    ctx.cluster = obj

        if not ctx.cluster:
            raise InconsistentStateError(
                f"cluster {ctx.namespace}/{ctx.name} was not recreated"
            )
        return ctx.cluster

    def _apply(self, kind: Kind, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        ref = ObjectRef(kind, namespace, get_name(body))
        try:
            obj = self.store.create(kind, namespace, body)
            logger.info("Recreated %s", ref)
            return obj
        except ObjectAlreadyExistsError:
            logger.info("%s already exists, keeping it", ref)

        existing = self.store.get(ref)
        if existing is None:
            raise InconsistentStateError(f"{ref} reported as existing but not found")
        return existing
