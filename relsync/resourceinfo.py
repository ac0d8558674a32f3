"""Decide what to do with each resource of a release.

Every builder fetches the live object, repairs its managed fields, dry runs
the desired manifest and classifies the result. The returned info tuples are
immutable and expose the `should_*` predicates the deployment plan is built
from.

"""
import logging
from typing import Collection, NamedTuple, Tuple, Type

from relsync.annotations import TRACK_NON_BLOCKING
from relsync.client import KubeClient
from relsync.diff import resources_really_differ
from relsync.dtypes import DeployType, ResourceIdentity, UpToDateStatus
from relsync.errors import (
    ClusterError, DiffError, ImmutableError, NoSuchKindError, NotFoundError,
)
from relsync.resource import (
    GeneralResource, HookResource, ReleaseNamespace, RemoteResource, Resource,
    StandaloneCRD,
)

logit = logging.getLogger("relsync")


class Observation(NamedTuple):
    """What we learned about a resource from the cluster."""
    live: RemoteResource | None = None
    dry_run: RemoteResource | None = None
    dry_run_error: ClusterError | None = None
    up_to_date: UpToDateStatus = UpToDateStatus.NO


def classify(live: RemoteResource | None,
             dry_run: RemoteResource | None,
             dry_run_error: Exception | None) -> UpToDateStatus:
    if live is None:
        return UpToDateStatus.NO
    if dry_run is None:
        if isinstance(dry_run_error, ImmutableError):
            return UpToDateStatus.NO
        return UpToDateStatus.UNKNOWN

    try:
        different = resources_really_differ(live.manifest, dry_run.manifest)
    except DiffError as err:
        raise DiffError(f"diff {live.identity.human_id}: {err}") from err
    return UpToDateStatus.NO if different else UpToDateStatus.YES


async def fetch_live(client: KubeClient, res: Resource,
                     absent_on: Tuple[Type[Exception], ...]) -> RemoteResource | None:
    """Return the live version of `res` or `None` if it does not exist."""
    try:
        obj = await client.get(res.identity, try_cache=True)
    except absent_on:
        logit.debug(f"{res.human_id} does not exist")
        return None
    return RemoteResource(obj, res.default_namespace)


async def observe(client: KubeClient, res: Resource,
                  absent_on: Tuple[Type[Exception], ...],
                  tolerate_immutable: bool,
                  tolerate_dry_run_errors: bool = False) -> Observation:
    """Fetch, repair, dry run and classify `res` (in that order).

    Inputs:
        client: KubeClient
        res: Resource
        absent_on: Tuple[Exception]
            Exceptions from `get` that mean the resource does not exist.
        tolerate_immutable: bool
            Record instead of raise immutable field errors from the dry run.
        tolerate_dry_run_errors: bool
            Ignore all errors of the dry run, ie do not even record them.

    """
    live = await fetch_live(client, res, absent_on)
    if live is None:
        return Observation()

    # Make us the exclusive owner of our fields before we compare anything.
    if live.fix_managed_fields(client.field_manager):
        logit.debug(f"Fixing managed fields of {res.human_id}")
        patch = {"metadata": {"managedFields": live.managed_fields}}
        obj = await client.merge_patch(res.identity, patch)
        live = RemoteResource(obj, res.default_namespace)

    dry_run, dry_run_error = None, None
    try:
        obj = await client.apply(res.identity, res.manifest, dry_run=True)
        dry_run = RemoteResource(obj, res.default_namespace)
    except ImmutableError as err:
        if not (tolerate_immutable or tolerate_dry_run_errors):
            raise
        dry_run_error = err
    except ClusterError as err:
        logit.debug(f"Dry run of {res.human_id} failed: {err}")
        dry_run_error = err

    if tolerate_dry_run_errors:
        dry_run_error = None

    status = classify(live, dry_run, dry_run_error)
    return Observation(live, dry_run, dry_run_error, status)


# -----------------------------------------------------------------------------
#                                 Info Types
# -----------------------------------------------------------------------------
class DeployableInfo(NamedTuple):
    """Predicates shared by general resources and hooks."""
    resource: Resource
    live: RemoteResource | None = None
    dry_run: RemoteResource | None = None
    dry_run_error: ClusterError | None = None
    up_to_date: UpToDateStatus = UpToDateStatus.NO

    @property
    def identity(self) -> ResourceIdentity:
        return self.resource.identity

    @property
    def exists(self) -> bool:
        return self.live is not None

    def should_create(self) -> bool:
        return not self.exists

    def should_recreate(self) -> bool:
        return self.exists and self.resource.recreate

    def should_update(self) -> bool:
        return (self.exists and self.up_to_date == UpToDateStatus.NO and
                not self.resource.recreate)

    def should_apply(self) -> bool:
        return (self.exists and self.up_to_date == UpToDateStatus.UNKNOWN and
                not self.resource.recreate)

    def should_deploy(self) -> bool:
        return (self.should_create() or self.should_recreate() or
                self.should_update() or self.should_apply())

    def should_keep_on_delete(self, release_name: str, release_namespace: str) -> bool:
        if self.resource.keep_on_delete:
            return True
        return self.live is not None and self.live.keep_on_delete(release_name, release_namespace)

    def should_cleanup(self, release_name: str, release_namespace: str) -> bool:
        return ((self.exists or self.should_deploy()) and
                self.resource.delete_on_succeeded and
                not self.should_keep_on_delete(release_name, release_namespace))

    def should_cleanup_on_failed(self, prev_release_failed: bool,
                                 release_name: str, release_namespace: str) -> bool:
        return (self.should_track_readiness(prev_release_failed) and
                self.resource.delete_on_failed and
                not self.should_keep_on_delete(release_name, release_namespace))

    def should_track_readiness(self, prev_release_failed: bool) -> bool:
        if self.identity.is_crd or self.resource.track_termination_mode == TRACK_NON_BLOCKING:
            return False
        return self.should_deploy() or (prev_release_failed and self.exists)

    def force_replicas(self) -> int | None:
        if not (self.should_create() or self.should_recreate()):
            return None
        return self.resource.default_replicas_on_creation

    def live_uid(self) -> str | None:
        return self.live.uid if self.live is not None else None


class GeneralResourceInfo(DeployableInfo):
    pass


class HookResourceInfo(DeployableInfo):
    pass


class PrevReleaseHookResourceInfo(DeployableInfo):
    """Hook of the previous release.

    The previous release is the one being evaluated, which is why the
    readiness predicates do not depend on its outcome.

    """
    def should_cleanup_on_failed(self, release_name: str,   # type: ignore[override]
                                 release_namespace: str) -> bool:
        return (self.should_track_readiness() and
                self.resource.delete_on_failed and
                not self.should_keep_on_delete(release_name, release_namespace))

    def should_track_readiness(self) -> bool:   # type: ignore[override]
        if self.identity.is_crd or self.resource.track_termination_mode == TRACK_NON_BLOCKING:
            return False
        return self.should_deploy() or self.exists


class PrevReleaseGeneralResourceInfo(NamedTuple):
    resource: GeneralResource
    live: RemoteResource | None = None

    @property
    def identity(self) -> ResourceIdentity:
        return self.resource.identity

    @property
    def exists(self) -> bool:
        return self.live is not None

    def should_keep_on_delete(self, release_name: str, release_namespace: str) -> bool:
        if self.resource.keep_on_delete:
            return True
        return self.live is not None and self.live.keep_on_delete(release_name, release_namespace)

    def should_delete(self, current_uids: Collection[str], release_name: str,
                      release_namespace: str, deploy_type: DeployType) -> bool:
        """Return `True` if the resource is not part of the new release anymore."""
        if self.live is None:
            return False
        if self.should_keep_on_delete(release_name, release_namespace):
            return False
        if deploy_type == DeployType.UNINSTALL:
            return True
        return self.live.uid not in current_uids

    def live_uid(self) -> str | None:
        return self.live.uid if self.live is not None else None


class StandaloneCRDInfo(NamedTuple):
    resource: StandaloneCRD
    live: RemoteResource | None = None
    dry_run: RemoteResource | None = None
    up_to_date: UpToDateStatus = UpToDateStatus.NO

    @property
    def identity(self) -> ResourceIdentity:
        return self.resource.identity

    @property
    def exists(self) -> bool:
        return self.live is not None

    def should_create(self) -> bool:
        return not self.exists

    def should_update(self) -> bool:
        return self.exists and self.up_to_date == UpToDateStatus.NO

    def should_apply(self) -> bool:
        return self.exists and self.up_to_date == UpToDateStatus.UNKNOWN

    def live_uid(self) -> str | None:
        return self.live.uid if self.live is not None else None


class ReleaseNamespaceInfo(NamedTuple):
    resource: ReleaseNamespace
    live: RemoteResource | None = None
    dry_run: RemoteResource | None = None
    up_to_date: UpToDateStatus = UpToDateStatus.NO

    @property
    def identity(self) -> ResourceIdentity:
        return self.resource.identity

    @property
    def exists(self) -> bool:
        return self.live is not None

    def should_create(self) -> bool:
        return not self.exists

    def should_update(self) -> bool:
        return self.exists and self.up_to_date == UpToDateStatus.NO

    def should_apply(self) -> bool:
        return self.exists and self.up_to_date == UpToDateStatus.UNKNOWN

    def should_keep_on_delete(self, release_name: str, release_namespace: str) -> bool:
        return self.live is not None and self.live.keep_on_delete(release_name, release_namespace)

    def live_uid(self) -> str | None:
        return self.live.uid if self.live is not None else None


# -----------------------------------------------------------------------------
#                                  Builders
# -----------------------------------------------------------------------------
ABSENT = (NotFoundError, NoSuchKindError)


async def build_general_info(client: KubeClient, res: GeneralResource) -> GeneralResourceInfo:
    obs = await observe(client, res, ABSENT, tolerate_immutable=res.recreate)
    return GeneralResourceInfo(res, *obs)


async def build_hook_info(client: KubeClient, res: HookResource) -> HookResourceInfo:
    obs = await observe(client, res, ABSENT, tolerate_immutable=res.recreate)
    return HookResourceInfo(res, *obs)


async def build_prev_hook_info(client: KubeClient,
                               res: HookResource) -> PrevReleaseHookResourceInfo:
    obs = await observe(client, res, ABSENT, tolerate_immutable=res.recreate)
    return PrevReleaseHookResourceInfo(res, *obs)


async def build_prev_general_info(client: KubeClient,
                                  res: GeneralResource) -> PrevReleaseGeneralResourceInfo:
    live = await fetch_live(client, res, ABSENT)
    return PrevReleaseGeneralResourceInfo(res, live)


async def build_standalone_crd_info(client: KubeClient,
                                    res: StandaloneCRD) -> StandaloneCRDInfo:
    # Only a missing CRD counts as absent. Any other problem is a real error.
    obs = await observe(client, res, (NotFoundError,), tolerate_immutable=True,
                        tolerate_dry_run_errors=True)
    return StandaloneCRDInfo(res, obs.live, obs.dry_run, obs.up_to_date)


async def build_release_namespace_info(client: KubeClient,
                                       res: ReleaseNamespace) -> ReleaseNamespaceInfo:
    obs = await observe(client, res, (NotFoundError,), tolerate_immutable=True,
                        tolerate_dry_run_errors=True)
    return ReleaseNamespaceInfo(res, obs.live, obs.dry_run, obs.up_to_date)
