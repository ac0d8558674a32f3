import copy
import functools
import logging
from typing import Awaitable, Callable, List, Sequence, Tuple, TypeVar

from relsync import pool, resourceinfo
from relsync.client import KubeClient
from relsync.dtypes import DeployType
from relsync.errors import (
    AdoptionError, ClusterError, DuplicateResourceError, MultiError, RelsyncError,
    ResourceValidationError, multierror,
)
from relsync.resource import (
    GeneralResource, HookResource, ReleaseNamespace, Resource, StandaloneCRD,
)
from relsync.resourceinfo import (
    GeneralResourceInfo, HookResourceInfo, PrevReleaseGeneralResourceInfo,
    PrevReleaseHookResourceInfo, ReleaseNamespaceInfo, StandaloneCRDInfo,
)
from relsync.transform import (
    DropInvalidAnnotationsAndLabelsTransformer, PatcherInfo,
    ReleaseMetadataPatcher, ResourceListsTransformer, ResourcePatcher,
    ResourceTransformer, TransformerInfo,
)

logit = logging.getLogger("relsync")

R = TypeVar("R", bound=Resource)
T = TypeVar("T")

# Hook phases that run for each deploy type.
HOOK_PHASES_BY_DEPLOY_TYPE = {
    DeployType.INITIAL: ("pre-install", "post-install"),
    DeployType.INSTALL: ("pre-install", "post-install"),
    DeployType.UPGRADE: ("pre-upgrade", "post-upgrade"),
    DeployType.ROLLBACK: ("pre-rollback", "post-rollback"),
}


def sort_resources(resources: List[R]) -> List[R]:
    return sorted(resources, key=lambda _: _.sort_key)


class DeployableResourcesProcessor:
    """Prepare all resources of a release for deployment.

    Call `process` once. Afterwards, the `releasable_*` attributes contain
    the resources to store in the release record, the `deployable_*`
    attributes the resources to send to the cluster and the `*_infos`
    attributes what needs to happen to each of them.

    """
    def __init__(
            self,
            deploy_type: DeployType,
            release_name: str,
            release_namespace: str,
            standalone_crds: Sequence[StandaloneCRD],
            hook_resources: Sequence[HookResource],
            general_resources: Sequence[GeneralResource],
            prev_release_hooks: Sequence[HookResource],
            prev_release_general_resources: Sequence[GeneralResource],
            *,
            kube_client: KubeClient | None = None,
            release_namespace_resource: ReleaseNamespace | None = None,
            network_parallelism: int = 30,
            force_adoption: bool = False,
            allow_cluster_access: bool = True,
            hook_transformers: Sequence[ResourceTransformer] = (),
            general_transformers: Sequence[ResourceTransformer] = (),
            releasable_hook_patchers: Sequence[ResourcePatcher] = (),
            releasable_general_patchers: Sequence[ResourcePatcher] = (),
            deployable_crd_patchers: Sequence[ResourcePatcher] = (),
            deployable_hook_patchers: Sequence[ResourcePatcher] = (),
            deployable_general_patchers: Sequence[ResourcePatcher] = (),
    ) -> None:
        self.deploy_type = deploy_type
        self.release_name = release_name
        self.release_namespace = release_namespace
        self.kube_client = kube_client
        self.release_namespace_resource = release_namespace_resource
        self.network_parallelism = max(network_parallelism, 1)
        self.force_adoption = force_adoption
        self.allow_cluster_access = allow_cluster_access

        self.standalone_crds = list(standalone_crds)
        self.hook_resources = list(hook_resources)
        self.general_resources = list(general_resources)
        self.prev_release_hooks = list(prev_release_hooks)
        self.prev_release_general_resources = list(prev_release_general_resources)

        # The list and annotation transformers always run first.
        builtin: List[ResourceTransformer] = [
            ResourceListsTransformer(),
            DropInvalidAnnotationsAndLabelsTransformer(),
        ]
        self.hook_transformers = builtin + list(hook_transformers)
        self.general_transformers = builtin + list(general_transformers)

        release_patcher = ReleaseMetadataPatcher(release_name, release_namespace)
        self.releasable_hook_patchers = list(releasable_hook_patchers)
        self.releasable_general_patchers = list(releasable_general_patchers)
        self.deployable_crd_patchers = [release_patcher] + list(deployable_crd_patchers)
        self.deployable_hook_patchers = [release_patcher] + list(deployable_hook_patchers)
        self.deployable_general_patchers = [release_patcher] + list(deployable_general_patchers)

        # Results.
        self.releasable_hook_resources: List[HookResource] = []
        self.releasable_general_resources: List[GeneralResource] = []
        self.deployable_standalone_crds: List[StandaloneCRD] = []
        self.deployable_hook_resources: List[HookResource] = []
        self.deployable_general_resources: List[GeneralResource] = []

        self.release_namespace_info: ReleaseNamespaceInfo | None = None
        self.standalone_crd_infos: List[StandaloneCRDInfo] = []
        self.hook_resource_infos: List[HookResourceInfo] = []
        self.general_resource_infos: List[GeneralResourceInfo] = []
        self.prev_release_hook_infos: List[PrevReleaseHookResourceInfo] = []
        self.prev_release_general_infos: List[PrevReleaseGeneralResourceInfo] = []

    @property
    def uninstall(self) -> bool:
        return self.deploy_type == DeployType.UNINSTALL

    async def process(self) -> None:
        """Run the full pipeline.

        Raises `MultiError` for invalid or non adoptable resources,
        `DuplicateResourceError` if resources clash and `ClusterError` if the
        cluster could not be queried.

        """
        logit.debug("Transforming hook resources")
        self.hook_resources = self._transform(self.hook_resources, self.hook_transformers)

        logit.debug("Transforming general resources")
        self.general_resources = self._transform(self.general_resources, self.general_transformers)

        logit.debug("Validating resources")
        self._validate_resources()

        if self.allow_cluster_access:
            if self.kube_client is None:
                raise RelsyncError("cluster access requires a kube client")
            logit.debug("Scoping cluster wide resources")
            await self._scope_cluster_resources(self.kube_client)

        logit.debug("Validating for duplicated resources")
        try:
            self._validate_no_duplicates()
        except DuplicateResourceError as err:
            if not self.uninstall:
                raise
            logit.warning(f"Ignoring during uninstall: {err}")
            return

        if not self.uninstall:
            logit.debug("Building releasable resources")
            self.releasable_hook_resources = self._patch(
                self.hook_resources, self.releasable_hook_patchers)
            self.releasable_general_resources = self._patch(
                self.general_resources, self.releasable_general_patchers)
            self._validate("releasable resources validation failed",
                           self.releasable_hook_resources + self.releasable_general_resources)

            logit.debug("Building deployable resources")
            self.deployable_standalone_crds = self._patch(
                self.standalone_crds, self.deployable_crd_patchers)
            self.deployable_hook_resources = self._patch(
                self._hooks_for_deploy_type(), self.deployable_hook_patchers)
            self.deployable_general_resources = self._patch(
                self.general_resources, self.deployable_general_patchers)
            self._validate("deployable resources validation failed",
                           self.deployable_standalone_crds +
                           self.deployable_hook_resources +
                           self.deployable_general_resources)

        if not self.allow_cluster_access:
            return

        logit.debug("Building resource infos")
        await self._build_infos()

        if not self.force_adoption and not self.uninstall:
            logit.debug("Validating adoptable resources")
            self._validate_adoption()

    # -------------------------------------------------------------------------
    #                               Transformation
    # -------------------------------------------------------------------------
    def _transform(self, resources: List[R],
                   transformers: List[ResourceTransformer]) -> List[R]:
        for transformer in transformers:
            out: List[R] = []
            for res in resources:
                info = TransformerInfo(res.manifest, res.type)
                if not transformer.match(info):
                    out.append(res)
                    continue

                for obj in transformer.transform(info):
                    try:
                        out.append(res.replace(obj))    # type: ignore
                    except (KeyError, TypeError) as err:
                        raise ResourceValidationError(
                            res.human_id,
                            f"{transformer.name} produced an invalid manifest: {err}",
                        )
            resources = out
        return resources

    def _patch(self, resources: List[R], patchers: List[ResourcePatcher]) -> List[R]:
        """Return sorted copy of `resources` with all matching `patchers` applied.

        The manifest is only copied once the first patcher matches.

        """
        out: List[R] = []
        for res in resources:
            patched, copied = res, False
            for patcher in patchers:
                if not patcher.match(PatcherInfo(patched.manifest, patched.manageable_by)):
                    continue

                obj = patched.manifest if copied else copy.deepcopy(patched.manifest)
                copied = True
                obj = patcher.patch(PatcherInfo(obj, patched.manageable_by))
                patched = patched.replace(obj)    # type: ignore
            out.append(patched)
        return sort_resources(out)

    def _hooks_for_deploy_type(self) -> List[HookResource]:
        phases = HOOK_PHASES_BY_DEPLOY_TYPE.get(self.deploy_type, ())
        return [_ for _ in self.hook_resources if _.on(*phases)]

    # -------------------------------------------------------------------------
    #                                 Validation
    # -------------------------------------------------------------------------
    @staticmethod
    def _invalid(resources: Sequence[Resource]) -> List[Tuple[Resource, Exception]]:
        errors = []
        for res in resources:
            try:
                res.validate()
            except ResourceValidationError as err:
                errors.append((res, err))
        return errors

    def _validate(self, msg: str, resources: Sequence[Resource]) -> None:
        multierror(msg, [err for _, err in self._invalid(resources)])

    def _validate_resources(self) -> None:
        """Validate the declared resources.

        An uninstall must not fail because of a broken resource that is about
        to disappear anyway. Invalid resources are dropped instead.

        """
        all_resources: List[Resource] = (
            self.standalone_crds + self.hook_resources + self.general_resources   # type: ignore
        )
        invalid = self._invalid(all_resources)
        if not invalid:
            return

        if not self.uninstall:
            raise MultiError("resources validation failed", [err for _, err in invalid])

        for _, err in invalid:
            logit.warning(f"Ignoring during uninstall: {err}")
        bad = {id(res) for res, _ in invalid}
        self.standalone_crds = [_ for _ in self.standalone_crds if id(_) not in bad]
        self.hook_resources = [_ for _ in self.hook_resources if id(_) not in bad]
        self.general_resources = [_ for _ in self.general_resources if id(_) not in bad]

    async def _scope_cluster_resources(self, client: KubeClient) -> None:
        """Drop the namespace from the identity of all cluster scoped resources.

        Otherwise the same ClusterRole declared with and without a namespace
        would produce two distinct ids.

        """
        async def scope(resources: List[R]) -> List[R]:
            out: List[R] = []
            for res in resources:
                if await client.mapper.is_cluster_scoped(res.identity):
                    res = res.as_cluster_scoped()    # type: ignore
                out.append(res)
            return out

        self.standalone_crds = await scope(self.standalone_crds)
        self.hook_resources = await scope(self.hook_resources)
        self.general_resources = await scope(self.general_resources)
        self.prev_release_hooks = await scope(self.prev_release_hooks)
        self.prev_release_general_resources = await scope(self.prev_release_general_resources)

    def _validate_no_duplicates(self) -> None:
        resources: List[Resource] = (
            self.standalone_crds + self.hook_resources + self.general_resources   # type: ignore
        )

        for res in resources:
            ident = res.identity
            if (ident.group, ident.version, ident.kind) == ("", "v1", "Namespace") and \
               ident.name == self.release_namespace:
                raise DuplicateResourceError(
                    f"release namespace <{ident.name}> cannot be deployed "
                    f"as part of the release"
                )

        seen, dupes = set(), set()
        for res in resources:
            if res.id in seen:
                dupes.add(res.id)
            seen.add(res.id)

        if dupes:
            names = [_.human_id for _ in resources if _.id in dupes]
            raise DuplicateResourceError(f"duplicated resources found: {str.join(', ', names)}")

    def _validate_adoption(self) -> None:
        errors: List[Exception] = []
        for info in self.general_resource_infos:
            if info.live is None:
                continue
            adoptable, reason = info.live.adoptable_by(self.release_name, self.release_namespace)
            if not adoptable:
                errors.append(AdoptionError(info.identity.human_id, reason))
        multierror("adoption validation failed", errors)

    # -------------------------------------------------------------------------
    #                                 Resource Infos
    # -------------------------------------------------------------------------
    async def _build_infos(self) -> None:
        """Compile the infos of all categories concurrently.

        Each category has its own worker pool whose size is proportional to
        the number of resources in that category. A cluster error names the
        category it occurred in.

        """
        if self.kube_client is None:
            raise RelsyncError("cluster access requires a kube client")
        client = self.kube_client

        categories: List[Tuple[str, Sequence[Resource], Callable]] = [
            ("standalone CRD", self.deployable_standalone_crds,
             resourceinfo.build_standalone_crd_info),
            ("hook resource", self.deployable_hook_resources,
             resourceinfo.build_hook_info),
            ("general resource", self.deployable_general_resources,
             resourceinfo.build_general_info),
            ("previous release hook", self.prev_release_hooks,
             resourceinfo.build_prev_hook_info),
            ("previous release general resource", self.prev_release_general_resources,
             resourceinfo.build_prev_general_info),
        ]
        total = sum(len(resources) for _, resources, _ in categories)

        pools = []
        for category, resources, builder in categories:
            workers = pool.pool_size(len(resources), total, self.network_parallelism)
            logit.debug(f"Use {workers} workers for {len(resources)} {category} infos")
            pools.append(_with_context(
                category,
                pool.run_bounded(resources, functools.partial(builder, client), workers),
            ))

        if self.release_namespace_resource is not None:
            pools.append(_with_context(
                "release namespace",
                resourceinfo.build_release_namespace_info(client, self.release_namespace_resource),
            ))

        results = await pool.gather_in_order(*pools)
        crds, hooks, general, prev_hooks, prev_general = results[:5]
        ns_info = results[5] if len(results) > 5 else None

        def by_id(infos):
            return sorted(infos, key=lambda _: _.identity.sort_key)

        self.release_namespace_info = ns_info
        self.standalone_crd_infos = by_id(crds)
        self.hook_resource_infos = by_id(hooks)
        self.general_resource_infos = by_id(general)
        self.prev_release_hook_infos = by_id(prev_hooks)
        self.prev_release_general_infos = by_id(prev_general)


async def _with_context(category: str, aw: Awaitable[T]) -> T:
    """Await `aw` and prefix the message of a `ClusterError` with `category`."""
    try:
        return await aw
    except ClusterError as err:
        raise ClusterError(
            err.op, err.human_id, err.code,
            message=f"error constructing {category} info: {err.message}",
            reason=err.reason,
        ) from err
