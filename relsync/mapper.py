import asyncio
import logging

from relsync import k8s
from relsync.dtypes import K8sConfig, K8sResource, ResourceIdentity
from relsync.errors import ClusterError, NoSuchKindError

logit = logging.getLogger("relsync")


class ClusterMapper:
    """Map resource identities to their REST endpoints.

    The mapper runs the API discovery on first use and caches the result in
    `k8sconfig.apis`. Call `reset` after a CRD was created to make the next
    lookup discover the API again.

    """
    def __init__(self, k8sconfig: K8sConfig) -> None:
        self.k8sconfig = k8sconfig
        self._discovered = bool(k8sconfig.apis)
        self._lock = asyncio.Lock()

    def reset(self) -> None:
        logit.debug("Reset REST mapper")
        self._discovered = False

    async def discover(self) -> None:
        async with self._lock:
            if self._discovered:
                return
            logit.debug(f"Discover API endpoints of {self.k8sconfig.name}")
            if await k8s.compile_api_endpoints(self.k8sconfig):
                raise ClusterError("discover", self.k8sconfig.name,
                                   message="API discovery failed")
            self._discovered = True

    async def rest_mapping(self, identity: ResourceIdentity) -> K8sResource:
        """Return the `K8sResource` for `identity` or raise `NoSuchKindError`."""
        await self.discover()
        key = (identity.kind, identity.api_version)
        try:
            return self.k8sconfig.apis[key]
        except KeyError:
            raise NoSuchKindError("rest-mapping", identity.human_id,
                                  identity.api_version, identity.kind)

    async def is_cluster_scoped(self, identity: ResourceIdentity) -> bool:
        """Return `True` if the API reports the kind as not namespaced.

        Unknown kinds count as namespaced because their CRD may not exist yet.

        """
        try:
            res = await self.rest_mapping(identity)
        except NoSuchKindError:
            return False
        return not res.namespaced

    async def url(self, identity: ResourceIdentity) -> str:
        """Return the full resource URL, eg `.../namespaces/foo/pods/bar`."""
        res = await self.rest_mapping(identity)
        if res.namespaced:
            ns = identity.effective_namespace or "default"
            return f"{res.url}/namespaces/{ns}/{res.name}/{identity.name}"
        return f"{res.url}/{res.name}/{identity.name}"
