import copy
import logging
from typing import Any, Dict, Optional

from relsync import k8s
from relsync.cache import ClusterCache, LockRegistry
from relsync.dtypes import (
    DEFAULT_FIELD_MANAGER, FIELD_IMMUTABLE_ERROR_MSG, CacheEntry, Config,
    K8sConfig, ResourceIdentity,
)
from relsync.errors import (
    ClusterError, ImmutableError, NoSuchKindError, NotFoundError, RelsyncError,
)
from relsync.mapper import ClusterMapper

logit = logging.getLogger("relsync")


def classify_error(op: str, identity: ResourceIdentity,
                   resp: dict, code: int) -> ClusterError:
    """Return the typed exception for a failed K8s API response.

    Inputs:
        op: str
            Name of the operation, eg "get" or "dry-run-apply".
        identity: ResourceIdentity
        resp: dict
            Response body. Usually a K8s `Status` object.
        code: int
            HTTP status code or -1 if the request never made it to the server.

    """
    message = resp.get("message", "") if isinstance(resp, dict) else ""
    reason = resp.get("reason", "") if isinstance(resp, dict) else ""
    args = (op, identity.human_id, code, message, reason)

    if code == 404:
        return NotFoundError(*args)
    if code == 422 and reason == "Invalid" and FIELD_IMMUTABLE_ERROR_MSG in message:
        return ImmutableError(*args)
    return ClusterError(*args)


class KubeClient:
    """Typed CRUD operations against the K8s API.

    All operations acquire the lock of the resource first and populate or
    invalidate the cache before they release it again. Failed requests raise
    the exceptions from `relsync.errors`.

    """
    def __init__(self,
                 k8sconfig: K8sConfig,
                 mapper: ClusterMapper,
                 cache: ClusterCache,
                 locks: LockRegistry,
                 field_manager: str = DEFAULT_FIELD_MANAGER,
                 default_propagation: str = "Foreground") -> None:
        self.k8sconfig = k8sconfig
        self.mapper = mapper
        self.cache = cache
        self.locks = locks
        self.field_manager = field_manager
        self.default_propagation = default_propagation

    async def _url(self, op: str, identity: ResourceIdentity) -> str:
        """Return the resource URL and cache mapping misses under `op`."""
        try:
            return await self.mapper.url(identity)
        except NoSuchKindError as err:
            raise NoSuchKindError(op, identity.human_id, err.api_version, err.kind)

    async def get(self, identity: ResourceIdentity,
                  try_cache: bool = False) -> Dict[str, Any]:
        """Return the live manifest of `identity`.

        Cached errors are re-raised just like fresh ones.

        """
        key = identity.id_with_version
        async with self.locks.lock_for(identity):
            if try_cache:
                entry = self.cache.get(key)
                if entry is not None:
                    logit.debug(f"Cache hit for {identity.human_id}")
                    if entry.error is not None:
                        raise entry.error
                    assert entry.obj is not None
                    return entry.obj

            logit.debug(f"Getting resource {identity.human_id}")
            try:
                url = await self._url("get", identity)
                resp, code, err = await k8s.request(
                    self.k8sconfig, "GET", url, payload=None, headers=None
                )
                if err or code != 200:
                    raise classify_error("get", identity, resp, code)
            except ClusterError as exc:
                self.cache.set(key, CacheEntry(error=exc))
                raise

            self.cache.set(key, CacheEntry(obj=resp))
            return resp

    async def _apply(self, op: str, identity: ResourceIdentity,
                     manifest: Dict[str, Any], dry_run: bool) -> Dict[str, Any]:
        """Server side apply `manifest` with force and our field manager.

        Must be called with the resource lock held.

        """
        key = identity.id_with_version
        params = {"fieldManager": self.field_manager, "force": "true"}
        if dry_run:
            params["dryRun"] = "All"
        headers = {"Content-Type": k8s.APPLY_PATCH}

        logit.debug(f"Server side applying {identity.human_id} (dry run: {dry_run})")
        try:
            url = k8s.make_url(await self._url(op, identity), params)
            resp, code, err = await k8s.request(
                self.k8sconfig, "PATCH", url, payload=manifest, headers=headers
            )
            if err or code not in (200, 201):
                raise classify_error(op, identity, resp, code)
        except ClusterError as exc:
            # Dry runs must never shadow the real state of the cluster and
            # a missing resource is not worth remembering.
            if not dry_run and not isinstance(exc, NotFoundError):
                self.cache.set(key, CacheEntry(error=exc))
            raise

        if not dry_run:
            if identity.is_crd:
                self.mapper.reset()
            self.cache.set(key, CacheEntry(obj=resp))
        return resp

    async def create(self, identity: ResourceIdentity, manifest: Dict[str, Any],
                     force_replicas: Optional[int] = None) -> Dict[str, Any]:
        """Create `manifest` on the cluster and return the new object."""
        if force_replicas is not None:
            manifest = copy.deepcopy(manifest)
            manifest.setdefault("spec", {})["replicas"] = force_replicas

        async with self.locks.lock_for(identity):
            return await self._apply("create", identity, manifest, dry_run=False)

    async def apply(self, identity: ResourceIdentity, manifest: Dict[str, Any],
                    dry_run: bool = False) -> Dict[str, Any]:
        """Server side apply `manifest` and return the resulting object."""
        op = "dry-run-apply" if dry_run else "apply"
        async with self.locks.lock_for(identity):
            return await self._apply(op, identity, manifest, dry_run=dry_run)

    async def merge_patch(self, identity: ResourceIdentity,
                          patch: Dict[str, Any]) -> Dict[str, Any]:
        """Apply the JSON merge `patch` and return the patched object."""
        key = identity.id_with_version
        params = {"fieldManager": self.field_manager}
        headers = {"Content-Type": k8s.MERGE_PATCH}

        async with self.locks.lock_for(identity):
            logit.debug(f"Merge patching {identity.human_id}")
            try:
                url = k8s.make_url(await self._url("merge-patch", identity), params)
                resp, code, err = await k8s.request(
                    self.k8sconfig, "PATCH", url, payload=patch, headers=headers
                )
                if err or code != 200:
                    raise classify_error("merge-patch", identity, resp, code)
            except ClusterError as exc:
                if not isinstance(exc, NotFoundError):
                    self.cache.set(key, CacheEntry(error=exc))
                raise

            self.cache.set(key, CacheEntry(obj=resp))
            return resp

    async def delete(self, identity: ResourceIdentity,
                     propagation_policy: Optional[str] = None) -> None:
        """Delete the resource. Deleting a missing resource is not an error."""
        payload = {
            "apiVersion": "v1",
            "kind": "DeleteOptions",
            "propagationPolicy": propagation_policy or self.default_propagation,
        }

        async with self.locks.lock_for(identity):
            logit.debug(f"Deleting {identity.human_id}")
            try:
                url = await self._url("delete", identity)
                resp, code, err = await k8s.request(
                    self.k8sconfig, "DELETE", url, payload=payload, headers=None
                )
                if err or code not in (200, 202):
                    raise classify_error("delete", identity, resp, code)
            except NotFoundError:
                logit.debug(f"Skipping deletion of missing {identity.human_id}")
            finally:
                self.cache.delete(identity.id_with_version)


class ClientFactory:
    """Build the one `KubeClient` (plus its cache and mapper) of this process.

    `initialize` loads the credentials and discovers the API the first time
    it is called. Subsequent calls do nothing.

    """
    def __init__(self, config: Config, k8sconfig: K8sConfig | None = None) -> None:
        self.config = config
        self.initialized = False
        self._k8sconfig = k8sconfig
        self._client: KubeClient | None = None

    async def initialize(self) -> KubeClient:
        if self.initialized:
            assert self._client is not None
            return self._client

        k8sconfig = self._k8sconfig
        if k8sconfig is None:
            k8sconfig, err = await k8s.cluster_config(
                self.config.kubeconfig,
                self.config.kubecontext,
                max_connections=self.config.network_parallelism,
            )
            if err:
                raise RelsyncError(
                    f"could not connect to cluster with <{self.config.kubeconfig}>"
                )

        self._k8sconfig = k8sconfig
        self._client = KubeClient(
            k8sconfig,
            ClusterMapper(k8sconfig),
            ClusterCache(self.config.cache_ttl),
            LockRegistry(),
            field_manager=self.config.field_manager,
            default_propagation=self.config.default_delete_propagation,
        )
        self.initialized = True
        return self._client

    @property
    def kube_client(self) -> KubeClient:
        if not self.initialized or self._client is None:
            raise RelsyncError("client factory has not been initialized")
        return self._client

    async def close(self) -> None:
        if self._k8sconfig is not None:
            await self._k8sconfig.client.aclose()
