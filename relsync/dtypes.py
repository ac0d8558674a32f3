import enum
import re
from pathlib import Path
from typing import Any, Dict, NamedTuple, Tuple

import httpx
from pydantic import BaseModel, Field, field_validator
from typing_extensions import Annotated

# Field manager name for every server side apply and merge patch we issue.
DEFAULT_FIELD_MANAGER = "helm"

# Field managers that historically wrote the same fields under another name.
KUBECTL_EDIT_FIELD_MANAGER = "kubectl-edit"
LEGACY_FIELD_MANAGER_PREFIX = "werf"

# Server message that identifies a field immutability rejection.
FIELD_IMMUTABLE_ERROR_MSG = "field is immutable"

CRD_GROUP = "apiextensions.k8s.io"
CRD_KIND = "CustomResourceDefinition"


# -----------------------------------------------------------------------------
#                                  Kubernetes
# -----------------------------------------------------------------------------
class ResourceIdentity(NamedTuple):
    """Minimum amount of information to uniquely identify a K8s resource.

    The primary purpose of this tuple is to provide an immutable key that we
    can use in dictionaries and sets, as well as the cache and lock keys for
    the cluster client.

    """
    group: str        # "apps" or "" for the core group.
    version: str      # "v1"
    kind: str         # "Deployment"
    name: str

    # Namespace as declared in the manifest. May be empty, in which case the
    # resource falls back to `default_namespace` (usually the release
    # namespace) if it is namespaced.
    namespace: str = ""
    default_namespace: str = ""

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def effective_namespace(self) -> str:
        return self.namespace or self.default_namespace

    @property
    def id(self) -> str:
        """Unique ID of the resource regardless of its API version."""
        ns = self.effective_namespace
        return f"{ns}:{self.group}:{self.kind}:{self.name}"

    @property
    def id_with_version(self) -> str:
        """Unique ID that includes the API version (cache key)."""
        ns = self.effective_namespace
        return f"{ns}:{self.group}:{self.version}:{self.kind}:{self.name}"

    @property
    def human_id(self) -> str:
        if self.namespace and self.namespace != self.default_namespace:
            return f"{self.namespace}/{self.kind}/{self.name}"
        return f"{self.kind}/{self.name}"

    @property
    def is_crd(self) -> bool:
        return (self.group, self.kind) == (CRD_GROUP, CRD_KIND)

    @property
    def sort_key(self) -> Tuple[str, str, str, str, str]:
        return (self.kind, self.group, self.version,
                self.effective_namespace, self.name)


def split_api_version(api_version: str) -> Tuple[str, str]:
    """Return the group and version, eg "apps/v1" -> ("apps", "v1")."""
    group, _, version = api_version.rpartition("/")
    return group, version


def identity_from_manifest(manifest: dict,
                           default_namespace: str = "") -> ResourceIdentity:
    """Extract the `ResourceIdentity` information from `manifest`.

    Throw `KeyError` if manifest lacks essential fields like `apiVersion`,
    `kind`, etc because it cannot possibly be a valid K8s manifest then.

    """
    group, version = split_api_version(manifest["apiVersion"])
    meta = manifest["metadata"]
    return ResourceIdentity(
        group=group,
        version=version,
        kind=manifest["kind"],
        name=meta["name"],
        namespace=meta.get("namespace") or "",
        default_namespace=default_namespace,
    )


class K8sResource(NamedTuple):
    """Describe a specific K8s resource kind."""
    apiVersion: str   # "batch/v1" or "apps/v1".
    kind: str         # "Deployment" (as specified in manifest)
    name: str         # "deployments" (REST resource name)
    namespaced: bool  # Whether or not the resource is namespaced.
    url: str          # API endpoint, eg "k8s-host.com/apis/apps/v1".


class K8sConfig(NamedTuple):
    """Everything we need to know to connect and authenticate with Kubernetes."""
    # Kubernetes URL, version and name.
    url: str = ""
    name: str = ""
    version: str = ""

    # Bearer token (eg Minikube, KinD)
    token: str = ""

    # Certificate authority for self signed certificates.
    cadata: str | None = None
    cert: Tuple[Path, Path] | None = None
    headers: Dict[str, str] = {}

    # HttpX client to access the cluster. Will be replace with a properly
    # configured client in `k8s.create_httpx_client`.
    client: httpx.AsyncClient = httpx.AsyncClient()

    # Kubernetes API endpoints (see `k8s.compile_api_endpoints`).
    apis: Dict[Tuple[str, str], K8sResource] = {}


# -----------------------------------------------------------------------------
#                                Reconciliation
# -----------------------------------------------------------------------------
class CacheEntry(NamedTuple):
    """Last seen object or error for a resource. Exactly one is set."""
    obj: Dict[str, Any] | None = None
    error: Exception | None = None


class UpToDateStatus(enum.Enum):
    YES = "yes"
    NO = "no"
    UNKNOWN = "unknown"


class DeployType(str, enum.Enum):
    INITIAL = "Initial"
    INSTALL = "Install"
    UPGRADE = "Upgrade"
    ROLLBACK = "Rollback"
    UNINSTALL = "Uninstall"


class ResourceType(str, enum.Enum):
    GENERAL = "general-resource"
    HOOK = "hook-resource"
    STANDALONE_CRD = "standalone-crd"
    RELEASE_NAMESPACE = "release-namespace"
    REMOTE = "remote-resource"


class ManageableBy(str, enum.Enum):
    ANYONE = ""
    SINGLE_RELEASE = "manageable-by-single-release"


# -----------------------------------------------------------------------------
#                             Relsync Configuration
# -----------------------------------------------------------------------------
PropagationPolicy = Annotated[str, Field(pattern="^(Foreground|Background|Orphan)$")]


class Config(BaseModel):
    """Uniform interface into top level Relsync API."""
    model_config = {"str_strip_whitespace": True}

    # Path to Kubernetes credentials.
    kubeconfig: Path

    # Kubernetes context (use `None` to use the default).
    kubecontext: str | None = None

    release_name: str
    release_namespace: str
    deploy_type: DeployType = DeployType.INSTALL

    # Upper bound for concurrent requests to the K8s API.
    network_parallelism: Annotated[int, Field(ge=1)] = 30

    # Skip the adoption check for resources owned by other releases.
    force_adoption: bool = False

    # Only transform and validate resources if `False`.
    allow_cluster_access: bool = True

    field_manager: Annotated[str, Field(min_length=1)] = DEFAULT_FIELD_MANAGER
    default_delete_propagation: PropagationPolicy = "Foreground"

    # Seconds to keep cached API responses (`None`: forever).
    cache_ttl: Annotated[float, Field(gt=0)] | None = None

    @field_validator("release_name")
    @classmethod
    def validate_release_name(cls, name: str) -> str:
        if name == "":
            raise ValueError("release name must be a non-empty string")
        return name

    @field_validator("release_namespace")
    @classmethod
    def validate_release_namespace(cls, namespace: str) -> str:
        # Namespace name must conform to K8s standards.
        match = re.fullmatch(r"[a-z0-9]([-a-z0-9]*[a-z0-9])?", namespace)
        if match is None or len(namespace) > 63:
            raise ValueError(f"invalid namespace name <{namespace}>")
        return namespace
