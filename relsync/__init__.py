from . import relsync
from .cfgfile import load
from .client import ClientFactory, KubeClient
from .dtypes import Config, DeployType, ResourceIdentity, UpToDateStatus
from .errors import (
    AdoptionError, ClusterError, DuplicateResourceError, ImmutableError,
    MultiError, NoSuchKindError, NotFoundError, RelsyncError,
    ResourceValidationError,
)
from .processor import DeployableResourcesProcessor
from .resource import (
    GeneralResource, HookResource, ReleaseNamespace, RemoteResource,
    StandaloneCRD, from_manifest,
)

__version__ = '0.1.0'

# ---------------------------------------------------------------------------
# Expose the primary API of Relsync for convenience.
# ---------------------------------------------------------------------------
process_release = relsync.process_release
show_changes = relsync.show_changes
setup_logging = relsync.setup_logging
