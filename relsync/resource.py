"""Desired and live resources.

Every desired resource wraps the manifest dict produced by the chart renderer
together with its identity. The subclasses only differ in which annotations
they validate and who may manage them.

"""
import copy
import logging
from typing import Any, Callable, Dict, List, Tuple

import yaml

from relsync import annotations as anno
from relsync.dtypes import (
    DEFAULT_FIELD_MANAGER, ManageableBy, ResourceIdentity, ResourceType,
    identity_from_manifest,
)
from relsync.errors import ResourceValidationError
from relsync.managedfields import fix_managed_fields
from relsync.yaml_io import Loader

logit = logging.getLogger("relsync")

Validator = Callable[[Dict[str, Any]], None]

# Annotations common to all resources we deploy and track.
_COMMON_VALIDATORS: List[Validator] = [
    anno.validate_replicas_on_creation,
    anno.validate_delete_policy,
    anno.validate_resource_policy,
    anno.validate_track,
    anno.validate_weight,
    anno.validate_deploy_dependencies,
    anno.validate_internal_dependencies,
    anno.validate_external_dependencies,
]


class Resource:
    """Base class of all resources in a release."""
    type: ResourceType = ResourceType.GENERAL
    manageable_by: ManageableBy = ManageableBy.ANYONE
    validators: List[Validator] = []
    cluster_scoped: bool = False

    def __init__(self, manifest: Dict[str, Any],
                 default_namespace: str = "",
                 file_path: str = "") -> None:
        self.manifest = manifest
        self.default_namespace = default_namespace
        self.file_path = file_path
        self.identity: ResourceIdentity = identity_from_manifest(manifest, default_namespace)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.identity.human_id})"

    @property
    def human_id(self) -> str:
        return self.identity.human_id

    @property
    def id(self) -> str:
        return self.identity.id

    @property
    def sort_key(self):
        return self.identity.sort_key

    def replace(self, manifest: Dict[str, Any]) -> "Resource":
        """Return a resource of the same type for the new `manifest`."""
        new = type(self)(manifest, self.default_namespace, self.file_path)
        if self.cluster_scoped:
            new._drop_namespace()
        return new

    def as_cluster_scoped(self) -> "Resource":
        """Return a copy whose identity ignores any namespace."""
        new = self.replace(self.manifest)
        new._drop_namespace()
        return new

    def _drop_namespace(self) -> None:
        # Cluster scoped kinds have no namespace, whatever the manifest says.
        self.cluster_scoped = True
        self.identity = self.identity._replace(namespace="", default_namespace="")

    def validate(self) -> None:
        """Raise `ResourceValidationError` if an annotation is malformed."""
        for validator in self.validators:
            try:
                validator(self.manifest)
            except (TypeError, ValueError) as err:
                raise ResourceValidationError(self.human_id, str(err)) from err

    # Policies derived from the annotations. These assume that `validate`
    # passed.
    @property
    def recreate(self) -> bool:
        return anno.recreate(self.manifest)

    @property
    def delete_on_succeeded(self) -> bool:
        return anno.delete_on_succeeded(self.manifest)

    @property
    def delete_on_failed(self) -> bool:
        return anno.delete_on_failed(self.manifest)

    @property
    def keep_on_delete(self) -> bool:
        return anno.keep_on_delete(self.manifest)

    @property
    def default_replicas_on_creation(self) -> int | None:
        return anno.default_replicas_on_creation(self.manifest)

    @property
    def track_termination_mode(self) -> str:
        return anno.track_termination_mode(self.manifest)

    @property
    def fail_mode(self) -> str:
        return anno.fail_mode(self.manifest)

    @property
    def failures_allowed(self) -> int:
        return anno.failures_allowed(self.manifest)

    @property
    def weight(self) -> int:
        return anno.weight(self.manifest)


class GeneralResource(Resource):
    """Regular resource of a release."""
    type = ResourceType.GENERAL
    manageable_by = ManageableBy.SINGLE_RELEASE
    validators = _COMMON_VALIDATORS

    @property
    def keep_on_delete(self) -> bool:
        # Never delete the namespace the release itself lives in.
        is_release_ns = (
            self.identity.kind == "Namespace" and
            self.identity.group == "" and
            self.identity.name == self.default_namespace
        )
        return anno.keep_on_delete(self.manifest) or is_release_ns


class HookResource(Resource):
    """Resource that only exists for certain phases of the release."""
    type = ResourceType.HOOK
    validators = [anno.validate_hook] + _COMMON_VALIDATORS

    def on(self, *phases: str) -> bool:
        return anno.on(self.manifest, *phases)

    @property
    def on_pre_install(self) -> bool:
        return self.on("pre-install")

    @property
    def on_post_install(self) -> bool:
        return self.on("post-install")

    @property
    def on_pre_upgrade(self) -> bool:
        return self.on("pre-upgrade")

    @property
    def on_post_upgrade(self) -> bool:
        return self.on("post-upgrade")

    @property
    def on_pre_rollback(self) -> bool:
        return self.on("pre-rollback")

    @property
    def on_post_rollback(self) -> bool:
        return self.on("post-rollback")

    @property
    def on_pre_delete(self) -> bool:
        return self.on("pre-delete")

    @property
    def on_post_delete(self) -> bool:
        return self.on("post-delete")

    @property
    def on_test(self) -> bool:
        return self.on("test", "test-success")


class StandaloneCRD(Resource):
    """CRD from the `crds/` folder of a chart."""
    type = ResourceType.STANDALONE_CRD
    validators = [anno.validate_weight]

    @property
    def recreate(self) -> bool:
        return False

    @property
    def default_replicas_on_creation(self) -> int | None:
        return None


class ReleaseNamespace(Resource):
    """The namespace the release is installed into."""
    type = ResourceType.RELEASE_NAMESPACE

    @property
    def recreate(self) -> bool:
        return False


class RemoteResource:
    """Live object as returned by the K8s API."""
    type = ResourceType.REMOTE

    def __init__(self, manifest: Dict[str, Any], default_namespace: str = "") -> None:
        self.manifest = manifest
        self.identity = identity_from_manifest(manifest, default_namespace)

    def __repr__(self) -> str:
        return f"RemoteResource({self.identity.human_id})"

    @property
    def uid(self) -> str:
        return self.manifest.get("metadata", {}).get("uid", "")

    @property
    def managed_fields(self) -> List[Dict[str, Any]]:
        return self.manifest.get("metadata", {}).get("managedFields") or []

    def fix_managed_fields(self, field_manager: str = DEFAULT_FIELD_MANAGER) -> bool:
        """Repair the managed fields in place and return whether they changed."""
        ledger, changed = fix_managed_fields(self.manifest, field_manager)
        if changed:
            self.manifest = copy.deepcopy(self.manifest)
            self.manifest["metadata"]["managedFields"] = ledger
        return changed

    def adoptable_by(self, release_name: str, release_namespace: str) -> Tuple[bool, str]:
        return anno.adoptable_by(self.manifest, release_name, release_namespace)

    def keep_on_delete(self, release_name: str, release_namespace: str) -> bool:
        try:
            anno.validate_resource_policy(self.manifest)
        except ValueError:
            return True
        return (anno.keep_on_delete(self.manifest) or
                anno.orphaned(self.manifest, release_name, release_namespace))


def from_manifest(text: str, default_namespace: str = "",
                  cls: type = GeneralResource) -> Resource:
    """Parse the YAML `text` of a single rendered manifest.

    Helm prefixes every rendered template with a `# Source: <path>` comment.
    The path becomes the `file_path` of the resource.

    """
    file_path = ""
    first = text.lstrip().splitlines()[0] if text.strip() else ""
    if first.startswith("# Source: "):
        file_path = first[len("# Source: "):].strip()

    try:
        manifest = yaml.load(text, Loader=Loader)
    except yaml.YAMLError as err:
        raise ResourceValidationError(file_path or "<manifest>", f"invalid YAML: {err}")

    if not isinstance(manifest, dict):
        raise ResourceValidationError(file_path or "<manifest>", "manifest is not a mapping")
    try:
        return cls(manifest, default_namespace, file_path)
    except (KeyError, TypeError) as err:
        raise ResourceValidationError(file_path or "<manifest>", f"missing field {err}")
