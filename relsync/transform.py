"""Transformers and patchers that rewrite manifests before they are deployed.

Transformers may turn one manifest into several (eg expand a `List`).
Patchers modify a single manifest in place and return it.

"""
import logging
from typing import Any, Dict, List, NamedTuple

from relsync import annotations as anno
from relsync.dtypes import ManageableBy, ResourceType

logit = logging.getLogger("relsync")


class TransformerInfo(NamedTuple):
    obj: Dict[str, Any]
    type: ResourceType


class PatcherInfo(NamedTuple):
    obj: Dict[str, Any]
    manageable_by: ManageableBy


class ResourceTransformer:
    name = "transformer"

    def match(self, info: TransformerInfo) -> bool:
        raise NotImplementedError

    def transform(self, info: TransformerInfo) -> List[Dict[str, Any]]:
        raise NotImplementedError


class ResourcePatcher:
    name = "patcher"

    def match(self, info: PatcherInfo) -> bool:
        raise NotImplementedError

    def patch(self, info: PatcherInfo) -> Dict[str, Any]:
        raise NotImplementedError


class ResourceListsTransformer(ResourceTransformer):
    """Replace `*List` manifests with the resources they contain."""
    name = "resource-lists-transformer"

    def match(self, info: TransformerInfo) -> bool:
        if info.type not in (ResourceType.HOOK, ResourceType.GENERAL):
            return False
        kind = info.obj.get("kind", "")
        return kind.endswith("List") and isinstance(info.obj.get("items"), list)

    def transform(self, info: TransformerInfo) -> List[Dict[str, Any]]:
        return list(info.obj["items"])


class DropInvalidAnnotationsAndLabelsTransformer(ResourceTransformer):
    """Remove annotations and labels whose keys or values are not strings.

    A non-mapping `annotations` or `labels` field is replaced with an empty
    mapping.

    """
    name = "drop-invalid-annotations-and-labels-transformer"

    def match(self, info: TransformerInfo) -> bool:
        return True

    def transform(self, info: TransformerInfo) -> List[Dict[str, Any]]:
        # Shallow copies suffice because we only replace the two dicts.
        meta = dict(info.obj.get("metadata") or {})
        obj = {**info.obj, "metadata": meta}
        name, kind = meta.get("name"), obj.get("kind")

        for field in ("annotations", "labels"):
            values = meta.get(field)
            if not values:
                continue

            if not isinstance(values, dict):
                logit.warning(f"Dropped invalid {field} in {kind}/{name}: not a mapping")
                meta[field] = {}
                continue

            valid = {}
            for key, value in values.items():
                if not isinstance(key, str):
                    logit.warning(
                        f"Dropped invalid {field[:-1]} <{key}> in {kind}/{name}: "
                        f"key is not a string"
                    )
                elif not isinstance(value, str):
                    logit.warning(
                        f"Dropped invalid {field[:-1]} <{key}> in {kind}/{name}: "
                        f"value is not a string"
                    )
                else:
                    valid[key] = value
            meta[field] = valid
        return [obj]


def set_annotations_and_labels(obj: Dict[str, Any],
                               annotations: Dict[str, str],
                               labels: Dict[str, str]) -> None:
    meta = obj.setdefault("metadata", {})
    if annotations:
        meta["annotations"] = {**(meta.get("annotations") or {}), **annotations}
    if labels:
        meta["labels"] = {**(meta.get("labels") or {}), **labels}


class ReleaseMetadataPatcher(ResourcePatcher):
    """Mark resources as owned by a release."""
    name = "release-metadata-patcher"

    def __init__(self, release_name: str, release_namespace: str) -> None:
        self.release_name = release_name
        self.release_namespace = release_namespace

    def match(self, info: PatcherInfo) -> bool:
        return info.manageable_by == ManageableBy.SINGLE_RELEASE

    def patch(self, info: PatcherInfo) -> Dict[str, Any]:
        set_annotations_and_labels(
            info.obj,
            {
                anno.ANNO_RELEASE_NAME: self.release_name,
                anno.ANNO_RELEASE_NAMESPACE: self.release_namespace,
            },
            {anno.LABEL_MANAGED_BY: anno.MANAGED_BY_VALUE},
        )
        return info.obj


class ExtraMetadataPatcher(ResourcePatcher):
    """Add user supplied annotations and labels to every resource."""
    name = "extra-metadata-patcher"

    def __init__(self, annotations: Dict[str, str] | None = None,
                 labels: Dict[str, str] | None = None) -> None:
        self.annotations = annotations or {}
        self.labels = labels or {}

    def match(self, info: PatcherInfo) -> bool:
        return True

    def patch(self, info: PatcherInfo) -> Dict[str, Any]:
        set_annotations_and_labels(info.obj, self.annotations, self.labels)
        return info.obj
