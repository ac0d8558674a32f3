"""Repair the `metadata.managedFields` ledger of a live object.

The API server records which field manager owns which fields. Older releases
of this tool, `kubectl edit` and legacy field managers may own fields that we
declare ourselves. These owners make every dry run report a conflict or a
difference, which is why we fold them into our own entry before we compare
anything.

Field sets are the `FieldsV1` trees of K8s, eg

    {"f:metadata": {"f:labels": {"f:app": {}}}, "f:spec": {"f:replicas": {}}}

"""
import copy
import datetime
import logging
from typing import Any, Dict, List, Tuple

from relsync.dtypes import (
    DEFAULT_FIELD_MANAGER, KUBECTL_EDIT_FIELD_MANAGER,
    LEGACY_FIELD_MANAGER_PREFIX,
)

logit = logging.getLogger("relsync")

FieldSet = Dict[str, Any]
ManagedFieldsEntry = Dict[str, Any]


def merge_fields(src: FieldSet, dst: FieldSet) -> Tuple[FieldSet, bool]:
    """Return copy of `dst` that also contains all paths of `src`.

    Paths that exist in both are left alone, ie `dst` wins on conflicts.

    Returns:
        (merged field set, whether `dst` had to change)

    """
    out = copy.deepcopy(dst)
    changed = False
    for key, value in src.items():
        if key not in out:
            out[key] = copy.deepcopy(value)
            changed = True
        elif isinstance(value, dict) and isinstance(out[key], dict):
            out[key], sub_changed = merge_fields(value, out[key])
            changed = changed or sub_changed
    return out, changed


def subtract_fields(src: FieldSet, other: FieldSet) -> Tuple[FieldSet, bool]:
    """Return copy of `src` without the paths that also exist in `other`.

    A leaf in `src` is only kept if `other` does not contain the same path.
    Intermediate nodes that end up empty are removed.

    Returns:
        (remaining field set, whether anything was removed)

    """
    out: FieldSet = {}
    for key, value in src.items():
        if key not in other:
            out[key] = copy.deepcopy(value)
            continue

        peer = other[key]
        if isinstance(value, dict) and isinstance(peer, dict):
            rest, _ = subtract_fields(value, peer)
            if rest:
                out[key] = rest
        elif value != peer:
            out[key] = copy.deepcopy(value)
    return out, out != src


def is_legacy_manager(name: str) -> bool:
    """Return `True` if `name` wrote our fields in the past under another name."""
    return (name == KUBECTL_EDIT_FIELD_MANAGER or
            name.startswith(LEGACY_FIELD_MANAGER_PREFIX))


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def fix_managed_fields(
        obj: Dict[str, Any],
        field_manager: str = DEFAULT_FIELD_MANAGER,
) -> Tuple[List[ManagedFieldsEntry], bool]:
    """Return the repaired managed fields ledger of `obj`.

    The function does not modify `obj`. It returns the new ledger and whether
    it differs from the current one. Callers must only patch the object if
    the ledger changed.

    The repair works in these steps:
    * keep entries of other subresources verbatim,
    * fold stale non-apply entries of `field_manager` as well as the legacy
      managers into our own apply entry and drop them,
    * remove our fields from all remaining third party managers and drop
      those that own nothing anymore,
    * append our own entry unless it owns nothing.

    """
    ledger: List[ManagedFieldsEntry] = obj.get("metadata", {}).get("managedFields") or []
    if not ledger:
        return [], False

    def is_ours(entry: ManagedFieldsEntry) -> bool:
        return entry.get("manager") == field_manager and entry.get("operation") == "Apply"

    ours = next((copy.deepcopy(_) for _ in ledger if is_ours(_)), None)
    if ours is None:
        ours = {
            "manager": field_manager,
            "operation": "Apply",
            "apiVersion": obj.get("apiVersion", ""),
            "time": _now(),
            "fieldsType": "FieldsV1",
            "fieldsV1": {},
        }
    our_subresource = ours.get("subresource", "")
    our_fields: FieldSet = ours.get("fieldsV1") or {}

    # Step 1: leave other subresources alone and fold all entries that
    # describe the fields we manage ourselves into our entry.
    changed = False
    foreign: List[ManagedFieldsEntry] = []
    third_party: List[ManagedFieldsEntry] = []
    for entry in ledger:
        if entry.get("subresource", "") != our_subresource:
            foreign.append(entry)
            continue
        if is_ours(entry):
            continue

        manager = entry.get("manager", "")
        if manager == field_manager or is_legacy_manager(manager):
            logit.debug(f"Fold fields of manager <{manager}> into <{field_manager}>")
            our_fields, _ = merge_fields(entry.get("fieldsV1") or {}, our_fields)
            changed = True
        else:
            third_party.append(entry)

    # Step 2: we must be the exclusive owner of our fields.
    trimmed: List[ManagedFieldsEntry] = []
    for entry in third_party:
        rest, removed = subtract_fields(entry.get("fieldsV1") or {}, our_fields)
        if not removed:
            trimmed.append(entry)
            continue

        changed = True
        if rest:
            entry = copy.deepcopy(entry)
            entry["fieldsV1"] = rest
            trimmed.append(entry)
        else:
            logit.debug(f"Drop manager <{entry.get('manager')}>: owns none of its fields")

    if not changed:
        return ledger, False

    ours["fieldsV1"] = our_fields
    fixed = foreign + trimmed
    if our_fields:
        fixed.append(ours)
    return fixed, True
