"""Annotations and labels that control how a resource is deployed.

The `validate_*` functions raise `ValueError` with a human readable message
if an annotation is malformed. The remaining functions read the (already
validated) annotations of a manifest.

"""
import re
from typing import Any, Dict, List, Tuple

from relsync.dtypes import CRD_GROUP, CRD_KIND

# Release ownership.
ANNO_RELEASE_NAME = "meta.helm.sh/release-name"
ANNO_RELEASE_NAMESPACE = "meta.helm.sh/release-namespace"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "Helm"

# Lifecycle.
ANNO_HOOK = "helm.sh/hook"
ANNO_HOOK_WEIGHT = "helm.sh/hook-weight"
ANNO_HOOK_DELETE_POLICY = "helm.sh/hook-delete-policy"
ANNO_WEIGHT = "werf.io/weight"
ANNO_RESOURCE_POLICY = "helm.sh/resource-policy"
ANNO_DELETE_POLICY = "werf.io/delete-policy"
ANNO_REPLICAS_ON_CREATION = "werf.io/replicas-on-creation"

# Tracking.
ANNO_FAIL_MODE = "werf.io/fail-mode"
ANNO_FAILURES_ALLOWED = "werf.io/failures-allowed-per-replica"
ANNO_LOG_REGEX = "werf.io/log-regex"
ANNO_NO_ACTIVITY_TIMEOUT = "werf.io/no-activity-timeout"
ANNO_SHOW_LOGS_ONLY_FOR = "werf.io/show-logs-only-for-containers"
ANNO_SHOW_SERVICE_MESSAGES = "werf.io/show-service-messages"
ANNO_SKIP_LOGS = "werf.io/skip-logs"
ANNO_SKIP_LOGS_FOR = "werf.io/skip-logs-for-containers"
ANNO_TRACK_TERMINATION_MODE = "werf.io/track-termination-mode"
PAT_IGNORE_READINESS = re.compile(r"^werf\.io/ignore-readiness-probe-fails-for-(?P<container>.+)$")
PAT_LOG_REGEX_FOR = re.compile(r"^werf\.io/log-regex-for-(?P<container>.+)$")

# Dependencies.
PAT_DEPLOY_DEPENDENCY = re.compile(r"^werf\.io/deploy-dependency-(?P<id>.+)$")
PAT_DEPENDENCY = re.compile(r"^(?P<id>.+)\.dependency\.werf\.io$")
PAT_EXTERNAL_DEPENDENCY = re.compile(r"^(?P<id>.+)\.external-dependency\.werf\.io$")
PAT_LEGACY_EXT_DEP_RESOURCE = re.compile(r"^(?P<id>.+)\.external-dependency\.werf\.io/resource$")
PAT_LEGACY_EXT_DEP_NAMESPACE = re.compile(r"^(?P<id>.+)\.external-dependency\.werf\.io/namespace$")

HOOK_PHASES = {
    "pre-install", "post-install",
    "pre-upgrade", "post-upgrade",
    "pre-rollback", "post-rollback",
    "pre-delete", "post-delete",
    "test", "test-success",
}

# Delete policies and their legacy hook equivalents.
DELETE_SUCCEEDED = "succeeded"
DELETE_FAILED = "failed"
DELETE_BEFORE_CREATION = "before-creation"
DELETE_POLICIES = {DELETE_SUCCEEDED, DELETE_FAILED, DELETE_BEFORE_CREATION}
HOOK_DELETE_POLICIES = {
    "hook-succeeded": DELETE_SUCCEEDED,
    "hook-failed": DELETE_FAILED,
    "before-hook-creation": DELETE_BEFORE_CREATION,
}

FAIL_MODES = {
    "IgnoreAndContinueDeployProcess",
    "FailWholeDeployProcessImmediately",
    "HopeUntilEndOfDeployProcess",
}
TRACK_READY = "WaitUntilResourceReady"
TRACK_NON_BLOCKING = "NonBlocking"

DEPENDENCY_STATES = {"present", "ready"}
DEPENDENCY_TARGETS = ("group", "version", "kind", "name", "namespace")

_DURATION_UNITS = {
    "ns": 1e-9, "us": 1e-6, "µs": 1e-6, "μs": 1e-6,
    "ms": 1e-3, "s": 1, "m": 60, "h": 3600,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


# -----------------------------------------------------------------------------
#                                  Parsers
# -----------------------------------------------------------------------------
def annotations_of(manifest: Dict[str, Any]) -> Dict[str, str]:
    return manifest.get("metadata", {}).get("annotations") or {}


def labels_of(manifest: Dict[str, Any]) -> Dict[str, str]:
    return manifest.get("metadata", {}).get("labels") or {}


def parse_duration(value: str) -> float:
    """Return the number of seconds in a duration like "1m30s" or "-1.5h"."""
    sign, text = 1, value
    if text[:1] in ("+", "-"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]

    if text == "0":
        return 0.0
    if not text:
        raise ValueError(f"invalid duration <{value}>")

    pos, seconds = 0, 0.0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise ValueError(f"invalid duration <{value}>")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return sign * seconds


def parse_bool(value: str) -> bool:
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"invalid boolean <{value}>")


def parse_int(value: str) -> int:
    if not re.fullmatch(r"[+-]?\d+", value):
        raise ValueError(f"invalid integer <{value}>")
    return int(value)


def split_list(value: str) -> List[str]:
    return [_.strip() for _ in value.split(",")]


def parse_properties(value: str) -> Dict[str, str | bool]:
    """Parse a property list like `kind=Deployment,name="a,b",nowait`.

    Values may be quoted with single or double quotes. A key without a value
    is `True`, unless it starts with "no" in which case the remainder of the
    key is `False`.

    """
    # Split into entries while respecting quoted values.
    entries: List[Tuple[str, str | None, bool]] = []
    key: List[str] = []
    val: List[str] = []
    in_value, quote, quoted = False, "", False
    for char in value + ",":
        if quote:
            if char == quote and (not val or val[-1] != "\\"):
                quote = ""
            else:
                val.append(char)
        elif char == ",":
            if key:
                entries.append(("".join(key), "".join(val) if in_value else None, quoted))
            key, val, in_value, quoted = [], [], False, False
        elif char == "=" and not in_value:
            in_value = True
        elif in_value and not val and not quoted and char.isspace():
            continue
        elif char in "'\"" and in_value and not val and not quoted:
            quote, quoted = char, True
        elif quoted and char.isspace():
            continue
        elif in_value:
            val.append(char)
        elif not (char.isspace() and not key):
            key.append(char)

    props: Dict[str, str | bool] = {}
    for raw_key, raw_val, was_quoted in entries:
        name = raw_key.strip().lower()
        if raw_val is None:
            if name.startswith("no"):
                props[name[2:]] = False
            else:
                props[name] = True
        else:
            props[name] = raw_val if was_quoted else raw_val.strip()
    return props


# -----------------------------------------------------------------------------
#                                 Validation
# -----------------------------------------------------------------------------
def _bad(key: str, value: str, reason: str) -> ValueError:
    return ValueError(f"invalid value {value!r} for annotation {key!r}, {reason}")


def _matching(annos: Dict[str, str], pattern: re.Pattern) -> Dict[str, str]:
    return {k: v for k, v in annos.items() if isinstance(k, str) and pattern.match(k)}


def is_hook(manifest: Dict[str, Any]) -> bool:
    return ANNO_HOOK in annotations_of(manifest)


def validate_hook(manifest: Dict[str, Any]) -> None:
    value = annotations_of(manifest).get(ANNO_HOOK)
    if value is None:
        raise ValueError(f"hook resource must have annotation {ANNO_HOOK!r}")
    if value == "":
        raise _bad(ANNO_HOOK, value, "expected non-empty string value")
    for phase in split_list(value):
        if phase == "":
            raise _bad(ANNO_HOOK, value, "one of the comma-separated values is empty")
        if phase not in HOOK_PHASES:
            raise _bad(ANNO_HOOK, value, f"phase {phase!r} is not supported")


def validate_weight(manifest: Dict[str, Any]) -> None:
    annos = annotations_of(manifest)
    keys = [ANNO_WEIGHT] + ([ANNO_HOOK_WEIGHT] if is_hook(manifest) else [])
    for key in keys:
        if key not in annos:
            continue
        try:
            parse_int(annos[key])
        except ValueError:
            raise _bad(key, annos[key], "expected integer value")


def validate_resource_policy(manifest: Dict[str, Any]) -> None:
    value = annotations_of(manifest).get(ANNO_RESOURCE_POLICY)
    if value is not None and value != "keep":
        raise _bad(ANNO_RESOURCE_POLICY, value, "only 'keep' is supported")


def validate_delete_policy(manifest: Dict[str, Any]) -> None:
    annos = annotations_of(manifest)
    checks = [(ANNO_DELETE_POLICY, DELETE_POLICIES)]
    if is_hook(manifest):
        checks.append((ANNO_HOOK_DELETE_POLICY, set(HOOK_DELETE_POLICIES)))

    for key, allowed in checks:
        value = annos.get(key, "")
        if value == "":
            continue
        for policy in split_list(value):
            if policy == "":
                raise _bad(key, value, "one of the comma-separated values is empty")
            if policy not in allowed:
                raise _bad(key, value, f"policy {policy!r} is not supported")


def validate_replicas_on_creation(manifest: Dict[str, Any]) -> None:
    value = annotations_of(manifest).get(ANNO_REPLICAS_ON_CREATION)
    if value is None:
        return
    try:
        replicas = parse_int(value)
    except ValueError:
        raise _bad(ANNO_REPLICAS_ON_CREATION, value, "value must be a number")
    if replicas < 0:
        raise _bad(ANNO_REPLICAS_ON_CREATION, value, "value must be a positive number or zero")


def _validate_container_list(key: str, value: str) -> None:
    if value == "":
        raise _bad(key, value, "expected non-empty string value")
    if any(_ == "" for _ in split_list(value)):
        raise _bad(key, value, "one of the comma-separated values is empty")


def _validate_regex(key: str, value: str) -> None:
    if value == "":
        raise _bad(key, value, "expected non-empty string value")
    try:
        re.compile(value)
    except re.error:
        raise _bad(key, value, "expected valid regular expression")


def validate_track(manifest: Dict[str, Any]) -> None:
    annos = annotations_of(manifest)

    if ANNO_FAIL_MODE in annos and annos[ANNO_FAIL_MODE] not in FAIL_MODES:
        raise _bad(ANNO_FAIL_MODE, annos[ANNO_FAIL_MODE], "unknown fail mode")

    if ANNO_FAILURES_ALLOWED in annos:
        value = annos[ANNO_FAILURES_ALLOWED]
        try:
            failures = parse_int(value)
        except ValueError:
            raise _bad(ANNO_FAILURES_ALLOWED, value, "expected integer value")
        if failures < 0:
            raise _bad(ANNO_FAILURES_ALLOWED, value, "expected non-negative integer value")

    for key, value in _matching(annos, PAT_IGNORE_READINESS).items():
        try:
            seconds = parse_duration(value)
        except ValueError:
            raise _bad(key, value, "expected valid duration")
        if seconds < 0:
            raise _bad(key, value, "expected positive duration value")

    if ANNO_LOG_REGEX in annos:
        _validate_regex(ANNO_LOG_REGEX, annos[ANNO_LOG_REGEX])
    for key, value in _matching(annos, PAT_LOG_REGEX_FOR).items():
        _validate_regex(key, value)

    if ANNO_NO_ACTIVITY_TIMEOUT in annos:
        value = annos[ANNO_NO_ACTIVITY_TIMEOUT]
        try:
            seconds = parse_duration(value)
        except ValueError:
            raise _bad(ANNO_NO_ACTIVITY_TIMEOUT, value, "expected valid duration")
        if seconds < 0:
            raise _bad(ANNO_NO_ACTIVITY_TIMEOUT, value, "expected non-negative duration value")

    for key in (ANNO_SHOW_LOGS_ONLY_FOR, ANNO_SKIP_LOGS_FOR):
        if key in annos:
            _validate_container_list(key, annos[key])

    for key in (ANNO_SHOW_SERVICE_MESSAGES, ANNO_SKIP_LOGS):
        if key in annos:
            try:
                parse_bool(annos[key])
            except ValueError:
                raise _bad(key, annos[key], "expected boolean value")

    mode = annos.get(ANNO_TRACK_TERMINATION_MODE)
    if mode is not None and mode not in (TRACK_READY, TRACK_NON_BLOCKING):
        raise _bad(ANNO_TRACK_TERMINATION_MODE, mode, "unknown termination mode")


def validate_deploy_dependencies(manifest: Dict[str, Any]) -> None:
    for key, value in _matching(annotations_of(manifest), PAT_DEPLOY_DEPENDENCY).items():
        if value == "":
            raise _bad(key, value, "expected non-empty string value")

        props = parse_properties(value)
        if not any(_ in props for _ in DEPENDENCY_TARGETS):
            raise _bad(key, value, "target not specified")
        if "state" not in props:
            raise _bad(key, value, '"state" property must be set')

        for name, prop in props.items():
            if name not in DEPENDENCY_TARGETS and name != "state":
                raise _bad(key, value, f"unknown property {name!r}")
            if not isinstance(prop, str):
                raise _bad(key, value, f"property {name!r} must be a string")
            if prop == "":
                raise _bad(key, value, f"property {name!r} must not be empty")
            if name == "state" and prop not in DEPENDENCY_STATES:
                raise _bad(key, value, f"unknown state {prop!r}")


def validate_internal_dependencies(manifest: Dict[str, Any]) -> None:
    for key, value in _matching(annotations_of(manifest), PAT_DEPENDENCY).items():
        if value != "" and len(value.split(":")) not in (3, 4):
            raise _bad(key, value, "should be: apiVersion:kind[:namespace]:name or empty")


def validate_external_dependencies(manifest: Dict[str, Any]) -> None:
    annos = annotations_of(manifest)

    for key, value in _matching(annos, PAT_EXTERNAL_DEPENDENCY).items():
        if len(value.split(":")) not in (3, 4):
            raise _bad(key, value, "should be: apiVersion:kind[:namespace]:name")

    for key, value in _matching(annos, PAT_LEGACY_EXT_DEP_RESOURCE).items():
        parts = value.split("/")
        if len(parts) != 2:
            raise _bad(key, value, "should be: type/name")
        res_type, name = parts
        if res_type == "":
            raise _bad(key, value, "resource type must not be empty")
        if res_type == "all":
            raise _bad(key, value, '"all" resource type is not allowed')
        if any(_ == "" for _ in res_type.split(".")):
            raise _bad(key, value, "dots must only delimit non-empty resource.version.group")
        if name == "":
            raise _bad(key, value, "resource name must not be empty")

    for key, value in _matching(annos, PAT_LEGACY_EXT_DEP_NAMESPACE).items():
        if value == "":
            raise _bad(key, value, "value must not be empty")


# -----------------------------------------------------------------------------
#                                  Policies
# -----------------------------------------------------------------------------
def hook_phases(manifest: Dict[str, Any]) -> List[str]:
    value = annotations_of(manifest).get(ANNO_HOOK, "")
    return [_ for _ in split_list(value) if _]


def on(manifest: Dict[str, Any], *phases: str) -> bool:
    return bool(set(phases) & set(hook_phases(manifest)))


def delete_policies(manifest: Dict[str, Any]) -> List[str]:
    """Return the normalised delete policies of `manifest`.

    Hooks fall back to the legacy hook delete policy annotation and default
    to "before-creation" if neither annotation exists.

    """
    annos = annotations_of(manifest)
    if ANNO_DELETE_POLICY in annos:
        return [_ for _ in split_list(annos[ANNO_DELETE_POLICY]) if _]
    if not is_hook(manifest):
        return []
    if ANNO_HOOK_DELETE_POLICY not in annos:
        return [DELETE_BEFORE_CREATION]
    return [
        HOOK_DELETE_POLICIES[_] for _ in split_list(annos[ANNO_HOOK_DELETE_POLICY])
        if _ in HOOK_DELETE_POLICIES
    ]


def recreate(manifest: Dict[str, Any]) -> bool:
    return DELETE_BEFORE_CREATION in delete_policies(manifest)


def delete_on_succeeded(manifest: Dict[str, Any]) -> bool:
    return DELETE_SUCCEEDED in delete_policies(manifest)


def delete_on_failed(manifest: Dict[str, Any]) -> bool:
    return DELETE_FAILED in delete_policies(manifest)


def keep_on_delete(manifest: Dict[str, Any]) -> bool:
    return annotations_of(manifest).get(ANNO_RESOURCE_POLICY) == "keep"


def weight(manifest: Dict[str, Any]) -> int:
    annos = annotations_of(manifest)
    if ANNO_WEIGHT in annos:
        return parse_int(annos[ANNO_WEIGHT])
    if is_hook(manifest) and ANNO_HOOK_WEIGHT in annos:
        return parse_int(annos[ANNO_HOOK_WEIGHT])
    return 0


def default_replicas_on_creation(manifest: Dict[str, Any]) -> int | None:
    """Return the replica count for new resources or `None` if unset."""
    if manifest.get("kind") == CRD_KIND and manifest.get("apiVersion", "").startswith(CRD_GROUP):
        return None
    value = annotations_of(manifest).get(ANNO_REPLICAS_ON_CREATION)
    return None if value is None else parse_int(value)


def track_termination_mode(manifest: Dict[str, Any]) -> str:
    return annotations_of(manifest).get(ANNO_TRACK_TERMINATION_MODE, TRACK_READY)


def fail_mode(manifest: Dict[str, Any]) -> str:
    return annotations_of(manifest).get(ANNO_FAIL_MODE, "FailWholeDeployProcessImmediately")


def failures_allowed(manifest: Dict[str, Any]) -> int:
    """Return the number of pod failures to tolerate before giving up."""
    if manifest.get("kind") == "Job":
        return 0

    spec = manifest.get("spec") or {}
    value = annotations_of(manifest).get(ANNO_FAILURES_ALLOWED)
    if value is not None:
        allowed = parse_int(value)
    else:
        restart = ((spec.get("template") or {}).get("spec") or {}).get("restartPolicy")
        allowed = 0 if restart == "Never" else 1

    replicas = spec.get("replicas")
    if isinstance(replicas, int):
        allowed *= replicas
    return allowed


def no_activity_timeout(manifest: Dict[str, Any]) -> float | None:
    value = annotations_of(manifest).get(ANNO_NO_ACTIVITY_TIMEOUT)
    return None if value is None else parse_duration(value)


def ignore_readiness_probe_fails_for(manifest: Dict[str, Any]) -> Dict[str, float]:
    out = {}
    for key, value in _matching(annotations_of(manifest), PAT_IGNORE_READINESS).items():
        match = PAT_IGNORE_READINESS.match(key)
        assert match is not None
        out[match.group("container")] = parse_duration(value)
    return out


def log_regexes_for_containers(manifest: Dict[str, Any]) -> Dict[str, re.Pattern]:
    out = {}
    for key, value in _matching(annotations_of(manifest), PAT_LOG_REGEX_FOR).items():
        match = PAT_LOG_REGEX_FOR.match(key)
        assert match is not None
        out[match.group("container")] = re.compile(value)
    return out


def skip_logs(manifest: Dict[str, Any]) -> bool:
    value = annotations_of(manifest).get(ANNO_SKIP_LOGS)
    return False if value is None else parse_bool(value)


def show_service_messages(manifest: Dict[str, Any]) -> bool:
    value = annotations_of(manifest).get(ANNO_SHOW_SERVICE_MESSAGES)
    return False if value is None else parse_bool(value)


def orphaned(manifest: Dict[str, Any], release_name: str, release_namespace: str) -> bool:
    """Return `True` unless `manifest` carries all the metadata of our release."""
    if is_hook(manifest):
        return False
    meta = manifest.get("metadata", {})
    if manifest.get("kind") == "Namespace" and meta.get("name") == release_namespace:
        return False

    annos, labels = annotations_of(manifest), labels_of(manifest)
    return (
        annos.get(ANNO_RELEASE_NAME) != release_name or
        annos.get(ANNO_RELEASE_NAMESPACE) != release_namespace or
        labels.get(LABEL_MANAGED_BY) != MANAGED_BY_VALUE
    )


def adoptable_by(manifest: Dict[str, Any], release_name: str,
                 release_namespace: str) -> Tuple[bool, str]:
    """Return whether our release may take over `manifest` and why not."""
    annos = annotations_of(manifest)
    reasons = []
    for key, expected in ((ANNO_RELEASE_NAME, release_name),
                          (ANNO_RELEASE_NAMESPACE, release_namespace)):
        if key not in annos:
            reasons.append(f'annotation "{key}" not found, must be set to "{expected}"')
        elif annos[key] != expected:
            reasons.append(f'annotation "{key}={annos[key]}" must have value "{expected}"')
    return len(reasons) == 0, str.join(", ", reasons)
