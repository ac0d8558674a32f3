import difflib
import logging
import re
from typing import Any, Dict, List

import colorama
import jsonpatch
import yaml

from relsync.errors import DiffError
from relsync.yaml_io import Dumper

logit = logging.getLogger("relsync")

# JSON patch paths that never count as a difference between the live object
# and its dry run. The server, the tracker or other tools update them all
# the time.
IGNORED_PATHS = {
    "/metadata/creationTimestamp",
    "/metadata/generation",
    "/metadata/resourceVersion",
    "/metadata/uid",
    "/status",
}
IGNORED_PATTERNS = [
    re.compile(r"^/metadata/managedFields/[0-9]+/time$"),
    re.compile(r"^/metadata/annotations/.*werf\.io.*"),
    re.compile(r"^/metadata/annotations/helm\.sh~1hook.*"),
    re.compile(r"^/metadata/labels/.*werf\.io.*"),
]


def is_ignored(path: str) -> bool:
    if path in IGNORED_PATHS or path.startswith("/status/"):
        return True
    return any(_.match(path) for _ in IGNORED_PATTERNS)


def relevant_changes(live: Dict[str, Any], dry_run: Dict[str, Any]) -> List[dict]:
    """Return the JSON patch operations that turn `live` into `dry_run`.

    Operations on server managed fields like the resource version are not
    part of the result.

    """
    if not isinstance(live, dict) or not isinstance(dry_run, dict):
        raise DiffError(
            f"cannot compare {type(live).__name__} with {type(dry_run).__name__}"
        )

    try:
        patch = jsonpatch.make_patch(live, dry_run)
    except (TypeError, ValueError, jsonpatch.JsonPatchException) as err:
        raise DiffError(f"cannot compute patch: {err}") from err

    return [op for op in patch.patch if not is_ignored(op["path"])]


def resources_really_differ(live: Dict[str, Any], dry_run: Dict[str, Any]) -> bool:
    """Return `True` if applying our manifest would change the live object.

    The `dry_run` object is the response of a server side apply dry run of
    our manifest. It already contains all defaults and all fields of other
    managers, which means any difference to `live` stems from the fields we
    declare ourselves.

    """
    ops = relevant_changes(live, dry_run)
    if ops:
        logit.debug(f"Found {len(ops)} relevant changes: {[_['path'] for _ in ops]}")
    return len(ops) > 0


def unified_diff(live: Dict[str, Any], desired: Dict[str, Any]) -> str:
    """Return the human readable diff between the `live` and `desired` manifest.

    The diff shows the necessary changes to transition the `live` manifest
    into the `desired` one and looks like the output of the Unix `diff`
    utility.

    """
    live_lines = yaml.dump(live, default_flow_style=False, Dumper=Dumper).splitlines()
    desired_lines = yaml.dump(desired, default_flow_style=False, Dumper=Dumper).splitlines()
    return str.join("\n", difflib.unified_diff(live_lines, desired_lines, lineterm=''))


def colored_unified_diff(live: Dict[str, Any], desired: Dict[str, Any]) -> str:
    """Same as `unified_diff` but with terminal colours."""
    cAdd = colorama.Fore.GREEN
    cDel = colorama.Fore.RED
    cReset = colorama.Fore.RESET + colorama.Style.RESET_ALL

    colour_lines = []
    for line in unified_diff(live, desired).splitlines():
        if line.startswith('+'):
            colour_lines.append(cAdd + line + cReset)
        elif line.startswith('-'):
            colour_lines.append(cDel + line + cReset)
        else:
            colour_lines.append(line)
    return str.join("\n", colour_lines)
