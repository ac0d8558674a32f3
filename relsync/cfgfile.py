"""Load the Relsync configuration from a YAML file."""
import logging
from pathlib import Path
from types import SimpleNamespace
from typing import Tuple

import pydantic
import yaml

from relsync.dtypes import Config

# Convenience.
logit = logging.getLogger("relsync")


def load(fname: Path) -> Tuple[Config, bool]:
    """Parse the configuration file `fname` and return it as a `Config`.

    A relative `kubeconfig` path is relative to the folder of `fname`.

    """
    err_resp = Config.model_construct(
        kubeconfig=Path(), release_name="", release_namespace=""
    ), True

    # Load the configuration file.
    try:
        raw = yaml.safe_load(fname.read_text())
    except FileNotFoundError as e:
        logit.error(f"Cannot load config file <{fname}>: {e.args[1]}")
        return err_resp
    except yaml.YAMLError as exc:
        # Special case: parser supplied location information.
        mark = getattr(exc, "problem_mark", SimpleNamespace(line=-1, column=-1))
        line, col = (mark.line + 1, mark.column + 1)
        logit.error(f"YAML format error in {fname}: Line {line} Column {col}")
        return err_resp

    if not isinstance(raw, dict):
        logit.error(f"Config file <{fname}> must contain a mapping")
        return err_resp

    # Parse the configuration into `Config` structure.
    try:
        cfg = Config.model_validate(raw)
    except (pydantic.ValidationError, TypeError) as e:
        logit.error(f"Schema is invalid: {e}")
        return err_resp

    kubeconfig = cfg.kubeconfig.expanduser()
    if not kubeconfig.is_absolute():
        kubeconfig = fname.parent.absolute() / kubeconfig
    cfg.kubeconfig = kubeconfig

    return cfg, False
