"""Use the fast LibYAML loader/dumper if available and fold multi-line strings.

Other modules import the `Loader` and `Dumper` from here instead of from
`yaml` directly:

   from relsync.yaml_io import Dumper, Loader

The dumper uses the "|" block notation for strings with new-lines, which keeps
ConfigMaps and embedded scripts readable in diffs.

"""
import logging

logit = logging.getLogger("relsync")

try:                                 # codecov-skip
    from yaml import (  # type: ignore
        CSafeDumper as Dumper, CSafeLoader as Loader,
    )
    logit.debug("Using LibYAML C library")
except ImportError:                  # codecov-skip
    from yaml import SafeDumper as Dumper, SafeLoader as Loader  # type: ignore
    logit.debug("Using Python YAML library")


def fold_yaml_strings(dumper, data):
    """Represent multi-line strings with the `|` block notation."""
    style = '|' if '\n' in data else None
    return dumper.represent_scalar('tag:yaml.org,2002:str', data, style=style)


Dumper.add_representer(str, fold_yaml_strings)
