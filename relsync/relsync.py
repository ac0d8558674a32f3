import logging
from typing import Any, List, Optional, Sequence, Tuple

import colorama
import yaml
from colorlog import ColoredFormatter

from relsync.client import ClientFactory
from relsync.diff import colored_unified_diff
from relsync.dtypes import Config
from relsync.errors import RelsyncError
from relsync.processor import DeployableResourcesProcessor
from relsync.resource import (
    GeneralResource, HookResource, ReleaseNamespace, StandaloneCRD,
)
from relsync.yaml_io import Dumper

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("relsync")


def setup_logging(log_level: int) -> None:
    """Configure logging at `log_level`.

    Level 0: ERROR
    Level 1: WARNING
    Level 2: INFO
    Level >=3: DEBUG

    Inputs:
        log_level: int

    Returns:
        None

    """
    # Pick the correct log level.
    if log_level == 0:
        level = "ERROR"
    elif log_level == 1:
        level = "WARNING"
    elif log_level == 2:
        level = "INFO"
    else:
        level = "DEBUG"

    # Create logger.
    logger = logging.getLogger("relsync")
    logger.setLevel(level)

    # Configure stdout handler.
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(
        ColoredFormatter(
            "%(log_color)s%(levelname)s%(reset)s - "
            "%(filename)s:%(funcName)s:%(lineno)d - %(message)s"
        )
    )

    # Attach stdout handlers to the `relsync` logger.
    logger.addHandler(handler)
    logit.info(f"Set log level to {level}")


async def process_release(
        cfg: Config,
        standalone_crds: Sequence[StandaloneCRD] = (),
        hook_resources: Sequence[HookResource] = (),
        general_resources: Sequence[GeneralResource] = (),
        prev_release_hooks: Sequence[HookResource] = (),
        prev_release_general_resources: Sequence[GeneralResource] = (),
        *,
        release_namespace_resource: ReleaseNamespace | None = None,
        factory: ClientFactory | None = None,
        **extensions: Any,
) -> Tuple[Optional[DeployableResourcesProcessor], bool]:
    """Return the processed release or an error.

    Connect to the cluster described by `cfg` unless `cfg.allow_cluster_access`
    is `False` or a `factory` was supplied. The `extensions` are the
    transformer and patcher lists of `DeployableResourcesProcessor`.

    """
    own_factory = factory is None and cfg.allow_cluster_access
    if own_factory:
        factory = ClientFactory(cfg)

    try:
        kube_client = None
        if cfg.allow_cluster_access:
            assert factory is not None
            kube_client = await factory.initialize()

        processor = DeployableResourcesProcessor(
            cfg.deploy_type,
            cfg.release_name,
            cfg.release_namespace,
            standalone_crds,
            hook_resources,
            general_resources,
            prev_release_hooks,
            prev_release_general_resources,
            kube_client=kube_client,
            release_namespace_resource=release_namespace_resource,
            network_parallelism=cfg.network_parallelism,
            force_adoption=cfg.force_adoption,
            allow_cluster_access=cfg.allow_cluster_access,
            **extensions,
        )
        await processor.process()
    except RelsyncError as err:
        logit.error(str(err))
        return (None, True)
    finally:
        if own_factory and factory is not None and factory.initialized:
            await factory.close()

    return (processor, False)


def show_changes(processor: Optional[DeployableResourcesProcessor]) -> bool:
    """Print what deploying the `processor` results would change.

    Inputs:
        processor: DeployableResourcesProcessor

    Returns:
        False

    """
    # Do nothing if there is no processor. This special case makes it easier
    # to deal with cases where `process_release` returns an error.
    if not processor:
        return False

    # Terminal colours for convenience.
    cAdd = colorama.Fore.GREEN
    cMod = colorama.Fore.YELLOW + colorama.Style.BRIGHT
    cDel = colorama.Fore.RED
    cReset = colorama.Fore.RESET + colorama.Style.RESET_ALL

    n_add, n_mod, n_del = 0, 0, 0

    def _create(name: str, manifest: dict) -> None:
        # Convert manifest to YAML string and print every line in Green.
        txt = yaml.dump(manifest, default_flow_style=False, Dumper=Dumper)
        lines = [f"    {cAdd}{line}{cReset}" for line in txt.splitlines()]
        lines.insert(0, cAdd + f"Create {name}" + cReset)
        print(str.join('\n', lines) + '\n')

    def _modify(verb: str, name: str, diff: str) -> None:
        diff = str.join('\n', [f"    {line}" for line in diff.splitlines()])
        print(cMod + f"{verb} {name}" + cReset + "\n" + diff + "\n")

    infos: List[Any] = []
    if processor.release_namespace_info is not None:
        infos.append(processor.release_namespace_info)
    infos += processor.standalone_crd_infos
    infos += processor.hook_resource_infos
    infos += processor.general_resource_infos

    for info in infos:
        ident = info.identity
        name = f"{ident.kind.upper()} {ident.effective_namespace}/{ident.name}"
        name += f" ({ident.api_version})"

        if info.should_create():
            _create(name, info.resource.manifest)
            n_add += 1
        elif getattr(info, "should_recreate", lambda: False)():
            _modify("Recreate", name, "")
            n_mod += 1
        elif info.should_update():
            diff = ""
            if info.dry_run is not None:
                diff = colored_unified_diff(info.live.manifest, info.dry_run.manifest)
            _modify("Update", name, diff)
            n_mod += 1
        elif info.should_apply():
            _modify("Apply", name, "")
            n_mod += 1

    # Previous release resources that the new release does not contain anymore.
    current_uids = {_.live_uid() for _ in processor.general_resource_infos if _.exists}
    for prev in processor.prev_release_general_infos:
        if not prev.should_delete(current_uids, processor.release_name,
                                  processor.release_namespace, processor.deploy_type):
            continue
        ident = prev.identity
        name = f"{ident.kind.upper()} {ident.effective_namespace}/{ident.name}"
        name += f" ({ident.api_version})"
        print(cDel + f"Delete {name}" + cReset)
        n_del += 1

    # Only use color if a category (ie to ADD, MODIFY or DELETE) is nonzero.
    cAdd = cAdd if n_add else colorama.Style.BRIGHT + colorama.Fore.WHITE
    cMod = cMod if n_mod else colorama.Style.BRIGHT + colorama.Fore.WHITE
    cDel = cDel if n_del else colorama.Style.BRIGHT + colorama.Fore.WHITE

    print("-" * 80)
    print("Plan: " +                         # noqa
          cReset + cAdd + f"{n_add:,} to add, " +     # noqa
          cReset + cMod + f"{n_mod:,} to change, " +  # noqa
          cReset + cDel + f"{n_del:,} to destroy." +  # noqa
          cReset + "\n")
    return False
