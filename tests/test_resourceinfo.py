import itertools

import pytest

from relsync.dtypes import DeployType, UpToDateStatus
from relsync.errors import ClusterError, ImmutableError
from relsync.resource import (
    GeneralResource, HookResource, ReleaseNamespace, RemoteResource,
    StandaloneCRD,
)
from relsync.resourceinfo import (
    GeneralResourceInfo, PrevReleaseGeneralResourceInfo, build_general_info,
    build_hook_info, build_prev_general_info, build_prev_hook_info,
    build_release_namespace_info, build_standalone_crd_info, classify,
)

from .test_helpers import make_manifest, release_metadata

CM_PATH = "/api/v1/namespaces/relns/configmaps/cm"
JOB_PATH = "/apis/batch/v1/namespaces/relns/jobs/job"
CRD_PATH = "/apis/apiextensions.k8s.io/v1/customresourcedefinitions/widgets.example.com"
NS_PATH = "/api/v1/namespaces/relns"


def configmap(annotations=None, **data):
    meta = release_metadata()
    meta["annotations"].update(annotations or {})
    return make_manifest("ConfigMap", None, "cm", data=data, **meta)


def predicates(info):
    return (info.should_create(), info.should_recreate(),
            info.should_update(), info.should_apply())


class TestScenarios:
    async def test_absent(self, kube_client, fake_cluster):
        res = GeneralResource(configmap(foo="bar"), "relns")
        info = await build_general_info(kube_client, res)

        assert not info.exists
        assert info.live is None and info.dry_run is None
        assert predicates(info) == (True, False, False, False)
        assert info.should_deploy()

        # Nothing to dry run without a live object.
        assert fake_cluster.count("PATCH") == 0

    async def test_up_to_date(self, kube_client, fake_cluster):
        fake_cluster.put(CM_PATH, configmap(foo="bar"))
        res = GeneralResource(configmap(foo="bar"), "relns")
        info = await build_general_info(kube_client, res)

        assert info.exists
        assert info.up_to_date == UpToDateStatus.YES
        assert predicates(info) == (False, False, False, False)
        assert not info.should_deploy()
        assert not info.should_cleanup("rel", "relns")
        assert info.live_uid() == "uid-1"

        # Dry runs never change the cluster.
        assert fake_cluster.objects[CM_PATH]["data"] == {"foo": "bar"}

    async def test_up_to_date_cleanup(self, kube_client, fake_cluster):
        anno = {"werf.io/delete-policy": "succeeded"}
        fake_cluster.put(CM_PATH, configmap(anno, foo="bar"))
        info = await build_general_info(kube_client, GeneralResource(configmap(anno, foo="bar"), "relns"))
        assert info.up_to_date == UpToDateStatus.YES
        assert info.should_cleanup("rel", "relns")

        # Resources of other releases are never cleaned up.
        assert not info.should_cleanup("other", "relns")

    async def test_outdated(self, kube_client, fake_cluster):
        fake_cluster.put(CM_PATH, configmap(foo="bar"))
        res = GeneralResource(configmap(foo="baz"), "relns")
        info = await build_general_info(kube_client, res)

        assert info.up_to_date == UpToDateStatus.NO
        assert predicates(info) == (False, False, True, False)
        assert info.dry_run.manifest["data"] == {"foo": "baz"}
        assert fake_cluster.objects[CM_PATH]["data"] == {"foo": "bar"}

    async def test_recreate_immutable(self, kube_client, fake_cluster):
        anno = {"werf.io/delete-policy": "before-creation"}
        fake_cluster.put(CM_PATH, configmap(anno, foo="bar"))
        fake_cluster.fail("PATCH", CM_PATH, 422, "Invalid", "data: field is immutable")

        res = GeneralResource(configmap(anno, foo="baz"), "relns")
        info = await build_general_info(kube_client, res)

        assert isinstance(info.dry_run_error, ImmutableError)
        assert info.dry_run is None
        assert info.up_to_date == UpToDateStatus.NO
        assert predicates(info) == (False, True, False, False)

    async def test_immutable_without_recreate(self, kube_client, fake_cluster):
        fake_cluster.put(CM_PATH, configmap(foo="bar"))
        fake_cluster.fail("PATCH", CM_PATH, 422, "Invalid", "data: field is immutable")

        res = GeneralResource(configmap(foo="baz"), "relns")
        with pytest.raises(ImmutableError):
            await build_general_info(kube_client, res)

    async def test_transient_dry_run_error(self, kube_client, fake_cluster):
        fake_cluster.put(CM_PATH, configmap(foo="bar"))
        fake_cluster.fail("PATCH", CM_PATH, 500, "InternalError", "etcd is sad")

        res = GeneralResource(configmap(foo="baz"), "relns")
        info = await build_general_info(kube_client, res)

        assert type(info.dry_run_error) is ClusterError
        assert info.up_to_date == UpToDateStatus.UNKNOWN
        assert predicates(info) == (False, False, False, True)

    async def test_fix_managed_fields(self, kube_client, fake_cluster):
        live = configmap(foo="bar")
        live["metadata"]["managedFields"] = [
            {"manager": "helm", "operation": "Apply", "fieldsType": "FieldsV1",
             "fieldsV1": {"f:data": {"f:foo": {}}}},
            {"manager": "kubectl-edit", "operation": "Update", "fieldsType": "FieldsV1",
             "fieldsV1": {"f:data": {"f:foo": {}}}},
        ]
        fake_cluster.put(CM_PATH, live)

        info = await build_general_info(kube_client, GeneralResource(configmap(foo="bar"), "relns"))

        # One merge patch to repair the ledger and one dry run.
        merge_patches = [_ for _ in fake_cluster.calls if _[0] == "PATCH" and "force" not in _[2]]
        assert len(merge_patches) == 1
        assert fake_cluster.count("PATCH") == 2

        # The info is based on the repaired object.
        managers = [_["manager"] for _ in info.live.managed_fields]
        assert managers == ["helm"]
        stored = fake_cluster.objects[CM_PATH]["metadata"]["managedFields"]
        assert [_["manager"] for _ in stored] == ["helm"]
        assert info.up_to_date == UpToDateStatus.YES

    async def test_unknown_kind(self, kube_client, fake_cluster):
        manifest = make_manifest("Widget", None, "w", "example.com/v1")
        info = await build_general_info(kube_client, GeneralResource(manifest, "relns"))
        assert info.should_create()
        assert fake_cluster.calls == []

    async def test_get_error(self, kube_client, fake_cluster):
        fake_cluster.fail("GET", CM_PATH, 403, "Forbidden", "no access")
        with pytest.raises(ClusterError):
            await build_general_info(kube_client, GeneralResource(configmap(), "relns"))


class TestPredicates:
    def test_exclusive(self):
        """At most one of create, recreate, update and apply may be true."""
        plain = GeneralResource(configmap(foo="bar"), "relns")
        recreate = GeneralResource(
            configmap({"werf.io/delete-policy": "before-creation"}, foo="bar"), "relns"
        )
        remote = RemoteResource(configmap(foo="bar"), "relns")

        grid = itertools.product((None, remote), list(UpToDateStatus), (plain, recreate))
        for live, status, res in grid:
            info = GeneralResourceInfo(res, live, None, None, status)
            flags = predicates(info)
            assert sum(flags) <= 1
            assert info.should_deploy() == any(flags)

            if live is None:
                assert flags == (True, False, False, False)
            elif res.recreate:
                assert flags == (False, True, False, False)
            elif status == UpToDateStatus.YES:
                assert not any(flags)

    def test_classify(self):
        remote = RemoteResource(configmap(foo="bar"), "relns")
        changed = RemoteResource(configmap(foo="baz"), "relns")
        err = ClusterError("dry-run-apply", "cm", 500)
        immutable = ImmutableError("dry-run-apply", "cm", 422)

        assert classify(None, None, None) == UpToDateStatus.NO
        assert classify(remote, remote, None) == UpToDateStatus.YES
        assert classify(remote, changed, None) == UpToDateStatus.NO
        assert classify(remote, None, immutable) == UpToDateStatus.NO
        assert classify(remote, None, err) == UpToDateStatus.UNKNOWN

    def test_force_replicas(self):
        anno = {"werf.io/replicas-on-creation": "3"}
        res = GeneralResource(configmap(anno), "relns")
        assert GeneralResourceInfo(res).force_replicas() == 3

        live = RemoteResource(configmap(anno), "relns")
        info = GeneralResourceInfo(res, live, live, None, UpToDateStatus.NO)
        assert info.force_replicas() is None

    def test_track_readiness(self):
        res = GeneralResource(configmap(), "relns")
        live = RemoteResource(configmap(), "relns")

        assert GeneralResourceInfo(res).should_track_readiness(False)

        info = GeneralResourceInfo(res, live, live, None, UpToDateStatus.YES)
        assert not info.should_track_readiness(False)
        assert info.should_track_readiness(True)

        non_blocking = GeneralResource(
            configmap({"werf.io/track-termination-mode": "NonBlocking"}), "relns"
        )
        assert not GeneralResourceInfo(non_blocking).should_track_readiness(False)


class TestHooks:
    async def test_hook(self, kube_client, fake_cluster):
        manifest = make_manifest("Job", None, "job", "batch/v1",
                                 annotations={"helm.sh/hook": "pre-install"},
                                 spec={"template": {}})
        fake_cluster.put(JOB_PATH, manifest)

        # Hooks are recreated by default.
        info = await build_hook_info(kube_client, HookResource(manifest, "relns"))
        assert predicates(info) == (False, True, False, False)

        info = await build_prev_hook_info(kube_client, HookResource(manifest, "relns"))
        assert info.exists
        assert info.should_track_readiness()


class TestPrevReleaseGeneral:
    async def test_should_delete(self, kube_client, fake_cluster):
        fake_cluster.put(CM_PATH, configmap(foo="bar"))
        res = GeneralResource(configmap(foo="bar"), "relns")

        info = await build_prev_general_info(kube_client, res)
        assert info.live_uid() == "uid-1"

        # Only GETs, no dry runs.
        assert fake_cluster.count("PATCH") == 0

        assert not info.should_delete({"uid-1"}, "rel", "relns", DeployType.UPGRADE)
        assert info.should_delete({"uid-2"}, "rel", "relns", DeployType.UPGRADE)
        assert info.should_delete({"uid-1"}, "rel", "relns", DeployType.UNINSTALL)

        # Never delete what belongs to somebody else.
        assert not info.should_delete(set(), "other", "relns", DeployType.UPGRADE)

    def test_absent(self):
        info = PrevReleaseGeneralResourceInfo(GeneralResource(configmap(), "relns"))
        assert not info.exists
        assert not info.should_delete(set(), "rel", "relns", DeployType.UNINSTALL)


class TestCRDAndNamespace:
    async def test_crd(self, kube_client, fake_cluster):
        manifest = make_manifest("CustomResourceDefinition", None, "widgets.example.com",
                                 "apiextensions.k8s.io/v1", spec={"group": "example.com"})
        res = StandaloneCRD(manifest)

        info = await build_standalone_crd_info(kube_client, res)
        assert info.should_create() and not info.should_update()

        # Dry run errors are ignored and make the status unknown.
        fake_cluster.put(CRD_PATH, manifest)
        fake_cluster.fail("PATCH", CRD_PATH, 500, "InternalError", "boom")
        kube_client.cache.clear()
        info = await build_standalone_crd_info(kube_client, res)
        assert info.exists
        assert info.up_to_date == UpToDateStatus.UNKNOWN
        assert info.should_apply()

    async def test_release_namespace(self, kube_client, fake_cluster):
        manifest = make_manifest("Namespace", None, "relns")
        res = ReleaseNamespace(manifest)

        info = await build_release_namespace_info(kube_client, res)
        assert info.should_create()

        fake_cluster.put(NS_PATH, manifest)
        fake_cluster.fail("PATCH", NS_PATH, 422, "Invalid", "metadata: field is immutable")
        kube_client.cache.clear()
        info = await build_release_namespace_info(kube_client, res)
        assert info.exists and info.should_apply()

        # The release namespace is never orphaned.
        assert not info.should_keep_on_delete("rel", "relns")
