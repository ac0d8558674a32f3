import pytest

from relsync import annotations as anno

from .test_helpers import make_manifest, release_metadata


def with_annotations(kind="Deployment", api_version="apps/v1", **annos):
    return make_manifest(kind, "ns", "name", api_version, annotations=annos)


def hook(**annos):
    return make_manifest("Job", "ns", "job", "batch/v1",
                         annotations={"helm.sh/hook": "pre-install", **annos})


class TestParsers:
    @pytest.mark.parametrize("value, seconds", [
        ("0", 0),
        ("10s", 10),
        ("1m30s", 90),
        ("1.5h", 5400),
        ("-2m", -120),
        ("+3s", 3),
        ("100ms", 0.1),
        ("1h1m1s", 3661),
    ])
    def test_parse_duration(self, value, seconds):
        assert anno.parse_duration(value) == pytest.approx(seconds)

    @pytest.mark.parametrize("value", ["", "10", "1d", "abc", "1m-3s", "-"])
    def test_parse_duration_err(self, value):
        with pytest.raises(ValueError):
            anno.parse_duration(value)

    def test_parse_bool(self):
        assert anno.parse_bool("true") is True
        assert anno.parse_bool("1") is True
        assert anno.parse_bool("False") is False
        with pytest.raises(ValueError):
            anno.parse_bool("yes")

    def test_parse_int(self):
        assert anno.parse_int("10") == 10
        assert anno.parse_int("-3") == -3
        for value in ("", "1.5", "ten", "1 0"):
            with pytest.raises(ValueError):
                anno.parse_int(value)

    def test_parse_properties(self):
        assert anno.parse_properties("kind=Deployment,name=app,state=ready") == {
            "kind": "Deployment", "name": "app", "state": "ready",
        }

        # Quoted values may contain commas and keep their whitespace.
        assert anno.parse_properties('name="a, b" , state= \'ready\'') == {
            "name": "a, b", "state": "ready",
        }

        # Keys without values are flags.
        assert anno.parse_properties("wait,nowait2,KIND=Job") == {
            "wait": True, "wait2": False, "kind": "Job",
        }

        # Unquoted values are stripped.
        assert anno.parse_properties("kind = Job ") == {"kind": "Job"}
        assert anno.parse_properties("") == {}


class TestValidation:
    def test_hook(self):
        anno.validate_hook(hook())
        anno.validate_hook(hook(**{"helm.sh/hook": "pre-install,post-upgrade"}))

        for value in ("", "pre-install,", "pre-deploy"):
            with pytest.raises(ValueError):
                anno.validate_hook(hook(**{"helm.sh/hook": value}))

        with pytest.raises(ValueError):
            anno.validate_hook(with_annotations())

    def test_weight(self):
        anno.validate_weight(with_annotations(**{"werf.io/weight": "-10"}))
        anno.validate_weight(hook(**{"helm.sh/hook-weight": "5"}))

        # Hook weights only matter for hooks.
        anno.validate_weight(with_annotations(**{"helm.sh/hook-weight": "x"}))

        with pytest.raises(ValueError):
            anno.validate_weight(with_annotations(**{"werf.io/weight": "heavy"}))
        with pytest.raises(ValueError):
            anno.validate_weight(hook(**{"helm.sh/hook-weight": "1.5"}))

    def test_resource_policy(self):
        anno.validate_resource_policy(with_annotations())
        anno.validate_resource_policy(with_annotations(**{"helm.sh/resource-policy": "keep"}))
        with pytest.raises(ValueError):
            anno.validate_resource_policy(
                with_annotations(**{"helm.sh/resource-policy": "delete"}))

    def test_delete_policy(self):
        anno.validate_delete_policy(
            with_annotations(**{"werf.io/delete-policy": "succeeded,failed"}))
        anno.validate_delete_policy(
            hook(**{"helm.sh/hook-delete-policy": "hook-succeeded,before-hook-creation"}))

        bad = [
            with_annotations(**{"werf.io/delete-policy": "never"}),
            with_annotations(**{"werf.io/delete-policy": "succeeded,"}),
            hook(**{"helm.sh/hook-delete-policy": "succeeded"}),
        ]
        for manifest in bad:
            with pytest.raises(ValueError):
                anno.validate_delete_policy(manifest)

    def test_replicas_on_creation(self):
        key = "werf.io/replicas-on-creation"
        anno.validate_replicas_on_creation(with_annotations(**{key: "0"}))
        anno.validate_replicas_on_creation(with_annotations(**{key: "3"}))
        for value in ("-1", "two", ""):
            with pytest.raises(ValueError):
                anno.validate_replicas_on_creation(with_annotations(**{key: value}))

    @pytest.mark.parametrize("key, value", [
        ("werf.io/fail-mode", "IgnoreAndContinueDeployProcess"),
        ("werf.io/failures-allowed-per-replica", "2"),
        ("werf.io/ignore-readiness-probe-fails-for-app", "1m"),
        ("werf.io/log-regex", ".*ERROR.*"),
        ("werf.io/log-regex-for-app", "^warn"),
        ("werf.io/no-activity-timeout", "4m"),
        ("werf.io/show-logs-only-for-containers", "app,sidecar"),
        ("werf.io/skip-logs-for-containers", "init"),
        ("werf.io/show-service-messages", "true"),
        ("werf.io/skip-logs", "false"),
        ("werf.io/track-termination-mode", "NonBlocking"),
    ])
    def test_track_ok(self, key, value):
        anno.validate_track(with_annotations(**{key: value}))

    @pytest.mark.parametrize("key, value", [
        ("werf.io/fail-mode", "Panic"),
        ("werf.io/failures-allowed-per-replica", "-1"),
        ("werf.io/failures-allowed-per-replica", "many"),
        ("werf.io/ignore-readiness-probe-fails-for-app", "-1m"),
        ("werf.io/ignore-readiness-probe-fails-for-app", "soon"),
        ("werf.io/log-regex", "("),
        ("werf.io/log-regex", ""),
        ("werf.io/log-regex-for-app", "[a-"),
        ("werf.io/no-activity-timeout", "-4m"),
        ("werf.io/show-logs-only-for-containers", ""),
        ("werf.io/skip-logs-for-containers", "app,,init"),
        ("werf.io/show-service-messages", "maybe"),
        ("werf.io/skip-logs", "sure"),
        ("werf.io/track-termination-mode", "Eventually"),
    ])
    def test_track_err(self, key, value):
        with pytest.raises(ValueError):
            anno.validate_track(with_annotations(**{key: value}))

    def test_deploy_dependencies(self):
        key = "werf.io/deploy-dependency-db"
        anno.validate_deploy_dependencies(
            with_annotations(**{key: "kind=StatefulSet,name=db,state=ready"}))

        bad = [
            "",
            "state=ready",                       # no target
            "kind=StatefulSet,name=db",          # no state
            "kind=StatefulSet,state=done",       # unknown state
            "kind=StatefulSet,color=red,state=ready",
            "kind=,state=ready",
            "kind=StatefulSet,wait,state=ready",
        ]
        for value in bad:
            with pytest.raises(ValueError):
                anno.validate_deploy_dependencies(with_annotations(**{key: value}))

    def test_internal_dependencies(self):
        anno.validate_internal_dependencies(with_annotations(**{
            "db.dependency.werf.io": "apps/v1:StatefulSet:db",
            "cache.dependency.werf.io": "apps/v1:Deployment:ns:cache",
            "empty.dependency.werf.io": "",
        }))
        with pytest.raises(ValueError):
            anno.validate_internal_dependencies(
                with_annotations(**{"db.dependency.werf.io": "StatefulSet/db"}))

    def test_external_dependencies(self):
        anno.validate_external_dependencies(with_annotations(**{
            "db.external-dependency.werf.io": "v1:Secret:creds",
            "cert.external-dependency.werf.io/resource": "certificate.v1.cert-manager.io/tls",
            "cert.external-dependency.werf.io/namespace": "certs",
        }))

        bad = [
            {"db.external-dependency.werf.io": ""},
            {"db.external-dependency.werf.io/resource": "secret"},
            {"db.external-dependency.werf.io/resource": "/creds"},
            {"db.external-dependency.werf.io/resource": "all/creds"},
            {"db.external-dependency.werf.io/resource": "secret..v1/creds"},
            {"db.external-dependency.werf.io/resource": "secret/"},
            {"db.external-dependency.werf.io/namespace": ""},
        ]
        for annos in bad:
            with pytest.raises(ValueError):
                anno.validate_external_dependencies(with_annotations(**annos))


class TestPolicies:
    def test_delete_policies(self):
        # Hooks default to "before-creation".
        assert anno.delete_policies(hook()) == ["before-creation"]
        assert anno.recreate(hook())

        # Legacy hook policies are translated.
        manifest = hook(**{"helm.sh/hook-delete-policy": "hook-succeeded,hook-failed"})
        assert anno.delete_policies(manifest) == ["succeeded", "failed"]
        assert anno.delete_on_succeeded(manifest) and anno.delete_on_failed(manifest)
        assert not anno.recreate(manifest)

        # The werf annotation wins.
        manifest = hook(**{
            "helm.sh/hook-delete-policy": "hook-succeeded",
            "werf.io/delete-policy": "failed",
        })
        assert anno.delete_policies(manifest) == ["failed"]

        # General resources have no default policy.
        assert anno.delete_policies(with_annotations()) == []
        assert not anno.recreate(with_annotations())

    def test_hook_phases(self):
        manifest = hook(**{"helm.sh/hook": "pre-install, post-upgrade"})
        assert anno.hook_phases(manifest) == ["pre-install", "post-upgrade"]
        assert anno.on(manifest, "post-upgrade")
        assert anno.on(manifest, "pre-rollback", "pre-install")
        assert not anno.on(manifest, "pre-delete")
        assert anno.hook_phases(with_annotations()) == []

    def test_weight(self):
        assert anno.weight(with_annotations()) == 0
        assert anno.weight(with_annotations(**{"werf.io/weight": "-5"})) == -5
        assert anno.weight(hook(**{"helm.sh/hook-weight": "3"})) == 3
        assert anno.weight(hook(**{"helm.sh/hook-weight": "3", "werf.io/weight": "7"})) == 7

    def test_replicas_on_creation(self):
        key = "werf.io/replicas-on-creation"
        assert anno.default_replicas_on_creation(with_annotations()) is None
        assert anno.default_replicas_on_creation(with_annotations(**{key: "2"})) == 2

        # Ignored for CRDs.
        crd = with_annotations("CustomResourceDefinition", "apiextensions.k8s.io/v1", **{key: "2"})
        assert anno.default_replicas_on_creation(crd) is None

    def test_tracking(self):
        manifest = with_annotations(**{
            "werf.io/ignore-readiness-probe-fails-for-app": "1m",
            "werf.io/log-regex-for-app": "^warn",
            "werf.io/no-activity-timeout": "10s",
            "werf.io/skip-logs": "true",
            "werf.io/show-service-messages": "1",
        })
        assert anno.track_termination_mode(manifest) == anno.TRACK_READY
        assert anno.fail_mode(manifest) == "FailWholeDeployProcessImmediately"
        assert anno.ignore_readiness_probe_fails_for(manifest) == {"app": 60}
        assert anno.log_regexes_for_containers(manifest)["app"].pattern == "^warn"
        assert anno.no_activity_timeout(manifest) == 10
        assert anno.skip_logs(manifest) and anno.show_service_messages(manifest)

        assert anno.no_activity_timeout(with_annotations()) is None
        assert not anno.skip_logs(with_annotations())

    def test_failures_allowed(self):
        # Jobs never tolerate failures.
        job = make_manifest("Job", "ns", "job", "batch/v1",
                            annotations={"werf.io/failures-allowed-per-replica": "5"})
        assert anno.failures_allowed(job) == 0

        # Default is one failure per replica.
        deploy = make_manifest("Deployment", "ns", "app", "apps/v1", spec={"replicas": 3})
        assert anno.failures_allowed(deploy) == 3

        deploy["metadata"]["annotations"] = {"werf.io/failures-allowed-per-replica": "2"}
        assert anno.failures_allowed(deploy) == 6

        # Pods that never restart do not tolerate failures by default.
        pod = make_manifest("Deployment", "ns", "app", "apps/v1",
                            spec={"template": {"spec": {"restartPolicy": "Never"}}})
        assert anno.failures_allowed(pod) == 0


class TestOwnership:
    def test_keep_on_delete(self):
        assert anno.keep_on_delete(with_annotations(**{"helm.sh/resource-policy": "keep"}))
        assert not anno.keep_on_delete(with_annotations())

    def test_orphaned(self):
        ours = make_manifest("ConfigMap", "ns", "cm", **release_metadata())
        assert not anno.orphaned(ours, "rel", "relns")
        assert anno.orphaned(ours, "other", "relns")
        assert anno.orphaned(ours, "rel", "otherns")

        # The managed-by label is mandatory.
        del ours["metadata"]["labels"]
        assert anno.orphaned(ours, "rel", "relns")

        # Hooks and the release namespace are never orphaned.
        assert not anno.orphaned(hook(), "rel", "relns")
        ns = make_manifest("Namespace", None, "relns")
        assert not anno.orphaned(ns, "rel", "relns")

    def test_adoptable_by(self):
        ours = make_manifest("ConfigMap", "ns", "cm", **release_metadata())
        assert anno.adoptable_by(ours, "rel", "relns") == (True, "")

        ok, reason = anno.adoptable_by(ours, "other", "relns")
        assert not ok
        assert 'annotation "meta.helm.sh/release-name=rel" must have value "other"' == reason

        ok, reason = anno.adoptable_by(make_manifest("ConfigMap", "ns", "cm"), "rel", "relns")
        assert not ok
        assert reason == (
            'annotation "meta.helm.sh/release-name" not found, must be set to "rel", '
            'annotation "meta.helm.sh/release-namespace" not found, must be set to "relns"'
        )
