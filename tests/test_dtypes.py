from pathlib import Path

import pydantic
import pytest

from relsync.dtypes import (
    Config, DeployType, ResourceIdentity, identity_from_manifest,
    split_api_version,
)

from .test_helpers import make_manifest


class TestResourceIdentity:
    def test_split_api_version(self):
        assert split_api_version("v1") == ("", "v1")
        assert split_api_version("apps/v1") == ("apps", "v1")
        assert split_api_version("rbac.authorization.k8s.io/v1") == (
            "rbac.authorization.k8s.io", "v1")

    def test_identity_from_manifest(self):
        manifest = make_manifest("Deployment", "ns", "app", "apps/v1")
        ident = identity_from_manifest(manifest, "relns")
        assert ident == ResourceIdentity("apps", "v1", "Deployment", "app", "ns", "relns")
        assert ident.api_version == "apps/v1"
        assert ident.effective_namespace == "ns"

        # Fall back to the default namespace.
        manifest = make_manifest("ConfigMap", None, "cm")
        ident = identity_from_manifest(manifest, "relns")
        assert ident.api_version == "v1"
        assert ident.effective_namespace == "relns"

        # Manifests without the essential fields are invalid.
        with pytest.raises(KeyError):
            identity_from_manifest({"kind": "ConfigMap"})

    def test_ids(self):
        v1 = ResourceIdentity("autoscaling", "v1", "HorizontalPodAutoscaler", "hpa", "ns")
        v2 = v1._replace(version="v2")

        # The ID ignores the version but the cache key does not.
        assert v1.id == v2.id == "ns:autoscaling:HorizontalPodAutoscaler:hpa"
        assert v1.id_with_version != v2.id_with_version

        # Declared and defaulted namespaces address the same object.
        a = ResourceIdentity("", "v1", "ConfigMap", "cm", namespace="ns")
        b = ResourceIdentity("", "v1", "ConfigMap", "cm", default_namespace="ns")
        assert a.id == b.id

    def test_human_id(self):
        ident = ResourceIdentity("", "v1", "ConfigMap", "cm", "", "relns")
        assert ident.human_id == "ConfigMap/cm"

        ident = ResourceIdentity("", "v1", "ConfigMap", "cm", "other", "relns")
        assert ident.human_id == "other/ConfigMap/cm"

    def test_is_crd(self):
        crd = ResourceIdentity("apiextensions.k8s.io", "v1", "CustomResourceDefinition", "foo")
        assert crd.is_crd
        assert not crd._replace(group="").is_crd

    def test_sort_key(self):
        idents = [
            ResourceIdentity("", "v1", "Secret", "b", "ns"),
            ResourceIdentity("apps", "v1", "Deployment", "x", "ns"),
            ResourceIdentity("", "v1", "Secret", "a", "ns"),
        ]
        names = [_.name for _ in sorted(idents, key=lambda _: _.sort_key)]
        assert names == ["x", "a", "b"]


class TestConfig:
    def test_default(self):
        cfg = Config(kubeconfig=Path("/tmp/kc"), release_name="rel", release_namespace="relns")
        assert cfg.deploy_type == DeployType.INSTALL
        assert cfg.network_parallelism == 30
        assert cfg.field_manager == "helm"
        assert cfg.default_delete_propagation == "Foreground"
        assert cfg.cache_ttl is None

    @pytest.mark.parametrize("field, value", [
        ("release_name", ""),
        ("release_namespace", "Invalid_Namespace"),
        ("release_namespace", "x" * 64),
        ("network_parallelism", 0),
        ("default_delete_propagation", "Sometimes"),
        ("cache_ttl", 0),
        ("deploy_type", "Sideways"),
    ])
    def test_invalid(self, field, value):
        data = dict(kubeconfig="/tmp/kc", release_name="rel", release_namespace="relns")
        data[field] = value
        with pytest.raises(pydantic.ValidationError):
            Config.model_validate(data)
