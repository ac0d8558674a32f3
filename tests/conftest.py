import asyncio
import unittest.mock as mock
from typing import Generator

import httpx
import pytest

import relsync.k8s
import relsync.relsync
from relsync.cache import ClusterCache, LockRegistry
from relsync.client import KubeClient
from relsync.dtypes import Config, K8sConfig
from relsync.mapper import ClusterMapper

from .test_helpers import FakeCluster, k8s_apis


def pytest_configure(*args, **kwargs):
    """Pytest calls this hook on startup."""
    # Set log level to DEBUG for all unit tests.
    relsync.relsync.setup_logging(9)


@pytest.fixture
def k8sconfig():
    # Return a valid K8sConfig with a subsection of API endpoints.
    cfg = K8sConfig(
        url="https://k8s.test", name="test", version="1.30",
        client=httpx.AsyncClient(), apis={},
    )

    # The set of API endpoints we can use in the tests.
    cfg.apis.update(k8s_apis(cfg))

    # Short-circuit the `async.sleep` function.
    with mock.patch.object(asyncio, "sleep"):
        yield cfg


@pytest.fixture
def fake_cluster() -> Generator[FakeCluster, None, None]:
    """Replace all K8s API requests with an in-memory cluster."""
    cluster = FakeCluster()
    with mock.patch.object(relsync.k8s, "request", new=cluster.request):
        yield cluster


@pytest.fixture
def kube_client(k8sconfig, fake_cluster) -> KubeClient:
    return KubeClient(k8sconfig, ClusterMapper(k8sconfig), ClusterCache(), LockRegistry())


@pytest.fixture
def config(tmp_path) -> Generator[Config, None, None]:
    """Return a valid `Config` whose kubeconfig is a dummy file."""
    kubeconfig = tmp_path / "kubeconf"
    kubeconfig.write_text("")
    yield Config(
        kubeconfig=kubeconfig,
        release_name="rel",
        release_namespace="relns",
    )
