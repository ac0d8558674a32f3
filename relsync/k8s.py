import asyncio
import base64
import json
import logging
import os
import ssl
import tempfile
from pathlib import Path
from typing import Dict, List, Set, Tuple
from urllib.parse import urlencode, urlparse

import httpx
import tenacity as tc
import yaml

from relsync.dtypes import K8sConfig, K8sResource

# Convenience: location of K8s credentials inside a Pod.
TOKENFILE = Path("/var/run/secrets/kubernetes.io/serviceaccount/token")
CAFILE = Path("/var/run/secrets/kubernetes.io/serviceaccount/ca.crt")

# Define the exceptions we want to retry on.
WEB_EXCEPTIONS = (httpx.RequestError, ssl.SSLError, KeyError, TimeoutError)

# Content types for the different PATCH flavours.
APPLY_PATCH = "application/apply-patch+yaml"
MERGE_PATCH = "application/merge-patch+json"

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("relsync")


def _on_backoff(retry_state: tc.RetryCallState):
    """Log a warning on each retry."""
    attempt = retry_state.attempt_number
    k8sconfig, method, url = retry_state.args[:3]
    path = urlparse(url).path

    logit.warning(f"Back off {attempt} - {k8sconfig.name} - {method} {path}.")


async def _mysleep(delay: float):
    """This trivial function exists to mock out the `sleep` call during tests."""
    await asyncio.sleep(delay)


@tc.retry(
    stop=(tc.stop_after_delay(300) | tc.stop_after_attempt(8)),
    wait=tc.wait_exponential(multiplier=1, min=0, max=20) + tc.wait_random(-5, 5),
    retry=tc.retry_if_exception_type(WEB_EXCEPTIONS),
    before_sleep=_on_backoff,
    reraise=True,
    sleep=_mysleep,
)
async def _call(k8sconfig: K8sConfig,
                method: str,
                url: str,
                payload: dict | list | None,
                headers: dict | None) -> httpx.Response:
    return await k8sconfig.client.request(method, url, json=payload, headers=headers)


def make_url(url: str, params: Dict[str, str] | None) -> str:
    """Return `url` with the URL encoded query `params` appended."""
    if not params:
        return url
    return f"{url}?{urlencode(params)}"


async def request(
        k8sconfig: K8sConfig,
        method: str,
        url: str,
        payload: dict | list | None,
        headers: dict | None) -> Tuple[dict, int, bool]:
    """Return response of web request made with `client`.

    Inputs:
        k8sconfig: K8sConfig
            Provides the HttpX client with correct K8s certificates.
        url: str
            Eg `https://1.2.3.4/api/v1/namespaces`)
        payload: dict
            Anything that can be JSON encoded, usually a K8s manifest.
        headers: dict
            Request headers. These will *not* replace the existing request
            headers dictionary (eg the access tokens), but augment them.

    Returns:
        (dict, int, bool): the JSON response and the HTTP status code.

    """
    # Make the HTTP request via our backoff/retry handler.
    try:
        ret = await _call(k8sconfig, method, url, payload=payload, headers=headers)
    except WEB_EXCEPTIONS as err:
        logit.error(f"Giving up - {k8sconfig.name} - {err} - {method} {url}")
        return ({}, -1, True)

    try:
        response = json.loads(ret.text)
    except json.decoder.JSONDecodeError as err:
        msg = (
            f"JSON error - {k8sconfig.name} - "
            f"{err.msg} in line {err.lineno} column {err.colno}",
            "-" * 80 + "\n" + err.doc + "\n" + "-" * 80,
        )
        logit.error(str.join("\n", msg))
        return ({}, ret.status_code, True)

    logit.debug(
        f"{method} {ret.status_code} {ret.url}\n"
        f"Headers: {headers}\n"
        f"Payload: {payload}\n"
        f"Response: {response}\n"
    )
    return (response, ret.status_code, False)


async def get(k8sconfig: K8sConfig, url: str) -> Tuple[dict, bool]:
    """Make GET requests to K8s (see `request`)."""
    resp, code, err = await request(k8sconfig, 'GET', url, payload=None, headers=None)
    if err or code != 200:
        logit.error(f"{code} - GET - {url} - {resp}")
        return (resp, True)
    return (resp, False)


def load_kubeconfig(kubeconf_path: Path,
                    context: str | None) -> Tuple[str, dict, dict, bool]:
    """Return user name as well as user- and cluster information.

    Inputs:
        kubeconf_path: Path
            Path to kubeconfig file, eg "~/.kube/config.yaml"
        context: str | None
            Kubeconf context. Use `None` to select the default context.

    Returns:
        name, user info, cluster info, err

    """
    try:
        kubeconf = yaml.safe_load(kubeconf_path.read_text())
    except (IOError, PermissionError) as err:
        logit.error(f"{err}")
        return ("", {}, {}, True)
    except yaml.YAMLError:
        logit.error(f"Kubeconfig file <{kubeconf_path}> is not valid YAML")
        return ("", {}, {}, True)

    try:
        ctx_name = context if context else kubeconf["current-context"]
        contexts = [_ for _ in kubeconf["contexts"] if _["name"] == ctx_name]
        if len(contexts) != 1:
            logit.error(f"Could not find context <{ctx_name}>")
            return ("", {}, {}, True)
        ctx = contexts[0]["context"]

        users = [_ for _ in kubeconf["users"] if _["name"] == ctx["user"]]
        clusters = [_ for _ in kubeconf["clusters"] if _["name"] == ctx["cluster"]]
        if not (len(users) == len(clusters) == 1):
            logit.error(f"Context <{ctx_name}> references unknown user or cluster")
            return ("", {}, {}, True)

        user_info = dict(users[0]["user"] or {})
        cluster_info = dict(clusters[0]["cluster"])
        cluster_info["name"] = clusters[0]["name"]
    except (KeyError, TypeError):
        logit.error(f"Kubeconfig YAML file <{kubeconf_path}> is invalid")
        return ("", {}, {}, True)

    logit.info(f"Loaded {ctx_name} from Kubeconfig file <{kubeconf_path}>")
    return (ctx["user"], user_info, cluster_info, False)


def load_incluster_config(
        tokenfile: Path = TOKENFILE,
        cafile: Path = CAFILE) -> Tuple[K8sConfig, bool]:
    """Return K8s access config from Pod service account.

    Returns an error if we are not running in a Pod.

    """
    # These exist inside every Kubernetes pod.
    server_ip = os.getenv('KUBERNETES_PORT_443_TCP_ADDR', None)
    cafile = Path(cafile)
    tokenfile = Path(tokenfile)

    if server_ip is None or not cafile.exists() or not tokenfile.exists():
        logit.debug("Could not find incluster (service account) credentials.")
        return K8sConfig(), True

    logit.info("Use incluster (service account) credentials.")
    return K8sConfig(
        url=f'https://{server_ip}',
        name="incluster",
        token=tokenfile.read_text(),
        cadata=cafile.read_text(),
    ), False


def _read_data_or_file(info: dict, key: str) -> str | None:
    """Return the decoded `<key>-data` field or the content of the `<key>` file."""
    if f"{key}-data" in info:
        return base64.b64decode(info[f"{key}-data"]).decode()
    if key in info:
        return Path(info[key]).expanduser().read_text()
    return None


def load_kubeconfig_config(kubeconf_path: Path,
                           context: str | None) -> Tuple[K8sConfig, bool]:
    """Return K8s access config for a token or client certificate context.

    Client certificates specified inline (`client-certificate-data`) are
    written to a temporary folder because HttpX can only load them from files.

    """
    _, user, cluster, err = load_kubeconfig(kubeconf_path, context)
    if err:
        return (K8sConfig(), True)
    name = cluster["name"]

    try:
        cadata = _read_data_or_file(cluster, "certificate-authority")
        token = user.get("token", "")

        cert = None
        if "client-certificate-data" in user:
            path = Path(tempfile.mkdtemp())
            p_client_crt = path / "client.crt"
            p_client_key = path / "client.key"
            p_client_crt.write_text(_read_data_or_file(user, "client-certificate") or "")
            p_client_key.write_text(_read_data_or_file(user, "client-key") or "")
            cert = (p_client_crt, p_client_key)
        elif "client-certificate" in user:
            cert = (Path(user["client-certificate"]), Path(user["client-key"]))

        url = cluster["server"]
    except (KeyError, OSError, ValueError) as e:
        logit.error(f"Context {context} in <{kubeconf_path}> is unusable: {e}")
        return (K8sConfig(), True)

    if not token and cert is None:
        logit.error(f"Context {context} in <{kubeconf_path}> has no credentials")
        return (K8sConfig(), True)

    return K8sConfig(url=url, name=name, token=token, cadata=cadata, cert=cert), False


def load_auto_config(kubeconf_path: Path, context: str | None) -> Tuple[K8sConfig, bool]:
    """Automagically find and load the correct K8s configuration.

    Use the service account credentials if we run inside a Pod and fall back
    to the kubeconfig file otherwise.

    """
    conf, err = load_incluster_config()
    if not err:
        return conf, False
    logit.debug("Incluster config failed")

    conf, err = load_kubeconfig_config(kubeconf_path, context)
    if not err:
        return conf, False

    logit.error(f"Could not find a valid configuration in <{kubeconf_path}>")
    return (K8sConfig(), True)


def create_httpx_client(k8sconfig: K8sConfig,
                        max_connections: int | None = None) -> Tuple[K8sConfig, bool]:
    """Return configured HttpX client."""
    try:
        sslcontext = ssl.create_default_context(cadata=k8sconfig.cadata)
        timeout = httpx.Timeout(
            timeout=20, connect=20, read=20, write=20, pool=20
        )
        limits = httpx.Limits(max_connections=max_connections)
        transport = httpx.AsyncHTTPTransport(
            verify=sslcontext,
            cert=k8sconfig.cert,      # type: ignore
            retries=0,
            http1=True,
            http2=False,
        )
        client = httpx.AsyncClient(timeout=timeout, limits=limits, transport=transport)
    except ssl.SSLError:
        logit.error(f"Invalid certificates for {k8sconfig.name}")
        return k8sconfig, True
    except FileNotFoundError:
        logit.error(f"Bug: certificate files do not exist for {k8sconfig.name}")
        return k8sconfig, True

    # Add the bearer token if we have one.
    headers = {'authorization': f'Bearer {k8sconfig.token}'} if k8sconfig.token else {}
    client.headers.update(headers)

    k8sconfig = k8sconfig._replace(client=client, headers=headers)
    return k8sconfig, False


async def version(k8sconfig: K8sConfig) -> Tuple[K8sConfig, bool]:
    """Return copy of `k8sconfig` but with current Kubernetes version."""
    url = f"{k8sconfig.url}/version"
    resp, err = await get(k8sconfig, url)
    if err or not resp:
        logit.error(f"Could not interrogate {k8sconfig.name} ({url})")
        return (K8sConfig(), True)

    k8sconfig = k8sconfig._replace(version=f"{resp['major']}.{resp['minor']}")
    return (k8sconfig, False)


async def cluster_config(kubeconfig: Path, context: str | None,
                         max_connections: int | None = None) -> Tuple[K8sConfig, bool]:
    """Return the `K8sConfig` to connect to the API.

    This will read the Kubernetes credentials, create a client and use it to
    fetch the Kubernetes version and its API endpoints.

    """
    kubeconfig = kubeconfig.expanduser()
    try:
        k8sconfig, err = load_auto_config(kubeconfig, context)
        assert not err

        k8sconfig, err = create_httpx_client(k8sconfig, max_connections)
        assert not err

        k8sconfig, err = await version(k8sconfig)
        assert not err and k8sconfig

        err = await compile_api_endpoints(k8sconfig)
        assert not err
    except AssertionError:
        return (K8sConfig(), True)

    logit.info(
        f"name: {k8sconfig.name}  "
        f"url {k8sconfig.url}  "
        f"version {k8sconfig.version}"
    )
    return (k8sconfig, False)


def parse_api_group(api_version: str, url: str, resp: dict) -> List[K8sResource]:
    """Compile the K8s API `resp` into a `K8sResource` tuples.

    The `resp` is the verbatim response from the K8s API group regarding the
    resources it provides. Here we compile those into `K8sResource` tuples iff
    they support server side apply, ie the "get" and "patch" verbs.

    """
    def valid(_res):
        name = _res["name"]
        verbs = set(_res.get("verbs", []))

        # Ignore sub-resources like "services/status".
        if "/" in name:
            return False

        if not {"get", "patch"}.issubset(verbs):
            logit.debug(f"Ignore resource <{name}>: insufficient verbs: {verbs}")
            return False
        return True

    return [
        K8sResource(api_version, _["kind"], _["name"], _["namespaced"], url)
        for _ in resp["resources"] if valid(_)
    ]


async def compile_api_endpoints(k8sconfig: K8sConfig) -> bool:
    """Populate `k8sconfig.apis` with all the K8s endpoints`.

    NOTE: This will purge the existing content in `k8sconfig.apis`.

    The keys are `(kind, apiVersion)` tuples, eg:
    {
      ('ConfigMap', 'v1'): K8sResource(
        apiVersion=v1, kind='ConfigMap', name='configmaps', namespaced=True,
        url='https://localhost:8443/api/v1'),
      ('Deployment', 'apps/v1'): K8sResource(
        apiVersion='apps/v1', kind='Deployment', name='deployments',
        namespaced=True, url='https://localhost:8443/apis/apps/v1'),
    }

    """
    resp, err = await get(k8sconfig, f"{k8sconfig.url}/apis")
    if err:
        logit.error(f"Could not interrogate {k8sconfig.name} ({k8sconfig.url}/apis)")
        return True

    # Compile the set of all (apiVersion, path) tuples. The core group lives
    # under "api/v1" instead of the usual `apis/...` path.
    endpoints: Set[Tuple[str, str]] = {("v1", "api/v1")}
    for group in resp["groups"]:
        for ver in group["versions"]:
            endpoints.add((ver["groupVersion"], f"apis/{ver['groupVersion']}"))

    # Ask each group version which resources it offers.
    apis: Dict[Tuple[str, str], K8sResource] = {}
    for api_version, path in sorted(endpoints):
        resp, err = await get(k8sconfig, f"{k8sconfig.url}/{path}")
        if err:
            logit.error(f"Could not interrogate {k8sconfig.name} ({k8sconfig.url}/{path})")
            return True

        for res in parse_api_group(api_version, path, resp):
            res = res._replace(url=f"{k8sconfig.url}/{res.url}")
            apis[(res.kind, res.apiVersion)] = res

    k8sconfig.apis.clear()
    k8sconfig.apis.update(apis)
    return False
