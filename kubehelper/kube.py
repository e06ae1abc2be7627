"""A small Kubernetes API client and cluster-level helpers built on it."""

from __future__ import annotations

import base64
import binascii
import os
import tempfile
import weakref
from datetime import datetime
from typing import Any
from urllib.parse import quote

import requests
import yaml

RESTART_ANNOTATION = "kubectl.kubernetes.io/restartedAt"
_CONFIG_ERROR = "failed to build config from kubeconfig"


class KubeError(Exception):
    """Raised when a kubeconfig is unusable or an API call fails."""


def _named(entries: Any, name: str, kind: str) -> dict:
    for entry in entries or []:
        if isinstance(entry, dict) and entry.get("name") == name:
            return entry.get(kind) or {}
    raise KubeError(f'{_CONFIG_ERROR}: {kind} "{name}" not found')


def _decode(data: str, what: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise KubeError(f"{_CONFIG_ERROR}: invalid {what}: {exc}") from exc


def _write_temp(data: bytes, files: list[str]) -> str:
    fd, path = tempfile.mkstemp(suffix=".pem")
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
    files.append(path)
    return path


def _remove_files(files: list[str]) -> None:
    for path in files:
        try:
            os.remove(path)
        except OSError:
            pass


def _restart_timestamp() -> str:
    stamp = datetime.now().astimezone().replace(microsecond=0).isoformat()
    return stamp[:-6] + "Z" if stamp.endswith("+00:00") else stamp


def _status_message(response: requests.Response) -> str:
    message = ""
    try:
        payload = response.json()
        if isinstance(payload, dict):
            message = payload.get("message") or ""
    except ValueError:
        pass
    if not message:
        message = response.text or response.reason or ""
    return f"{response.status_code}: {message}"


class KubeClient:
    """Talks to one Kubernetes API server through a ``requests`` session."""

    timeout = 30

    def __init__(self, server: str, session: requests.Session | None = None) -> None:
        self.server = server.rstrip("/")
        self.session = session if session is not None else requests.Session()

    @classmethod
    def from_kubeconfig(
        cls, kubeconfig_data: str, proxy_addr: str = "", insecure: bool = False
    ) -> "KubeClient":
        """Build a client from kubeconfig text, optionally via a SOCKS5 proxy."""
        try:
            config = yaml.safe_load(kubeconfig_data) if kubeconfig_data else None
        except yaml.YAMLError as exc:
            raise KubeError(f"{_CONFIG_ERROR}: {exc}") from exc
        if not isinstance(config, dict):
            raise KubeError(
                f"{_CONFIG_ERROR}: invalid configuration: no configuration has been provided"
            )

        context = _named(config.get("contexts"), config.get("current-context") or "", "context")
        cluster = _named(config.get("clusters"), context.get("cluster") or "", "cluster")
        user_name = context.get("user") or ""
        user = _named(config.get("users"), user_name, "user") if user_name else {}

        server = cluster.get("server")
        if not server:
            raise KubeError(f"{_CONFIG_ERROR}: cluster has no server defined")

        session = requests.Session()
        files: list[str] = []

        if insecure or cluster.get("insecure-skip-tls-verify"):
            session.verify = False
        elif cluster.get("certificate-authority-data"):
            ca = _decode(cluster["certificate-authority-data"], "certificate-authority-data")
            session.verify = _write_temp(ca, files)
        elif cluster.get("certificate-authority"):
            session.verify = cluster["certificate-authority"]

        cert_file = user.get("client-certificate")
        key_file = user.get("client-key")
        if user.get("client-certificate-data"):
            cert_file = _write_temp(
                _decode(user["client-certificate-data"], "client-certificate-data"), files
            )
        if user.get("client-key-data"):
            key_file = _write_temp(_decode(user["client-key-data"], "client-key-data"), files)
        if cert_file and key_file:
            session.cert = (cert_file, key_file)

        token = user.get("token")
        if not token and user.get("tokenFile"):
            try:
                with open(user["tokenFile"], encoding="utf-8") as handle:
                    token = handle.read().strip()
            except OSError as exc:
                raise KubeError(f"{_CONFIG_ERROR}: {exc}") from exc
        if token:
            session.headers["Authorization"] = f"Bearer {token}"
        elif user.get("username"):
            session.auth = (user["username"], user.get("password") or "")

        if proxy_addr:
            proxy_url = f"socks5h://{proxy_addr}"
            session.proxies = {"http": proxy_url, "https": proxy_url}

        client = cls(server, session)
        if files:
            weakref.finalize(client, _remove_files, files)
        return client

    def _request(self, method: str, path: str, body: Any = None) -> Any:
        url = self.server + path
        try:
            response = self.session.request(method, url, json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            raise KubeError(str(exc)) from exc
        if response.status_code >= 400:
            raise KubeError(_status_message(response))
        try:
            return response.json()
        except ValueError as exc:
            raise KubeError(f"invalid response from {url}") from exc

    @staticmethod
    def _path(prefix: str, namespace: str, resource: str, name: str = "") -> str:
        path = (
            f"{prefix}/namespaces/{quote(namespace, safe='')}/{resource}"
            if namespace
            else f"{prefix}/{resource}"
        )
        return f"{path}/{quote(name, safe='')}" if name else path

    def _names(self, path: str) -> list[str]:
        data = self._request("GET", path) or {}
        return [item["metadata"]["name"] for item in data.get("items") or []]

    def list_namespaces(self) -> list[str]:
        return self._names("/api/v1/namespaces")

    def list_pods(self, namespace: str) -> list[str]:
        return self._names(self._path("/api/v1", namespace, "pods"))

    def list_deployments(self, namespace: str) -> list[str]:
        return self._names(self._path("/apis/apps/v1", namespace, "deployments"))

    def list_daemonsets(self, namespace: str) -> list[str]:
        return self._names(self._path("/apis/apps/v1", namespace, "daemonsets"))

    def list_configmaps(self, namespace: str) -> list[str]:
        return self._names(self._path("/api/v1", namespace, "configmaps"))

    def configmap_data(self, namespace: str, name: str) -> dict[str, str]:
        """Return the ``data`` section of a ConfigMap."""
        obj = self._request("GET", self._path("/api/v1", namespace, "configmaps", name)) or {}
        return dict(obj.get("data") or {})

    def server_version(self) -> str:
        """Return the server's git version string."""
        info = self._request("GET", "/version") or {}
        return info.get("gitVersion", "")

    def _rollout_restart(self, resource: str, namespace: str, name: str) -> None:
        path = self._path("/apis/apps/v1", namespace, resource, name)
        obj = self._request("GET", path)
        template = obj.setdefault("spec", {}).setdefault("template", {})
        metadata = template.setdefault("metadata", {})
        annotations = metadata.get("annotations") or {}
        annotations[RESTART_ANNOTATION] = _restart_timestamp()
        metadata["annotations"] = annotations
        self._request("PUT", path, obj)

    def rollout_restart_deployment(self, namespace: str, name: str) -> None:
        self._rollout_restart("deployments", namespace, name)

    def rollout_restart_daemonset(self, namespace: str, name: str) -> None:
        self._rollout_restart("daemonsets", namespace, name)


class ClusterTools:
    """Cluster operations addressed by cluster name, using stored kubeconfigs."""

    def __init__(self, store: Any, proxy: str = "") -> None:
        self.store = store
        self.proxy = proxy

    def client(self, cluster_name: str) -> KubeClient:
        kubeconfig = self.store.kube_config(cluster_name)
        return KubeClient.from_kubeconfig(kubeconfig, self.proxy, True)

    def namespaces(self, cluster_name: str) -> list[str]:
        return self.client(cluster_name).list_namespaces()

    def pods(self, cluster_name: str, namespace: str) -> list[str]:
        return self.client(cluster_name).list_pods(namespace)

    def deployments(self, cluster_name: str, namespace: str) -> list[str]:
        return self.client(cluster_name).list_deployments(namespace)

    def daemonsets(self, cluster_name: str, namespace: str) -> list[str]:
        return self.client(cluster_name).list_daemonsets(namespace)

    def configmaps(self, cluster_name: str, namespace: str) -> list[str]:
        return self.client(cluster_name).list_configmaps(namespace)

    def configmap_detail(self, cluster_name: str, namespace: str, name: str) -> dict[str, str]:
        return self.client(cluster_name).configmap_data(namespace, name)

    def k8s_version(self, cluster_name: str) -> str:
        return self.client(cluster_name).server_version()

    def restart_deployment(self, cluster_name: str, namespace: str, name: str) -> None:
        self.client(cluster_name).rollout_restart_deployment(namespace, name)

    def restart_daemonset(self, cluster_name: str, namespace: str, name: str) -> None:
        self.client(cluster_name).rollout_restart_daemonset(namespace, name)


def http_request(method: str, url: str, body: str = "") -> str:
    """Send a plain HTTP request and return the response body as text."""
    data = body.encode("utf-8") if method in ("POST", "PUT") else None
    response = requests.request(method, url, data=data)
    return response.content.decode("utf-8", errors="replace")