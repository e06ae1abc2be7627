"""HTTP-style tool handlers that expose cluster queries and restarts."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable

TOOL_DESCRIPTIONS: dict[str, str] = {
    "get_clusters": "Get all clusters from database (HTTP tool 风格)",
    "get_namespaces": "Get namespaces list for a cluster (HTTP tool 风格)",
    "get_pods": "Get pods in a namespace for a cluster (HTTP tool 风格)",
    "get_deployments": "Get deployments in a namespace for a cluster (HTTP tool 风格)",
    "get_daemonsets": "Get daemonsets in a namespace for a cluster (HTTP tool 风格)",
    "rollout_restart_deployment": "滚动重启指定 Deployment (HTTP tool 风格)",
    "rollout_restart_daemonset": "滚动重启指定 DaemonSet (HTTP tool 风格)",
    "get_k8s_version": "Get k8s version for a cluster (HTTP tool 风格)",
    "get_configmaps": "Get configmaps in a namespace for a cluster (HTTP tool 风格)",
    "configmap_detail": "Get detail of a configmap in a namespace for a cluster (HTTP tool 风格)",
}

_NEED_CLUSTER = "参数 cluster_name 必填"
_NEED_CLUSTER_NS = "参数 cluster_name 和 namespace 必填"
_NEED_CLUSTER_NS_NAME = "参数 cluster_name、namespace、name 必填"
_SERIALISE_FAILED = "序列化失败: "

Handler = Callable[[str, str, str], "ToolResult"]


@dataclass(frozen=True)
class ToolResult:
    """Text outcome of a tool call, flagged when it reports an error."""

    text: str
    is_error: bool = False

    @classmethod
    def success(cls, text: str) -> "ToolResult":
        return cls(text=text, is_error=False)

    @classmethod
    def failure(cls, text: str) -> "ToolResult":
        return cls(text=text, is_error=True)

    def to_dict(self) -> dict[str, Any]:
        """Return the result in the wire form of a tool-call response."""
        return {
            "content": [{"type": "text", "text": self.text}],
            "isError": self.is_error,
        }


def parse_query(url: str) -> dict[str, str]:
    """Split the query part of ``url`` into raw key/value pairs.

    Without a ``?`` the whole string is treated as the query. Pairs lacking
    ``=`` are ignored, values are not unescaped and later keys win.
    """
    query = url[url.find("?") + 1 :]
    params: dict[str, str] = {}
    for pair in query.split("&"):
        if not pair:
            continue
        key, sep, value = pair.partition("=")
        if sep:
            params[key] = value
    return params


def _to_json(value: Any) -> str:
    if isinstance(value, list) and not value:
        value = None
    encoded = json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)
    for char, escape in (
        ("&", "\\u0026"),
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        encoded = encoded.replace(char, escape)
    return encoded


def _serialised(value: Any) -> ToolResult:
    try:
        return ToolResult.success(_to_json(value))
    except (TypeError, ValueError) as exc:
        return ToolResult.failure(_SERIALISE_FAILED + str(exc))


class ToolHandlers:
    """The cluster tools, each taking an HTTP method, a URL and a body."""

    def __init__(self, tools: Any, store: Any) -> None:
        self.tools = tools
        self.store = store

    def handlers(self) -> dict[str, Handler]:
        """Return every handler by tool name, in registration order."""
        return {name: getattr(self, name) for name in TOOL_DESCRIPTIONS}

    def _params(
        self, method: str, url: str, expected: str, prefix: str, usage: str
    ) -> dict[str, str] | ToolResult:
        if method != expected or not url.startswith(prefix):
            return ToolResult.failure(usage)
        return parse_query(url)

    def _call(
        self,
        method: str,
        url: str,
        *,
        expected: str,
        prefix: str,
        usage: str,
        keys: tuple[str, ...],
        missing: str,
        failed: str,
        action: Callable[..., Any],
        on_success: Callable[[Any], ToolResult] = _serialised,
    ) -> ToolResult:
        params = self._params(method, url, expected, prefix, usage)
        if isinstance(params, ToolResult):
            return params
        values = [params.get(key, "") for key in keys]
        if not all(values):
            return ToolResult.failure(missing)
        try:
            outcome = action(*values)
        except Exception as exc:  # every backend failure becomes a tool error
            return ToolResult.failure(failed + str(exc))
        return on_success(outcome)

    def get_clusters(self, method: str, url: str, body: str = "") -> ToolResult:
        if method != "GET" or url != "/clusters":
            return ToolResult.failure("仅支持 GET /clusters")
        try:
            clusters = self.store.cluster_infos()
        except Exception as exc:
            return ToolResult.failure("查询数据库失败: " + str(exc))
        return _serialised([cluster.to_dict() for cluster in clusters])

    def get_namespaces(self, method: str, url: str, body: str = "") -> ToolResult:
        return self._call(
            method,
            url,
            expected="GET",
            prefix="/namespaces",
            usage="仅支持 GET /namespaces?cluster_name=xxx",
            keys=("cluster_name",),
            missing=_NEED_CLUSTER,
            failed="获取 namespace 失败: ",
            action=self.tools.namespaces,
        )

    def get_pods(self, method: str, url: str, body: str = "") -> ToolResult:
        return self._call(
            method,
            url,
            expected="GET",
            prefix="/pods",
            usage="仅支持 GET /pods?cluster_name=xxx&namespace=xxx",
            keys=("cluster_name", "namespace"),
            missing=_NEED_CLUSTER_NS,
            failed="获取 pods 失败: ",
            action=self.tools.pods,
        )

    def get_deployments(self, method: str, url: str, body: str = "") -> ToolResult:
        return self._call(
            method,
            url,
            expected="GET",
            prefix="/deployments",
            usage="仅支持 GET /deployments?cluster_name=xxx&namespace=xxx",
            keys=("cluster_name", "namespace"),
            missing=_NEED_CLUSTER_NS,
            failed="获取 deployments 失败: ",
            action=self.tools.deployments,
        )

    def get_daemonsets(self, method: str, url: str, body: str = "") -> ToolResult:
        return self._call(
            method,
            url,
            expected="GET",
            prefix="/daemonsets",
            usage="仅支持 GET /daemonsets?cluster_name=xxx&namespace=xxx",
            keys=("cluster_name", "namespace"),
            missing=_NEED_CLUSTER_NS,
            failed="获取 daemonsets 失败: ",
            action=self.tools.daemonsets,
        )

    def rollout_restart_deployment(self, method: str, url: str, body: str = "") -> ToolResult:
        return self._call(
            method,
            url,
            expected="POST",
            prefix="/rollout_restart_deployment",
            usage="仅支持 POST /rollout_restart_deployment?cluster_name=xxx&namespace=xxx&name=xxx",
            keys=("cluster_name", "namespace", "name"),
            missing=_NEED_CLUSTER_NS_NAME,
            failed="滚动重启 Deployment 失败: ",
            action=self.tools.restart_deployment,
            on_success=lambda _: ToolResult.success("Deployment rollout restarted successfully."),
        )

    def rollout_restart_daemonset(self, method: str, url: str, body: str = "") -> ToolResult:
        return self._call(
            method,
            url,
            expected="POST",
            prefix="/rollout_restart_daemonset",
            usage="仅支持 POST /rollout_restart_daemonset?cluster_name=xxx&namespace=xxx&name=xxx",
            keys=("cluster_name", "namespace", "name"),
            missing=_NEED_CLUSTER_NS_NAME,
            failed="滚动重启 DaemonSet 失败: ",
            action=self.tools.restart_daemonset,
            on_success=lambda _: ToolResult.success("DaemonSet 滚动重启成功"),
        )

    def get_k8s_version(self, method: str, url: str, body: str = "") -> ToolResult:
        return self._call(
            method,
            url,
            expected="GET",
            prefix="/k8s_version",
            usage="仅支持 GET /k8s_version?cluster_name=xxx",
            keys=("cluster_name",),
            missing=_NEED_CLUSTER,
            failed="获取 k8s 版本失败: ",
            action=self.tools.k8s_version,
            on_success=lambda version: ToolResult.success(str(version)),
        )

    def get_configmaps(self, method: str, url: str, body: str = "") -> ToolResult:
        return self._call(
            method,
            url,
            expected="GET",
            prefix="/configmaps",
            usage="仅支持 GET /configmaps?cluster_name=xxx&namespace=xxx",
            keys=("cluster_name", "namespace"),
            missing=_NEED_CLUSTER_NS,
            failed="获取 configmaps 失败: ",
            action=self.tools.configmaps,
        )

    def configmap_detail(self, method: str, url: str, body: str = "") -> ToolResult:
        return self._call(
            method,
            url,
            expected="GET",
            prefix="/configmap_detail",
            usage="仅支持 GET /configmap_detail?cluster_name=xxx&namespace=xxx&name=xxx",
            keys=("cluster_name", "namespace", "name"),
            missing=_NEED_CLUSTER_NS_NAME,
            failed="获取 configmap 详情失败: ",
            action=self.tools.configmap_detail,
        )