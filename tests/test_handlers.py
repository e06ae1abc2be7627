import json

import pytest

from kubehelper.dao import ClusterInfo
from kubehelper.handlers import TOOL_DESCRIPTIONS, ToolHandlers, ToolResult, parse_query
from kubehelper.kube import KubeError


class FakeStore:
    def __init__(self, clusters=None, error=None):
        self.clusters = clusters or []
        self.error = error

    def cluster_infos(self):
        if self.error:
            raise self.error
        return self.clusters


class FakeTools:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def _record(self, name, *args):
        self.calls.append((name, args))
        if self.error:
            raise self.error

    def namespaces(self, cluster):
        self._record("namespaces", cluster)
        return ["default", "kube-system"]

    def pods(self, cluster, namespace):
        self._record("pods", cluster, namespace)
        return ["pod-a", "pod-b"]

    def deployments(self, cluster, namespace):
        self._record("deployments", cluster, namespace)
        return []

    def daemonsets(self, cluster, namespace):
        self._record("daemonsets", cluster, namespace)
        return ["ds-1"]

    def configmaps(self, cluster, namespace):
        self._record("configmaps", cluster, namespace)
        return ["cm-1"]

    def configmap_detail(self, cluster, namespace, name):
        self._record("configmap_detail", cluster, namespace, name)
        return {"b": "2", "a": "<x>"}

    def k8s_version(self, cluster):
        self._record("k8s_version", cluster)
        return "v1.30.2"

    def restart_deployment(self, cluster, namespace, name):
        self._record("restart_deployment", cluster, namespace, name)

    def restart_daemonset(self, cluster, namespace, name):
        self._record("restart_daemonset", cluster, namespace, name)


def make(tools=None, store=None):
    return ToolHandlers(tools or FakeTools(), store or FakeStore())


def test_parse_query_basic():
    assert parse_query("/pods?cluster_name=c1&namespace=ns") == {
        "cluster_name": "c1",
        "namespace": "ns",
    }


def test_parse_query_skips_pairs_without_equals_and_empty():
    assert parse_query("/x?a=1&&flag&b=2=3") == {"a": "1", "b": "2=3"}


def test_parse_query_without_question_mark_uses_whole_string():
    assert parse_query("cluster_name=c1") == {"cluster_name": "c1"}


def test_parse_query_later_key_wins():
    assert parse_query("/x?a=1&a=2") == {"a": "2"}


def test_handlers_cover_every_tool_in_order():
    names = list(make().handlers())
    assert names == list(TOOL_DESCRIPTIONS)
    assert "get_clusters" in names and "configmap_detail" in names


def test_get_clusters_success():
    store = FakeStore([ClusterInfo("c1", "10.0.0.1"), ClusterInfo("c2", "10.0.0.2")])
    result = make(store=store).get_clusters("GET", "/clusters", "")
    assert not result.is_error
    assert json.loads(result.text) == [
        {"cluster_name": "c1", "ip": "10.0.0.1"},
        {"cluster_name": "c2", "ip": "10.0.0.2"},
    ]


@pytest.mark.parametrize("method,url", [("POST", "/clusters"), ("GET", "/clusters?x=1")])
def test_get_clusters_rejects_other_requests(method, url):
    result = make().get_clusters(method, url, "")
    assert result == ToolResult.failure("仅支持 GET /clusters")


def test_get_clusters_database_error():
    result = make(store=FakeStore(error=RuntimeError("down"))).get_clusters("GET", "/clusters", "")
    assert result.is_error
    assert result.text == "查询数据库失败: down"


def test_get_clusters_empty_is_null():
    result = make().get_clusters("GET", "/clusters", "")
    assert json.loads(result.text) is None


def test_get_namespaces_success_and_call():
    tools = FakeTools()
    result = make(tools).get_namespaces("GET", "/namespaces?cluster_name=c1", "")
    assert json.loads(result.text) == ["default", "kube-system"]
    assert tools.calls == [("namespaces", ("c1",))]


def test_get_namespaces_missing_cluster():
    result = make().get_namespaces("GET", "/namespaces", "")
    assert result == ToolResult.failure("参数 cluster_name 必填")


def test_get_namespaces_wrong_method():
    result = make().get_namespaces("POST", "/namespaces?cluster_name=c1", "")
    assert result.text == "仅支持 GET /namespaces?cluster_name=xxx"
    assert result.is_error


def test_get_pods_success():
    tools = FakeTools()
    result = make(tools).get_pods("GET", "/pods?cluster_name=c1&namespace=ns", "")
    assert json.loads(result.text) == ["pod-a", "pod-b"]
    assert tools.calls == [("pods", ("c1", "ns"))]


def test_get_pods_missing_namespace():
    result = make().get_pods("GET", "/pods?cluster_name=c1", "")
    assert result == ToolResult.failure("参数 cluster_name 和 namespace 必填")


def test_get_pods_backend_error():
    tools = FakeTools(error=KubeError("boom"))
    result = make(tools).get_pods("GET", "/pods?cluster_name=c1&namespace=ns", "")
    assert result == ToolResult.failure("获取 pods 失败: boom")


def test_get_deployments_empty_is_null():
    result = make().get_deployments("GET", "/deployments?cluster_name=c1&namespace=ns", "")
    assert not result.is_error
    assert json.loads(result.text) is None


def test_get_deployments_wrong_prefix():
    result = make().get_deployments("GET", "/pods?cluster_name=c1&namespace=ns", "")
    assert result.text == "仅支持 GET /deployments?cluster_name=xxx&namespace=xxx"


def test_get_daemonsets_success():
    result = make().get_daemonsets("GET", "/daemonsets?cluster_name=c1&namespace=ns", "")
    assert json.loads(result.text) == ["ds-1"]


def test_get_daemonsets_backend_error():
    tools = FakeTools(error=KubeError("nope"))
    result = make(tools).get_daemonsets("GET", "/daemonsets?cluster_name=c1&namespace=ns", "")
    assert result.text == "获取 daemonsets 失败: nope"


def test_rollout_restart_deployment_success():
    tools = FakeTools()
    url = "/rollout_restart_deployment?cluster_name=c1&namespace=ns&name=web"
    result = make(tools).rollout_restart_deployment("POST", url, "")
    assert result == ToolResult.success("Deployment rollout restarted successfully.")
    assert tools.calls == [("restart_deployment", ("c1", "ns", "web"))]


def test_rollout_restart_deployment_requires_post():
    url = "/rollout_restart_deployment?cluster_name=c1&namespace=ns&name=web"
    result = make().rollout_restart_deployment("GET", url, "")
    assert result.is_error
    assert result.text.startswith("仅支持 POST /rollout_restart_deployment")


def test_rollout_restart_deployment_missing_name():
    url = "/rollout_restart_deployment?cluster_name=c1&namespace=ns"
    result = make().rollout_restart_deployment("POST", url, "")
    assert result == ToolResult.failure("参数 cluster_name、namespace、name 必填")


def test_rollout_restart_daemonset_success_and_error():
    url = "/rollout_restart_daemonset?cluster_name=c1&namespace=ns&name=agent"
    assert make().rollout_restart_daemonset("POST", url, "") == ToolResult.success("DaemonSet 滚动重启成功")
    failed = make(FakeTools(error=KubeError("x"))).rollout_restart_daemonset("POST", url, "")
    assert failed == ToolResult.failure("滚动重启 DaemonSet 失败: x")


def test_get_k8s_version_returns_plain_text():
    result = make().get_k8s_version("GET", "/k8s_version?cluster_name=c1", "")
    assert result == ToolResult.success("v1.30.2")


def test_get_k8s_version_missing_cluster():
    result = make().get_k8s_version("GET", "/k8s_version", "")
    assert result.text == "参数 cluster_name 必填"


def test_get_configmaps_success():
    result = make().get_configmaps("GET", "/configmaps?cluster_name=c1&namespace=ns", "")
    assert json.loads(result.text) == ["cm-1"]


def test_configmap_detail_sorted_and_escaped():
    url = "/configmap_detail?cluster_name=c1&namespace=ns&name=cfg"
    result = make().configmap_detail("GET", url, "")
    assert json.loads(result.text) == {"a": "<x>", "b": "2"}
    assert "<" not in result.text
    assert result.text.index('"a"') < result.text.index('"b"')


def test_configmap_detail_backend_error():
    url = "/configmap_detail?cluster_name=c1&namespace=ns&name=cfg"
    result = make(FakeTools(error=KubeError("gone"))).configmap_detail("GET", url, "")
    assert result == ToolResult.failure("获取 configmap 详情失败: gone")


def test_tool_result_to_dict():
    result = ToolResult.failure("bad")
    assert result.to_dict() == {"content": [{"type": "text", "text": "bad"}], "isError": True}