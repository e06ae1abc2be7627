# kubehelper

A library for building a Model Context Protocol (MCP) server that gives an
assistant a small set of tools for looking at and restarting workloads in
Kubernetes clusters. The clusters are kept in a PostgreSQL table; each row
holds the cluster's name, its address and the kubeconfig used to reach it.

## Installation

```
pip install kubehelper
```

`kubehelper.dao.connect` opens a `postgresql://` SQLAlchemy engine, which needs
SQLAlchemy's default PostgreSQL driver installed alongside. `ClusterStore`
itself accepts any SQLAlchemy engine.

For running the test suite:

```
pip install "kubehelper[test]"
pytest
```

## The cluster inventory

`kubehelper.dao.ClusterStore` reads a table named `clusters` with at least
these columns:

| column         | meaning                                   |
|----------------|-------------------------------------------|
| `cluster_name` | name that tools refer to the cluster by   |
| `ip`           | address shown in the cluster list         |
| `kube_config`  | full kubeconfig document for the cluster  |

- `cluster_infos()` returns a list of `ClusterInfo(cluster_name, ip)`;
  `ClusterInfo.to_dict()` gives `{"cluster_name": ..., "ip": ...}`.
- `kube_config(cluster_name)` returns the kubeconfig text, or `""` when the
  cluster is unknown.
- `connect(host, port, dbname, user, password)` opens the database (with
  `sslmode=disable`), checks that a connection can be made and returns a
  `ClusterStore`.

## Modules

| module                 | contents |
|------------------------|----------|
| `kubehelper.aesutil`   | `encrypt_base64`, `decrypt_base64`, `pkcs7_pad`, `pkcs7_unpad`, `AESError` |
| `kubehelper.dao`       | `ClusterInfo`, `ClusterStore`, `connect` |
| `kubehelper.kube`      | `KubeClient`, `ClusterTools`, `KubeError`, `http_request` |
| `kubehelper.session`   | `HTTPSessionManager`, `HTTPSession`, `SessionUserRegistry`, `resolve_session`, `SessionOutcome`, `parse_user_id_and_role_from_sid`, `generate_session_id` |
| `kubehelper.handlers`  | `ToolHandlers`, `ToolResult`, `parse_query` |
| `kubehelper.server`    | `MCPServer`, `Tool`, `build_server`, `filter_tools` |
| `kubehelper.sse`       | `SSEServer`, `start_push_notifications` |

### Kubernetes access

`KubeClient.from_kubeconfig(kubeconfig_data, proxy_addr="", insecure=False)`
reads the current context of a kubeconfig (certificate, client certificate,
bearer token, token file or basic auth) and talks to the API server with
`requests`. A non-empty `proxy_addr` (`host:port`) routes traffic through a
SOCKS5 proxy; `insecure=True` turns off TLS verification. Failures raise
`KubeError`.

The client lists names of namespaces, pods, deployments, daemonsets and
configmaps, returns a configmap's `data`, returns the server's `gitVersion`,
and performs rollout restarts the way `kubectl rollout restart` does: it
stamps the pod template with a `kubectl.kubernetes.io/restartedAt`
annotation and updates the object.

`ClusterTools(store, proxy="")` does the same addressed by cluster name, taking
each cluster's kubeconfig from the store and always skipping TLS verification.

### Tools

`ToolHandlers(tools, store).handlers()` returns every tool by name. Each takes
`method`, `url` and an optional `body`, in the style of an HTTP request, and
returns a `ToolResult` (`text`, `is_error`). Listings come back as JSON text.

| tool                         | request                                                          |
|------------------------------|------------------------------------------------------------------|
| `get_clusters`               | `GET /clusters`                                                  |
| `get_namespaces`             | `GET /namespaces?cluster_name=NAME`                              |
| `get_pods`                   | `GET /pods?cluster_name=NAME&namespace=NS`                       |
| `get_deployments`            | `GET /deployments?cluster_name=NAME&namespace=NS`                |
| `get_daemonsets`             | `GET /daemonsets?cluster_name=NAME&namespace=NS`                 |
| `get_configmaps`             | `GET /configmaps?cluster_name=NAME&namespace=NS`                 |
| `configmap_detail`           | `GET /configmap_detail?cluster_name=NAME&namespace=NS&name=CM`   |
| `get_k8s_version`            | `GET /k8s_version?cluster_name=NAME`                             |
| `rollout_restart_deployment` | `POST /rollout_restart_deployment?cluster_name=NAME&namespace=NS&name=DEPLOY` |
| `rollout_restart_daemonset`  | `POST /rollout_restart_daemonset?cluster_name=NAME&namespace=NS&name=DS`      |

Query values are taken as written; they are not URL-decoded. A wrong method or
path, a missing parameter or a backend failure gives an error result rather
than an exception.

### The JSON-RPC server

`build_server(handlers, registry=None, transport="")` wraps each handler as a
tool of an `MCPServer`. `MCPServer.handle_message(message, session_id)` answers
`initialize`, `ping`, `tools/list` and `tools/call`, and returns `None` for
notifications. `serve_stdio(stdin=None, stdout=None)` serves newline-delimited
JSON-RPC under the session ID `"stdio"` until input ends, writing queued
notifications to the same output.

Which tools a session sees depends on its role in the `SessionUserRegistry`:

- `admin` — all tools;
- `user` — `get_clusters`, `get_pods`, `get_deployments`, `get_daemonsets`;
- `guest` — `get_clusters` only;
- no role — no tools.

```python
from kubehelper.dao import connect
from kubehelper.handlers import ToolHandlers
from kubehelper.kube import ClusterTools
from kubehelper.server import build_server
from kubehelper.session import SessionUserRegistry

password = "password"
store = connect("localhost", "5432", "postgres", "postgres", password=password)
tools = ClusterTools(store, proxy="")

registry = SessionUserRegistry()
registry.add("stdio", "local", "admin")  # give the stdio session a role

server = build_server(ToolHandlers(tools, store).handlers(), registry, "stdio")
server.serve_stdio()
```

### Sessions and identities

`HTTPSessionManager(expire_time=timedelta(minutes=30), registry=None,
on_expire=None, allow_multi_session=False)` keeps sessions with a sliding
expiry: `get_session` extends a live session and drops an expired one.
Without `allow_multi_session`, `create_session` returns a user's existing
session. `on_expire` is called with the ID of every session removed, for
instance `server.unregister_session`. `start_cleanup(interval=60.0)` removes
expired sessions in a background thread; `stop_cleanup()` ends it.

A caller identifies itself with an `mcpId`: the JSON object
`{"name": ..., "role": ...}`, encrypted with AES-CBC and Base64-encoded.
`resolve_session(manager, session_header, mcp_id, aes_key)` finds the session
named by the `Mcp-Session-Id` header or creates one, recording the decrypted
name and role, and returns a `SessionOutcome` whose `issued_id` is set when a
new session ID must be sent back to the client.

```python
import json
from kubehelper.aesutil import encrypt_base64, decrypt_base64

aes_key = "secret"
mcp_id = encrypt_base64(json.dumps({"name": "alice", "role": "user"}), aes_key)
assert json.loads(decrypt_base64(mcp_id, aes_key))["role"] == "user"
```

### Event streams

`SSEServer(server).open_stream(session_id)` registers a session and returns its
message endpoint (`/mcp/message?sessionId=...`). `events(session_id, timeout)`
yields server-sent-event frames: the endpoint first, then every event or
notification queued for the session. `register_push_tool()` adds the
`start_sse_push` tool, which sends five notifications three seconds apart;
`start_push_notifications(session_id, sse_server, count=5, interval=3.0)` does
the like in a background thread.

## What this package does not do

kubehelper has no command-line program and no HTTP listener. It provides the
pieces — tools, JSON-RPC handling, sessions and event streams — and
`MCPServer.serve_stdio` for serving over standard input and output; serving
`/mcp`, `/mcp/sse`, `/mcp/message` or a logout endpoint over HTTP has to be
wired up by the application that uses it.