"""Kubernetes cluster tools, JSON-RPC tool server, sessions and event streams."""

__version__ = "1.0.0"