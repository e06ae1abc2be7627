"""Access to the ``clusters`` table holding cluster addresses and kubeconfigs."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine


@dataclass(frozen=True)
class ClusterInfo:
    """Name and address of one registered cluster."""

    cluster_name: str
    ip: str

    def to_dict(self) -> dict[str, str]:
        return {"cluster_name": self.cluster_name, "ip": self.ip}


class ClusterStore:
    """Queries against the ``clusters`` table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def cluster_infos(self) -> list[ClusterInfo]:
        """Return the name and IP of every cluster."""
        with self.engine.connect() as conn:
            rows = conn.execute(text("SELECT cluster_name, ip FROM clusters"))
            return [
                ClusterInfo(cluster_name=row[0] or "", ip=row[1] or "") for row in rows
            ]

    def kube_config(self, cluster_name: str) -> str:
        """Return the kubeconfig of a cluster, or an empty string if there is none."""
        with self.engine.connect() as conn:
            row = conn.execute(
                text("SELECT kube_config FROM clusters WHERE cluster_name = :name"),
                {"name": cluster_name},
            ).first()
        if row is None or row[0] is None:
            return ""
        return row[0]


def connect(host: str, port: str, dbname: str, user: str, password: str) -> ClusterStore:
    """Open a PostgreSQL connection and return a store bound to it."""
    url = URL.create(
        "postgresql",
        username=user,
        password=password,
        host=host,
        port=int(port),
        database=dbname,
        query={"sslmode": "disable"},
    )
    engine = create_engine(url)
    with engine.connect():
        pass
    return ClusterStore(engine)