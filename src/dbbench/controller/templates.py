"""Backend templates: render config files and launch commands per engine."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from dbbench.controller.errors import TemplateError, UnknownBackend
from dbbench.controller.models import BackendSpec, PeerDescriptor
from dbbench.controller.probes import Probe, http_probe, zookeeper_probe

logger = logging.getLogger(__name__)


ZOOKEEPER_TEMPLATE = """tickTime={tick_time}
dataDir={data_dir}
clientPort={client_port}
initLimit={init_limit}
syncLimit={sync_limit}
maxClientCnxns={max_client_connections}
snapCount={snap_count}
{servers}
"""

ZOOKEEPER_SERVER_LINE = "server.{member_id}={address}:2888:3888\n"

# Only valid for the ZooKeeper r3.4.9 release layout.
ZOOKEEPER_CLASSPATH = (
    "zookeeper-3.4.9.jar:lib/slf4j-api-1.6.1.jar:lib/slf4j-log4j12-1.6.1.jar:lib/log4j-1.2.16.jar:conf"
)
ZOOKEEPER_MAIN_CLASS = "org.apache.zookeeper.server.quorum.QuorumPeerMain"

ETCD_TEMPLATE = """name: {name}
data-dir: {data_dir}
listen-client-urls: http://{address}:{client_port}
advertise-client-urls: http://{address}:{client_port}
listen-peer-urls: http://{address}:{peer_port}
initial-advertise-peer-urls: http://{address}:{peer_port}
initial-cluster: {initial_cluster}
initial-cluster-token: dbbench-etcd-token
initial-cluster-state: new
snapshot-count: {snap_count}
quota-backend-bytes: {quota_backend_bytes}
"""


def build_peers(addresses: Sequence[str]) -> List[PeerDescriptor]:
    """Assign 1-based member ids in list order."""
    return [PeerDescriptor(member_id=idx, address=address) for idx, address in enumerate(addresses, start=1)]


@dataclass(frozen=True)
class RenderedBackend:
    backend: str
    config_text: str
    config_path: Path
    launch_args: List[str]
    binary: Path
    work_dir: Optional[Path] = None
    identity_files: Dict[str, str] = field(default_factory=dict)


class BackendTemplate(ABC):
    """Renders one engine's configuration file and launch command.

    Subclasses are pure functions of the :class:`BackendSpec`; the same spec
    always produces byte-identical output.
    """

    name: str = ""
    requires_quorum: bool = True

    def __init__(self, binary: Path, config_path: Path, work_dir: Optional[Path] = None) -> None:
        self.binary = Path(binary)
        self.config_path = Path(config_path)
        self.work_dir = Path(work_dir) if work_dir is not None else None

    @abstractmethod
    def render_config(self, spec: BackendSpec, peers: List[PeerDescriptor]) -> str:
        ...

    @abstractmethod
    def launch_args(self, spec: BackendSpec) -> List[str]:
        ...

    def identity_files(self, spec: BackendSpec) -> Dict[str, str]:
        return {}

    def readiness_probe(self, spec: BackendSpec) -> Optional[Probe]:
        return None

    def render(self, spec: BackendSpec) -> RenderedBackend:
        self._validate(spec)
        peers = build_peers(spec.peers)
        return RenderedBackend(
            backend=self.name,
            config_text=self.render_config(spec, peers),
            config_path=self.config_path,
            launch_args=self.launch_args(spec),
            binary=self.binary,
            work_dir=self.work_dir,
            identity_files=self.identity_files(spec),
        )

    def _validate(self, spec: BackendSpec) -> None:
        if self.requires_quorum and not spec.peers:
            raise TemplateError(f"{self.name} requires a non-empty peer list")
        if spec.peers and not 1 <= spec.member_id <= len(spec.peers):
            raise TemplateError(
                f"{self.name} member id {spec.member_id} is outside the peer list (size {len(spec.peers)})"
            )
        if spec.client_port <= 0 or spec.client_port > 65535:
            raise TemplateError(f"{self.name} client port out of range: {spec.client_port}")
        if not str(spec.data_dir):
            raise TemplateError(f"{self.name} requires a data directory")


class ZookeeperTemplate(BackendTemplate):
    """ZooKeeper must be launched from its install directory."""

    name = "zookeeper"

    def render_config(self, spec: BackendSpec, peers: List[PeerDescriptor]) -> str:
        servers = "".join(
            ZOOKEEPER_SERVER_LINE.format(member_id=peer.member_id, address=peer.address) for peer in peers
        )
        return ZOOKEEPER_TEMPLATE.format(
            tick_time=spec.option("tick_time", 2000),
            data_dir=spec.data_dir,
            client_port=spec.client_port,
            init_limit=spec.option("init_limit", 5),
            sync_limit=spec.option("sync_limit", 5),
            max_client_connections=spec.option("max_client_connections", 5000),
            snap_count=spec.option("snap_count", 100000),
            servers=servers,
        )

    def launch_args(self, spec: BackendSpec) -> List[str]:
        return [str(self.binary), "-cp", ZOOKEEPER_CLASSPATH, ZOOKEEPER_MAIN_CLASS, str(self.config_path)]

    def identity_files(self, spec: BackendSpec) -> Dict[str, str]:
        return {"myid": str(spec.member_id)}

    def readiness_probe(self, spec: BackendSpec) -> Optional[Probe]:
        return zookeeper_probe(spec.address, spec.client_port)


class EtcdTemplate(BackendTemplate):
    name = "etcd"

    def render_config(self, spec: BackendSpec, peers: List[PeerDescriptor]) -> str:
        peer_port = spec.option("peer_port", 2380)
        initial_cluster = ",".join(
            f"etcd-{peer.member_id}=http://{peer.address}:{peer_port}" for peer in peers
        )
        return ETCD_TEMPLATE.format(
            name=f"etcd-{spec.member_id}",
            data_dir=spec.data_dir,
            address=spec.address,
            client_port=spec.client_port,
            peer_port=peer_port,
            initial_cluster=initial_cluster,
            snap_count=spec.option("snap_count", 100000),
            quota_backend_bytes=spec.option("quota_backend_bytes", 8 * 1024 * 1024 * 1024),
        )

    def launch_args(self, spec: BackendSpec) -> List[str]:
        return [str(self.binary), "--config-file", str(self.config_path)]

    def readiness_probe(self, spec: BackendSpec) -> Optional[Probe]:
        return http_probe(f"http://{spec.address}:{spec.client_port}/health", self.name)


class ConsulTemplate(BackendTemplate):
    name = "consul"

    def render_config(self, spec: BackendSpec, peers: List[PeerDescriptor]) -> str:
        config = {
            "server": True,
            "bootstrap_expect": len(peers),
            "node_name": f"consul-{spec.member_id}",
            "data_dir": str(spec.data_dir),
            "bind_addr": spec.address,
            "client_addr": spec.address,
            "retry_join": [peer.address for peer in peers if peer.member_id != spec.member_id],
            "ports": {
                "http": spec.client_port,
                "server": spec.option("server_port", 8300),
            },
            "log_level": "INFO",
        }
        return json.dumps(config, indent=2, sort_keys=True) + "\n"

    def launch_args(self, spec: BackendSpec) -> List[str]:
        return [str(self.binary), "agent", f"-config-file={self.config_path}"]

    def readiness_probe(self, spec: BackendSpec) -> Optional[Probe]:
        return http_probe(f"http://{spec.address}:{spec.client_port}/v1/status/leader", self.name)


class TemplateRegistry:
    """Closed, read-only mapping from backend name to template."""

    def __init__(self, templates: Iterable[BackendTemplate]) -> None:
        mapping: Dict[str, BackendTemplate] = {}
        for template in templates:
            if not template.name:
                raise ValueError(f"template {type(template).__name__} has no name")
            if template.name in mapping:
                raise ValueError(f"duplicate template for backend {template.name!r}")
            mapping[template.name] = template
        self._templates: Mapping[str, BackendTemplate] = MappingProxyType(mapping)

    @property
    def names(self) -> List[str]:
        return sorted(self._templates)

    def get(self, backend: str) -> BackendTemplate:
        try:
            return self._templates[backend]
        except KeyError:
            raise UnknownBackend(backend) from None

    def render(self, spec: BackendSpec) -> RenderedBackend:
        return self.get(spec.backend).render(spec)


def build_registry(config) -> TemplateRegistry:
    """Build the registry from agent settings (paths to binaries and configs)."""
    return TemplateRegistry(
        [
            ZookeeperTemplate(config.java_exec, config.zk_config, work_dir=config.zk_work_dir),
            EtcdTemplate(config.etcd_exec, config.etcd_config),
            ConsulTemplate(config.consul_exec, config.consul_config),
        ]
    )
