"""Common data models for the agent lifecycle controller."""

from __future__ import annotations

import enum
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Dict, List, Mapping, Optional, Tuple


class AgentState(str, enum.Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    LAUNCHING = "launching"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (AgentState.STOPPED, AgentState.FAILED)


@dataclass(frozen=True)
class PeerDescriptor:
    member_id: int
    address: str


@dataclass(frozen=True)
class BackendSpec:
    """Generic tunables for one database instance of a test group.

    ``peers`` is ordered identically on every agent of a group and
    ``member_id`` is this agent's 1-based position in it. Engine specific
    numeric knobs live in ``options`` as sorted ``(name, value)`` pairs.
    """

    backend: str
    data_dir: Path
    client_port: int
    peers: Tuple[str, ...] = ()
    member_id: int = 1
    options: Tuple[Tuple[str, int], ...] = ()

    def option(self, name: str, default: int) -> int:
        for key, value in self.options:
            if key == name:
                return value
        return default

    @property
    def address(self) -> str:
        """Network address of this member, taken from the peer list."""
        if 1 <= self.member_id <= len(self.peers):
            return self.peers[self.member_id - 1]
        return "localhost"

    @classmethod
    def build(
        cls,
        backend: str,
        data_dir: Path | str,
        client_port: int,
        peers: Optional[List[str]] = None,
        member_id: int = 1,
        options: Optional[Mapping[str, int]] = None,
    ) -> "BackendSpec":
        return cls(
            backend=backend,
            data_dir=Path(data_dir),
            client_port=int(client_port),
            peers=tuple(peers or ()),
            member_id=int(member_id),
            options=tuple(sorted((str(k), int(v)) for k, v in (options or {}).items())),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "backend": self.backend,
            "data_dir": str(self.data_dir),
            "client_port": self.client_port,
            "peers": list(self.peers),
            "member_id": self.member_id,
            "options": dict(self.options),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BackendSpec":
        return cls.build(
            backend=payload["backend"],
            data_dir=payload["data_dir"],
            client_port=payload["client_port"],
            peers=list(payload.get("peers") or []),
            member_id=payload.get("member_id", 1),
            options=payload.get("options") or {},
        )


@dataclass
class AgentProcess:
    """The single OS process an agent supervises."""

    spec: BackendSpec
    command: List[str]
    work_dir: Optional[Path]
    config_path: Path
    log_path: Path
    pid: Optional[int] = None
    popen: Optional[subprocess.Popen] = field(default=None, repr=False)
    log_sink: Optional[IO[bytes]] = field(default=None, repr=False)
    stop_requested: bool = False

    @property
    def command_line(self) -> str:
        return " ".join(self.command)


@dataclass
class ExitStatus:
    pid: int
    returncode: Optional[int]
    requested: bool
