"""Test doubles shared by the unit tests."""

from __future__ import annotations

import sys
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from dbbench.controller import BackendSpec, BackendTemplate, PeerDescriptor
from dbbench.controller.probes import Probe

SLEEP_SCRIPT = "import os, time; open('cwd.txt', 'w').write(os.getcwd()); time.sleep(60)"


class SleeperTemplate(BackendTemplate):
    """Backend that runs the current interpreter instead of a database."""

    name = "sleeper"
    requires_quorum = False

    def __init__(
        self,
        config_path: Path,
        work_dir: Optional[Path] = None,
        *,
        script: str = SLEEP_SCRIPT,
        binary: Optional[Path] = None,
        gate: Optional[threading.Event] = None,
        entered: Optional[threading.Event] = None,
        probe: Optional[Probe] = None,
    ) -> None:
        super().__init__(binary or Path(sys.executable), config_path, work_dir)
        self.script = script
        self.gate = gate
        self.entered = entered
        self.probe = probe

    def render_config(self, spec: BackendSpec, peers: List[PeerDescriptor]) -> str:
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            self.gate.wait(10)
        lines = [f"port={spec.client_port}", f"dataDir={spec.data_dir}"]
        lines.extend(f"peer.{peer.member_id}={peer.address}" for peer in peers)
        return "\n".join(lines) + "\n"

    def launch_args(self, spec: BackendSpec) -> List[str]:
        return [str(self.binary), "-c", self.script, str(self.config_path)]

    def identity_files(self, spec: BackendSpec) -> Dict[str, str]:
        return {"myid": str(spec.member_id)}

    def readiness_probe(self, spec: BackendSpec) -> Optional[Probe]:
        return self.probe


def wait_for(predicate: Callable[[], bool], timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()
