from __future__ import annotations

from pathlib import Path
from typing import List

import pytest

from dbbench.controller import AgentController, BackendSpec, TemplateRegistry
from helpers import SleeperTemplate


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def sleeper_spec(tmp_path: Path) -> BackendSpec:
    return BackendSpec.build(
        backend="sleeper",
        data_dir=tmp_path / "data",
        client_port=2181,
        peers=["10.0.0.1", "10.0.0.2", "10.0.0.3"],
        member_id=2,
    )


@pytest.fixture
def make_controller(tmp_path: Path, work_dir: Path):
    controllers: List[AgentController] = []

    def _make(**template_kwargs) -> AgentController:
        template = SleeperTemplate(tmp_path / "conf" / "sleeper.cfg", work_dir, **template_kwargs)
        controller = AgentController(
            TemplateRegistry([template]),
            tmp_path / "logs" / "database.log",
            name=f"test-{len(controllers) + 1}",
            stop_grace_seconds=2.0,
        )
        controllers.append(controller)
        return controller

    yield _make

    for controller in controllers:
        controller.stop().result(timeout=10)
