"""Fixtures for CLI command tests."""

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner, Result

from patchline.__main__ import cli
from patchline.core.config import AppConfig, OfficialConfig


@pytest.fixture
def cli_config(tmp_path: Path) -> AppConfig:
    """Offline configuration: no authoritative source, no mirrors yet."""
    return AppConfig(
        config_dir=tmp_path / "config",
        data_dir=tmp_path / "data",
        install_dir=tmp_path / "game",
        official=OfficialConfig(enabled=False),
    )


@pytest.fixture
def static_mirror(cli_config: AppConfig, pattern_descriptor_data: dict[str, Any]) -> dict[str, Any]:
    """Install a pattern mirror listing versions 3, 4 and 5."""
    pattern_descriptor_data["pattern"]["versionDiscovery"] = {
        "method": "static-list",
        "staticVersions": [3, 4, 5],
    }
    mirrors_dir = cli_config.resolved_mirrors_dir
    mirrors_dir.mkdir(parents=True, exist_ok=True)
    (mirrors_dir / "community-cdn.mirror.json").write_text(json.dumps(pattern_descriptor_data))
    return pattern_descriptor_data


@pytest.fixture
def invoke(cli_config: AppConfig, tmp_path: Path) -> Callable[..., Result]:
    """Run the CLI against the saved test configuration."""
    config_file = tmp_path / "config.json"
    cli_config.save(config_file)
    runner = CliRunner()

    def _invoke(*args: str, **kwargs: Any) -> Result:
        return runner.invoke(cli, ["--config", str(config_file), *args], **kwargs)

    return _invoke
