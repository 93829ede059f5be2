from pathlib import Path

import pytest

from kobosync.config import OutputPaths, RunConfig, setup_output_dir


@pytest.fixture
def run_config() -> RunConfig:
    return RunConfig(
        api_server_url="https://kf.example.org/api/v2",
        media_server_url="https://kc.example.org",
        token="secret",
        max_request_retries=3,
        max_download_retries=3,
    )


@pytest.fixture
def paths(run_config: RunConfig, tmp_path: Path) -> OutputPaths:
    return setup_output_dir(run_config, base_dir=tmp_path)
