import os
from pathlib import Path
import sys

import pytest

# Ensure the src layout is importable without an editable install
SRC = Path(__file__).resolve().parents[1] / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

os.environ["DEPLOYGATE_DISABLE_TRACING"] = "1"

from deploygate import config, settings  # noqa: E402
from deploygate.contracts.models import ArtifactReference  # noqa: E402
from deploygate.gatekeeper.policy import reload_ruleset  # noqa: E402
from deploygate.promoter.renderer import DescriptorRenderer  # noqa: E402
from deploygate.settings import (  # noqa: E402
    DEFAULT_TEMPLATE_PATH,
    DEFAULT_VALUES_DIR,
    PipelineSettings,
)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    # Prevent tests from accidentally reading a real .env file.
    monkeypatch.setenv("DOTENV_PATH", "tests/.env.DO_NOT_USE")
    monkeypatch.setenv("DEPLOYGATE_CONFIG", "tests/deploygate.DO_NOT_USE.yaml")
    monkeypatch.setenv("DEPLOYGATE_DISABLE_TRACING", "1")
    monkeypatch.delenv("AWS_SECRETSMANAGER_CONFIG_ID", raising=False)
    config._config_adapter.cache_clear()  # type: ignore[attr-defined]
    settings.get_pipeline_settings.cache_clear()
    reload_ruleset()
    yield
    config._config_adapter.cache_clear()  # type: ignore[attr-defined]
    settings.get_pipeline_settings.cache_clear()
    reload_ruleset()


@pytest.fixture
def digest() -> str:
    return "sha256:" + "a" * 64


@pytest.fixture
def artifact(digest: str) -> ArtifactReference:
    return ArtifactReference(
        registry="ghcr.io", repository="acme/my-app", tag="1.4.0", digest=digest
    )


@pytest.fixture
def baseline_artifact() -> ArtifactReference:
    return ArtifactReference(
        registry="ghcr.io", repository="acme/my-app", tag="1.3.2", digest="sha256:" + "b" * 64
    )


@pytest.fixture
def renderer() -> DescriptorRenderer:
    return DescriptorRenderer.from_paths(DEFAULT_TEMPLATE_PATH, DEFAULT_VALUES_DIR)


@pytest.fixture
def fast_settings() -> PipelineSettings:
    return PipelineSettings(
        retry_initial_delay=0.0,
        poll_interval=0.0,
        approval_timeout=1.0,
    )
