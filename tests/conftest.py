"""Shared fixtures for PhaseForge tests.

Vendors, compilers and writers are scripted implementations of the real
contracts (see tests/fakes.py); nothing talks to a network service.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from dotenv import load_dotenv

# Load .env from project root so OPENAI_API_KEY etc. are available
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from phaseforge.context.session import Session
from phaseforge.core.config import AppConfig, ModelRegistry, load_config, load_model_registry
from phaseforge.core.models import Phase, PhaseCompleteEvent, PhaseStartEvent


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove PHASEFORGE_* overrides a developer .env may have set."""
    for name in ("PHASEFORGE_MODEL", "PHASEFORGE_BASE_URL", "PHASEFORGE_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


@pytest.fixture
def app_config(config_dir: Path, clean_env: None) -> AppConfig:
    return load_config(config_dir=config_dir)


@pytest.fixture
def model_registry(config_dir: Path) -> ModelRegistry:
    return load_model_registry(config_dir=config_dir)


# ---------------------------------------------------------------------------
# History fixtures
# ---------------------------------------------------------------------------

def start(phase: Phase, step: int, reason: str = "") -> PhaseStartEvent:
    return PhaseStartEvent(phase=phase, step=step, reason=reason)


def complete(phase: Phase, step: int, artifact: dict | None = None, reason: str = "") -> PhaseCompleteEvent:
    return PhaseCompleteEvent(phase=phase, step=step, artifact=artifact or {}, reason=reason)


ANALYSIS_ARTIFACT = {
    "files": [
        {"filename": "overview.md", "content": "# Todo service"},
        {"filename": "roles.md", "content": "# Roles"},
    ],
}

SCHEMA_ARTIFACT = {
    "models": [
        {"name": "User", "fields": ["id", "email"]},
        {"name": "Todo", "fields": ["id", "title"]},
    ],
}

INTERFACE_ARTIFACT = {
    "operations": [
        {"method": "GET", "path": "/todos"},
        {"method": "post", "path": "/todos"},
    ],
    "schemas": {
        "ITodo": {"type": "object"},
        "ITodo.ICreate": {"type": "object"},
    },
}


@pytest.fixture
def completed_session() -> Session:
    """Analyze, Schema and Interface completed once, all at step 1."""
    return Session(history=[
        start(Phase.ANALYZE, 1, "Build a todo API"),
        complete(Phase.ANALYZE, 1, ANALYSIS_ARTIFACT),
        start(Phase.SCHEMA, 1),
        complete(Phase.SCHEMA, 1, SCHEMA_ARTIFACT),
        start(Phase.INTERFACE, 1),
        complete(Phase.INTERFACE, 1, INTERFACE_ARTIFACT),
    ])
