"""
Pytest Configuration and Global Fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all tests
- Pytest markers configuration
"""

import sys
import tempfile
from pathlib import Path
from typing import Generator

import pytest

# Ensure the project root is in Python path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from promptcanvas.config import GenerationConfig, PromptCanvasConfig, reset_config
from promptcanvas.orchestrator import GenerationContext, GenerationOrchestrator
from promptcanvas.store import Store

# =============================================================================
# Re-export fixtures from helpers module
# =============================================================================

from tests.helpers.fixtures import (
    PNG_BYTES,
    FakeOpenRouterClient,
    FixedClock,
    RecordingListener,
    build_generation_result,
    png_data_url,
)


# =============================================================================
# Pytest Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests requiring multiple components"
    )


# =============================================================================
# Function-Scoped Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    """Keep the global config and API key env out of tests."""
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test isolation."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(1000.0)


@pytest.fixture
def store(temp_dir: Path, clock: FixedClock) -> Store:
    return Store(root=temp_dir, clock=clock)


@pytest.fixture
def fake_client() -> FakeOpenRouterClient:
    return FakeOpenRouterClient()


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def config(temp_dir: Path) -> PromptCanvasConfig:
    return PromptCanvasConfig(
        root=temp_dir,
        generation=GenerationConfig(usage_retries=3, usage_retry_delay=0.0),
    )


@pytest.fixture
def orchestrator(store, fake_client, listener, config) -> GenerationOrchestrator:
    """Orchestrator with an API key and model already chosen."""
    context = GenerationContext(api_key="sk-test", selected_model="test/image-model")
    return GenerationOrchestrator(
        store,
        fake_client,
        listener,
        config=config,
        context=context,
        seed_factory=lambda: 42,
    )
