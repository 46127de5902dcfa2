from __future__ import annotations

import sys
from pathlib import Path

import pytest
from dotenv import load_dotenv

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_SRC = (_PROJECT_ROOT / "src").resolve()
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

load_dotenv(_PROJECT_ROOT / ".env", override=False)

from proctorbox.config import CaptureConfig, RuntimeConfig, SessionConfig  # noqa: E402
from proctorbox.sandbox_manager import SandboxLifecycleManager  # noqa: E402
from proctorbox.storage import JsonRecordStore  # noqa: E402

from fakes import FakeRuntime  # noqa: E402


@pytest.fixture
def runtime_config(tmp_path) -> RuntimeConfig:
    return RuntimeConfig(
        port_start=47000,
        port_end=47400,
        build_context=tmp_path / "dockerfiles",
    )


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def manager(runtime_config, fake_runtime, tmp_path) -> SandboxLifecycleManager:
    return SandboxLifecycleManager(
        runtime_config,
        fake_runtime,
        record_store=JsonRecordStore(tmp_path / "sandboxes.json"),
    )


@pytest.fixture
def capture_config() -> CaptureConfig:
    return CaptureConfig(
        navigation_timeout=1,
        auth_timeout=1,
        trust_dialog_timeout=0.1,
        verification_timeout=0.5,
        verification_passes=2,
        settle_delay=0,
        desktop_attempts=3,
        desktop_poll_interval=0,
        max_concurrent=2,
    )


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(tick_interval=0.01, capture_interval=0, auto_submit=True)
