"""Tests covering the bootstrap helpers that wire settings into the core."""

from __future__ import annotations

import logging
from pathlib import Path
from types import SimpleNamespace
from typing import Any, cast

import pytest

from pocketllm import app
from pocketllm.backends.local import LocalBackend
from pocketllm.backends.remote import RemoteBackend
from pocketllm.chat.models import BackendSelection
from pocketllm.errors import BackendUnavailable
from pocketllm.models import LocalModelStore
from pocketllm.services.settings import Settings, SettingsStore


class _BrokenStore(SettingsStore):
    def load(self, *, overrides: Any = None) -> Settings:
        raise RuntimeError("disk on fire")


def _fake_client(_settings: Any) -> Any:
    return SimpleNamespace(chat=SimpleNamespace(completions=None), models=None)


def test_load_settings_applies_overrides(tmp_path: Path) -> None:
    settings = app.load_settings(tmp_path / "settings.json", overrides={"fetch_timeout": 3.0})

    assert settings.fetch_timeout == 3.0


def test_load_settings_falls_back_to_defaults(tmp_path: Path) -> None:
    assert app.load_settings(store=_BrokenStore(tmp_path / "settings.json")) == Settings()


def test_configure_logging_uses_log_level(tmp_path: Path, restore_root_logging: None) -> None:
    path = app.configure_logging(Settings(log_level="warning"), force=True, log_dir=tmp_path, console=False)

    assert path == tmp_path / "pocketllm.log"
    assert logging.getLogger().level == logging.WARNING


def test_configure_logging_debug_flag_wins(tmp_path: Path, restore_root_logging: None) -> None:
    app.configure_logging(Settings(log_level="error", debug_logging=True), force=True, log_dir=tmp_path, console=False)

    assert logging.getLogger().level == logging.DEBUG


@pytest.mark.asyncio
async def test_build_core_wires_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, float] = {}
    register = app.register_builtin_tools

    def _recording_register(registry: Any, *, fetch_timeout: float) -> None:
        seen["fetch_timeout"] = fetch_timeout
        register(registry, fetch_timeout=fetch_timeout)

    monkeypatch.setattr(app, "register_builtin_tools", _recording_register)
    settings = Settings(
        models_dir=str(tmp_path / "models"),
        gpu_offload_percent=55,
        fetch_timeout=4.0,
        request_timeout=21.0,
    )

    core = app.build_core(settings, client_factory=_fake_client)

    assert seen == {"fetch_timeout": 4.0}
    assert core.local_models.models_dir == tmp_path / "models"
    assert core.local_models.gpu_offload_percent == 55
    conversation = core.manager.new_conversation()
    assert [tool["function"]["name"] for tool in core.manager.tools.to_openai_tools(conversation.id)] == ["calculator"]

    plain = core.servers.add("Home", "http://box")
    pinned = core.servers.add("Lab", "http://lab", request_timeout_seconds=30)
    plain_backend = core.backends(BackendSelection(server_id=plain.id, model_id="llama"))
    pinned_backend = core.backends(BackendSelection(server_id=pinned.id, model_id="llama"))

    assert isinstance(plain_backend, RemoteBackend)
    assert plain_backend.settings.request_timeout == 21.0
    assert cast(RemoteBackend, pinned_backend).settings.request_timeout == 30.0
    with pytest.raises(BackendUnavailable):
        core.backends(BackendSelection.local("tiny"))
    await core.aclose()


def test_build_core_enables_local_inference_with_runtime(tmp_path: Path) -> None:
    runtime = SimpleNamespace(set_progress_callback=lambda _callback: None)

    core = app.build_core(Settings(models_dir=str(tmp_path)), runtime=cast(Any, runtime))

    assert core.engine is not None
    assert isinstance(core.backends(BackendSelection.local("tiny")), LocalBackend)


def test_catalogue_offload_overrides_configured_default(tmp_path: Path) -> None:
    store = LocalModelStore(tmp_path, gpu_offload_percent=55)
    store.set_gpu_offload_percent(30)

    assert LocalModelStore(tmp_path, gpu_offload_percent=55).gpu_offload_percent == 30
    assert LocalModelStore(tmp_path / "fresh", gpu_offload_percent=120).gpu_offload_percent == 100
