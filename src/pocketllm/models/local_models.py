"""On-device model catalogue, GGUF validation and the local model store."""

from __future__ import annotations

import json
import logging
import re
import shutil
import struct
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, List

from ..errors import InvalidModelFile, NotFoundError

__all__ = [
    "GGUF_MAGIC",
    "DEFAULT_GPU_OFFLOAD_PERCENT",
    "LocalModel",
    "LocalModelStore",
    "MODEL_REGISTRY",
    "validate_gguf",
]

LOGGER = logging.getLogger(__name__)

GGUF_MAGIC = 0x46554747
DEFAULT_GPU_OFFLOAD_PERCENT = 80
_STORE_VERSION = 1


@dataclass(slots=True, frozen=True)
class LocalModel:
    """A GGUF model (plus optional vision projector) on disk."""

    id: str
    name: str
    model_file: str
    projector_file: str = ""
    context_window_size: int = 4096
    size_bytes: int = 0
    parameter_count: str = ""
    quantization: str = ""
    source_url: str | None = None
    minimum_ram_mb: int = 4096
    is_imported: bool = False

    @property
    def has_projector(self) -> bool:
        return bool(self.projector_file)


_HF_QWEN3_06B = "https://huggingface.co/unsloth/Qwen3-0.6B-GGUF/resolve/main"
_HF_GEMMA3_1B = "https://huggingface.co/unsloth/gemma-3-1b-it-GGUF/resolve/main"
_HF_LLAMA32_3B = "https://huggingface.co/bartowski/Llama-3.2-3B-Instruct-GGUF/resolve/main"
_HF_SMOLVLM = "https://huggingface.co/ggml-org/SmolVLM2-2.2B-Instruct-GGUF/resolve/main"

MODEL_REGISTRY: tuple[LocalModel, ...] = (
    LocalModel(
        id="qwen3-0.6b-q4km",
        name="Qwen3 0.6B",
        model_file="Qwen3-0.6B-Q4_K_M.gguf",
        size_bytes=396_705_472,
        parameter_count="0.6B",
        quantization="Q4_K_M",
        source_url=f"{_HF_QWEN3_06B}/Qwen3-0.6B-Q4_K_M.gguf",
        minimum_ram_mb=2048,
    ),
    LocalModel(
        id="gemma3-1b-q4km",
        name="Gemma 3 1B",
        model_file="gemma-3-1b-it-Q4_K_M.gguf",
        size_bytes=806_058_272,
        parameter_count="1B",
        quantization="Q4_K_M",
        source_url=f"{_HF_GEMMA3_1B}/gemma-3-1b-it-Q4_K_M.gguf",
        minimum_ram_mb=2048,
    ),
    LocalModel(
        id="llama32-3b-q4km",
        name="Llama 3.2 3B",
        model_file="Llama-3.2-3B-Instruct-Q4_K_M.gguf",
        size_bytes=2_019_377_696,
        parameter_count="3B",
        quantization="Q4_K_M",
        source_url=f"{_HF_LLAMA32_3B}/Llama-3.2-3B-Instruct-Q4_K_M.gguf",
    ),
    LocalModel(
        id="smolvlm2-2.2b-q4km",
        name="SmolVLM2 2.2B (Vision)",
        model_file="SmolVLM2-2.2B-Instruct-Q4_K_M.gguf",
        projector_file="mmproj-SmolVLM2-2.2B-Instruct-Q8_0.gguf",
        size_bytes=1_112_602_656 + 592_523_200,
        parameter_count="2.2B",
        quantization="Q4_K_M",
        source_url=f"{_HF_SMOLVLM}/SmolVLM2-2.2B-Instruct-Q4_K_M.gguf",
    ),
)


def validate_gguf(path: Path | str) -> None:
    """Check the little-endian GGUF magic at the start of ``path``.

    Raises:
        InvalidModelFile: The file is missing, too short or not GGUF.
    """
    file_path = Path(path)
    try:
        with file_path.open("rb") as handle:
            header = handle.read(4)
    except OSError as exc:
        raise InvalidModelFile(f"Cannot read model file {file_path.name}: {exc}", path=str(file_path)) from exc
    if len(header) < 4 or struct.unpack("<I", header)[0] != GGUF_MAGIC:
        raise InvalidModelFile(f"{file_path.name} is not a GGUF model file", path=str(file_path))


def _slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9.]+", "-", name.lower()).strip("-")
    return slug or "model"


class LocalModelStore:
    """Catalogue of installed local models persisted as JSON.

    Model files live in ``models_dir``; the catalogue (``models.json``)
    records metadata, the active model and the GPU offload percentage.
    """

    def __init__(self, models_dir: Path, *, gpu_offload_percent: int | None = None) -> None:
        self._dir = Path(models_dir)
        self._path = self._dir / "models.json"
        self._models: Dict[str, LocalModel] = {}
        self._active_model_id: str | None = None
        self._gpu_offload_percent = (
            DEFAULT_GPU_OFFLOAD_PERCENT if gpu_offload_percent is None else max(0, min(100, int(gpu_offload_percent)))
        )
        self._load()

    @property
    def models_dir(self) -> Path:
        return self._dir

    @property
    def gpu_offload_percent(self) -> int:
        return self._gpu_offload_percent

    def set_gpu_offload_percent(self, percent: int) -> None:
        self._gpu_offload_percent = max(0, min(100, int(percent)))
        self._save()

    @property
    def active_model_id(self) -> str | None:
        return self._active_model_id

    def set_active_model(self, model_id: str | None) -> None:
        if model_id is not None and model_id not in self._models:
            raise NotFoundError("local model", model_id)
        self._active_model_id = model_id
        self._save()

    def list_models(self) -> List[LocalModel]:
        return sorted(self._models.values(), key=lambda item: item.name.lower())

    def get(self, model_id: str) -> LocalModel | None:
        return self._models.get(model_id)

    def require(self, model_id: str) -> LocalModel:
        model = self._models.get(model_id)
        if model is None:
            raise NotFoundError("local model", model_id)
        return model

    def save(self, model: LocalModel) -> LocalModel:
        self._models[model.id] = model
        self._save()
        return model

    def delete(self, model_id: str, *, remove_files: bool = True) -> None:
        model = self._models.pop(model_id, None)
        if model is None:
            raise NotFoundError("local model", model_id)
        if self._active_model_id == model_id:
            self._active_model_id = None
        if remove_files:
            for name in (model.model_file, model.projector_file):
                if name:
                    (self._dir / name).unlink(missing_ok=True)
        self._save()
        LOGGER.info("Deleted local model %s", model_id)

    def model_path(self, model: LocalModel) -> Path:
        return self._dir / model.model_file

    def projector_path(self, model: LocalModel) -> Path | None:
        return self._dir / model.projector_file if model.projector_file else None

    def import_file(self, source: Path, *, name: str | None = None, context_window_size: int = 4096) -> LocalModel:
        """Validate ``source`` as GGUF and copy it into the models directory."""

        source = Path(source)
        validate_gguf(source)
        self._dir.mkdir(parents=True, exist_ok=True)
        target = self._dir / source.name
        if target.resolve() != source.resolve():
            shutil.copy2(source, target)
        display = name or source.stem
        model = LocalModel(
            id=f"imported-{_slugify(display)}",
            name=display,
            model_file=target.name,
            context_window_size=context_window_size,
            size_bytes=target.stat().st_size,
            is_imported=True,
        )
        LOGGER.info("Imported local model %s from %s", model.id, source)
        return self.save(model)

    def install_from_registry(self, model_id: str) -> LocalModel:
        """Register a catalogue entry whose files are already downloaded."""

        entry = next((item for item in MODEL_REGISTRY if item.id == model_id), None)
        if entry is None:
            raise NotFoundError("registry model", model_id)
        validate_gguf(self._dir / entry.model_file)
        if entry.projector_file:
            validate_gguf(self._dir / entry.projector_file)
        return self.save(replace(entry))

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            LOGGER.warning("Local model catalogue %s is not valid JSON: %s", self._path, exc)
            return
        allowed = {item.name for item in fields(LocalModel)}
        for raw in payload.get("models", []):
            try:
                model = LocalModel(**{key: value for key, value in raw.items() if key in allowed})
            except TypeError as exc:
                LOGGER.warning("Skipping malformed local model entry: %s", exc)
                continue
            self._models[model.id] = model
        self._active_model_id = payload.get("active_model_id")
        percent = payload.get("gpu_offload_percent")
        if isinstance(percent, int):
            self._gpu_offload_percent = percent

    def _save(self) -> None:
        payload: Dict[str, Any] = {
            "version": _STORE_VERSION,
            "models": [asdict(model) for model in self._models.values()],
            "active_model_id": self._active_model_id,
            "gpu_offload_percent": self._gpu_offload_percent,
        }
        self._dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self._path)
