"""Local model catalogue and file validation."""

from .local_models import (
    DEFAULT_GPU_OFFLOAD_PERCENT,
    GGUF_MAGIC,
    MODEL_REGISTRY,
    LocalModel,
    LocalModelStore,
    validate_gguf,
)

__all__ = [
    "DEFAULT_GPU_OFFLOAD_PERCENT",
    "GGUF_MAGIC",
    "LocalModel",
    "LocalModelStore",
    "MODEL_REGISTRY",
    "validate_gguf",
]
