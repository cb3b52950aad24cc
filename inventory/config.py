"""
Inventory configuration: paths, model type tables and status constants.

Values come from code defaults, then INVENTORY_* environment variables, then
command line flags. Mutable preferences live in the app_settings table.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional


# Model type to directory mapping (StabilityMatrix shared model layout)
MODEL_TYPE_DIRS: Dict[str, List[str]] = {
    "checkpoint": ["StableDiffusion"],
    "lora": ["Lora", "LyCORIS"],
    "vae": ["VAE"],
    "controlnet": ["ControlNet", "T2IAdapter"],
    "clip": ["TextEncoders"],
    "clip_vision": ["ClipVision"],
    "upscaler": ["ESRGAN", "RealESRGAN", "SwinIR"],
    "embedding": ["Embeddings"],
    "ipadapter": ["IpAdapter", "IpAdapters15", "IpAdaptersXl"],
    "diffusion_model": ["DiffusionModels"],
    "ultralytics": ["Ultralytics"],
}

# ComfyUI folder names that map onto the same types
COMFY_FOLDER_ALIASES: Dict[str, str] = {
    "checkpoints": "checkpoint",
    "loras": "lora",
    "controlnet": "controlnet",
    "t2i_adapter": "controlnet",
    "text_encoders": "clip",
    "clip": "clip",
    "clip_vision": "clip_vision",
    "upscale_models": "upscaler",
    "embeddings": "embedding",
    "ipadapter": "ipadapter",
    "diffusion_models": "diffusion_model",
    "unet": "diffusion_model",
}

MODEL_TYPES = tuple(MODEL_TYPE_DIRS.keys())

MODEL_EXTENSIONS = (".safetensors", ".ckpt", ".pt", ".pth", ".bin", ".gguf")

SKIP_DIRECTORIES = ("node_modules", "__pycache__")

VALIDATION_LEVELS = ("quick", "standard", "full")

LOCATIONS = ("local", "warehouse")


class Architecture:
    SD15 = "SD15"
    SDXL = "SDXL"
    SD3 = "SD3"
    FLUX = "Flux"
    PONY = "Pony"
    WAN = "Wan"
    SVD = "SVD"
    UNKNOWN = "unknown"


class HashStatus:
    PENDING = "pending"
    VALID = "valid"
    CORRUPT = "corrupt"
    INCOMPLETE = "incomplete"


class WorkflowStatus:
    NEW = "new"
    MISSING_ITEMS = "scanned-missing-items"
    ERROR = "scanned-error"
    READY_LOCAL = "scanned-ready-local"
    READY_CLOUD = "scanned-ready-cloud"


class DependencyStatus:
    UNRESOLVED = "unresolved"
    RESOLVED_LOCAL = "resolved-local"
    RESOLVED_WAREHOUSE = "resolved-warehouse"
    MISSING = "missing"
    AMBIGUOUS = "ambiguous"
    INCOMPATIBLE = "incompatible"

    RESOLVED = (RESOLVED_LOCAL, RESOLVED_WAREHOUSE)


class TaskStatus:
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    TERMINAL = (COMPLETED, FAILED, CANCELLED)


class TaskType:
    DOWNLOAD = "download"
    MODEL_SCAN = "model_scan"
    WORKFLOW_SCAN = "workflow_scan"
    DEPENDENCY_RESOLUTION = "dependency_resolution"
    HASH_VALIDATION = "hash_validation"


class DownloadStatus:
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    VALIDATING = "validating"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _env_path(name: str) -> Optional[Path]:
    value = os.environ.get(name)
    return Path(value).expanduser() if value else None


@dataclass
class InventorySettings:
    """Resolved runtime configuration for scans, downloads and the scheduler."""

    models_root: Path = Path("models")
    warehouse_root: Optional[Path] = None
    workflow_roots: List[Path] = field(default_factory=lambda: [Path("workflows")])
    database_url: Optional[str] = None
    max_concurrent_tasks: int = 3
    scan_batch_size: int = 20
    scan_workers: int = 4
    validation_level: str = "standard"
    # Skip re-analysis when a known file keeps its size. Misses same-size edits.
    size_only_change_detection: bool = True
    civitai_api_key: Optional[str] = None
    civitai_lookup_enabled: bool = False
    request_timeout: int = 30

    def __post_init__(self):
        if self.validation_level not in VALIDATION_LEVELS:
            raise ValueError(f"Unknown validation level: {self.validation_level}")
        if self.max_concurrent_tasks < 1:
            raise ValueError("max_concurrent_tasks must be at least 1")

    @classmethod
    def from_env(cls, **overrides) -> "InventorySettings":
        """Build settings from INVENTORY_* environment variables plus explicit overrides."""
        values = {}

        models_root = _env_path("INVENTORY_MODELS_ROOT")
        if models_root:
            values["models_root"] = models_root

        warehouse_root = _env_path("INVENTORY_WAREHOUSE_ROOT")
        if warehouse_root:
            values["warehouse_root"] = warehouse_root

        workflow_roots = os.environ.get("INVENTORY_WORKFLOW_ROOTS")
        if workflow_roots:
            values["workflow_roots"] = [
                Path(p).expanduser() for p in workflow_roots.split(os.pathsep) if p
            ]

        if os.environ.get("INVENTORY_DATABASE_URL"):
            values["database_url"] = os.environ["INVENTORY_DATABASE_URL"]

        if os.environ.get("INVENTORY_MAX_CONCURRENT"):
            values["max_concurrent_tasks"] = int(os.environ["INVENTORY_MAX_CONCURRENT"])

        if os.environ.get("INVENTORY_VALIDATION_LEVEL"):
            values["validation_level"] = os.environ["INVENTORY_VALIDATION_LEVEL"]

        if os.environ.get("CIVITAI_API_KEY"):
            values["civitai_api_key"] = os.environ["CIVITAI_API_KEY"]

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def root_for(self, location: str) -> Optional[Path]:
        if location == "local":
            return self.models_root
        if location == "warehouse":
            return self.warehouse_root
        raise ValueError(f"Unknown location: {location}")

    def destination_for(self, model_type: str, filename: str) -> Path:
        """Where a downloaded model of this type belongs under the local root."""
        dirs = MODEL_TYPE_DIRS.get(model_type)
        subdir = dirs[0] if dirs else "Other"
        return self.models_root / subdir / Path(filename).name
