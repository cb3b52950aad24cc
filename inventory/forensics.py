"""
Model Forensics
===============

File-level inspection of model files:
- Partial (head + tail) and full SHA-256 identity hashes
- Safetensors header parsing and embedded training metadata
- Model type, architecture and precision detection
"""

import hashlib
import json
import logging
import re
import struct
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Any

from .config import (
    MODEL_TYPE_DIRS, COMFY_FOLDER_ALIASES, Architecture, HashStatus, VALIDATION_LEVELS
)

logger = logging.getLogger(__name__)

PARTIAL_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB from each end of the file
HASH_READ_SIZE = 1024 * 1024
MIN_VALID_SIZE = 1024  # Anything smaller is an incomplete download
MAX_HEADER_SIZE = 100 * 1024 * 1024


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def calculate_partial_hash(filepath: Path) -> Optional[str]:
    """SHA-256 over the first 10MB, the last 10MB and the file size.

    Files between 10MB and 20MB contribute their remaining bytes instead of a
    full tail chunk. Returns uppercase hex, or None if the file cannot be read.
    """
    try:
        file_size = Path(filepath).stat().st_size
        digest = hashlib.sha256()
        with open(filepath, "rb") as f:
            digest.update(f.read(min(PARTIAL_CHUNK_SIZE, file_size)))

            if file_size > PARTIAL_CHUNK_SIZE * 2:
                f.seek(file_size - PARTIAL_CHUNK_SIZE)
                digest.update(f.read(PARTIAL_CHUNK_SIZE))
            elif file_size > PARTIAL_CHUNK_SIZE:
                f.seek(PARTIAL_CHUNK_SIZE)
                digest.update(f.read(file_size - PARTIAL_CHUNK_SIZE))

        digest.update(str(file_size).encode("utf-8"))
        return digest.hexdigest().upper()
    except OSError as e:
        logger.warning(f"⚠️ Could not calculate partial hash for {filepath}: {e}")
        return None


def calculate_full_hash(filepath: Path) -> Optional[str]:
    """SHA-256 of the whole file as uppercase hex."""
    digest = hashlib.sha256()
    try:
        with open(filepath, "rb") as f:
            for chunk in iter(lambda: f.read(HASH_READ_SIZE), b""):
                digest.update(chunk)
        return digest.hexdigest().upper()
    except OSError as e:
        logger.warning(f"⚠️ Could not hash file {filepath}: {e}")
        return None


def quick_validate(filepath: Path, expected_size: Optional[int] = None) -> Tuple[bool, int, Optional[str]]:
    """Cheap existence and size check. Returns (valid, actual_size, reason)."""
    try:
        actual_size = Path(filepath).stat().st_size
    except FileNotFoundError:
        return False, 0, "File not found"
    except OSError as e:
        return False, 0, str(e)

    if expected_size is not None and actual_size != expected_size:
        return False, actual_size, f"Size mismatch: expected {expected_size}, got {actual_size}"

    if actual_size < MIN_VALID_SIZE:
        return False, actual_size, "File too small - likely incomplete download"

    return True, actual_size, None


# ---------------------------------------------------------------------------
# Safetensors header
# ---------------------------------------------------------------------------

@dataclass
class SafetensorsHeader:
    header: Dict[str, Any]
    header_size: int

    @property
    def metadata(self) -> Dict[str, str]:
        return self.header.get("__metadata__") or {}

    @property
    def tensor_names(self) -> List[str]:
        return [k for k in self.header if k != "__metadata__"]


def read_safetensors_header(filepath: Path) -> Optional[SafetensorsHeader]:
    """Parse the JSON header of a safetensors file.

    Layout: 8 bytes little-endian u64 header length, then the header JSON,
    then tensor data. Returns None when the header is missing or malformed.
    """
    try:
        with open(filepath, "rb") as f:
            size_bytes = f.read(8)
            if len(size_bytes) < 8:
                return None
            (header_size,) = struct.unpack("<Q", size_bytes)

            if header_size > MAX_HEADER_SIZE:
                logger.warning(f"⚠️ Suspiciously large header size: {header_size} bytes for {filepath}")
                return None

            raw = f.read(header_size)
            if len(raw) < header_size:
                return None

        header = json.loads(raw.decode("utf-8"))
        if not isinstance(header, dict):
            return None
        return SafetensorsHeader(header=header, header_size=header_size)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"⚠️ Failed to parse safetensors header for {filepath}: {e}")
        return None


def extract_embedded_metadata(metadata: Dict[str, str]) -> Dict[str, Any]:
    """Split kohya training info (ss_*) and modelspec.* fields, and pull trigger words.

    Trigger words are the first ten tags of each dataset in ss_tag_frequency.
    """
    training_info = {}
    model_spec = {}
    trigger_words: List[str] = []
    base_model = None

    for key, value in metadata.items():
        if key.startswith("ss_"):
            training_info[key] = value
            if key in ("ss_sd_model_name", "ss_base_model_version"):
                base_model = value
            if key == "ss_tag_frequency":
                try:
                    tag_frequency = json.loads(value) if isinstance(value, str) else value
                except json.JSONDecodeError:
                    tag_frequency = {}
                if isinstance(tag_frequency, dict):
                    for dataset in tag_frequency.values():
                        if isinstance(dataset, dict):
                            trigger_words.extend(list(dataset.keys())[:10])
        elif key.startswith("modelspec."):
            model_spec[key] = value
            if key == "modelspec.architecture":
                base_model = value

    return {
        "training_info": training_info,
        "model_spec": model_spec,
        "trigger_words": list(dict.fromkeys(w.strip() for w in trigger_words if w.strip())),
        "base_model": base_model,
    }


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ArchitectureSignature:
    patterns: Tuple[str, ...]
    architecture: str
    model_type: str
    confidence: str  # high, medium, low


# Order matters: more specific signatures first
SIGNATURES = (
    ArchitectureSignature((r"double_blocks\.0", r"single_blocks\.0", r"transformer_blocks.*img_attn"),
                          Architecture.FLUX, "checkpoint", "high"),
    ArchitectureSignature((r"lora.*transformer\.single_transformer_blocks", r"lora.*double_blocks"),
                          Architecture.FLUX, "lora", "high"),
    ArchitectureSignature((r"model\.diffusion_model.*joint_blocks", r"joint_transformer_blocks"),
                          Architecture.SD3, "checkpoint", "high"),
    ArchitectureSignature((r"temporal_transformer", r"motion_modules", r"(?i:wan.*temporal)"),
                          Architecture.WAN, "diffusion_model", "high"),
    # SDXL before SD1.5: the second text encoder only exists in SDXL
    ArchitectureSignature((r"conditioner\.embedders\.1",),
                          Architecture.SDXL, "checkpoint", "medium"),
    ArchitectureSignature((r"lora_te2_", r"lora_unet.*_1280_"),
                          Architecture.SDXL, "lora", "high"),
    ArchitectureSignature((r"controlnet_cond_embedding.*1280", r"control_model.*_1280"),
                          Architecture.SDXL, "controlnet", "high"),
    ArchitectureSignature((r"model\.diffusion_model\.input_blocks\.0\.0\.weight",),
                          Architecture.SD15, "checkpoint", "low"),
    ArchitectureSignature((r"lora_unet_down_blocks_0", r"lora_te_"),
                          Architecture.SD15, "lora", "medium"),
    ArchitectureSignature((r"control_model\.input_blocks", r"control_model\.zero_convs"),
                          Architecture.SD15, "controlnet", "medium"),
    ArchitectureSignature((r"svd_", r"temporal_res_block"),
                          Architecture.SVD, "diffusion_model", "medium"),
    ArchitectureSignature((r"first_stage_model\.encoder", r"first_stage_model\.decoder"),
                          Architecture.UNKNOWN, "vae", "high"),
    ArchitectureSignature((r"text_model\.encoder", r"clip_l", r"clip_g"),
                          Architecture.UNKNOWN, "clip", "medium"),
)

_COMPILED_SIGNATURES = [
    (sig, [re.compile(p) for p in sig.patterns]) for sig in SIGNATURES
]

# (min bytes, max bytes, architecture) per model type
SIZE_HINTS = {
    "checkpoint": [
        (1.5e9, 3e9, Architecture.SD15),
        (5e9, 8e9, Architecture.SDXL),
        (10e9, 30e9, Architecture.FLUX),
        (4e9, 6e9, Architecture.SD3),
    ],
    "lora": [
        (1e6, 200e6, Architecture.SD15),
        (200e6, 800e6, Architecture.SDXL),
        (100e6, 500e6, Architecture.FLUX),
    ],
}


@dataclass
class DetectionResult:
    architecture: str
    model_type: str
    confidence: str
    detected_from: str  # metadata, tensor_pattern, size_hint, unknown


def parse_modelspec_architecture(value: str) -> Optional[str]:
    lower = value.lower()
    if "flux" in lower:
        return Architecture.FLUX
    if "sd3" in lower or "stable-diffusion-3" in lower:
        return Architecture.SD3
    if "sdxl" in lower or "stable-diffusion-xl" in lower:
        return Architecture.SDXL
    if "sd-1" in lower or "stable-diffusion-v1" in lower:
        return Architecture.SD15
    return None


def parse_base_model_version(value: str) -> Optional[str]:
    """Map kohya's ss_base_model_version onto an architecture."""
    lower = value.lower()
    if "flux" in lower:
        return Architecture.FLUX
    if "pony" in lower:
        return Architecture.PONY
    if "sdxl" in lower or "xl" in lower:
        return Architecture.SDXL
    if "sd3" in lower:
        return Architecture.SD3
    if "v1" in lower or "1.5" in lower:
        return Architecture.SD15
    return None


def detect_architecture(header: SafetensorsHeader, file_size: Optional[int] = None) -> DetectionResult:
    """Work out the architecture from embedded metadata, tensor names, then file size."""
    metadata = header.metadata

    spec_arch = metadata.get("modelspec.architecture")
    if isinstance(spec_arch, str):
        arch = parse_modelspec_architecture(spec_arch)
        if arch:
            model_type = "lora" if "lora" in spec_arch.lower() else "checkpoint"
            return DetectionResult(arch, model_type, "high", "metadata")

    base_version = metadata.get("ss_base_model_version")
    if isinstance(base_version, str):
        arch = parse_base_model_version(base_version)
        if arch:
            return DetectionResult(arch, "lora", "high", "metadata")

    tensor_names = "\n".join(header.tensor_names)
    for sig, patterns in _COMPILED_SIGNATURES:
        if not any(p.search(tensor_names) for p in patterns):
            continue
        if sig.model_type == "checkpoint" and file_size and sig.confidence != "high":
            hint = _size_hint("checkpoint", file_size)
            if hint == sig.architecture:
                return DetectionResult(sig.architecture, sig.model_type, "high", "tensor_pattern")
        return DetectionResult(sig.architecture, sig.model_type, sig.confidence, "tensor_pattern")

    if file_size:
        for model_type in SIZE_HINTS:
            hint = _size_hint(model_type, file_size)
            if hint:
                return DetectionResult(hint, model_type, "low", "size_hint")

    return DetectionResult(Architecture.UNKNOWN, "unknown", "low", "unknown")


def _size_hint(model_type: str, file_size: int) -> Optional[str]:
    for low, high, architecture in SIZE_HINTS.get(model_type, []):
        if low <= file_size <= high:
            return architecture
    return None


_DIR_TO_TYPE: Dict[str, str] = {}
for _type, _dirs in MODEL_TYPE_DIRS.items():
    for _dir in _dirs:
        _DIR_TO_TYPE[_dir.lower()] = _type
for _alias, _type in COMFY_FOLDER_ALIASES.items():
    _DIR_TO_TYPE.setdefault(_alias, _type)


def detect_type_from_path(filepath: Path, root: Optional[Path] = None) -> str:
    """Model type implied by the directory the file sits in.

    Directory segments are compared case-insensitively against the type to
    directory table, nearest the library root first.
    """
    path = Path(filepath)
    if root is not None:
        try:
            path = path.relative_to(root)
        except ValueError:
            pass
    for segment in path.parent.parts:
        model_type = _DIR_TO_TYPE.get(segment.lower())
        if model_type:
            return model_type
    return "unknown"


def detect_precision(filename: str, metadata: Optional[Dict[str, str]] = None) -> str:
    lower = filename.lower()
    if "fp8" in lower or "_f8" in lower:
        return "fp8"
    if "fp16" in lower or "_f16" in lower:
        return "fp16"
    if "fp32" in lower or "_f32" in lower:
        return "fp32"
    if "bf16" in lower:
        return "bf16"
    if lower.endswith(".gguf") or "q4" in lower or "q5" in lower or "q8" in lower:
        return "gguf"

    if metadata and isinstance(metadata.get("modelspec.precision"), str):
        return metadata["modelspec.precision"].lower()

    # Most safetensors releases are half precision
    if lower.endswith(".safetensors"):
        return "fp16"
    return "unknown"


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

@dataclass
class ForensicsResult:
    filepath: str
    filename: str
    file_size: int
    detected_type: str
    detected_architecture: str
    detected_precision: str
    detection_confidence: str
    is_valid: bool
    hash_status: str
    partial_hash: Optional[str] = None
    full_hash: Optional[str] = None
    validation_message: Optional[str] = None
    embedded_metadata: Dict[str, Any] = field(default_factory=dict)
    trigger_words: List[str] = field(default_factory=list)

    @property
    def identity(self) -> Optional[str]:
        """Content hash used as the catalog id."""
        return self.full_hash or self.partial_hash

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def analyze_model(filepath: Path, validation_level: str = "standard",
                  root: Optional[Path] = None,
                  expected_hash: Optional[str] = None) -> Optional[ForensicsResult]:
    """Run forensic analysis on one model file.

    Args:
        filepath: Model file to inspect
        validation_level: "quick" (no hashing), "standard" (partial hash) or "full" (partial and full hash)
        root: Library root, used to read the model type from relative directory names
        expected_hash: Known SHA-256 (e.g. from a .cm-info.json sidecar) checked on full validation

    Returns:
        ForensicsResult, or None if the file does not exist or cannot be read
    """
    if validation_level not in VALIDATION_LEVELS:
        raise ValueError(f"Unknown validation level: {validation_level}")

    path = Path(filepath)
    if not path.is_file():
        return None

    try:
        valid, file_size, reason = quick_validate(path)
        hash_status = HashStatus.PENDING if valid else HashStatus.INCOMPLETE

        detected_type = detect_type_from_path(path, root)
        architecture = Architecture.UNKNOWN
        confidence = "low"
        embedded: Dict[str, Any] = {}
        trigger_words: List[str] = []
        metadata: Dict[str, str] = {}

        if valid and path.suffix.lower() == ".safetensors":
            header = read_safetensors_header(path)
            if header is None:
                valid = False
                hash_status = HashStatus.CORRUPT
                reason = "Failed to parse safetensors header - file may be corrupt"
            else:
                metadata = header.metadata
                detection = detect_architecture(header, file_size)
                architecture = detection.architecture
                confidence = detection.confidence
                if detected_type == "unknown" and detection.model_type != "unknown":
                    detected_type = detection.model_type

                extracted = extract_embedded_metadata(metadata)
                embedded = {**extracted["training_info"], **extracted["model_spec"]}
                trigger_words = extracted["trigger_words"]
                if architecture == Architecture.UNKNOWN and extracted["base_model"]:
                    architecture = (parse_modelspec_architecture(extracted["base_model"])
                                    or parse_base_model_version(extracted["base_model"])
                                    or Architecture.UNKNOWN)

        partial_hash = None
        full_hash = None
        if validation_level in ("standard", "full"):
            partial_hash = calculate_partial_hash(path)
        if validation_level == "full":
            full_hash = calculate_full_hash(path)

        if valid:
            if expected_hash and full_hash and full_hash != expected_hash.upper():
                valid = False
                hash_status = HashStatus.CORRUPT
                reason = f"Hash mismatch: expected {expected_hash.upper()}, got {full_hash}"
            elif partial_hash:
                hash_status = HashStatus.VALID

        return ForensicsResult(
            filepath=str(path),
            filename=path.name,
            file_size=file_size,
            detected_type=detected_type,
            detected_architecture=architecture,
            detected_precision=detect_precision(path.name, metadata),
            detection_confidence=confidence,
            is_valid=valid,
            hash_status=hash_status,
            partial_hash=partial_hash,
            full_hash=full_hash,
            validation_message=reason,
            embedded_metadata=embedded,
            trigger_words=trigger_words,
        )
    except OSError as e:
        logger.error(f"❌ Analysis failed for {path}: {e}")
        return None
