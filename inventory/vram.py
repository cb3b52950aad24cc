"""
VRAM estimation for workflows from the models they load.

Each model contributes ``size_gb * factor + fixed`` according to its type and
precision, on top of a fixed runtime overhead. The total is padded for
generation activations and peak usage, and compared with common GPU sizes.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .config import Architecture

GB = 1024 ** 3

# type -> precision -> (size multiplier, fixed GB)
VRAM_FACTORS: Dict[str, Dict[str, tuple]] = {
    "checkpoint": {
        "fp32": (1.2, 0.0), "fp16": (1.1, 0.0), "bf16": (1.1, 0.0),
        "fp8": (0.6, 0.0), "gguf": (0.5, 0.0), "unknown": (1.1, 0.0),
    },
    "diffusion_model": {
        "fp32": (1.2, 0.0), "fp16": (1.1, 0.0), "bf16": (1.1, 0.0),
        "fp8": (0.6, 0.0), "gguf": (0.5, 0.0), "unknown": (1.1, 0.0),
    },
    "lora": {"fp32": (0.2, 0.0), "fp16": (0.15, 0.0), "unknown": (0.15, 0.0)},
    "vae": {"fp32": (0.0, 1.0), "fp16": (0.0, 0.5), "unknown": (0.0, 0.5)},
    "controlnet": {"fp32": (1.2, 0.0), "fp16": (1.0, 0.0), "unknown": (1.0, 0.0)},
    "clip": {"fp32": (1.2, 0.0), "fp16": (1.0, 0.0), "unknown": (1.0, 0.0)},
    "clip_vision": {"fp32": (1.2, 0.0), "fp16": (1.0, 0.0), "unknown": (1.0, 0.0)},
    "ipadapter": {"fp32": (1.0, 0.0), "fp16": (0.8, 0.0), "unknown": (0.8, 0.0)},
    "upscaler": {"fp32": (0.0, 0.3), "fp16": (0.0, 0.2), "unknown": (0.0, 0.2)},
    "embedding": {"fp32": (0.0, 0.01), "fp16": (0.0, 0.01), "unknown": (0.0, 0.01)},
}

BASE_OVERHEAD_GB = 1.5
GENERATION_OVERHEAD_FACTOR = 1.3
PEAK_FACTOR = 1.2

ARCHITECTURE_BASE_VRAM = {
    Architecture.SD15: 4.0,
    Architecture.SDXL: 8.0,
    Architecture.SD3: 10.0,
    Architecture.FLUX: 12.0,
    Architecture.PONY: 8.0,
    Architecture.WAN: 14.0,
    Architecture.SVD: 10.0,
    Architecture.UNKNOWN: 8.0,
}

# Usable VRAM per GPU tier, leaving about 2GB free
GPU_TIERS = {
    "vram16gb": 14,
    "vram24gb": 22,
    "vram48gb": 46,
    "vram80gb": 78,
}


@dataclass
class ModelFootprint:
    model_type: str
    precision: str
    size_bytes: int
    architecture: Optional[str] = None


@dataclass
class VRAMEstimate:
    base_vram: float
    with_overhead: float
    peak_estimate: float
    breakdown: List[Dict] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    can_run_on: Dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'base_vram': self.base_vram,
            'with_overhead': self.with_overhead,
            'peak_estimate': self.peak_estimate,
            'breakdown': self.breakdown,
            'warnings': self.warnings,
            'can_run_on': self.can_run_on,
        }


def estimate_model_vram(model_type: str, precision: str, size_bytes: int) -> float:
    """GB one model needs once loaded. Unknown types are treated like checkpoints."""
    size_gb = (size_bytes or 0) / GB
    factors = VRAM_FACTORS.get(model_type, VRAM_FACTORS["checkpoint"])
    multiplier, fixed = factors.get(precision, factors["unknown"])
    return size_gb * multiplier + fixed


def estimate_workflow_vram(models: Iterable[ModelFootprint]) -> VRAMEstimate:
    base = BASE_OVERHEAD_GB
    breakdown: Dict[str, Dict] = {}
    warnings: List[str] = []
    primary_architecture = Architecture.UNKNOWN
    lora_count = 0
    controlnet_count = 0

    for model in models:
        vram = estimate_model_vram(model.model_type, model.precision, model.size_bytes)
        base += vram

        entry = breakdown.setdefault(model.model_type, {"count": 0, "vram": 0.0})
        entry["count"] += 1
        entry["vram"] += vram

        if model.model_type == "lora":
            lora_count += 1
        elif model.model_type == "controlnet":
            controlnet_count += 1
        elif model.model_type in ("checkpoint", "diffusion_model") and model.architecture:
            primary_architecture = model.architecture

    if lora_count > 3:
        warnings.append(f"{lora_count} LoRAs may cause instability or slow generation")
    if controlnet_count > 2:
        warnings.append(f"{controlnet_count} ControlNets will significantly increase VRAM usage")

    minimum = ARCHITECTURE_BASE_VRAM.get(primary_architecture, ARCHITECTURE_BASE_VRAM[Architecture.UNKNOWN])
    if base < minimum:
        # Sizes alone under-count small files of large architectures
        base = max(base, minimum * 0.8)

    with_overhead = base * GENERATION_OVERHEAD_FACTOR
    peak = with_overhead * PEAK_FACTOR

    can_run_on = {tier: peak <= limit for tier, limit in GPU_TIERS.items()}
    if not can_run_on["vram16gb"] and not can_run_on["vram24gb"]:
        warnings.append("This workflow may require a high-VRAM GPU (48GB+)")
    elif not can_run_on["vram16gb"]:
        warnings.append("This workflow may not fit on a 16GB GPU")

    return VRAMEstimate(
        base_vram=round(base, 1),
        with_overhead=round(with_overhead, 1),
        peak_estimate=round(peak, 1),
        breakdown=[
            {"type": t, "count": d["count"], "vram": round(d["vram"], 1)}
            for t, d in breakdown.items()
        ],
        warnings=warnings,
        can_run_on=can_run_on,
    )


def check_vram_fit(estimate: VRAMEstimate, available_gb: float) -> Dict:
    """Whether the estimate fits in the available VRAM with at least 1GB to spare."""
    margin = available_gb - estimate.peak_estimate
    fits = margin >= 1

    if not fits:
        if margin > -2:
            recommendation = "Consider using fp8 precision or removing some LoRAs"
        elif margin > -5:
            recommendation = "Consider using GGUF quantized models or a cloud GPU"
        else:
            recommendation = "This workflow requires significantly more VRAM - use cloud deployment"
    elif margin < 3:
        recommendation = "Should fit but may be tight - close other GPU applications"
    else:
        recommendation = "Good fit with comfortable margin"

    return {"fits": fits, "margin": round(margin, 1), "recommendation": recommendation}


def get_recommended_precision(target_vram_gb: float, architecture: str) -> str:
    minimum = ARCHITECTURE_BASE_VRAM.get(architecture, 8.0)
    if target_vram_gb >= minimum * 1.5:
        return "fp16"
    if target_vram_gb >= minimum:
        return "fp8"
    return "gguf"
