from inventory.config import Architecture
from inventory.vram import (
    ModelFootprint, check_vram_fit, estimate_model_vram, estimate_workflow_vram,
    get_recommended_precision,
)

GB = 1024 ** 3


def test_per_model_factors():
    assert estimate_model_vram("checkpoint", "fp16", 2 * GB) == 2 * 1.1
    assert estimate_model_vram("vae", "fp16", 300 * 1024 ** 2) == 0.5
    assert estimate_model_vram("checkpoint", "fp8", 10 * GB) == 6.0
    # Unknown type falls back to checkpoint factors, unknown precision to the type default
    assert estimate_model_vram("mystery", "int3", GB) == 1.1


def test_sdxl_workflow_estimate():
    estimate = estimate_workflow_vram([
        ModelFootprint("checkpoint", "fp16", int(6.5 * GB), Architecture.SDXL),
        ModelFootprint("vae", "fp16", int(0.3 * GB)),
        ModelFootprint("lora", "fp16", int(0.2 * GB)),
    ])
    # 1.5 + 7.15 + 0.5 + 0.03
    assert estimate.base_vram == 9.2
    assert estimate.with_overhead == 11.9
    assert estimate.peak_estimate == 14.3
    assert estimate.can_run_on == {"vram16gb": False, "vram24gb": True, "vram48gb": True, "vram80gb": True}
    assert estimate.warnings == ["This workflow may not fit on a 16GB GPU"]
    assert {entry["type"] for entry in estimate.breakdown} == {"checkpoint", "vae", "lora"}


def test_architecture_floor_for_small_files():
    estimate = estimate_workflow_vram([ModelFootprint("diffusion_model", "gguf", GB, Architecture.FLUX)])
    # 1.5 + 0.5 is below the Flux floor of 12, so base becomes 12 * 0.8
    assert estimate.base_vram == 9.6


def test_many_loras_and_controlnets_warn():
    models = [ModelFootprint("lora", "fp16", 100 * 1024 ** 2) for _ in range(4)]
    models += [ModelFootprint("controlnet", "fp16", GB) for _ in range(3)]
    warnings = estimate_workflow_vram(models).warnings
    assert "4 LoRAs may cause instability or slow generation" in warnings
    assert "3 ControlNets will significantly increase VRAM usage" in warnings


def test_huge_workflow_needs_big_gpu():
    estimate = estimate_workflow_vram([ModelFootprint("diffusion_model", "fp32", 24 * GB, Architecture.WAN)])
    assert not estimate.can_run_on["vram24gb"]
    assert "This workflow may require a high-VRAM GPU (48GB+)" in estimate.warnings


def test_empty_workflow_uses_unknown_floor():
    estimate = estimate_workflow_vram([])
    assert estimate.base_vram == 6.4


def test_check_vram_fit():
    estimate = estimate_workflow_vram([ModelFootprint("checkpoint", "fp16", 2 * GB, Architecture.SD15)])
    fit = check_vram_fit(estimate, 24)
    assert fit["fits"]
    assert fit["recommendation"] == "Good fit with comfortable margin"

    tight = check_vram_fit(estimate, estimate.peak_estimate + 2)
    assert tight["fits"]
    assert tight["recommendation"].startswith("Should fit")

    assert not check_vram_fit(estimate, 4)["fits"]


def test_recommended_precision():
    assert get_recommended_precision(24, Architecture.SDXL) == "fp16"
    assert get_recommended_precision(10, Architecture.SDXL) == "fp8"
    assert get_recommended_precision(8, Architecture.FLUX) == "gguf"
