"""
Workflow Graph Parser
=====================

Static extraction from ComfyUI workflow JSON:
- Model references from loader nodes, driven by a declarative node schema
- Sampler settings, latent resolution and `extra` metadata
- Feature flags and complexity counters

Both the UI format ({"nodes": [...], "links": [...]}) and the API format
({"<id>": {"class_type": ..., "inputs": {...}}}) are understood.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .config import MODEL_TYPES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WidgetField:
    name: str
    kind: type  # str, int, float or bool


@dataclass(frozen=True)
class NodeSchema:
    """Widget layout of one node type and which of its fields name model files.

    ``widgets`` lists the node's ``widgets_values`` in order. A model field
    missing from ``widgets`` is only ever read from ``inputs``.
    """
    node_type: str
    widgets: Tuple[WidgetField, ...] = ()
    model_type: Optional[str] = None
    model_fields: Tuple[str, ...] = ()

    def widget_index(self, name: str) -> Optional[int]:
        for i, widget in enumerate(self.widgets):
            if widget.name == name:
                return i
        return None

    def widget_kind(self, name: str) -> Optional[type]:
        for widget in self.widgets:
            if widget.name == name:
                return widget.kind
        return None


def _w(*fields: Tuple[str, type]) -> Tuple[WidgetField, ...]:
    return tuple(WidgetField(name, kind) for name, kind in fields)


LOADER_SCHEMAS = (
    NodeSchema("CheckpointLoaderSimple", _w(("ckpt_name", str)), "checkpoint", ("ckpt_name",)),
    # ComfyUI's CheckpointLoader lists config_name before ckpt_name
    NodeSchema("CheckpointLoader", _w(("config_name", str), ("ckpt_name", str)), "checkpoint", ("ckpt_name",)),
    NodeSchema("UNETLoader", _w(("unet_name", str), ("weight_dtype", str)), "diffusion_model", ("unet_name",)),
    NodeSchema("LoraLoader", _w(("lora_name", str), ("strength_model", float), ("strength_clip", float)),
               "lora", ("lora_name",)),
    NodeSchema("LoraLoaderModelOnly", _w(("lora_name", str), ("strength_model", float)), "lora", ("lora_name",)),
    NodeSchema("VAELoader", _w(("vae_name", str)), "vae", ("vae_name",)),
    NodeSchema("ControlNetLoader", _w(("control_net_name", str)), "controlnet", ("control_net_name",)),
    NodeSchema("DiffControlNetLoader", _w(("control_net_name", str)), "controlnet", ("control_net_name",)),
    NodeSchema("ControlNetApply", _w(("strength", float)), "controlnet", ("control_net_name",)),
    NodeSchema("CLIPLoader", _w(("clip_name", str), ("type", str)), "clip", ("clip_name",)),
    NodeSchema("DualCLIPLoader", _w(("clip_name1", str), ("clip_name2", str), ("type", str)),
               "clip", ("clip_name1", "clip_name2")),
    NodeSchema("TripleCLIPLoader", _w(("clip_name1", str), ("clip_name2", str), ("clip_name3", str)),
               "clip", ("clip_name1", "clip_name2", "clip_name3")),
    NodeSchema("CLIPVisionLoader", _w(("clip_name", str)), "clip_vision", ("clip_name",)),
    NodeSchema("UpscaleModelLoader", _w(("model_name", str)), "upscaler", ("model_name",)),
    NodeSchema("IPAdapterModelLoader", _w(("ipadapter_file", str)), "ipadapter", ("ipadapter_file",)),
    NodeSchema("DownloadAndLoadWanModel", _w(("model", str), ("base_precision", str), ("quantization", str)),
               "diffusion_model", ("model",)),
    NodeSchema("EmbeddingLoader", _w(("embedding_name", str)), "embedding", ("embedding_name",)),
)

SAMPLER_SCHEMAS = (
    NodeSchema("KSampler", _w(
        ("seed", int), ("control_after_generate", str), ("steps", int), ("cfg", float),
        ("sampler_name", str), ("scheduler", str), ("denoise", float))),
    NodeSchema("KSamplerAdvanced", _w(
        ("add_noise", str), ("noise_seed", int), ("control_after_generate", str), ("steps", int),
        ("cfg", float), ("sampler_name", str), ("scheduler", str), ("start_at_step", int),
        ("end_at_step", int), ("return_with_leftover_noise", str))),
)

LATENT_SCHEMAS = (
    NodeSchema("EmptyLatentImage", _w(("width", int), ("height", int), ("batch_size", int))),
    NodeSchema("EmptySD3LatentImage", _w(("width", int), ("height", int), ("batch_size", int))),
)

FEATURE_FLAGS = (
    ("has_upscaler", ("Upscale",)),
    ("has_face_detailer", ("FaceDetailer", "FaceRestore")),
    ("has_controlnet", ("ControlNet",)),
    ("has_ipadapter", ("IPAdapter",)),
    ("has_lora", ("Lora", "LoRA")),
)


def validate_schemas(schemas) -> Dict[str, NodeSchema]:
    """Check a schema table and index it by node type.

    Raises:
        ValueError: on duplicate node types or widget names, unknown model
            types, unsupported widget kinds, or model fields without a model type
    """
    table: Dict[str, NodeSchema] = {}
    for schema in schemas:
        if schema.node_type in table:
            raise ValueError(f"Duplicate node schema: {schema.node_type}")
        names = [w.name for w in schema.widgets]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate widget name in {schema.node_type}")
        for widget in schema.widgets:
            if widget.kind not in (str, int, float, bool):
                raise ValueError(f"Unsupported widget kind {widget.kind!r} in {schema.node_type}")
        if schema.model_fields:
            if schema.model_type not in MODEL_TYPES:
                raise ValueError(f"Unknown model type {schema.model_type!r} in {schema.node_type}")
            for name in schema.model_fields:
                kind = schema.widget_kind(name)
                if kind is not None and kind is not str:
                    raise ValueError(f"Model field {name} of {schema.node_type} must be a string widget")
        elif schema.model_type is not None:
            raise ValueError(f"{schema.node_type} declares a model type but no model fields")
        table[schema.node_type] = schema
    return table


NODE_SCHEMAS = validate_schemas(LOADER_SCHEMAS + SAMPLER_SCHEMAS + LATENT_SCHEMAS)


@dataclass
class ExtractedDependency:
    node_id: Optional[str]
    node_type: str
    model_type: str
    model_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'node_id': self.node_id,
            'node_type': self.node_type,
            'model_type': self.model_type,
            'model_name': self.model_name,
        }


@dataclass
class ParsedWorkflow:
    workflow: Dict[str, Any]
    dependencies: List[ExtractedDependency] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)


def normalize_nodes(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Return UI-style node dicts for either workflow format."""
    nodes = data.get("nodes")
    if isinstance(nodes, list):
        return [n for n in nodes if isinstance(n, dict)]

    # API format: node ids as keys with class_type and inputs
    normalized = []
    for node_id, node in data.items():
        if isinstance(node, dict) and "class_type" in node:
            normalized.append({
                "id": node_id,
                "type": node.get("class_type"),
                "inputs": node.get("inputs") or {},
            })
    return normalized


def read_field(node: Dict[str, Any], schema: NodeSchema, name: str) -> Any:
    """Value of a schema field: the positional widget first, then the named input."""
    kind = schema.widget_kind(name)
    widgets = node.get("widgets_values")
    value = None

    if isinstance(widgets, list):
        index = schema.widget_index(name)
        if index is not None and index < len(widgets):
            value = widgets[index]
    elif isinstance(widgets, dict):
        value = widgets.get(name)

    if value is None:
        inputs = node.get("inputs")
        if isinstance(inputs, dict):
            candidate = inputs.get(name)
            # [node_id, slot] pairs are links, not values
            if not isinstance(candidate, list):
                value = candidate

    return _coerce(value, kind)


def _coerce(value: Any, kind: Optional[type]) -> Any:
    if value is None or kind is None:
        return value
    if kind is str:
        return value if isinstance(value, str) else None
    if isinstance(value, bool):
        return value if kind is bool else None
    if kind is int:
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return None
    if kind is float:
        return float(value) if isinstance(value, (int, float)) else None
    return None


def extract_dependencies(nodes: List[Dict[str, Any]]) -> Tuple[List[ExtractedDependency], List[str]]:
    """Model references of every known loader node, deduplicated by (model type, name).

    Returns the dependencies and diagnostics for loader-like node types that
    have no schema.
    """
    dependencies: List[ExtractedDependency] = []
    seen = set()
    unmapped = []

    for node in nodes:
        node_type = node.get("type")
        if not isinstance(node_type, str):
            continue
        schema = NODE_SCHEMAS.get(node_type)
        if schema is None or not schema.model_fields:
            if schema is None and "Loader" in node_type and node_type not in unmapped:
                unmapped.append(node_type)
            continue

        node_id = node.get("id")
        for name in schema.model_fields:
            value = read_field(node, schema, name)
            if not isinstance(value, str) or not value.strip():
                continue
            model_name = value.strip()
            key = (schema.model_type, model_name)
            if key in seen:
                continue
            seen.add(key)
            dependencies.append(ExtractedDependency(
                node_id=str(node_id) if node_id is not None else None,
                node_type=node_type,
                model_type=schema.model_type,
                model_name=model_name,
            ))

    diagnostics = [f"unmapped node type: {node_type}" for node_type in unmapped]
    return dependencies, diagnostics


def extract_sampler_settings(nodes: List[Dict[str, Any]]) -> Dict[str, Any]:
    for node in nodes:
        schema = NODE_SCHEMAS.get(node.get("type"))
        if schema is None or schema not in SAMPLER_SCHEMAS:
            continue
        settings = {
            "steps": read_field(node, schema, "steps"),
            "cfg": read_field(node, schema, "cfg"),
            "sampler": read_field(node, schema, "sampler_name"),
            "scheduler": read_field(node, schema, "scheduler"),
        }
        if schema.widget_kind("denoise") is not None:
            settings["denoise"] = read_field(node, schema, "denoise")
        return {k: v for k, v in settings.items() if v is not None}
    return {}


def extract_resolution(nodes: List[Dict[str, Any]]) -> Dict[str, Any]:
    for node in nodes:
        schema = NODE_SCHEMAS.get(node.get("type"))
        if schema is None or schema not in LATENT_SCHEMAS:
            continue
        resolution = {
            "width": read_field(node, schema, "width"),
            "height": read_field(node, schema, "height"),
            "batch_size": read_field(node, schema, "batch_size"),
        }
        return {k: v for k, v in resolution.items() if v is not None}
    return {}


def extract_extra_metadata(data: Dict[str, Any]) -> Dict[str, Any]:
    """description/author/version/tags from the workflow's `extra` block."""
    extra = data.get("extra")
    if not isinstance(extra, dict):
        return {}

    def first_string(*keys):
        for key in keys:
            value = extra.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None

    metadata = {
        "description": first_string("description", "desc"),
        "author": first_string("author", "creator"),
        "version": first_string("version"),
    }
    tags = extra.get("tags")
    if isinstance(tags, list):
        metadata["tags"] = [t for t in tags if isinstance(t, str)]
    return {k: v for k, v in metadata.items() if v is not None}


def detect_features(nodes: List[Dict[str, Any]]) -> Dict[str, bool]:
    node_types = [n.get("type") for n in nodes if isinstance(n.get("type"), str)]
    return {
        flag: any(needle in node_type for node_type in node_types for needle in needles)
        for flag, needles in FEATURE_FLAGS
    }


def count_links(data: Dict[str, Any], nodes: List[Dict[str, Any]]) -> int:
    links = data.get("links")
    if isinstance(links, list):
        return len(links)
    if isinstance(data.get("last_link_id"), int):
        return data["last_link_id"]
    # API format: count inputs wired to another node
    connection_count = 0
    for node in nodes:
        inputs = node.get("inputs")
        if isinstance(inputs, dict):
            connection_count += sum(
                1 for value in inputs.values() if isinstance(value, list) and len(value) == 2
            )
    return connection_count


def display_name(filename: str) -> str:
    stem = filename[:-5] if filename.lower().endswith(".json") else filename
    return stem.replace("-", " ").replace("_", " ").strip()


def parse_workflow(data: Dict[str, Any], filename: str = "workflow.json") -> ParsedWorkflow:
    """Extract dependencies and metadata from an already loaded workflow document."""
    nodes = normalize_nodes(data)
    dependencies, diagnostics = extract_dependencies(nodes)

    workflow: Dict[str, Any] = {
        "name": display_name(filename),
        "node_count": len(nodes),
        "connection_count": count_links(data, nodes),
    }

    # Every secondary extraction is best-effort on its own
    for extractor in (extract_sampler_settings, extract_resolution, detect_features):
        try:
            workflow.update(extractor(nodes))
        except (TypeError, ValueError, AttributeError) as e:
            diagnostics.append(f"{extractor.__name__} failed: {e}")
    try:
        workflow.update(extract_extra_metadata(data))
    except (TypeError, ValueError, AttributeError) as e:
        diagnostics.append(f"extract_extra_metadata failed: {e}")

    if not nodes:
        diagnostics.append("no nodes found")
    for message in diagnostics:
        logger.debug(f"🔎 {filename}: {message}")

    return ParsedWorkflow(workflow=workflow, dependencies=dependencies, diagnostics=diagnostics)


def load_workflow_json(filepath: Path) -> Optional[Tuple[Dict[str, Any], str]]:
    """Read a workflow file. Returns (document, raw text) or None if unreadable."""
    try:
        with open(filepath, "r", encoding="utf-8") as f:
            raw = f.read()
        data = json.loads(raw)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"⚠️ Could not parse workflow {filepath}: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"⚠️ Workflow {filepath} is not a JSON object")
        return None
    return data, raw


def parse_workflow_file(filepath: Path) -> Optional[ParsedWorkflow]:
    """Parse a workflow file, or return None for a missing or malformed file."""
    filepath = Path(filepath)
    loaded = load_workflow_json(filepath)
    if loaded is None:
        return None
    data, raw = loaded
    parsed = parse_workflow(data, filepath.name)
    parsed.workflow["raw_json"] = raw
    return parsed
