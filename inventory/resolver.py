"""
Dependency Resolver
===================

Matches the model names a workflow references against the model catalog and
writes per-dependency resolution plus the workflow's summary counters and
VRAM estimate.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from database import DatabaseManager, ModelRecord, WorkflowRecord, WorkflowDependency
from .config import (
    InventorySettings, MODEL_EXTENSIONS, Architecture, DependencyStatus, WorkflowStatus
)
from .vram import ModelFootprint, VRAMEstimate, estimate_workflow_vram

logger = logging.getLogger(__name__)

# Types whose weights only work with one base architecture
ARCHITECTURE_BOUND_TYPES = ("lora", "controlnet", "ipadapter")
PRIMARY_TYPES = ("checkpoint", "diffusion_model")

# Architectures that share weights with another family
ARCHITECTURE_FAMILIES = {
    Architecture.PONY: Architecture.SDXL,
}


def architecture_family(architecture: Optional[str]) -> Optional[str]:
    if not architecture or architecture == Architecture.UNKNOWN:
        return None
    return ARCHITECTURE_FAMILIES.get(architecture, architecture)


def normalize_reference(model_name: str) -> str:
    """Lower-cased basename of a model reference ("SDXL\\foo.safetensors" -> "foo.safetensors")."""
    return model_name.replace("\\", "/").rsplit("/", 1)[-1].strip().lower()


def strip_model_extension(filename: str) -> str:
    lower = filename.lower()
    for ext in MODEL_EXTENSIONS:
        if lower.endswith(ext):
            return filename[:-len(ext)]
    return filename


def derive_source_urls(model_name: str,
                       known_sources: Optional[Dict[str, str]] = None) -> Tuple[Optional[str], Optional[str]]:
    """Work out (civitai_url, huggingface_url) for a missing model reference.

    The reference itself may be a URL or an ``hf://org/repo/path`` string;
    otherwise the ``model_sources`` setting can map a filename to a URL.
    """
    candidates = [model_name.strip()]
    if known_sources:
        basename = model_name.replace("\\", "/").rsplit("/", 1)[-1]
        for key in (model_name, basename, basename.lower()):
            if key in known_sources:
                candidates.append(known_sources[key])
                break

    civitai_url = None
    huggingface_url = None
    for candidate in candidates:
        if candidate.startswith("hf://"):
            parts = candidate[len("hf://"):].strip("/").split("/")
            if len(parts) >= 3 and huggingface_url is None:
                repo = "/".join(parts[:2])
                path = "/".join(parts[2:])
                huggingface_url = f"https://huggingface.co/{repo}/resolve/main/{path}"
            continue
        if not candidate.startswith(("http://", "https://")):
            continue
        host = urlparse(candidate).netloc.lower()
        if host.endswith("civitai.com") and civitai_url is None:
            civitai_url = candidate
        elif (host.endswith("huggingface.co") or host == "hf.co") and huggingface_url is None:
            huggingface_url = candidate
    return civitai_url, huggingface_url


@dataclass
class ResolutionSummary:
    workflow_id: str
    status: str
    total_dependencies: int = 0
    resolved_local: int = 0
    resolved_warehouse: int = 0
    missing_count: int = 0
    ambiguous_count: int = 0
    incompatible_count: int = 0
    total_size_bytes: int = 0
    vram: Optional[VRAMEstimate] = None
    dependencies: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'workflow_id': self.workflow_id,
            'status': self.status,
            'total_dependencies': self.total_dependencies,
            'resolved_local': self.resolved_local,
            'resolved_warehouse': self.resolved_warehouse,
            'missing_count': self.missing_count,
            'ambiguous_count': self.ambiguous_count,
            'incompatible_count': self.incompatible_count,
            'total_size_bytes': self.total_size_bytes,
            'vram': self.vram.to_dict() if self.vram else None,
            'dependencies': self.dependencies,
        }


class CatalogIndex:
    """In-memory lookup of catalog rows by lower-cased filename and stem."""

    def __init__(self, models: List[ModelRecord]):
        self.by_name: Dict[str, List[ModelRecord]] = defaultdict(list)
        self.by_stem: Dict[str, List[ModelRecord]] = defaultdict(list)
        for model in models:
            name = model.filename.lower()
            self.by_name[name].append(model)
            self.by_stem[strip_model_extension(name)].append(model)

    def candidates(self, model_type: str, model_name: str) -> List[ModelRecord]:
        """Best tier of matches: exact name and type, exact name of unknown type, then stem."""
        reference = normalize_reference(model_name)
        exact = self.by_name.get(reference, [])

        same_type = [m for m in exact if m.detected_type == model_type]
        if same_type:
            return same_type

        untyped = [m for m in exact if (m.detected_type or "unknown") == "unknown"]
        if untyped:
            return untyped

        stem = strip_model_extension(reference)
        return [
            m for m in self.by_stem.get(stem, [])
            if (m.detected_type or "unknown") in (model_type, "unknown")
        ]


def _content_key(model: ModelRecord) -> str:
    return model.full_hash or model.partial_hash or model.id


def _set_resolution(dep: WorkflowDependency, status: str, model: Optional[ModelRecord] = None):
    """Keep status and resolved_model_id consistent with each other."""
    if status in DependencyStatus.RESOLVED:
        if model is None:
            raise ValueError(f"{status} needs a resolved model")
        dep.resolved_model_id = model.id
    else:
        dep.resolved_model_id = None
    dep.status = status


class DependencyResolver:
    """Resolves workflow dependencies against the model catalog."""

    def __init__(self, db_manager: DatabaseManager, settings: Optional[InventorySettings] = None):
        self.db = db_manager
        self.settings = settings or InventorySettings()

    def _known_sources(self) -> Dict[str, str]:
        sources = self.db.get_setting("model_sources", {})
        return sources if isinstance(sources, dict) else {}

    def resolve_workflow(self, workflow_id: str) -> ResolutionSummary:
        """Resolve every dependency of one workflow and persist the outcome.

        Raises:
            ValueError: if the workflow does not exist
        """
        known_sources = self._known_sources()
        with self.db.get_session() as session:
            workflow = session.get(WorkflowRecord, workflow_id)
            if workflow is None:
                raise ValueError(f"Workflow not found: {workflow_id}")

            catalog = CatalogIndex(session.query(ModelRecord).all())
            summary = self._resolve(workflow, catalog, known_sources)
            session.commit()

        logger.info(
            f"🔗 Resolved {summary.total_dependencies} dependencies for {workflow_id}: "
            f"{summary.resolved_local} local, {summary.resolved_warehouse} warehouse, "
            f"{summary.missing_count} missing -> {summary.status}"
        )
        return summary

    def resolve_all(self, token=None,
                    progress: Optional[Callable[[int, int], None]] = None) -> Dict[str, Any]:
        """Resolve every workflow. One failing workflow does not stop the batch."""
        with self.db.get_session() as session:
            workflow_ids = [row.id for row in session.query(WorkflowRecord.id).order_by(WorkflowRecord.filename)]

        stats = {'resolved': 0, 'errors': 0, 'by_status': {}, 'aborted': False}
        for i, workflow_id in enumerate(workflow_ids):
            if token is not None and token.cancelled:
                stats['aborted'] = True
                break
            try:
                summary = self.resolve_workflow(workflow_id)
                stats['resolved'] += 1
                stats['by_status'][summary.status] = stats['by_status'].get(summary.status, 0) + 1
            except Exception as e:
                stats['errors'] += 1
                logger.error(f"❌ Error resolving workflow {workflow_id}: {e}")
            if progress:
                progress(i + 1, len(workflow_ids))
        return stats

    def _resolve(self, workflow: WorkflowRecord, catalog: CatalogIndex,
                 known_sources: Dict[str, str]) -> ResolutionSummary:
        matched: Dict[int, ModelRecord] = {}

        for dep in workflow.dependencies:
            dep.compatibility_issue = None
            dep.civitai_url = None
            dep.huggingface_url = None

            candidates = catalog.candidates(dep.model_type, dep.model_name)
            if not candidates:
                _set_resolution(dep, DependencyStatus.MISSING)
                dep.civitai_url, dep.huggingface_url = derive_source_urls(dep.model_name, known_sources)
                continue

            local = [m for m in candidates if m.location == "local"]
            pool = local or candidates
            if len({_content_key(m) for m in pool}) > 1:
                _set_resolution(dep, DependencyStatus.AMBIGUOUS)
                dep.compatibility_issue = "Multiple catalog entries match: " + ", ".join(
                    sorted(m.filepath for m in pool))
                continue

            model = pool[0]
            status = (DependencyStatus.RESOLVED_LOCAL if model.location == "local"
                      else DependencyStatus.RESOLVED_WAREHOUSE)
            _set_resolution(dep, status, model)
            matched[id(dep)] = model

        expected = None
        for dep in workflow.dependencies:
            model = matched.get(id(dep))
            if model is not None and dep.model_type in PRIMARY_TYPES:
                expected = architecture_family(model.detected_architecture)
                if expected:
                    break

        for dep in workflow.dependencies:
            dep.expected_architecture = expected
            model = matched.get(id(dep))
            if expected is None or model is None or dep.model_type not in ARCHITECTURE_BOUND_TYPES:
                continue
            family = architecture_family(model.detected_architecture)
            if family and family != expected:
                _set_resolution(dep, DependencyStatus.INCOMPATIBLE)
                dep.compatibility_issue = (
                    f"{model.filename} is {model.detected_architecture} "
                    f"but the workflow's base model is {expected}"
                )
                del matched[id(dep)]

        return self._summarize(workflow, matched)

    def _summarize(self, workflow: WorkflowRecord, matched: Dict[int, ModelRecord]) -> ResolutionSummary:
        counts = defaultdict(int)
        for dep in workflow.dependencies:
            counts[dep.status] += 1

        resolved_models = {}
        footprints = []
        for dep in workflow.dependencies:
            model = matched.get(id(dep))
            if model is None:
                continue
            resolved_models[model.id] = model
            footprints.append(ModelFootprint(
                model_type=dep.model_type,
                precision=model.detected_precision or "unknown",
                size_bytes=model.file_size or 0,
                architecture=model.detected_architecture,
            ))

        problems = (counts[DependencyStatus.MISSING] + counts[DependencyStatus.AMBIGUOUS]
                    + counts[DependencyStatus.INCOMPATIBLE] + counts[DependencyStatus.UNRESOLVED])
        if workflow.status == WorkflowStatus.ERROR:
            status = WorkflowStatus.ERROR
        elif problems:
            status = WorkflowStatus.MISSING_ITEMS
        elif counts[DependencyStatus.RESOLVED_WAREHOUSE]:
            status = WorkflowStatus.READY_CLOUD
        else:
            status = WorkflowStatus.READY_LOCAL

        estimate = estimate_workflow_vram(footprints)
        total_size = sum(m.file_size or 0 for m in resolved_models.values())

        workflow.status = status
        workflow.total_dependencies = len(workflow.dependencies)
        workflow.resolved_local = counts[DependencyStatus.RESOLVED_LOCAL]
        workflow.resolved_warehouse = counts[DependencyStatus.RESOLVED_WAREHOUSE]
        workflow.missing_count = counts[DependencyStatus.MISSING]
        workflow.ambiguous_count = counts[DependencyStatus.AMBIGUOUS]
        workflow.incompatible_count = counts[DependencyStatus.INCOMPATIBLE]
        workflow.total_size_bytes = total_size
        workflow.estimated_vram_gb = estimate.peak_estimate
        workflow.vram_warnings = estimate.warnings

        return ResolutionSummary(
            workflow_id=workflow.id,
            status=status,
            total_dependencies=workflow.total_dependencies,
            resolved_local=workflow.resolved_local,
            resolved_warehouse=workflow.resolved_warehouse,
            missing_count=workflow.missing_count,
            ambiguous_count=workflow.ambiguous_count,
            incompatible_count=workflow.incompatible_count,
            total_size_bytes=total_size,
            vram=estimate,
            dependencies=[dep.to_dict() for dep in workflow.dependencies],
        )
