"""
Comfy Inventory Database Schema
===============================

SQLAlchemy models for the model catalog, workflow dependencies, background
tasks and the download queue.
"""

from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, Boolean,
    ForeignKey, Index, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime
import uuid

Base = declarative_base()


def _iso(value):
    return value.isoformat() if value else None


class ModelRecord(Base):
    """One model file on disk with its forensic metadata."""
    __tablename__ = "models"
    __table_args__ = (
        UniqueConstraint('location', 'filepath', name='uq_models_location_path'),
    )

    # Identity is the content hash when one is known
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    filename = Column(String, nullable=False, index=True)
    filepath = Column(String, nullable=False)
    location = Column(String, nullable=False, index=True)  # "local", "warehouse"

    # Forensics
    detected_type = Column(String, index=True)  # checkpoint, lora, vae, controlnet, clip, ...
    detected_architecture = Column(String, index=True)  # SD15, SDXL, Flux, SD3, Pony, unknown
    detected_precision = Column(String)  # fp16, fp32, fp8, bf16, gguf
    detection_confidence = Column(String)  # high, medium, low
    file_size = Column(Integer, nullable=False, default=0)

    # Integrity
    hash_status = Column(String, default="pending", index=True)  # pending, valid, corrupt, incomplete
    partial_hash = Column(String, index=True)
    full_hash = Column(String)
    expected_hash = Column(String)  # From .cm-info.json or CivitAI
    validation_message = Column(Text)

    # CivitAI identity
    civitai_model_id = Column(Integer, index=True)
    civitai_version_id = Column(Integer)
    civitai_name = Column(String)
    civitai_base_model = Column(String)
    civitai_download_url = Column(String)

    # Embedded safetensors metadata
    embedded_metadata = Column(JSON)
    trigger_words = Column(JSON)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_verified_at = Column(DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'filename': self.filename,
            'filepath': self.filepath,
            'location': self.location,
            'detected_type': self.detected_type,
            'detected_architecture': self.detected_architecture,
            'detected_precision': self.detected_precision,
            'detection_confidence': self.detection_confidence,
            'file_size': self.file_size,
            'hash_status': self.hash_status,
            'partial_hash': self.partial_hash,
            'full_hash': self.full_hash,
            'expected_hash': self.expected_hash,
            'validation_message': self.validation_message,
            'civitai_model_id': self.civitai_model_id,
            'civitai_version_id': self.civitai_version_id,
            'civitai_name': self.civitai_name,
            'civitai_base_model': self.civitai_base_model,
            'civitai_download_url': self.civitai_download_url,
            'embedded_metadata': self.embedded_metadata or {},
            'trigger_words': self.trigger_words or [],
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'last_verified_at': _iso(self.last_verified_at),
        }


class WorkflowRecord(Base):
    """A workflow JSON file with its dependency summary and extracted metadata."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    filename = Column(String, nullable=False, index=True)
    filepath = Column(String, unique=True, nullable=False)
    name = Column(String)

    # new, scanned-missing-items, scanned-error, scanned-ready-local, scanned-ready-cloud
    status = Column(String, default="new", index=True)

    # Dependency summary
    total_dependencies = Column(Integer, default=0)
    resolved_local = Column(Integer, default=0)
    resolved_warehouse = Column(Integer, default=0)
    missing_count = Column(Integer, default=0)
    ambiguous_count = Column(Integer, default=0)
    incompatible_count = Column(Integer, default=0)

    # Size and VRAM estimation
    total_size_bytes = Column(Integer, default=0)
    estimated_vram_gb = Column(Float)
    vram_warnings = Column(JSON)

    raw_json = Column(Text)

    # Extracted metadata
    description = Column(Text)
    author = Column(String)
    version = Column(String)
    tags = Column(JSON)

    steps = Column(Integer)
    cfg = Column(Float)
    sampler = Column(String)
    scheduler = Column(String)
    denoise = Column(Float)
    width = Column(Integer)
    height = Column(Integer)
    batch_size = Column(Integer)

    has_upscaler = Column(Boolean, default=False)
    has_face_detailer = Column(Boolean, default=False)
    has_controlnet = Column(Boolean, default=False)
    has_ipadapter = Column(Boolean, default=False)
    has_lora = Column(Boolean, default=False)

    node_count = Column(Integer, default=0)
    connection_count = Column(Integer, default=0)
    diagnostics = Column(JSON)  # Unmapped loader node types, parse errors

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    scanned_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    file_modified_at = Column(DateTime)  # Actual file modification time

    dependencies = relationship(
        "WorkflowDependency", back_populates="workflow",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="WorkflowDependency.id"
    )

    def to_dict(self, include_dependencies: bool = False):
        data = {
            'id': self.id,
            'filename': self.filename,
            'filepath': self.filepath,
            'name': self.name,
            'status': self.status,
            'total_dependencies': self.total_dependencies,
            'resolved_local': self.resolved_local,
            'resolved_warehouse': self.resolved_warehouse,
            'missing_count': self.missing_count,
            'ambiguous_count': self.ambiguous_count,
            'incompatible_count': self.incompatible_count,
            'total_size_bytes': self.total_size_bytes,
            'estimated_vram_gb': self.estimated_vram_gb,
            'vram_warnings': self.vram_warnings or [],
            'description': self.description,
            'author': self.author,
            'version': self.version,
            'tags': self.tags or [],
            'steps': self.steps,
            'cfg': self.cfg,
            'sampler': self.sampler,
            'scheduler': self.scheduler,
            'denoise': self.denoise,
            'width': self.width,
            'height': self.height,
            'batch_size': self.batch_size,
            'has_upscaler': self.has_upscaler,
            'has_face_detailer': self.has_face_detailer,
            'has_controlnet': self.has_controlnet,
            'has_ipadapter': self.has_ipadapter,
            'has_lora': self.has_lora,
            'node_count': self.node_count,
            'connection_count': self.connection_count,
            'diagnostics': self.diagnostics or [],
            'created_at': _iso(self.created_at),
            'scanned_at': _iso(self.scanned_at),
            'updated_at': _iso(self.updated_at),
        }
        if include_dependencies:
            data['dependencies'] = [dep.to_dict() for dep in self.dependencies]
        return data


class WorkflowDependency(Base):
    """A model referenced by a workflow node and how it resolved."""
    __tablename__ = "workflow_dependencies"
    __table_args__ = (
        CheckConstraint(
            "(status IN ('resolved-local', 'resolved-warehouse')) = (resolved_model_id IS NOT NULL)",
            name='ck_dependency_resolution'
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id = Column(String, ForeignKey('workflows.id', ondelete='CASCADE'), nullable=False, index=True)

    # Node info from the workflow JSON
    node_id = Column(String)
    node_type = Column(String, nullable=False)

    # Model reference as written in the workflow
    model_type = Column(String, nullable=False)
    model_name = Column(String, nullable=False)

    # unresolved, resolved-local, resolved-warehouse, missing, ambiguous, incompatible
    status = Column(String, default="unresolved", nullable=False, index=True)
    resolved_model_id = Column(String, ForeignKey('models.id', ondelete='SET NULL'))

    # For missing models
    civitai_url = Column(String)
    huggingface_url = Column(String)
    estimated_size = Column(Integer)

    # Compatibility
    expected_architecture = Column(String)
    compatibility_issue = Column(Text)

    workflow = relationship("WorkflowRecord", back_populates="dependencies")
    resolved_model = relationship("ModelRecord")

    def to_dict(self):
        return {
            'id': self.id,
            'workflow_id': self.workflow_id,
            'node_id': self.node_id,
            'node_type': self.node_type,
            'model_type': self.model_type,
            'model_name': self.model_name,
            'status': self.status,
            'resolved_model_id': self.resolved_model_id,
            'civitai_url': self.civitai_url,
            'huggingface_url': self.huggingface_url,
            'estimated_size': self.estimated_size,
            'expected_architecture': self.expected_architecture,
            'compatibility_issue': self.compatibility_issue,
        }


class Task(Base):
    """A long-running background operation tracked by the scheduler."""
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    task_type = Column(String, nullable=False, index=True)  # download, model_scan, workflow_scan, ...
    related_id = Column(String)
    name = Column(String, nullable=False)
    description = Column(Text)

    # pending, running, paused, completed, failed, cancelled
    status = Column(String, nullable=False, default="pending", index=True)
    priority = Column(Integer, default=0)

    # Progress
    progress = Column(Integer, default=0)  # 0-100
    current_bytes = Column(Integer, default=0)
    total_bytes = Column(Integer, default=0)
    current_items = Column(Integer, default=0)
    total_items = Column(Integer, default=0)
    speed = Column(Integer, default=0)  # bytes per second
    eta = Column(Integer)  # seconds

    error_message = Column(Text)
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=3)

    cancellable = Column(Boolean, default=True)
    pausable = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    started_at = Column(DateTime)
    paused_at = Column(DateTime)
    completed_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    logs = relationship(
        "TaskLog", back_populates="task",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="TaskLog.id"
    )

    def to_dict(self):
        return {
            'id': self.id,
            'task_type': self.task_type,
            'related_id': self.related_id,
            'name': self.name,
            'description': self.description,
            'status': self.status,
            'priority': self.priority,
            'progress': self.progress,
            'current_bytes': self.current_bytes,
            'total_bytes': self.total_bytes,
            'current_items': self.current_items,
            'total_items': self.total_items,
            'speed': self.speed,
            'eta': self.eta,
            'error_message': self.error_message,
            'retry_count': self.retry_count,
            'max_retries': self.max_retries,
            'cancellable': bool(self.cancellable),
            'pausable': bool(self.pausable),
            'created_at': _iso(self.created_at),
            'started_at': _iso(self.started_at),
            'paused_at': _iso(self.paused_at),
            'completed_at': _iso(self.completed_at),
            'updated_at': _iso(self.updated_at),
        }


class TaskLog(Base):
    """Append-only progress events for a task."""
    __tablename__ = "task_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(String, ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False, index=True)
    timestamp = Column(DateTime, default=datetime.utcnow)
    level = Column(String, nullable=False)  # debug, info, warning, error
    message = Column(Text, nullable=False)
    log_metadata = Column('metadata', JSON)

    task = relationship("Task", back_populates="logs")

    def to_dict(self):
        return {
            'id': self.id,
            'task_id': self.task_id,
            'timestamp': _iso(self.timestamp),
            'level': self.level,
            'message': self.message,
            'metadata': self.log_metadata or {},
        }


class DownloadQueueItem(Base):
    """A model download waiting for, or handled by, a download task."""
    __tablename__ = "download_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(String, ForeignKey('tasks.id', ondelete='SET NULL'))
    workflow_id = Column(String, ForeignKey('workflows.id', ondelete='SET NULL'))
    dependency_id = Column(Integer, ForeignKey('workflow_dependencies.id', ondelete='SET NULL'))

    model_name = Column(String, nullable=False)
    model_type = Column(String, nullable=False)
    source = Column(String, nullable=False)  # civitai, huggingface, direct
    url = Column(String, nullable=False)
    destination_path = Column(String, nullable=False)

    expected_size = Column(Integer)
    expected_hash = Column(String)

    # queued, downloading, validating, complete, failed, cancelled
    status = Column(String, default="queued", index=True)
    progress = Column(Integer, default=0)
    downloaded_bytes = Column(Integer, default=0)
    error_message = Column(Text)

    resume_token = Column(String)
    temp_file_path = Column(String)

    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'task_id': self.task_id,
            'workflow_id': self.workflow_id,
            'dependency_id': self.dependency_id,
            'model_name': self.model_name,
            'model_type': self.model_type,
            'source': self.source,
            'url': self.url,
            'destination_path': self.destination_path,
            'expected_size': self.expected_size,
            'expected_hash': self.expected_hash,
            'status': self.status,
            'progress': self.progress,
            'downloaded_bytes': self.downloaded_bytes,
            'error_message': self.error_message,
            'temp_file_path': self.temp_file_path,
            'created_at': _iso(self.created_at),
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
        }


class ScanLog(Base):
    """One completed directory scan."""
    __tablename__ = "scan_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    path = Column(String, nullable=False)
    location = Column(String)
    file_count = Column(Integer)
    total_size = Column(Integer)
    scanned_at = Column(DateTime, default=datetime.utcnow, index=True)


class AppSettings(Base):
    """Application configuration and user preferences."""
    __tablename__ = "app_settings"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    key = Column(String, unique=True, index=True)
    value = Column(JSON)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Indices for performance
Index('idx_models_location_type', ModelRecord.location, ModelRecord.detected_type)
Index('idx_tasks_status_priority', Task.status, Task.priority, Task.created_at)
