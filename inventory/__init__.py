"""
Comfy Inventory
===============

Local inventory for a library of AI models and ComfyUI workflows.

This package provides:
- Model forensics and a catalog indexer for model directories
- Workflow parsing, dependency resolution and VRAM estimation
- A background task scheduler with resumable downloads
"""

from .config import InventorySettings
from .downloader import Downloader, DownloadResult
from .downloads import DownloadService
from .indexer import ModelIndexer, ScanResult
from .resolver import DependencyResolver, ResolutionSummary
from .scheduler import CancellationToken, TaskContext, TaskScheduler
from .workers import register_default_workers
from .workflow_parser import ParsedWorkflow, parse_workflow, parse_workflow_file
from .workflows import WorkflowScanner

__version__ = "0.1.0"

__all__ = [
    'InventorySettings',
    'ModelIndexer', 'ScanResult',
    'ParsedWorkflow', 'parse_workflow', 'parse_workflow_file', 'WorkflowScanner',
    'DependencyResolver', 'ResolutionSummary',
    'CancellationToken', 'TaskContext', 'TaskScheduler', 'register_default_workers',
    'Downloader', 'DownloadResult', 'DownloadService',
]
