"""
Comfy Inventory Database Package
================================

Database models, management, and utilities for the model and workflow inventory.

This package provides:
- SQLAlchemy models for the model catalog, workflows, tasks and downloads
- Database connection and session management
- Database initialization utilities
"""

from .models import (
    Base, ModelRecord, WorkflowRecord, WorkflowDependency, Task, TaskLog,
    DownloadQueueItem, ScanLog, AppSettings
)
from .database import (
    DatabaseManager, DEFAULT_SETTINGS,
    initialize_database, get_database_manager, close_database
)

__all__ = [
    # Models
    'Base', 'ModelRecord', 'WorkflowRecord', 'WorkflowDependency', 'Task', 'TaskLog',
    'DownloadQueueItem', 'ScanLog', 'AppSettings',

    # Database Management
    'DatabaseManager', 'DEFAULT_SETTINGS',
    'initialize_database', 'get_database_manager', 'close_database'
]
