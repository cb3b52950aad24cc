#!/usr/bin/env python3
"""
Comfy Inventory command line interface.

Scans model and workflow libraries, resolves workflow dependencies, runs
downloads through the task scheduler and reports on the inventory.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from database import (
    DatabaseManager, ModelRecord, WorkflowRecord, initialize_database, close_database
)
from database.init_database import initialize_fresh_database
from .config import InventorySettings, DependencyStatus, TaskStatus, MODEL_TYPES, VALIDATION_LEVELS
from .exceptions import InventoryError
from .indexer import ModelIndexer, hold_scope
from .downloads import DownloadService
from .resolver import DependencyResolver
from .scheduler import TaskScheduler
from .utils import format_bytes, format_eta, format_speed
from .vram import GPU_TIERS, ModelFootprint, check_vram_fit, estimate_workflow_vram
from .workers import build_workers, register_default_workers
from .workflows import WorkflowScanner

logger = logging.getLogger(__name__)

STATUS_ICONS = {
    DependencyStatus.RESOLVED_LOCAL: "✅",
    DependencyStatus.RESOLVED_WAREHOUSE: "☁️",
    DependencyStatus.MISSING: "❌",
    DependencyStatus.AMBIGUOUS: "❓",
    DependencyStatus.INCOMPATIBLE: "⚠️",
    DependencyStatus.UNRESOLVED: "⏳",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="comfy-inventory",
        description="Comfy Inventory - model and workflow library manager",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create the database
  comfy-inventory init

  # Index the local model library with full hashing
  comfy-inventory --models-root ~/StabilityMatrix/Models scan-models --level full

  # Scan workflows and resolve their dependencies
  comfy-inventory --workflows ./workflows scan-workflows

  # Show what a workflow still needs
  comfy-inventory resolve --workflow 3f2a...

  # Download a missing dependency
  comfy-inventory download --dependency 42

  # Estimate VRAM for a workflow against a 24GB card
  comfy-inventory vram 3f2a... --gpu-gb 24
        """
    )

    parser.add_argument('--database', '--db',
                        help='Database URL (default: sqlite:///data/inventory.db)')
    parser.add_argument('--models-root', type=Path,
                        help='Local models directory (env: INVENTORY_MODELS_ROOT)')
    parser.add_argument('--warehouse-root', type=Path,
                        help='Warehouse models directory (env: INVENTORY_WAREHOUSE_ROOT)')
    parser.add_argument('--workflows', type=Path, action='append',
                        help='Workflow directory, may be repeated (env: INVENTORY_WORKFLOW_ROOTS)')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Show info-level log messages')

    subparsers = parser.add_subparsers(dest='command', required=True)

    init = subparsers.add_parser('init', help='Create the database tables')
    init.add_argument('--force', action='store_true', help='Delete and recreate an existing database')

    scan_models = subparsers.add_parser('scan-models', help='Index model files')
    scan_models.add_argument('--location', choices=['local', 'warehouse', 'all'], default='all')
    scan_models.add_argument('--level', choices=VALIDATION_LEVELS,
                             help='Validation level (default: standard)')
    scan_models.add_argument('--force', action='store_true',
                             help='Re-analyze files whose size did not change')

    scan_workflows = subparsers.add_parser('scan-workflows', help='Scan workflow JSON files')
    scan_workflows.add_argument('--force', action='store_true',
                                help='Re-parse files whose modification time did not change')
    scan_workflows.add_argument('--no-resolve', action='store_true',
                                help='Skip dependency resolution')

    resolve = subparsers.add_parser('resolve', help='Resolve workflow dependencies')
    resolve.add_argument('--workflow', help='Workflow id (default: all workflows)')

    download = subparsers.add_parser('download', help='Download a model through the task scheduler')
    source = download.add_mutually_exclusive_group(required=True)
    source.add_argument('--dependency', type=int, help='Id of a missing workflow dependency')
    source.add_argument('--url', help='Direct download URL')
    download.add_argument('--filename', help='File name to save as (default: from the URL)')
    download.add_argument('--type', choices=MODEL_TYPES, default='checkpoint', help='Model type')
    download.add_argument('--sha256', help='Expected SHA-256 of the file')

    tasks = subparsers.add_parser('tasks', help='List background tasks')
    tasks.add_argument('--status', choices=[TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.PAUSED,
                                            TaskStatus.COMPLETED, TaskStatus.FAILED,
                                            TaskStatus.CANCELLED])
    tasks.add_argument('--limit', type=int, default=20)
    tasks.add_argument('--logs', metavar='TASK_ID', help='Show the log of one task')
    tasks.add_argument('--retry', metavar='TASK_ID', help='Retry a failed task and wait for it')
    tasks.add_argument('--clear', action='store_true', help='Delete finished tasks')

    subparsers.add_parser('stats', help='Show inventory statistics')

    vram = subparsers.add_parser('vram', help='Estimate VRAM for a workflow')
    vram.add_argument('workflow', help='Workflow id or file path')
    vram.add_argument('--gpu-gb', type=float, help='Available VRAM to check against')

    return parser


def load_settings(args) -> InventorySettings:
    return InventorySettings.from_env(
        models_root=args.models_root,
        warehouse_root=args.warehouse_root,
        workflow_roots=args.workflows,
        database_url=args.database,
    )


def cmd_scan_models(db: DatabaseManager, settings: InventorySettings, args) -> int:
    indexer = build_workers(db, settings).indexer
    locations = ['local', 'warehouse'] if args.location == 'all' else [args.location]
    failed = False
    for location in locations:
        root = settings.root_for(location)
        if root is None:
            print(f"ℹ️ No {location} directory configured, skipping")
            continue
        with hold_scope(f"models:{location}"):
            result = indexer.scan(root, location, args.level, args.force)
        result.print_summary()
        failed = failed or bool(result.errors)
    return 1 if failed else 0


def cmd_scan_workflows(db: DatabaseManager, settings: InventorySettings, args) -> int:
    scanner = WorkflowScanner(db, settings)
    result = scanner.scan(force_rescan=args.force, resolve=not args.no_resolve)
    result.print_summary()
    return 1 if result.errors else 0


def cmd_resolve(db: DatabaseManager, settings: InventorySettings, args) -> int:
    resolver = DependencyResolver(db, settings)
    if not args.workflow:
        stats = resolver.resolve_all()
        print(f"🔗 Resolved {stats['resolved']} workflows ({stats['errors']} errors)")
        for status, count in sorted(stats['by_status'].items()):
            print(f"   {status}: {count}")
        return 1 if stats['errors'] else 0

    summary = resolver.resolve_workflow(args.workflow)
    print(f"📄 Workflow {summary.workflow_id}: {summary.status}")
    for dep in summary.dependencies:
        icon = STATUS_ICONS.get(dep['status'], "•")
        print(f"   {icon} [{dep['model_type']}] {dep['model_name']} - {dep['status']}")
        if dep['compatibility_issue']:
            print(f"      {dep['compatibility_issue']}")
        for key in ('civitai_url', 'huggingface_url'):
            if dep[key]:
                print(f"      ⬇️ {dep[key]}")
    print(f"   💾 Total size: {format_bytes(summary.total_size_bytes)}")
    if summary.vram:
        print(f"   🎮 Peak VRAM: {summary.vram.peak_estimate} GB")
    return 0


async def wait_for_task(scheduler: TaskScheduler, task_id: str, interval: float = 0.5) -> Dict[str, Any]:
    """Poll a task until it reaches a terminal state, printing progress."""
    while True:
        task = scheduler.get_task(task_id)
        if task['status'] in TaskStatus.TERMINAL:
            print()
            return task
        if task['total_bytes']:
            line = (f"{format_bytes(task['current_bytes'])} / {format_bytes(task['total_bytes'])} "
                    f"@ {format_speed(task['speed'])}, {format_eta(task['eta'])} left")
        else:
            line = f"{task['current_items']} / {task['total_items']}"
        print(f"\r⏳ {task['name']}: {task['progress']}% ({line})   ", end="", flush=True)
        await asyncio.sleep(interval)


async def run_download(db: DatabaseManager, settings: InventorySettings, args) -> Dict[str, Any]:
    scheduler = TaskScheduler(db, settings.max_concurrent_tasks)
    register_default_workers(scheduler, db, settings)
    await scheduler.start()
    try:
        service = DownloadService(db, scheduler, settings)
        if args.dependency is not None:
            item = await service.queue_from_dependency(args.dependency)
        else:
            item = await service.queue_from_url(args.url, args.filename, args.type, args.sha256)
        return await wait_for_task(scheduler, item['task_id'])
    finally:
        await scheduler.shutdown(cancel_running=True)


async def run_retry(db: DatabaseManager, settings: InventorySettings, task_id: str) -> Dict[str, Any]:
    scheduler = TaskScheduler(db, settings.max_concurrent_tasks)
    register_default_workers(scheduler, db, settings)
    await scheduler.start()
    try:
        await scheduler.retry(task_id)
        return await wait_for_task(scheduler, task_id)
    finally:
        await scheduler.shutdown(cancel_running=True)


def report_task(task: Dict[str, Any]) -> int:
    if task['status'] == TaskStatus.COMPLETED:
        print(f"✅ {task['name']} completed")
        return 0
    print(f"❌ {task['name']} {task['status']}: {task['error_message'] or ''}")
    return 1


def cmd_download(db: DatabaseManager, settings: InventorySettings, args) -> int:
    return report_task(asyncio.run(run_download(db, settings, args)))


def cmd_tasks(db: DatabaseManager, settings: InventorySettings, args) -> int:
    scheduler = TaskScheduler(db, settings.max_concurrent_tasks)

    if args.retry:
        return report_task(asyncio.run(run_retry(db, settings, args.retry)))

    if args.clear:
        count = asyncio.run(scheduler.clear_completed())
        print(f"🧹 Deleted {count} finished tasks")
        return 0

    if args.logs:
        for log in scheduler.get_task_logs(args.logs):
            print(f"{log['timestamp']} [{log['level']}] {log['message']}")
        return 0

    tasks = scheduler.list_tasks(status=args.status, limit=args.limit)
    if not tasks:
        print("📭 No tasks")
        return 0
    for task in tasks:
        print(f"{task['id'][:8]}  {task['status']:<10} {task['progress']:>3}%  "
              f"{task['task_type']:<22} {task['name']}")
        if task['error_message']:
            print(f"          ❌ {task['error_message']}")
    return 0


def cmd_stats(db: DatabaseManager, settings: InventorySettings, args) -> int:
    inventory = db.get_inventory_stats()
    models = ModelIndexer(db, settings).get_stats()

    print("📊 Inventory Statistics:")
    print(f"   🧠 Models: {models['total_models']} ({format_bytes(models['total_size'])})")
    for model_type, count in sorted(models['by_type'].items()):
        print(f"      {model_type}: {count}")
    print("   🏗️ Architectures: " + ", ".join(
        f"{arch} {count}" for arch, count in sorted(models['by_architecture'].items())))
    print(f"   ⚠️ Corrupt or incomplete: {models['corrupt']}")
    print(f"   📄 Workflows: {inventory['total_workflows']}")
    for status, count in sorted(inventory['workflows_by_status'].items()):
        print(f"      {status}: {count}")
    print(f"   🔗 Dependencies: {inventory['total_dependencies']}")
    print(f"   📋 Tasks: {inventory['total_tasks']}, downloads: {inventory['total_downloads']}")
    return 0


def find_workflow(session, reference: str) -> Optional[WorkflowRecord]:
    workflow = session.get(WorkflowRecord, reference)
    if workflow is None:
        path = str(Path(reference).expanduser().resolve())
        workflow = session.query(WorkflowRecord).filter_by(filepath=path).first()
    return workflow


def cmd_vram(db: DatabaseManager, settings: InventorySettings, args) -> int:
    with db.get_session() as session:
        workflow = find_workflow(session, args.workflow)
        if workflow is None:
            print(f"❌ Workflow not found: {args.workflow}")
            return 1
        footprints = []
        for dep in workflow.dependencies:
            if dep.resolved_model_id is None:
                continue
            model = session.get(ModelRecord, dep.resolved_model_id)
            footprints.append(ModelFootprint(dep.model_type, model.detected_precision or "unknown",
                                             model.file_size or 0, model.detected_architecture))
        name = workflow.name or workflow.filename
        unresolved = len(workflow.dependencies) - len(footprints)

    estimate = estimate_workflow_vram(footprints)
    print(f"🎮 VRAM estimate for {name}:")
    for entry in estimate.breakdown:
        print(f"   {entry['type']} x{entry['count']}: {entry['vram']} GB")
    print(f"   Base: {estimate.base_vram} GB, with overhead: {estimate.with_overhead} GB, "
          f"peak: {estimate.peak_estimate} GB")
    for tier in GPU_TIERS:
        print(f"   {'✅' if estimate.can_run_on[tier] else '❌'} {tier}")
    for warning in estimate.warnings:
        print(f"   ⚠️ {warning}")
    if unresolved:
        print(f"   ℹ️ {unresolved} unresolved dependencies are not counted")

    if args.gpu_gb is not None:
        fit = check_vram_fit(estimate, args.gpu_gb)
        print(f"   {'✅' if fit['fits'] else '❌'} {args.gpu_gb} GB: margin {fit['margin']} GB. "
              f"{fit['recommendation']}")
    return 0


COMMANDS = {
    'scan-models': cmd_scan_models,
    'scan-workflows': cmd_scan_workflows,
    'resolve': cmd_resolve,
    'download': cmd_download,
    'tasks': cmd_tasks,
    'stats': cmd_stats,
    'vram': cmd_vram,
}


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(args)
    except ValueError as e:
        parser.error(str(e))

    if args.command == 'init':
        return 0 if initialize_fresh_database(settings.database_url, args.force) else 1

    db = initialize_database(settings.database_url)
    try:
        return COMMANDS[args.command](db, settings, args)
    except InventoryError as e:
        print(f"❌ {e}")
        return 1
    except ValueError as e:
        print(f"❌ {e}")
        return 1
    except KeyboardInterrupt:
        print("\n⏹️ Interrupted")
        return 130
    finally:
        close_database()


if __name__ == '__main__':
    sys.exit(main())
