import asyncio
import hashlib
import threading

import pytest

from conftest import node, write_safetensors, write_workflow
from database import ModelRecord, WorkflowDependency
from inventory.config import DownloadStatus, HashStatus, TaskStatus, TaskType
from inventory.downloader import Downloader, part_path_for
from inventory.downloads import DownloadService, filename_from_reference, source_for_url
from inventory.indexer import ModelIndexer
from inventory.scheduler import TaskScheduler
from inventory.workers import register_default_workers
from inventory.workflows import WorkflowScanner


async def wait_until(predicate, timeout=10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


class Response:
    def __init__(self, body, status_code, headers, gate=None):
        self.body = body
        self.status_code = status_code
        self.headers = headers
        self.gate = gate

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        pass

    def iter_content(self, chunk_size=1):
        for i, start in enumerate(range(0, len(self.body), 512)):
            if i == 1 and self.gate is not None:
                self.gate.wait(5)
            yield self.body[start:start + 512]


class ModelHost:
    """Serves one file with Range support; the first response can be held after one chunk."""

    def __init__(self, body, hold_first=False):
        self.body = body
        self.gate = threading.Event() if hold_first else None
        self.ranges = []

    def get(self, url, headers=None, stream=False, timeout=None):
        headers = headers or {}
        self.ranges.append(headers.get("Range"))
        gate, self.gate = self.gate, None
        if headers.get("Range"):
            start = int(headers["Range"].split("=")[1].rstrip("-"))
            return Response(self.body[start:], 206, {
                "Content-Range": f"bytes {start}-{len(self.body) - 1}/{len(self.body)}"}, gate)
        return Response(self.body, 200, {"Content-Length": str(len(self.body))}, gate)


@pytest.fixture
def model_bytes(tmp_path):
    source = write_safetensors(tmp_path / "source.safetensors", payload_size=4096, fill=b"m")
    return source.read_bytes()


def run(db, settings, host, scenario):
    async def main():
        scheduler = TaskScheduler(db)
        downloader = Downloader(session=host, progress_interval=0)
        register_default_workers(scheduler, db, settings, downloader=downloader)
        await scheduler.start()
        try:
            await scenario(scheduler, DownloadService(db, scheduler, settings))
        finally:
            await scheduler.shutdown(cancel_running=True)

    asyncio.run(main())


def task_status(scheduler, task_id):
    return scheduler.get_task(task_id)["status"]


def test_download_from_url_is_verified_and_indexed(db, settings, model_bytes):
    sha = hashlib.sha256(model_bytes).hexdigest()
    host = ModelHost(model_bytes)

    async def scenario(scheduler, downloads):
        item = await downloads.queue_from_url(
            "https://huggingface.co/org/repo/resolve/main/detail.safetensors",
            model_type="lora", expected_hash=sha)
        assert item["source"] == "huggingface"
        assert item["expected_hash"] == sha.upper()
        await wait_until(lambda: task_status(scheduler, item["task_id"]) in TaskStatus.TERMINAL)

        assert task_status(scheduler, item["task_id"]) == TaskStatus.COMPLETED
        done = downloads.get_download(item["id"])
        assert done["status"] == DownloadStatus.COMPLETE
        assert done["progress"] == 100
        assert done["downloaded_bytes"] == len(model_bytes)
        assert downloads.list_downloads(DownloadStatus.COMPLETE)[0]["id"] == item["id"]

    run(db, settings, host, scenario)

    destination = settings.models_root / "Lora" / "detail.safetensors"
    assert destination.read_bytes() == model_bytes
    with db.get_session() as session:
        row = session.query(ModelRecord).filter_by(filename="detail.safetensors").one()
        assert row.detected_type == "lora"
        assert row.location == "local"


def test_hash_mismatch_fails_the_task(db, settings, model_bytes):
    async def scenario(scheduler, downloads):
        item = await downloads.queue_from_url(
            "https://example.com/files/model.safetensors", model_type="checkpoint",
            expected_hash="00" * 32)
        await wait_until(lambda: task_status(scheduler, item["task_id"]) in TaskStatus.TERMINAL)

        task = scheduler.get_task(item["task_id"])
        assert task["status"] == TaskStatus.FAILED
        assert task["error_message"].startswith("Download failed: Hash mismatch")
        failed = downloads.get_download(item["id"])
        assert failed["status"] == DownloadStatus.FAILED
        assert failed["source"] == "direct"

    run(db, settings, ModelHost(model_bytes), scenario)
    assert not (settings.models_root / "StableDiffusion" / "model.safetensors").exists()


def test_paused_download_resumes_from_part_file(db, settings, model_bytes):
    sha = hashlib.sha256(model_bytes).hexdigest()
    host = ModelHost(model_bytes, hold_first=True)
    gate = host.gate

    async def scenario(scheduler, downloads):
        item = await downloads.queue_from_url(
            "https://civitai.com/api/download/models/42", filename="ink.safetensors",
            model_type="lora", expected_hash=sha)
        task_id = item["task_id"]
        await wait_until(lambda: scheduler.get_task(task_id)["current_bytes"] > 0)

        await scheduler.pause(task_id)
        gate.set()
        await wait_until(lambda: not scheduler.is_active(task_id))
        assert task_status(scheduler, task_id) == TaskStatus.PAUSED
        assert downloads.get_download(item["id"])["status"] == DownloadStatus.QUEUED
        part = part_path_for(settings.models_root / "Lora" / "ink.safetensors")
        assert part.read_bytes() == model_bytes[:512]

        await scheduler.resume(task_id)
        await wait_until(lambda: task_status(scheduler, task_id) in TaskStatus.TERMINAL)
        assert task_status(scheduler, task_id) == TaskStatus.COMPLETED
        assert downloads.get_download(item["id"])["status"] == DownloadStatus.COMPLETE

    run(db, settings, host, scenario)
    assert host.ranges == [None, "bytes=512-"]
    assert (settings.models_root / "Lora" / "ink.safetensors").read_bytes() == model_bytes


def test_cancelled_download_is_marked_cancelled(db, settings, model_bytes):
    host = ModelHost(model_bytes, hold_first=True)
    gate = host.gate

    async def scenario(scheduler, downloads):
        item = await downloads.queue_from_url("https://example.com/x.safetensors", model_type="vae")
        await wait_until(lambda: scheduler.get_task(item["task_id"])["current_bytes"] > 0)
        await scheduler.cancel(item["task_id"])
        gate.set()
        await wait_until(lambda: not scheduler.is_active(item["task_id"]))

        assert task_status(scheduler, item["task_id"]) == TaskStatus.CANCELLED
        assert downloads.get_download(item["id"])["status"] == DownloadStatus.CANCELLED

    run(db, settings, host, scenario)


def test_cancelling_a_queued_download_closes_its_queue_item(db, settings, model_bytes):
    async def scenario():
        scheduler = TaskScheduler(db)
        register_default_workers(scheduler, db, settings,
                                 downloader=Downloader(session=ModelHost(model_bytes), progress_interval=0))
        downloads = DownloadService(db, scheduler, settings)

        # Not started, so the task waits as pending
        item = await downloads.queue_from_url("https://example.com/y.safetensors", model_type="vae")
        assert task_status(scheduler, item["task_id"]) == TaskStatus.PENDING

        await scheduler.cancel(item["task_id"])
        assert downloads.get_download(item["id"])["status"] == DownloadStatus.CANCELLED

    asyncio.run(scenario())


def test_queue_missing_dependency(db, settings, model_bytes):
    url = "https://huggingface.co/org/repo/resolve/main/ae.safetensors"
    db.set_setting("model_sources", {"ae.safetensors": url})
    write_workflow(settings.workflow_roots[0] / "flux.json", [
        node(1, "VAELoader", "flux\\ae.safetensors"),
        node(2, "CLIPLoader", "nowhere.safetensors", "flux"),
    ])
    WorkflowScanner(db, settings).scan()
    with db.get_session() as session:
        deps = {d.model_name: d.id for d in session.query(WorkflowDependency)}

    async def scenario(scheduler, downloads):
        with pytest.raises(ValueError, match="No download source"):
            await downloads.queue_from_dependency(deps["nowhere.safetensors"])
        with pytest.raises(ValueError, match="Dependency not found"):
            await downloads.queue_from_dependency(9999)

        item = await downloads.queue_from_dependency(deps["flux\\ae.safetensors"], priority=3)
        assert item["model_name"] == "ae.safetensors"
        assert item["url"] == url
        assert item["workflow_id"] is not None
        await wait_until(lambda: task_status(scheduler, item["task_id"]) in TaskStatus.TERMINAL)
        assert downloads.get_download(item["id"])["status"] == DownloadStatus.COMPLETE

    run(db, settings, ModelHost(model_bytes), scenario)
    assert (settings.models_root / "VAE" / "ae.safetensors").exists()


def test_queue_from_url_rejects_bad_input(db, settings, model_bytes):
    async def scenario(scheduler, downloads):
        with pytest.raises(ValueError, match="Unknown model type"):
            await downloads.queue_from_url("https://example.com/a.safetensors", model_type="spaceship")
        with pytest.raises(ValueError, match="filename"):
            await downloads.queue_from_url("https://example.com/")

    run(db, settings, ModelHost(model_bytes), scenario)


def test_model_scan_task_skips_missing_warehouse(db, settings, model_bytes):
    write_safetensors(settings.models_root / "Lora" / "a.safetensors", fill=b"a")

    async def scenario(scheduler, downloads):
        task = await scheduler.create_task(TaskType.MODEL_SCAN)
        await wait_until(lambda: task_status(scheduler, task["id"]) in TaskStatus.TERMINAL)
        assert task_status(scheduler, task["id"]) == TaskStatus.COMPLETED
        logs = scheduler.get_task_logs(task["id"])
        assert any(log["level"] == "warning" and "warehouse" in log["message"] for log in logs)

    run(db, settings, ModelHost(model_bytes), scenario)
    with db.get_session() as session:
        assert session.query(ModelRecord).count() == 1


def test_workflow_scan_and_resolution_tasks(db, settings, model_bytes):
    write_workflow(settings.workflow_roots[0] / "wf.json", [node(1, "VAELoader", "vae.safetensors")])

    async def scenario(scheduler, downloads):
        scan = await scheduler.create_task(TaskType.WORKFLOW_SCAN)
        await wait_until(lambda: task_status(scheduler, scan["id"]) in TaskStatus.TERMINAL)
        assert task_status(scheduler, scan["id"]) == TaskStatus.COMPLETED

        resolve = await scheduler.create_task(TaskType.DEPENDENCY_RESOLUTION)
        await wait_until(lambda: task_status(scheduler, resolve["id"]) in TaskStatus.TERMINAL)
        assert task_status(scheduler, resolve["id"]) == TaskStatus.COMPLETED
        assert scheduler.get_task(resolve["id"])["progress"] == 100

        missing = await scheduler.create_task(TaskType.DEPENDENCY_RESOLUTION, related_id="missing")
        await wait_until(lambda: task_status(scheduler, missing["id"]) in TaskStatus.TERMINAL)
        assert task_status(scheduler, missing["id"]) == TaskStatus.FAILED

    run(db, settings, ModelHost(model_bytes), scenario)


def test_hash_validation_task(db, settings, model_bytes):
    good = write_safetensors(settings.models_root / "Lora" / "good.safetensors", fill=b"g")
    bad = write_safetensors(settings.models_root / "Lora" / "bad.safetensors", fill=b"b")
    gone = write_safetensors(settings.models_root / "Lora" / "gone.safetensors", fill=b"x")
    plain = write_safetensors(settings.models_root / "Lora" / "plain.safetensors", fill=b"p")
    ModelIndexer(db, settings).scan(settings.models_root, "local")

    with db.get_session() as session:
        rows = {row.filename: row for row in session.query(ModelRecord)}
        rows[good.name].expected_hash = hashlib.sha256(good.read_bytes()).hexdigest()
        rows[bad.name].expected_hash = "AB" * 32
        session.commit()
    gone.unlink()

    async def scenario(scheduler, downloads):
        task = await scheduler.create_task(TaskType.HASH_VALIDATION)
        await wait_until(lambda: task_status(scheduler, task["id"]) in TaskStatus.TERMINAL)
        assert task_status(scheduler, task["id"]) == TaskStatus.COMPLETED

    run(db, settings, ModelHost(model_bytes), scenario)

    with db.get_session() as session:
        status = {row.filename: row.hash_status for row in session.query(ModelRecord)}
        corrupt = session.query(ModelRecord).filter_by(filename=bad.name).one()
        assert corrupt.validation_message.startswith("Hash mismatch")
    assert status == {
        good.name: HashStatus.VALID,
        bad.name: HashStatus.CORRUPT,
        gone.name: HashStatus.INCOMPLETE,
        plain.name: HashStatus.VALID,
    }


def test_download_helpers():
    assert source_for_url("https://civitai.com/api/download/models/1") == "civitai"
    assert source_for_url("https://hf.co/x") == "huggingface"
    assert source_for_url("https://example.org/x") == "direct"
    assert filename_from_reference("SDXL\\loras/detail.safetensors ") == "detail.safetensors"
