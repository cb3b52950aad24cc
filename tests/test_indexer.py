import json

import pytest

from conftest import node, write_safetensors, write_workflow
from database import ModelRecord, ScanLog, WorkflowDependency, WorkflowRecord
from inventory.config import DependencyStatus, WorkflowStatus
from inventory.exceptions import ScanInProgress
from inventory.indexer import ModelIndexer, hold_scope, read_cm_info
from inventory.scheduler import CancellationToken
from inventory.workflows import WorkflowScanner


def populate(root):
    write_safetensors(root / "StableDiffusion" / "base.safetensors",
                      tensors=("conditioner.embedders.1.model.ln_final.weight",), fill=b"a")
    write_safetensors(root / "Lora" / "style.safetensors",
                      metadata={"ss_base_model_version": "sd_v1"}, fill=b"b")
    write_safetensors(root / "VAE" / "vae.safetensors",
                      tensors=("first_stage_model.encoder.conv_in.weight",), fill=b"c")
    write_safetensors(root / ".cache" / "hidden.safetensors", fill=b"d")


def catalog(db):
    with db.get_session() as session:
        return {row.filename: row.to_dict() for row in session.query(ModelRecord)}


def test_scan_indexes_models(db, settings):
    populate(settings.models_root)
    result = ModelIndexer(db, settings).scan(settings.models_root, "local")

    assert result.scanned_count == 3
    assert result.new_models == 3
    assert not result.errors

    rows = catalog(db)
    assert set(rows) == {"base.safetensors", "style.safetensors", "vae.safetensors"}
    assert rows["base.safetensors"]["detected_type"] == "checkpoint"
    assert rows["base.safetensors"]["detected_architecture"] == "SDXL"
    assert rows["style.safetensors"]["detected_type"] == "lora"
    assert rows["style.safetensors"]["detected_architecture"] == "SD15"
    assert rows["vae.safetensors"]["id"] == rows["vae.safetensors"]["partial_hash"]

    with db.get_session() as session:
        assert session.query(ScanLog).count() == 1


def test_rescan_is_idempotent(db, settings):
    populate(settings.models_root)
    indexer = ModelIndexer(db, settings)
    indexer.scan(settings.models_root, "local")
    before = catalog(db)

    result = indexer.scan(settings.models_root, "local")
    assert result.new_models == 0
    assert result.updated_models == 0
    assert result.skipped_models == 3
    assert result.deleted_models == 0

    after = catalog(db)
    assert {k: v["id"] for k, v in after.items()} == {k: v["id"] for k, v in before.items()}


def test_forced_rescan_keeps_ids(db, settings):
    populate(settings.models_root)
    indexer = ModelIndexer(db, settings)
    indexer.scan(settings.models_root, "local")
    before = catalog(db)

    result = indexer.scan(settings.models_root, "local", force_rescan=True)
    assert result.updated_models == 3
    assert {k: v["id"] for k, v in catalog(db).items()} == {k: v["id"] for k, v in before.items()}


def test_removed_file_is_evicted_and_dependencies_reset(db, settings):
    populate(settings.models_root)
    indexer = ModelIndexer(db, settings)
    indexer.scan(settings.models_root, "local")
    lora_id = catalog(db)["style.safetensors"]["id"]

    with db.get_session() as session:
        workflow = WorkflowRecord(filename="wf.json", filepath="/tmp/wf.json")
        workflow.dependencies.append(WorkflowDependency(
            node_type="LoraLoader", model_type="lora", model_name="style.safetensors",
            status=DependencyStatus.RESOLVED_LOCAL, resolved_model_id=lora_id))
        session.add(workflow)
        session.commit()

    (settings.models_root / "Lora" / "style.safetensors").unlink()
    result = indexer.scan(settings.models_root, "local")

    assert result.deleted_models == 1
    assert "style.safetensors" not in catalog(db)
    with db.get_session() as session:
        dep = session.query(WorkflowDependency).one()
        assert dep.status == DependencyStatus.MISSING
        assert dep.resolved_model_id is None


def test_evicting_a_model_updates_workflow_status(db, settings):
    checkpoint = write_safetensors(settings.models_root / "StableDiffusion" / "sd15.safetensors",
                                   tensors=("cond_stage_model.transformer.text_model.embeddings.position_ids",))
    write_workflow(settings.workflow_roots[0] / "portrait.json",
                   [node(1, "CheckpointLoaderSimple", "sd15.safetensors")])
    indexer = ModelIndexer(db, settings)
    indexer.scan(settings.models_root, "local")
    WorkflowScanner(db, settings).scan()

    with db.get_session() as session:
        workflow = session.query(WorkflowRecord).one()
        assert workflow.status == WorkflowStatus.READY_LOCAL
        assert workflow.resolved_local == 1

    checkpoint.unlink()
    indexer.scan(settings.models_root, "local")

    with db.get_session() as session:
        workflow = session.query(WorkflowRecord).one()
        assert workflow.status == WorkflowStatus.MISSING_ITEMS
        assert workflow.resolved_local == 0
        assert workflow.missing_count == 1
        assert workflow.dependencies[0].status == DependencyStatus.MISSING


def test_warehouse_scan_leaves_local_rows_alone(db, settings):
    populate(settings.models_root)
    write_safetensors(settings.warehouse_root / "Lora" / "big.safetensors", fill=b"w")
    indexer = ModelIndexer(db, settings)
    indexer.scan(settings.models_root, "local")

    result = indexer.scan(settings.warehouse_root, "warehouse")
    assert result.new_models == 1
    assert result.deleted_models == 0

    rows = catalog(db)
    assert len(rows) == 4
    assert rows["big.safetensors"]["location"] == "warehouse"


def test_cancelled_scan_does_not_evict(db, settings):
    populate(settings.models_root)
    indexer = ModelIndexer(db, settings)
    indexer.scan(settings.models_root, "local")

    (settings.models_root / "VAE" / "vae.safetensors").unlink()
    token = CancellationToken()
    token.cancel()
    result = indexer.scan(settings.models_root, "local", force_rescan=True, token=token)

    assert result.aborted
    assert result.deleted_models == 0
    assert "vae.safetensors" in catalog(db)


def test_identical_files_get_distinct_rows(db, settings):
    write_safetensors(settings.models_root / "Lora" / "one.safetensors", fill=b"x")
    write_safetensors(settings.models_root / "Lora" / "two.safetensors", fill=b"x")
    ModelIndexer(db, settings).scan(settings.models_root, "local")

    rows = catalog(db)
    assert rows["one.safetensors"]["partial_hash"] == rows["two.safetensors"]["partial_hash"]
    assert rows["one.safetensors"]["id"] != rows["two.safetensors"]["id"]


def test_progress_reports_every_file(db, settings):
    populate(settings.models_root)
    calls = []
    ModelIndexer(db, settings).scan(settings.models_root, "local",
                                    progress=lambda done, total: calls.append((done, total)))
    assert calls[-1] == (3, 3)


def test_index_file_adds_a_single_model(db, settings):
    path = write_safetensors(settings.models_root / "Lora" / "new.safetensors")
    record = ModelIndexer(db, settings).index_file(path, "local")
    assert record["filename"] == "new.safetensors"
    assert record["detected_type"] == "lora"


def test_cm_info_sidecar(tmp_path, db, settings):
    path = write_safetensors(settings.models_root / "Lora" / "side.safetensors")
    sidecar = path.with_suffix(".cm-info.json")
    sidecar.write_text(json.dumps({
        "ModelId": 12, "VersionId": 34, "ModelName": "Side", "BaseModel": "SDXL 1.0",
        "Hashes": {"SHA256": "abc123"},
    }))

    info = read_cm_info(path)
    assert info["model_id"] == 12
    assert info["expected_hash"] == "ABC123"

    ModelIndexer(db, settings).scan(settings.models_root, "local")
    row = catalog(db)["side.safetensors"]
    assert row["civitai_model_id"] == 12
    assert row["civitai_name"] == "Side"
    assert row["expected_hash"] == "ABC123"


def test_hold_scope_is_exclusive():
    with hold_scope("models:test"):
        with pytest.raises(ScanInProgress):
            with hold_scope("models:test"):
                pass
    with hold_scope("models:test"):
        pass


def test_stats(db, settings):
    populate(settings.models_root)
    indexer = ModelIndexer(db, settings)
    indexer.scan(settings.models_root, "local")
    stats = indexer.get_stats()
    assert stats["total_models"] == 3
    assert stats["by_type"]["lora"] == 1
    assert stats["by_location"] == {"local": 3}
