from database import (
    DEFAULT_SETTINGS, DatabaseManager, DownloadQueueItem, Task, TaskLog, WorkflowDependency,
    WorkflowRecord,
)
from database.init_database import initialize_fresh_database, main as init_main


def test_default_settings_are_seeded(db):
    assert db.get_all_settings() == DEFAULT_SETTINGS


def test_create_tables_keeps_user_settings(db):
    db.set_setting("validation_level", "full")
    db.create_tables()
    assert db.get_setting("validation_level") == "full"


def test_settings_round_trip(db):
    assert db.get_setting("nope", "fallback") == "fallback"
    db.set_setting("model_sources", {"ae.safetensors": "hf://org/repo/ae.safetensors"})
    assert db.get_setting("model_sources") == {"ae.safetensors": "hf://org/repo/ae.safetensors"}


def test_inventory_stats(db):
    with db.get_session() as session:
        workflow = WorkflowRecord(filename="a.json", filepath="/w/a.json", status="scanned-error")
        workflow.dependencies.append(WorkflowDependency(
            node_type="VAELoader", model_type="vae", model_name="vae.safetensors"))
        session.add(workflow)
        session.add(Task(task_type="download", name="Download x", status="pending"))
        session.commit()

    stats = db.get_inventory_stats()
    assert stats["total_workflows"] == 1
    assert stats["total_dependencies"] == 1
    assert stats["total_tasks"] == 1
    assert stats["total_models"] == 0
    assert stats["workflows_by_status"] == {"scanned-error": 1}
    assert stats["tasks_by_status"] == {"pending": 1}


def test_deleting_a_task_removes_logs_and_detaches_downloads(db):
    with db.get_session() as session:
        task = Task(id="t1", task_type="download", name="Download x")
        session.add(task)
        session.flush()
        session.add(TaskLog(task_id="t1", level="info", message="Task created"))
        session.add(DownloadQueueItem(task_id="t1", model_name="x.safetensors", model_type="vae",
                                      source="direct", url="https://example.com/x",
                                      destination_path="/m/VAE/x.safetensors"))
        session.commit()

    with db.get_session() as session:
        session.query(Task).filter(Task.id == "t1").delete(synchronize_session=False)
        session.commit()

    with db.get_session() as session:
        assert session.query(TaskLog).count() == 0
        assert session.query(DownloadQueueItem).one().task_id is None


def test_in_memory_database():
    manager = DatabaseManager("sqlite://")
    manager.create_tables()
    assert manager.get_setting("version") == DEFAULT_SETTINGS["version"]
    manager.close()


def test_initialize_fresh_database(tmp_path):
    url = f"sqlite:///{tmp_path}/fresh/inventory.db"
    assert initialize_fresh_database(url)
    assert not initialize_fresh_database(url)
    assert initialize_fresh_database(url, force=True)


def test_init_cli_status(tmp_path):
    url = f"sqlite:///{tmp_path}/inventory.db"
    assert init_main(["--status", "--database", url]) == 1
    assert init_main(["--init", "--database", url]) == 0
    assert init_main(["--status", "--database", url]) == 0
