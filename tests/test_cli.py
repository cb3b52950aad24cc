import pytest

from conftest import node, write_safetensors, write_workflow
from database import DatabaseManager, WorkflowRecord
from inventory.cli import build_parser, main


@pytest.fixture
def cli(tmp_path):
    models = tmp_path / "models"
    workflows = tmp_path / "workflows"
    url = f"sqlite:///{tmp_path}/cli.db"
    base = ["--db", url, "--models-root", str(models), "--warehouse-root", str(tmp_path / "warehouse"),
            "--workflows", str(workflows)]

    def run(*argv):
        return main(base + list(argv))

    run.models = models
    run.workflows = workflows
    run.url = url
    return run


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_init_refuses_existing_database(cli, capsys):
    assert cli("init") == 0
    assert cli("init") == 1
    assert "already exists" in capsys.readouterr().out
    assert cli("init", "--force") == 0


def test_scan_resolve_and_report(cli, capsys):
    write_safetensors(cli.models / "StableDiffusion" / "sd15.safetensors",
                      tensors=("cond_stage_model.transformer.text_model.embeddings.position_ids",))
    write_workflow(cli.workflows / "portrait.json", [
        node(1, "CheckpointLoaderSimple", "sd15.safetensors"),
        node(2, "VAELoader", "missing_vae.safetensors"),
    ])

    assert cli("scan-models", "--location", "local") == 0
    assert cli("scan-workflows") == 0
    out = capsys.readouterr().out
    assert "New models: 1" in out
    assert "New workflows: 1" in out

    manager = DatabaseManager(cli.url)
    with manager.get_session() as session:
        workflow_id = session.query(WorkflowRecord.id).scalar()
    manager.close()

    assert cli("resolve", "--workflow", workflow_id) == 0
    out = capsys.readouterr().out
    assert "scanned-missing-items" in out
    assert "missing_vae.safetensors - missing" in out

    assert cli("resolve") == 0
    assert cli("vram", workflow_id, "--gpu-gb", "24") == 0
    out = capsys.readouterr().out
    assert "VRAM estimate for portrait" in out
    assert "1 unresolved dependencies are not counted" in out

    assert cli("stats") == 0
    assert "Workflows: 1" in capsys.readouterr().out


def test_unknown_references_fail_cleanly(cli, capsys):
    assert cli("vram", "nope") == 1
    assert cli("resolve", "--workflow", "nope") == 1
    assert cli("download", "--dependency", "99") == 1
    out = capsys.readouterr().out
    assert "Workflow not found: nope" in out
    assert "Dependency not found: 99" in out


def test_tasks_listing_when_empty(cli, capsys):
    assert cli("tasks") == 0
    assert "No tasks" in capsys.readouterr().out
    assert cli("tasks", "--clear") == 0
    assert cli("tasks", "--retry", "missing") == 1
