import json
import struct
from pathlib import Path

import pytest

from database import DatabaseManager
from inventory.config import InventorySettings


def write_safetensors(path: Path, tensors=("weight",), metadata=None, payload_size=2048, fill=b"\x00"):
    """Write a small but well-formed safetensors file."""
    header = {name: {"dtype": "F16", "shape": [1], "data_offsets": [0, 2]} for name in tensors}
    if metadata:
        header["__metadata__"] = metadata
    raw = json.dumps(header).encode("utf-8")
    payload = (fill * payload_size)[:payload_size]

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(struct.pack("<Q", len(raw)))
        f.write(raw)
        f.write(payload)
    return path


def write_workflow(path: Path, nodes, **extra):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    document = {"nodes": nodes, "links": []}
    document.update(extra)
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


def node(node_id, node_type, *widgets, **inputs):
    data = {"id": node_id, "type": node_type, "widgets_values": list(widgets)}
    if inputs:
        data["inputs"] = inputs
    return data


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(f"sqlite:///{tmp_path}/test.db")
    manager.create_tables()
    yield manager
    manager.close()


@pytest.fixture
def settings(tmp_path):
    return InventorySettings(
        models_root=tmp_path / "models",
        warehouse_root=tmp_path / "warehouse",
        workflow_roots=[tmp_path / "workflows"],
        database_url=f"sqlite:///{tmp_path}/test.db",
        scan_workers=2,
        scan_batch_size=3,
    )
