from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


@pytest.fixture
def compose_file(tmp_path: Path) -> Path:
    path = tmp_path / "docker-compose.yaml"
    path.write_text("services:\n  app:\n    image: nginx\n")
    return path


@pytest.fixture
def nodes() -> dict:
    return {
        "nodes": [
            {"name": "prod5", "teepod_id": 26, "device_id": "dev5", "images": [{"name": "dstack-0.5.3"}]},
            {"name": "prod7", "teepod_id": 7, "device_id": "dev1", "images": [{"name": "dstack-0.5.4"}, {"name": "dstack-0.5.3"}]},
        ]
    }


@pytest.fixture
def kms_list() -> dict:
    return {
        "items": [
            {"id": "kms0", "slug": "kms-base-prod5", "chain_id": 8453, "kms_contract_address": "0x2f83172A49584C017F2B256F0FB2Dca14126Ba9C"},
            {"id": "kms1", "slug": None, "chain_id": 8453, "kms_contract_address": "0x2f83172A49584C017F2B256F0FB2Dca14126Ba9C"},
        ]
    }
