"""
Pytest configuration: put the project root on sys.path so the
top-level modules (backend, nutrients, storage, ...) import directly.
"""
import os
import sys

import pytest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from backend import create_app  # noqa: E402


@pytest.fixture
def app(tmp_path):
    return create_app({
        "TESTING": True,
        "DATA_DIR": str(tmp_path / "data"),
        "FORMULATIONS_XLSX": str(tmp_path / "missing.xlsx"),
        "MQTT_ENABLED": False,
    })


@pytest.fixture
def client(app):
    return app.test_client()
