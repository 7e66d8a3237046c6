import pytest


@pytest.fixture(autouse=True)
def rules_file(tmp_path, monkeypatch):
    path = tmp_path / "rules.json"
    monkeypatch.setenv("LEADRULES_CONFIG_PATH", str(path))
    return path
