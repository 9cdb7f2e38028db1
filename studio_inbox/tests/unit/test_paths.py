"""
Tests for config file resolution with CONFIG_DIR overlays and example fallbacks.
"""
import pytest

from studio_inbox.core import paths


def test_falls_back_to_example():
    assert paths.get_config_path("inbox_rules.yaml").name in ("inbox_rules.yaml", "inbox_rules.example.yaml")


def test_overlay_wins(tmp_path, monkeypatch):
    (tmp_path / "accounts.yaml").write_text("accounts: {}\n")
    monkeypatch.setattr(paths, "CONFIG_DIR", tmp_path)

    assert paths.get_config_path("accounts.yaml") == tmp_path / "accounts.yaml"
    # Files missing from the overlay still resolve from the repo config dir
    assert paths.get_config_path("inbox_rules.yaml").parent == paths.get_repo_root() / "config"


def test_missing_required(tmp_path, monkeypatch):
    monkeypatch.setattr(paths, "CONFIG_DIR", tmp_path)
    assert paths.get_config_path("absent.yaml") is None
    with pytest.raises(FileNotFoundError):
        paths.get_config_path("absent.yaml", required=True)
