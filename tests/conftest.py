import pytest

from refimage.modules import config


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Cada teste parte dos defaults, sem ler ~/.config nem /etc."""
    cfg = dict(config.DEFAULTS)
    cfg["image_root"] = str(tmp_path / "image")
    cfg["lock_path"] = str(tmp_path / "oracle-image.lock.json")
    cfg["extractor"] = "python"
    cfg["fetch_retries"] = 1
    monkeypatch.setattr(config, "_config", cfg)
    return cfg
