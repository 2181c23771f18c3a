import pytest

from refimage.modules import config
from refimage.modules.bootstrap import policy_from_config
from refimage.modules.errors import ConfigError
from helpers import SNAPSHOT_ID


def test_explicit_file_overrides_defaults(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        f"snapshot_id: '{SNAPSHOT_ID}'\n"
        "snapshot_root: https://snapshot.debian.org/archive/debian\n"
        "keyring_path: /usr/share/keyrings/debian-archive-keyring.gpg\n"
        "mirrors:\n  - https://deb.debian.org/debian\n"
        "max_package_count: 90\n",
        encoding="utf-8",
    )
    config.load_config(str(path))
    assert config.get("max_package_count") == 90
    assert config.get("exec_timeout") == config.DEFAULTS["exec_timeout"]

    policy = policy_from_config()
    assert policy.snapshot_id == SNAPSHOT_ID
    assert policy.mirrors == ["https://deb.debian.org/debian"]


def test_missing_explicit_file(tmp_path):
    with pytest.raises(ConfigError) as exc:
        config.load_config(str(tmp_path / "nope.yml"))
    assert exc.value.reason_code == "config_missing"


def test_invalid_yaml(tmp_path):
    path = tmp_path / "bad.yml"
    path.write_text("snapshot_id: [unterminated\n", encoding="utf-8")
    with pytest.raises(ConfigError) as exc:
        config.load_config(str(path))
    assert exc.value.reason_code == "config_invalid"


def test_trust_anchors_have_no_defaults():
    with pytest.raises(ConfigError) as exc:
        policy_from_config()
    assert "snapshot_id" in str(exc.value)


def test_override_ignores_none():
    config.override(snapshot_id=SNAPSHOT_ID, snapshot_root=None)
    assert config.require("snapshot_id") == SNAPSHOT_ID
    with pytest.raises(ConfigError):
        config.require("snapshot_root")


@pytest.mark.parametrize("value", ["2026-01-01", "20260101T000000", "", None])
def test_snapshot_id_format(value):
    with pytest.raises(ConfigError):
        config.validate_snapshot_id(value)
