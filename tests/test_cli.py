import json

import pytest

from helpers import KEY_ID, SNAPSHOT_ID, make_record

from refimage import cli
from refimage.modules import lockfile
from refimage.modules.models import ReleaseRecord, SourcePolicy

POLICY = SourcePolicy(snapshot_root="https://snap", snapshot_id=SNAPSHOT_ID, keyring_path="/etc/keyring.gpg")
RELEASE = ReleaseRecord(suite="bookworm", release_url="https://snap/Release", release_sha256="e" * 64,
                        signature_key_id=KEY_ID)


def _write_lock(path, records=None):
    records = records or [make_record("lynx", "2.9.0dev.12-1"), make_record("w3m", "0.5.3+git20230121-2")]
    lock = lockfile.build_lock(["lynx", "w3m", "links2"], POLICY, [RELEASE], records,
                               generated_at="2026-01-01T00:00:00Z")
    lockfile.save_lock(str(path), lock)
    return lock


def _run(argv):
    with pytest.raises(SystemExit) as exc:
        cli.main(argv)
    return exc.value.code


def test_verify_lock_ok(tmp_path, capsys):
    path = tmp_path / "lock.json"
    lock = _write_lock(path)
    assert _run(["--json", "verify-lock", "--lock", str(path)]) == 0
    out = capsys.readouterr().out
    assert lock.fingerprint in out


def test_verify_lock_rejects_tampered_file(tmp_path, capsys):
    path = tmp_path / "lock.json"
    _write_lock(path)
    data = json.loads(path.read_text(encoding="utf-8"))
    data["packages"][0]["contentSha256"] = "0" * 64
    path.write_text(json.dumps(data), encoding="utf-8")

    assert _run(["verify-lock", "--lock", str(path)]) == 2
    assert "lock_invalid" in capsys.readouterr().err


def test_verify_lock_missing_file(tmp_path, capsys):
    assert _run(["verify-lock", "--lock", str(tmp_path / "nope.json")]) == 2
    assert "lock_missing" in capsys.readouterr().err


def test_diff_lock_exit_codes(tmp_path, capsys):
    current = tmp_path / "current.json"
    same = tmp_path / "same.json"
    other = tmp_path / "other.json"
    _write_lock(current)
    _write_lock(same)
    records = [make_record("lynx", "2.9.0dev.12-1"), make_record("w3m", "0.5.3+git20230121-3")]
    _write_lock(other, records)

    assert _run(["diff-lock", str(same), "--lock", str(current)]) == 0
    capsys.readouterr()
    assert _run(["--json", "diff-lock", str(other), "--lock", str(current)]) == 1
    out = capsys.readouterr().out
    assert "w3m@0.5.3+git20230121-3" in out
    assert "w3m@0.5.3+git20230121-2" in out


def test_dump_without_prepared_image(tmp_path, capsys):
    html = tmp_path / "case.html"
    html.write_text("<p>x</p>")
    assert _run(["dump", "lynx", "80", str(html)]) == 2
    assert "state_missing" in capsys.readouterr().err


def test_dump_rejects_unknown_engine(tmp_path):
    assert _run(["dump", "elinks", "80", str(tmp_path / "x.html")]) == 2


def test_config_get(capsys):
    assert _run(["config", "get", "architecture"]) == 0
    assert capsys.readouterr().out.strip() == "amd64"


def test_refresh_lock_requires_trust_anchors(capsys):
    assert _run(["refresh-lock", "--dry-run"]) == 2
    assert "config_missing" in capsys.readouterr().err


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 1
