import dataclasses
import json

from helpers import KEY_ID, SNAPSHOT_ID, make_record

from refimage.modules import healthcheck, lockfile
from refimage.modules.models import EngineFingerprint, ImageState, ReleaseRecord, SourcePolicy, UNKNOWN_SIGNER

POLICY = SourcePolicy(snapshot_root="https://snap", snapshot_id=SNAPSHOT_ID, keyring_path="/etc/keyring.gpg")
RELEASE = ReleaseRecord(suite="bookworm", release_url="https://snap/Release", release_sha256="e" * 64,
                        signature_key_id=KEY_ID)


def _lock(count=3):
    records = [make_record(f"pkg{i:03d}", "1.0") for i in range(count)]
    return lockfile.build_lock(["lynx", "w3m", "links2"], POLICY, [RELEASE], records,
                               generated_at="2026-01-01T00:00:00Z")


def _fps(engines=("links2", "lynx", "w3m")):
    return [EngineFingerprint(engine=e, binary_path=f"/r/usr/bin/{e}", size_bytes=100,
                              sha256="a" * 64, version_string=f"{e} 1.0") for e in engines]


def _state(lock):
    return ImageState(rootfs_path="/r", lock_path="/l.json", fingerprint=lock.fingerprint,
                      package_count=len(lock.packages), root_packages=list(lock.root_packages),
                      os_release_text="ID=debian")


def test_supply_chain_ok():
    report = healthcheck.check_supply_chain(_lock(), _fps())
    assert report["ok"]
    assert report["packageCount"] == 3
    assert report["maxPackageCount"] == 110


def test_supply_chain_flags_each_problem():
    lock = _lock(count=5)
    lock.release_records = [dataclasses.replace(RELEASE, signature_key_id=UNKNOWN_SIGNER)]
    report = healthcheck.check_supply_chain(lock, _fps(("lynx",)), max_package_count=4,
                                            required_roots=["lynx", "elinks"])
    assert not report["ok"]
    assert not report["packageCountOk"]
    assert report["missingRootPackages"] == ["elinks"]
    assert report["missingEngineFingerprints"] == ["links2", "w3m"]
    assert not report["signedReleases"]


def test_drift_ok_when_everything_matches():
    lock = _lock()
    report = healthcheck.check_fingerprint_drift(lock, _state(lock), _fps())
    assert report["ok"]
    assert report["expectedFingerprint"] == lock.fingerprint


def test_drift_detects_stale_state_and_weak_engine():
    lock = _lock()
    state = _state(lock)
    state.fingerprint = "0" * 64
    fps = _fps()
    fps[0] = dataclasses.replace(fps[0], version_string="  ", size_bytes=0)

    report = healthcheck.check_fingerprint_drift(lock, state, fps)
    assert not report["ok"]
    assert report["declaredMatchesExpected"]
    assert not report["runtimeMatchesExpected"]
    assert report["weakEngineFingerprints"] == [{"engine": "links2", "problems": ["sizeBytes", "versionString"]}]


def test_drift_detects_tampered_declared_fingerprint():
    lock = _lock()
    state = _state(lock)
    lock.fingerprint = "1" * 64
    report = healthcheck.check_fingerprint_drift(lock, state, _fps())
    assert not report["declaredMatchesExpected"]
    assert not report["ok"]


def test_write_runtime_report(tmp_path):
    lock = _lock()
    path = tmp_path / "reports" / "runtime.json"
    healthcheck.write_runtime_report(str(path), _state(lock), _fps(), extra={"audit": {"ok": True}})
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["image"]["fingerprint"] == lock.fingerprint
    assert [e["engine"] for e in data["engines"]] == ["links2", "lynx", "w3m"]
    assert data["audit"] == {"ok": True}
