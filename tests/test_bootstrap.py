import json
import os

import pytest

from helpers import SNAPSHOT_ID, FakeSignature, RejectingSignature, Snapshot

from refimage.modules.bootstrap import STATE_NAME, BuildLease, ImageBuilder, load_state
from refimage.modules.dependency import DependencyResolver
from refimage.modules.errors import ExecutionError, ImageBusyError, ImageError, LockFormatError, VerificationError
from refimage.modules.models import SourcePolicy
from refimage.modules.rootfs import RootfsMaterializer, extract_with_python
from refimage.modules.snapshot import SnapshotVerifier

GENERATED_AT = "2026-01-01T00:00:00Z"


@pytest.fixture
def snap(tmp_path):
    s = Snapshot(tmp_path / "snap")
    s.add("lynx", "2.9.0dev.12-1", {"usr/bin/lynx": "#!/bin/sh\necho lynx\n"})
    s.add("libc6", "2.36-9+deb12u7", {
        "usr/lib/os-release": 'PRETTY_NAME="Debian GNU/Linux 12 (bookworm)"\n',
        "usr/lib/x86_64-linux-gnu/libc.so.6": "libc",
    })
    s.publish()
    return s


class NoMaterialize:
    def materialize(self, lock):
        raise AssertionError("não deveria materializar")


def _builder(tmp_path, snap, materializer=None, signer=None):
    image_root = str(tmp_path / "image")
    policy = SourcePolicy(snapshot_root=snap.snapshot_root, snapshot_id=SNAPSHOT_ID, keyring_path="/unused")
    return ImageBuilder(
        image_root=image_root,
        lock_path=str(tmp_path / "oracle-image.lock.json"),
        root_packages=["lynx"],
        resolver=DependencyResolver(runner=snap.fake_apt()),
        verifier_factory=lambda p: SnapshotVerifier(p, signature_verifier=signer or FakeSignature()),
        materializer=materializer or RootfsMaterializer(image_root, extractor=extract_with_python),
        policy=policy,
    )


def test_lease_is_exclusive_and_released_on_error(tmp_path):
    lease = BuildLease(str(tmp_path))
    with pytest.raises(RuntimeError):
        with lease:
            with pytest.raises(ImageBusyError) as exc:
                BuildLease(str(tmp_path)).acquire()
            assert exc.value.reason_code == "already_building"
            assert "already building" in str(exc.value)
            raise RuntimeError("falha no meio da construção")
    assert not os.path.exists(lease.path)
    BuildLease(str(tmp_path)).acquire().release()


def test_concurrent_build_fails_without_touching_rootfs(tmp_path, snap):
    builder = _builder(tmp_path, snap)
    marker = os.path.join(builder.image_root, "rootfs", "marker")
    os.makedirs(os.path.dirname(marker))
    with open(marker, "w") as f:
        f.write("intacto")

    with BuildLease(builder.image_root):
        with pytest.raises(ImageBusyError):
            builder.ensure_image(rebuild_lock=True, generated_at=GENERATED_AT)

    with open(marker) as f:
        assert f.read() == "intacto"
    assert not os.path.exists(builder.lock_path)


def test_replay_without_lock_is_fatal(tmp_path, snap):
    builder = _builder(tmp_path, snap, materializer=NoMaterialize())
    with pytest.raises(LockFormatError) as exc:
        builder.ensure_image(rebuild_lock=False)
    assert exc.value.reason_code == "lock_missing"


def test_rebuild_materializes_and_records_state(tmp_path, snap):
    builder = _builder(tmp_path, snap)
    state = builder.ensure_image(rebuild_lock=True, generated_at=GENERATED_AT)

    assert os.path.isfile(os.path.join(state.rootfs_path, "usr/bin/lynx"))
    assert state.package_count == 2
    assert state.root_packages == ["lynx"]
    assert state.os_release_text.startswith("PRETTY_NAME=")

    with open(builder.lock_path, encoding="utf-8") as f:
        lock = json.load(f)
    assert [p["name"] for p in lock["packages"]] == ["libc6", "lynx"]
    assert lock["generatedAt"] == GENERATED_AT
    assert lock["fingerprint"] == state.fingerprint
    assert lock["packages"][1]["downloadUrl"].startswith(f"{snap.snapshot_root}/{SNAPSHOT_ID}/pool/")

    with open(os.path.join(builder.image_root, STATE_NAME), encoding="utf-8") as f:
        assert json.load(f)["fingerprint"] == state.fingerprint
    assert load_state(builder.image_root).rootfs_path == state.rootfs_path
    assert not os.path.exists(os.path.join(builder.image_root, ".refimage.lock"))


def test_identical_inputs_give_identical_lock_bytes(tmp_path, snap):
    builder = _builder(tmp_path, snap)
    builder.ensure_image(rebuild_lock=True, generated_at=GENERATED_AT)
    with open(builder.lock_path, "rb") as f:
        first = f.read()
    builder.ensure_image(rebuild_lock=True, generated_at=GENERATED_AT)
    with open(builder.lock_path, "rb") as f:
        assert f.read() == first


def test_replay_reuses_existing_lock(tmp_path, snap):
    builder = _builder(tmp_path, snap)
    built = builder.ensure_image(rebuild_lock=True, generated_at=GENERATED_AT)
    with open(builder.lock_path, "rb") as f:
        before = f.read()

    replayed = builder.ensure_image(rebuild_lock=False)

    assert replayed.fingerprint == built.fingerprint
    with open(builder.lock_path, "rb") as f:
        assert f.read() == before


def test_tampered_index_aborts_before_any_download(tmp_path):
    s = Snapshot(tmp_path / "snap")
    s.add("lynx", "2.9.0dev.12-1", {"usr/bin/lynx": "x"})
    s.publish(tamper_index=True)
    builder = _builder(tmp_path, s, materializer=NoMaterialize())

    with pytest.raises(VerificationError) as exc:
        builder.ensure_image(rebuild_lock=True, generated_at=GENERATED_AT)
    assert exc.value.reason_code == "index_sha256_mismatch"
    assert not os.path.exists(builder.lock_path)


def test_refresh_lock_reports_diff(tmp_path, snap):
    builder = _builder(tmp_path, snap, materializer=NoMaterialize())
    lock, diff = builder.refresh_lock(generated_at=GENERATED_AT)
    assert diff is None
    assert os.path.isfile(builder.lock_path)

    lock2, diff = builder.refresh_lock(generated_at=GENERATED_AT, write=False)
    assert lock2.fingerprint == lock.fingerprint
    assert diff["ok"]


def test_load_state_before_prepare(tmp_path):
    with pytest.raises(ImageError) as exc:
        load_state(str(tmp_path / "empty"))
    assert exc.value.reason_code == "state_missing"


def test_bad_release_signature_aborts_without_lock(tmp_path, snap):
    signer = RejectingSignature()
    builder = _builder(tmp_path, snap, materializer=NoMaterialize(), signer=signer)

    with pytest.raises(VerificationError) as exc:
        builder.ensure_image(rebuild_lock=True, generated_at=GENERATED_AT)

    assert exc.value.reason_code == "bad_signature"
    assert signer.calls == [f"{snap.snapshot_root}/{SNAPSHOT_ID}/dists/bookworm/Release"]
    assert not os.path.exists(builder.lock_path)
    assert not os.path.exists(os.path.join(builder.image_root, ".refimage.lock"))


def test_failed_rebuild_leaves_no_stale_state(tmp_path, snap):
    builder = _builder(tmp_path, snap)
    builder.ensure_image(rebuild_lock=True, generated_at=GENERATED_AT)
    assert load_state(builder.image_root).package_count == 2

    extracted = []

    def failing_extractor(deb_path, rootfs):
        extracted.append(deb_path)
        if len(extracted) == 2:
            raise ExecutionError("tool_failed", "falha ao extrair")
        extract_with_python(deb_path, rootfs)

    builder.materializer = RootfsMaterializer(builder.image_root, extractor=failing_extractor)
    with pytest.raises(ExecutionError):
        builder.ensure_image(rebuild_lock=False)

    assert len(extracted) == 2
    with pytest.raises(ImageError) as exc:
        load_state(builder.image_root)
    assert exc.value.reason_code == "state_missing"
