"""Fixtures em processo: .deb (ar + tar), snapshot file:// e apt-cache falso."""

import gzip
import hashlib
import io
import os
import tarfile

from refimage.modules.errors import VerificationError
from refimage.modules.models import PackageRecord

SNAPSHOT_ID = "20260101T000000Z"
KEY_ID = "4D64FEC119C2029067D6E791F8D2585B8783D481"
ARCH = "amd64"


def sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def pool_filename(name, version, component="main"):
    return f"pool/{component}/{name[0]}/{name}/{name}_{version}_{ARCH}.deb"


def make_record(name, version, content_sha256=None, download_url=None, filename=None,
                suite="bookworm", component="main"):
    filename = filename or pool_filename(name, version, component)
    return PackageRecord(
        name=name,
        version=version,
        suite=suite,
        component=component,
        source_index_url=f"https://snap/{SNAPSHOT_ID}/dists/{suite}/{component}/binary-{ARCH}/Packages.xz",
        filename=filename,
        download_url=download_url or f"https://snap/{SNAPSHOT_ID}/{filename}",
        content_sha256=content_sha256 or sha(f"{name}@{version}".encode()),
    )


# ---------- .deb ----------

def _ar_member(name: str, data: bytes) -> bytes:
    header = f"{name:<16}{0:<12}{0:<6}{0:<6}{'100644':<8}{len(data):<10}`\n".encode("ascii")
    body = header + data
    if len(data) % 2:
        body += b"\n"
    return body


def _tar_gz(files: dict) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for path, content in sorted(files.items()):
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo("./" + path.lstrip("/"))
            info.size = len(data)
            info.mode = 0o755 if path.startswith(("usr/bin/", "bin/")) else 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def make_deb(files: dict, name: str = "pkg") -> bytes:
    return (
        b"!<arch>\n"
        + _ar_member("debian-binary", b"2.0\n")
        + _ar_member("control.tar.gz", _tar_gz({"control": f"Package: {name}\n"}))
        + _ar_member("data.tar.gz", _tar_gz(files))
    )


# ---------- snapshot file:// ----------

class Snapshot:
    """Espelho de snapshot em disco: {root}/{SNAPSHOT_ID}/dists + pool."""

    def __init__(self, root_dir, suite="bookworm", component="main"):
        self.root_dir = str(root_dir)
        self.suite = suite
        self.component = component
        self.packages = []  # (name, version, filename, sha256, size)

    @property
    def snapshot_root(self):
        return "file://" + self.root_dir

    @property
    def base_dir(self):
        return os.path.join(self.root_dir, SNAPSHOT_ID)

    def add(self, name, version, files):
        data = make_deb(files, name=name)
        filename = pool_filename(name, version, self.component)
        path = os.path.join(self.base_dir, filename)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        self.packages.append((name, version, filename, sha(data), len(data)))
        return filename, sha(data)

    def packages_text(self):
        stanzas = []
        for name, version, filename, digest, size in self.packages:
            stanzas.append(
                f"Package: {name}\nVersion: {version}\nArchitecture: {ARCH}\n"
                f"Filename: {filename}\nSize: {size}\nSHA256: {digest}\n"
            )
        return "\n".join(stanzas)

    def publish(self, tamper_index=False):
        index = gzip.compress(self.packages_text().encode("utf-8"), mtime=0)
        relpath = f"{self.component}/binary-{ARCH}/Packages.gz"
        release = (
            "Origin: Debian\nSuite: stable\n"
            f"Codename: {self.suite}\nArchitectures: {ARCH}\nComponents: {self.component}\n"
            "SHA256:\n"
            f" {sha(index)} {len(index)} {relpath}\n"
        ).encode("utf-8")
        if tamper_index:
            index = gzip.compress((self.packages_text() + "\nPackage: evil\n").encode("utf-8"), mtime=0)
        dists = os.path.join(self.base_dir, "dists", self.suite)
        os.makedirs(os.path.join(dists, self.component, f"binary-{ARCH}"), exist_ok=True)
        with open(os.path.join(dists, relpath), "wb") as f:
            f.write(index)
        with open(os.path.join(dists, "Release"), "wb") as f:
            f.write(release)
        with open(os.path.join(dists, "Release.gpg"), "wb") as f:
            f.write(b"-----BEGIN PGP SIGNATURE-----\n")

    def fake_apt(self):
        apt = FakeApt()
        deps = ["  Depends: <awk>"]
        for name, version, filename, digest, _ in self.packages:
            deps.append(f"  Depends: {name}")
            apt.policy[name] = policy_text(name, version, [(500, "http://deb.debian.org/debian", f"{self.suite}/{self.component}")])
            apt.show[(name, version)] = f"Package: {name}\nVersion: {version}\nFilename: {filename}\nSHA256: {digest}\n"
        apt.depends = "\n".join([self.packages[0][0]] + deps) + "\n"
        return apt


class FakeSignature:
    def __init__(self, key_id=KEY_ID):
        self.key_id = key_id
        self.calls = []

    def verify(self, data, signature, label=""):
        self.calls.append(label)
        return self.key_id


class RejectingSignature:
    """Assinatura do Release sempre inválida (como um BADSIG do gpgv)."""

    def __init__(self):
        self.calls = []

    def verify(self, data, signature, label=""):
        self.calls.append(label)
        raise VerificationError("bad_signature", "assinatura inválida", url=label)


class FakeApt:
    """Substitui apt-cache: argv -> stdout."""

    def __init__(self, depends="", policy=None, show=None):
        self.depends = depends
        self.policy = dict(policy or {})
        self.show = dict(show or {})
        self.calls = []

    def __call__(self, cmd):
        self.calls.append(list(cmd))
        if cmd[1] == "depends":
            return self.depends
        if cmd[1] == "policy":
            return self.policy.get(cmd[2], f"{cmd[2]}:\n  Installed: (none)\n  Candidate: (none)\n  Version table:\n")
        if cmd[1] == "show":
            name, version = cmd[2].split("=", 1)
            return self.show.get((name, version), "")
        raise AssertionError(f"comando inesperado: {cmd}")


def policy_text(name, version, sources, installed="(none)"):
    lines = [f"{name}:", f"  Installed: {installed}", f"  Candidate: {version}", "  Version table:",
             f"     {version} 500"]
    for priority, url, dist in sources:
        lines.append(f"        {priority} {url} {dist} {ARCH} Packages")
    return "\n".join(lines) + "\n"
