#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
models.py — Modelos de dados do refimage

O lock (OracleLock) é o artefato durável: tudo o mais é derivado dele
ou usado para construí-lo. As chaves JSON seguem camelCase porque o
arquivo é consumido por outras ferramentas (políticas, atestação).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

UNKNOWN_SIGNER = "unknown"


# ---------------------------------------------------------------------
# Lock
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class PackageRecord:
    """Um .deb travado. Identidade = (name, version)."""
    name: str
    version: str
    suite: str
    component: str
    source_index_url: str
    filename: str
    download_url: str
    content_sha256: str

    @property
    def identity(self) -> tuple:
        return (self.name, self.version)

    def sort_key(self) -> tuple:
        # ordem de bytes, não de locale
        return (self.name.encode("utf-8"), self.version.encode("utf-8"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "suite": self.suite,
            "component": self.component,
            "sourceIndexUrl": self.source_index_url,
            "filename": self.filename,
            "downloadUrl": self.download_url,
            "contentSha256": self.content_sha256,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PackageRecord":
        return cls(
            name=raw.get("name", ""),
            version=raw.get("version", ""),
            suite=raw.get("suite", ""),
            component=raw.get("component", ""),
            source_index_url=raw.get("sourceIndexUrl", ""),
            filename=raw.get("filename", ""),
            download_url=raw.get("downloadUrl", ""),
            content_sha256=raw.get("contentSha256", ""),
        )


@dataclass(frozen=True)
class PackageIndexRef:
    component: str
    index_path: str
    index_url: str
    index_sha256: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "component": self.component,
            "indexPath": self.index_path,
            "indexUrl": self.index_url,
            "indexSha256": self.index_sha256,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PackageIndexRef":
        return cls(
            component=raw.get("component", ""),
            index_path=raw.get("indexPath", ""),
            index_url=raw.get("indexUrl", ""),
            index_sha256=raw.get("indexSha256", ""),
        )


@dataclass(frozen=True)
class ReleaseRecord:
    """Um por suite referenciada por algum pacote."""
    suite: str
    release_url: str
    release_sha256: str
    signature_key_id: str
    package_indexes: List[PackageIndexRef] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suite": self.suite,
            "releaseUrl": self.release_url,
            "releaseSha256": self.release_sha256,
            "signatureKeyId": self.signature_key_id,
            "packageIndexes": [p.to_dict() for p in self.package_indexes],
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ReleaseRecord":
        return cls(
            suite=raw.get("suite", ""),
            release_url=raw.get("releaseUrl", ""),
            release_sha256=raw.get("releaseSha256", ""),
            signature_key_id=raw.get("signatureKeyId", UNKNOWN_SIGNER),
            package_indexes=[PackageIndexRef.from_dict(p) for p in raw.get("packageIndexes") or []],
        )


@dataclass(frozen=True)
class SourcePolicy:
    snapshot_root: str
    snapshot_id: str
    keyring_path: str
    mirrors: List[str] = field(default_factory=list)
    mode: str = "snapshot-replay"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "mirrors": list(self.mirrors),
            "snapshotRoot": self.snapshot_root,
            "snapshotId": self.snapshot_id,
            "keyringPath": self.keyring_path,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SourcePolicy":
        return cls(
            mode=raw.get("mode", "snapshot-replay"),
            mirrors=list(raw.get("mirrors") or []),
            snapshot_root=raw.get("snapshotRoot", ""),
            snapshot_id=raw.get("snapshotId", ""),
            keyring_path=raw.get("keyringPath", ""),
        )


@dataclass
class OracleLock:
    format_version: int
    generated_at: str
    root_packages: List[str]
    source_policy: SourcePolicy
    release_records: List[ReleaseRecord]
    packages: List[PackageRecord]
    fingerprint: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "formatVersion": self.format_version,
            "generatedAt": self.generated_at,
            "rootPackages": list(self.root_packages),
            "sourcePolicy": self.source_policy.to_dict(),
            "releaseRecords": [r.to_dict() for r in self.release_records],
            "packages": [p.to_dict() for p in self.packages],
            "fingerprint": self.fingerprint,
        }


# ---------------------------------------------------------------------
# Resultados intermediários e derivados
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ResolvedPackage:
    """Saída do resolver: versão candidata + origem + metadados anunciados."""
    name: str
    version: str
    suite: str
    component: str
    origin_url: str
    filename: str
    advertised_sha256: str


@dataclass
class PackageEntry:
    """Pacote materializado (para fingerprint/auditoria)."""
    record: PackageRecord
    deb_path: str
    size_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        data = self.record.to_dict()
        data["debFile"] = self.deb_path
        data["debSizeBytes"] = self.size_bytes
        return data


@dataclass
class ImageState:
    """Derivado; reconstruído a cada build. O lock é a autoridade."""
    rootfs_path: str
    lock_path: str
    fingerprint: str
    package_count: int
    root_packages: List[str]
    os_release_text: str
    image_root: str = ""
    package_entries: List[PackageEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "imageRoot": self.image_root,
            "rootfsPath": self.rootfs_path,
            "lockPath": self.lock_path,
            "fingerprint": self.fingerprint,
            "packageCount": self.package_count,
            "rootPackages": list(self.root_packages),
            "osReleaseText": self.os_release_text,
        }


@dataclass(frozen=True)
class EngineFingerprint:
    engine: str
    binary_path: str
    size_bytes: int
    sha256: str
    version_string: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "engine": self.engine,
            "binaryPath": self.binary_path,
            "sizeBytes": self.size_bytes,
            "sha256": self.sha256,
            "versionString": self.version_string,
        }
