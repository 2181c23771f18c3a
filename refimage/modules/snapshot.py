#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/snapshot.py — Verificação dos metadados de um snapshot Debian

Cadeia de confiança em dois níveis:
  1) Release assinado (gpgv + keyring local) -> tabela path -> {sha256, size}
  2) Packages (xz/gz/plain) conferido contra essa tabela -> (name, version,
     filename) -> sha256 de cada .deb

O hash de um índice nunca é aceito do próprio índice: sempre do Release já
verificado. Um mirror comprometido não consegue trocar um .deb sem quebrar
algum hash ancorado na assinatura.

Uso:
    verifier = SnapshotVerifier(policy, architecture="amd64")
    releases, lookup = verifier.verify({"bookworm": ["main"]})
"""

from __future__ import annotations

import gzip
import lzma
import os
import tempfile
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from refimage.modules import config, log, utils
from refimage.modules.debparse import (
    ReleaseManifest,
    ReleaseParseError,
    parse_gpgv_status,
    parse_packages_index,
    parse_release,
)
from refimage.modules.errors import ConfigError, ExecutionError, VerificationError
from refimage.modules.models import PackageIndexRef, ReleaseRecord, SourcePolicy, UNKNOWN_SIGNER

logger = log.get_logger("snapshot")

Fetcher = Callable[[str], bytes]
IndexKey = Tuple[str, str, str]  # (name, version, filename)

# Ordem de preferência das codificações do índice
INDEX_ENCODINGS = (
    ("Packages.xz", "xz"),
    ("Packages.gz", "gz"),
    ("Packages", None),
)


def snapshot_base_url(snapshot_root: str, snapshot_id: str) -> str:
    """https://snapshot.debian.org/archive/debian + 20260101T000000Z -> .../20260101T000000Z/"""
    config.validate_snapshot_id(snapshot_id)
    if not snapshot_root:
        raise ConfigError("config_missing", "snapshot_root vazio")
    return f"{snapshot_root.rstrip('/')}/{snapshot_id}/"


# ---------------------------------------------------------------------
# Verificação de assinatura
# ---------------------------------------------------------------------

class GpgvVerifier:
    """
    Verifica assinatura destacada com gpgv contra um keyring local.
    A validade vem das linhas de status (como faz o apt), não do exit code:
    um Release.gpg com várias assinaturas pode ter chaves fora do keyring.
    """

    def __init__(self, keyring_path: str, gpgv: str = "gpgv"):
        if not keyring_path:
            raise ConfigError("config_missing", "keyring_path não configurado")
        self.keyring_path = os.path.abspath(keyring_path)
        self.gpgv = gpgv

    def verify(self, data: bytes, signature: bytes, label: str = "") -> str:
        """Retorna o id da chave que assinou (ou UNKNOWN_SIGNER)."""
        if not os.path.isfile(self.keyring_path):
            raise VerificationError("bad_signature", "keyring não encontrado", path=self.keyring_path)
        with tempfile.TemporaryDirectory(prefix="refimage-gpgv-") as tmp:
            data_path = os.path.join(tmp, "Release")
            sig_path = os.path.join(tmp, "Release.gpg")
            with open(data_path, "wb") as f:
                f.write(data)
            with open(sig_path, "wb") as f:
                f.write(signature)
            cmd = [self.gpgv, "--status-fd", "1", "--keyring", self.keyring_path, sig_path, data_path]
            try:
                rc, out, err = utils.run(cmd, check=False)
            except ExecutionError as e:
                raise VerificationError("bad_signature", f"gpgv indisponível: {e.message}", url=label) from e

        status = parse_gpgv_status(out)
        if status.bad:
            raise VerificationError("bad_signature", f"assinatura inválida ({', '.join(status.bad)})", url=label)
        if not status.ok:
            raise VerificationError(
                "bad_signature",
                f"nenhuma assinatura válida (gpgv status={rc}, chaves ausentes={status.missing_keys})",
                url=label,
            )
        if rc != 0:
            logger.debug("gpgv retornou %s com assinatura válida de %s (chaves ausentes: %s)",
                         rc, status.key_id, status.missing_keys)
        return status.key_id or UNKNOWN_SIGNER


# ---------------------------------------------------------------------
# Resultados
# ---------------------------------------------------------------------

@dataclass
class VerifiedRelease:
    suite: str
    release_url: str
    release_sha256: str
    key_id: str
    manifest: ReleaseManifest
    indexes: List[PackageIndexRef] = field(default_factory=list)

    def to_record(self) -> ReleaseRecord:
        return ReleaseRecord(
            suite=self.suite,
            release_url=self.release_url,
            release_sha256=self.release_sha256,
            signature_key_id=self.key_id,
            package_indexes=sorted(self.indexes, key=lambda i: i.component.encode()),
        )


@dataclass
class VerifiedIndex:
    ref: PackageIndexRef
    lookup: Dict[IndexKey, str]


# ---------------------------------------------------------------------
# Verificador
# ---------------------------------------------------------------------

class SnapshotVerifier:
    """
    - policy: SourcePolicy (snapshot_root, snapshot_id, keyring_path)
    - fetch: função url -> bytes (default utils.fetch_bytes)
    - signature_verifier: objeto com .verify(data, signature, label) -> key id
    - require_signed: signatário desconhecido é rejeitado
    """

    def __init__(self, policy: SourcePolicy, architecture: str = "amd64",
                 fetch: Optional[Fetcher] = None,
                 signature_verifier=None,
                 require_signed: bool = True):
        self.policy = policy
        self.architecture = architecture
        self.base_url = snapshot_base_url(policy.snapshot_root, policy.snapshot_id)
        self.fetch = fetch or utils.fetch_bytes
        self.signature_verifier = signature_verifier or GpgvVerifier(policy.keyring_path)
        self.require_signed = require_signed

    def url_for(self, relpath: str) -> str:
        return self.base_url + relpath.lstrip("/")

    # ---------------------------
    # Nível 1: Release
    # ---------------------------
    def verify_release(self, suite: str) -> VerifiedRelease:
        release_path = f"dists/{suite}/Release"
        release_url = self.url_for(release_path)
        logger.info("Verificando Release de %s", suite)
        data = self.fetch(release_url)
        signature = self.fetch(release_url + ".gpg")

        key_id = self.signature_verifier.verify(data, signature, release_url)
        if not key_id or key_id == UNKNOWN_SIGNER:
            key_id = UNKNOWN_SIGNER
            if self.require_signed:
                raise VerificationError("unknown_signer", f"signatário não identificado para {suite}", url=release_url)
            logger.warning("Release de %s sem signatário identificável", suite)

        try:
            manifest = parse_release(data.decode("utf-8", errors="replace"))
        except ReleaseParseError as e:
            raise VerificationError("release_unparseable", f"Release ilegível: {e}", url=release_url) from e

        logger.debug("Release %s assinado por %s (%d entradas SHA256)", suite, key_id, len(manifest.sha256))
        return VerifiedRelease(
            suite=suite,
            release_url=release_url,
            release_sha256=utils.sha256_bytes(data),
            key_id=key_id,
            manifest=manifest,
        )

    # ---------------------------
    # Nível 2: Packages
    # ---------------------------
    def select_index(self, release: VerifiedRelease, component: str) -> Tuple[str, Optional[str]]:
        """Melhor codificação disponível listada no Release verificado."""
        base = f"{component}/binary-{self.architecture}/"
        for name, encoding in INDEX_ENCODINGS:
            if base + name in release.manifest.sha256:
                return base + name, encoding
        raise VerificationError(
            "index_missing",
            f"Release de {release.suite} não lista índice para {component}/{self.architecture}",
            url=release.release_url,
        )

    def verify_index(self, release: VerifiedRelease, component: str) -> VerifiedIndex:
        relpath, encoding = self.select_index(release, component)
        expected = release.manifest.sha256[relpath]
        index_url = self.url_for(f"dists/{release.suite}/{relpath}")
        raw = self.fetch(index_url)

        got = utils.sha256_bytes(raw)
        if got != expected.sha256:
            raise VerificationError(
                "index_sha256_mismatch",
                f"hash do índice {relpath} difere do Release assinado",
                url=index_url, sha256_expected=expected.sha256, sha256_got=got,
            )
        if len(raw) != expected.size:
            raise VerificationError(
                "index_size_mismatch",
                f"tamanho do índice {relpath}: esperado {expected.size}, obtido {len(raw)}",
                url=index_url,
            )

        text = decompress(raw, encoding).decode("utf-8", errors="replace")
        lookup: Dict[IndexKey, str] = {}
        for entry in parse_packages_index(text):
            lookup[(entry.name, entry.version, entry.filename)] = entry.sha256
        logger.info("Índice %s/%s verificado: %d pacotes", release.suite, component, len(lookup))

        ref = PackageIndexRef(component=component, index_path=relpath, index_url=index_url, index_sha256=got)
        release.indexes.append(ref)
        return VerifiedIndex(ref=ref, lookup=lookup)

    # ---------------------------
    # API principal
    # ---------------------------
    def verify(self, suites: Dict[str, Iterable[str]]) -> Tuple[List[ReleaseRecord], Dict[Tuple[str, str], VerifiedIndex]]:
        """
        suites: suite -> componentes usados.
        Retorna (ReleaseRecords ordenados por suite, (suite, component) -> VerifiedIndex).
        """
        records: List[ReleaseRecord] = []
        indexes: Dict[Tuple[str, str], VerifiedIndex] = {}
        for suite in sorted(suites, key=lambda s: s.encode()):
            release = self.verify_release(suite)
            for component in sorted(set(suites[suite]), key=lambda c: c.encode()):
                indexes[(suite, component)] = self.verify_index(release, component)
            records.append(release.to_record())
        return records, indexes


def decompress(raw: bytes, encoding: Optional[str]) -> bytes:
    if encoding == "xz":
        return lzma.decompress(raw)
    if encoding == "gz":
        return gzip.decompress(raw)
    return raw
