#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/rootfs.py — Materialização do rootfs a partir dos .deb travados

Fluxo:
- cache local ({image_root}/pkgs) consultado por nome+versão
- download da downloadUrl do lock; falha de rede -> mirrors alternativos (em ordem)
- sha256 recalculado e comparado com contentSha256 antes de qualquer extração
- downloads em paralelo (ThreadPoolExecutor); primeira falha aborta tudo
- extração sequencial, na ordem do lock, sobre um único diretório (overlay simples)

Uso:
    m = RootfsMaterializer("/tmp/oracle-image")
    rootfs, entries = m.materialize(lock)
"""

from __future__ import annotations

import glob
import io
import os
import shutil
import tarfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Tuple

from refimage.modules import config, log, utils
from refimage.modules.errors import AcquisitionError, ConfigError, ExecutionError, ImageError, VerificationError
from refimage.modules.models import OracleLock, PackageEntry, PackageRecord

logger = log.get_logger("rootfs")

Downloader = Callable[[str, str], str]   # (url, dest) -> dest
Extractor = Callable[[str, str], None]   # (deb, rootfs)

AR_MAGIC = b"!<arch>\n"


def quote_version(version: str) -> str:
    """Mesma convenção do cache do apt: epoch ':' vira '%3a'."""
    return version.replace(":", "%3a")


def cache_name(record: PackageRecord) -> str:
    base = os.path.basename(record.filename)
    arch = base.rsplit("_", 1)[-1] if "_" in base else "all.deb"
    return f"{record.name}_{quote_version(record.version)}_{arch}"


def candidate_urls(record: PackageRecord, mirrors: List[str]) -> List[str]:
    urls = [record.download_url]
    rel = record.filename.lstrip("/")
    for mirror in mirrors:
        url = f"{mirror.rstrip('/')}/{rel}"
        if url not in urls:
            urls.append(url)
    return urls


# ---------------------------------------------------------------------
# Extratores
# ---------------------------------------------------------------------

def extract_with_dpkg(deb_path: str, rootfs: str) -> None:
    utils.run(["dpkg-deb", "-x", deb_path, rootfs])


def read_ar_members(data: bytes) -> Dict[str, bytes]:
    """Lê um container ar (formato do .deb): nome -> conteúdo."""
    if not data.startswith(AR_MAGIC):
        raise ExecutionError("tool_failed", "arquivo não é um .deb (ar) válido")
    members: Dict[str, bytes] = {}
    pos = len(AR_MAGIC)
    while pos + 60 <= len(data):
        header = data[pos:pos + 60]
        name = header[0:16].decode("ascii", errors="replace").strip().rstrip("/")
        size = int(header[48:58].decode("ascii").strip() or "0")
        pos += 60
        members[name] = data[pos:pos + size]
        pos += size + (size % 2)
    return members


def extract_with_python(deb_path: str, rootfs: str) -> None:
    """Extrai data.tar.* do .deb sem dpkg-deb (ar + tarfile)."""
    with open(deb_path, "rb") as f:
        members = read_ar_members(f.read())
    payload = next((n for n in sorted(members) if n.startswith("data.tar")), None)
    if payload is None:
        raise ExecutionError("tool_failed", f"{os.path.basename(deb_path)} sem membro data.tar",
                             path=deb_path)
    try:
        with tarfile.open(fileobj=io.BytesIO(members[payload]), mode="r:*") as tar:
            if hasattr(tarfile, "tar_filter"):
                tar.extractall(rootfs, filter="tar")
            else:
                tar.extractall(rootfs)
    except (tarfile.TarError, OSError) as e:
        raise ExecutionError("tool_failed", f"falha ao extrair {payload}: {e}", path=deb_path) from e


def select_extractor(kind: Optional[str] = None) -> Extractor:
    kind = (kind or config.get("extractor") or "auto").lower()
    if kind == "dpkg":
        return extract_with_dpkg
    if kind == "python":
        return extract_with_python
    if kind == "auto":
        return extract_with_dpkg if shutil.which("dpkg-deb") else extract_with_python
    raise ConfigError("config_invalid", f"extractor desconhecido: {kind}")


# ---------------------------------------------------------------------
# Materializer
# ---------------------------------------------------------------------

class RootfsMaterializer:
    def __init__(self, image_root: str,
                 mirrors: Optional[List[str]] = None,
                 download: Optional[Downloader] = None,
                 extractor: Optional[Extractor] = None,
                 workers: Optional[int] = None):
        self.image_root = os.path.abspath(image_root)
        self.rootfs_dir = os.path.join(self.image_root, "rootfs")
        self.cache_dir = os.path.join(self.image_root, "pkgs")
        self.mirrors = mirrors
        self.download = download or utils.download
        self.extractor = extractor or select_extractor()
        self.workers = int(workers or config.get("download_workers") or 1)

    # ---------------------------
    # Cache
    # ---------------------------
    def cached(self, record: PackageRecord) -> Optional[str]:
        pattern = os.path.join(self.cache_dir, f"{glob.escape(record.name)}_{glob.escape(quote_version(record.version))}_*.deb")
        hits = sorted(glob.glob(pattern))
        return hits[0] if hits else None

    def _entry(self, record: PackageRecord, path: str) -> PackageEntry:
        return PackageEntry(record=record, deb_path=path, size_bytes=os.path.getsize(path))

    # ---------------------------
    # Aquisição (um pacote)
    # ---------------------------
    def acquire(self, record: PackageRecord, mirrors: List[str]) -> PackageEntry:
        hit = self.cached(record)
        if hit:
            if utils.sha256_file(hit) == record.content_sha256:
                logger.debug("cache hit %s", hit)
                return self._entry(record, hit)
            logger.warning("Cache inválido para %s@%s, descartando %s", record.name, record.version, hit)
            utils.rm(hit)

        dest = os.path.join(self.cache_dir, cache_name(record))
        failures: List[str] = []
        for url in candidate_urls(record, mirrors):
            try:
                self.download(url, dest)
            except AcquisitionError as e:
                failures.append(f"{url}: {e.message}")
                logger.warning("Download falhou para %s via %s; tentando próxima origem", record.name, url)
                continue

            got = utils.sha256_file(dest)
            if got != record.content_sha256:
                utils.rm(dest)
                raise VerificationError(
                    "deb_sha256_mismatch",
                    f"hash do .deb de {record.name}@{record.version} não confere com o lock",
                    package=record.name, url=url,
                    sha256_expected=record.content_sha256, sha256_got=got,
                )
            logger.info("Verificado %s@%s", record.name, record.version)
            return self._entry(record, dest)

        raise AcquisitionError(
            "download_failed",
            f"nenhuma origem disponível para {record.name}@{record.version} ({'; '.join(failures)})",
            package=record.name, url=record.download_url,
        )

    def acquire_all(self, lock: OracleLock) -> List[PackageEntry]:
        """Download paralelo; resultado na ordem do lock."""
        utils.ensure_dir(self.cache_dir)
        mirrors = list(self.mirrors if self.mirrors is not None else lock.source_policy.mirrors)
        entries: Dict[Tuple[str, str], PackageEntry] = {}
        with ThreadPoolExecutor(max_workers=max(1, self.workers)) as ex:
            future_map = {ex.submit(self.acquire, rec, mirrors): rec for rec in lock.packages}
            try:
                for fut in as_completed(future_map):
                    entry = fut.result()
                    entries[entry.record.identity] = entry
            except ImageError:
                for fut in future_map:
                    fut.cancel()
                raise
        return [entries[rec.identity] for rec in lock.packages]

    # ---------------------------
    # API principal
    # ---------------------------
    def materialize(self, lock: OracleLock) -> Tuple[str, List[PackageEntry]]:
        entries = self.acquire_all(lock)
        logger.info("%d pacotes verificados; extraindo em %s", len(entries), self.rootfs_dir)
        utils.clean_dir(self.rootfs_dir)
        for entry in entries:
            logger.debug("Extraindo %s", os.path.basename(entry.deb_path))
            self.extractor(entry.deb_path, self.rootfs_dir)
        return self.rootfs_dir, entries


def copy_deb_artifacts(entries: List[PackageEntry], dest: str) -> List[str]:
    """Exporta os .deb verificados como {name}_{version}.deb."""
    utils.ensure_dir(dest)
    out = []
    for entry in entries:
        target = os.path.join(dest, f"{entry.record.name}_{quote_version(entry.record.version)}.deb")
        shutil.copyfile(entry.deb_path, target)
        out.append(target)
    logger.info("%d artefatos .deb copiados para %s", len(out), dest)
    return out
