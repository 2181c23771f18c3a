#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/bootstrap.py — Coordenador de construção da imagem de referência

Dois caminhos a partir do mesmo ponto de entrada:
- Rebuild: resolver -> verificação do snapshot -> lock -> grava lock -> rootfs
- Replay:  carrega + valida lock existente -> rootfs (sem rede para metadados)

Ambos terminam gravando image-state.json. Só uma construção por image_root:
o BuildLease cria {image_root}/.refimage.lock com O_EXCL e sempre o remove
ao sair (sucesso ou erro). Uma segunda construção concorrente falha na hora
com "already building".

Uso rápido:
    from refimage.modules.bootstrap import ensure_image
    state = ensure_image(rebuild_lock=False)

    # CLI:
    # refimage prepare --rebuild-lock
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from refimage.modules import config, log, utils
from refimage.modules.dependency import DependencyResolver
from refimage.modules.errors import ImageBusyError, ImageError, LockFormatError
from refimage.modules.lockfile import build_lock, build_package_records, diff_locks, load_lock, save_lock
from refimage.modules.models import ImageState, OracleLock, SourcePolicy
from refimage.modules.rootfs import RootfsMaterializer
from refimage.modules.sandbox import resolve_in_rootfs
from refimage.modules.snapshot import SnapshotVerifier

logger = log.get_logger("bootstrap")

LEASE_NAME = ".refimage.lock"
STATE_NAME = "image-state.json"

VerifierFactory = Callable[[SourcePolicy], SnapshotVerifier]


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------
# Build lease
# ---------------------------
class BuildLease:
    """Exclusão mútua entre processos por criação atômica de arquivo."""

    def __init__(self, image_root: str):
        self.image_root = os.path.abspath(image_root)
        self.path = os.path.join(self.image_root, LEASE_NAME)
        self._held = False

    def acquire(self) -> "BuildLease":
        utils.ensure_dir(self.image_root)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as e:
            raise ImageBusyError(self.path) from e
        self._held = True
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"pid": os.getpid(), "acquiredAt": _now_iso()}, f)
            f.write("\n")
        logger.debug("Lease adquirido: %s", self.path)
        return self

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        if os.path.lexists(self.path):
            os.remove(self.path)
        logger.debug("Lease liberado: %s", self.path)

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


# ---------------------------
# Helpers
# ---------------------------
def policy_from_config() -> SourcePolicy:
    """Âncoras de confiança vêm só da configuração (sem defaults embutidos)."""
    snapshot_id = config.validate_snapshot_id(config.require("snapshot_id"))
    return SourcePolicy(
        snapshot_root=config.require("snapshot_root"),
        snapshot_id=snapshot_id,
        keyring_path=config.require("keyring_path"),
        mirrors=list(config.get("mirrors") or []),
    )


def read_os_release(rootfs: str) -> str:
    for rel in ("usr/lib/os-release", "etc/os-release"):
        path = resolve_in_rootfs(rootfs, rel)
        if os.path.isfile(path):
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                return f.read().strip()
    return ""


# ---------------------------
# Coordenador
# ---------------------------
class ImageBuilder:
    def __init__(self, image_root: Optional[str] = None,
                 lock_path: Optional[str] = None,
                 root_packages: Optional[List[str]] = None,
                 resolver: Optional[DependencyResolver] = None,
                 verifier_factory: Optional[VerifierFactory] = None,
                 materializer: Optional[RootfsMaterializer] = None,
                 policy: Optional[SourcePolicy] = None):
        self.image_root = os.path.abspath(image_root or config.get("image_root"))
        self.lock_path = os.path.abspath(lock_path or config.get("lock_path"))
        self.root_packages = list(root_packages or config.get("root_packages"))
        self.resolver = resolver or DependencyResolver()
        self.verifier_factory = verifier_factory or self._default_verifier
        self.materializer = materializer
        self.policy = policy
        self.require_signed = bool(config.get("require_signed"))

    def _default_verifier(self, policy: SourcePolicy) -> SnapshotVerifier:
        return SnapshotVerifier(policy, architecture=config.get("architecture"),
                                require_signed=self.require_signed)

    # ---------------------------
    # Rebuild
    # ---------------------------
    def rebuild_lock(self, generated_at: Optional[str] = None) -> OracleLock:
        policy = self.policy or policy_from_config()
        resolved = self.resolver.resolve(self.root_packages)

        suites: Dict[str, Set[str]] = {}
        for pkg in resolved:
            suites.setdefault(pkg.suite, set()).add(pkg.component)
        logger.info("Verificando snapshot %s (%s)", policy.snapshot_id,
                    ", ".join(f"{s}:{'/'.join(sorted(c))}" for s, c in sorted(suites.items())))

        verifier = self.verifier_factory(policy)
        release_records, indexes = verifier.verify(suites)
        records = build_package_records(resolved, indexes, verifier.base_url)
        lock = build_lock(self.root_packages, policy, release_records, records,
                          generated_at=generated_at, require_signed=self.require_signed)
        logger.info("Lock construído: %d pacotes, fingerprint=%s", len(lock.packages), lock.fingerprint)
        return lock

    # ---------------------------
    # Replay
    # ---------------------------
    def load_lock(self) -> OracleLock:
        lock = load_lock(self.lock_path, require_signed=self.require_signed)
        if sorted(lock.root_packages) != sorted(self.root_packages):
            logger.warning("Pacotes raiz do lock (%s) diferem dos configurados (%s); usando o lock",
                           ", ".join(lock.root_packages), ", ".join(self.root_packages))
        return lock

    # ---------------------------
    # API principal
    # ---------------------------
    def ensure_image(self, rebuild_lock: bool = False, generated_at: Optional[str] = None) -> ImageState:
        with BuildLease(self.image_root):
            # estado só existe depois de uma construção completa
            state_path = os.path.join(self.image_root, STATE_NAME)
            utils.rm(state_path)
            if rebuild_lock:
                lock = self.rebuild_lock(generated_at=generated_at)
                save_lock(self.lock_path, lock)
            else:
                lock = self.load_lock()
                logger.info("Replay do lock %s (fingerprint=%s)", self.lock_path, lock.fingerprint)

            materializer = self.materializer or RootfsMaterializer(self.image_root)
            rootfs, entries = materializer.materialize(lock)

            state = ImageState(
                rootfs_path=rootfs,
                lock_path=self.lock_path,
                fingerprint=lock.fingerprint,
                package_count=len(lock.packages),
                root_packages=list(lock.root_packages),
                os_release_text=read_os_release(rootfs),
                image_root=self.image_root,
                package_entries=entries,
            )
            utils.write_json(state_path, state.to_dict())
            logger.info("Imagem pronta em %s (%d pacotes)", rootfs, state.package_count)
            return state

    def refresh_lock(self, generated_at: Optional[str] = None, write: bool = True) -> Tuple[OracleLock, Optional[Dict]]:
        """Regenera o lock sem materializar; devolve (lock, diff contra o lock atual)."""
        with BuildLease(self.image_root):
            previous = None
            if os.path.exists(self.lock_path):
                try:
                    previous = load_lock(self.lock_path, require_signed=self.require_signed)
                except LockFormatError as e:
                    logger.warning("Lock atual ignorado no diff: %s", e)
            lock = self.rebuild_lock(generated_at=generated_at)
            diff = diff_locks(previous, lock) if previous else None
            if write:
                save_lock(self.lock_path, lock)
            return lock, diff


def load_state(image_root: Optional[str] = None) -> ImageState:
    image_root = os.path.abspath(image_root or config.get("image_root"))
    path = os.path.join(image_root, STATE_NAME)
    try:
        data = utils.load_json(path)
    except FileNotFoundError as e:
        raise ImageError("state_missing", "imagem ainda não foi preparada (refimage prepare)", path=path) from e
    return ImageState(
        rootfs_path=data.get("rootfsPath", ""),
        lock_path=data.get("lockPath", ""),
        fingerprint=data.get("fingerprint", ""),
        package_count=int(data.get("packageCount", 0)),
        root_packages=list(data.get("rootPackages") or []),
        os_release_text=data.get("osReleaseText", ""),
        image_root=data.get("imageRoot", image_root),
    )


# module-level convenience
def ensure_image(rebuild_lock: bool = False, image_root: Optional[str] = None,
                 lock_path: Optional[str] = None, root_packages: Optional[List[str]] = None) -> ImageState:
    builder = ImageBuilder(image_root=image_root, lock_path=lock_path, root_packages=root_packages)
    return builder.ensure_image(rebuild_lock=rebuild_lock)
