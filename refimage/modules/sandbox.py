#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/sandbox.py — Execução hermética das engines de referência

- ambiente montado do zero (nada do host vaza para o processo filho)
- LD_LIBRARY_PATH apontando só para as bibliotecas do rootfs
- se o rootfs traz o próprio loader (ld-linux), o binário roda através dele
  com --library-path explícito: funciona mesmo com glibc do host diferente
- HOME temporário novo a cada chamada (w3m/links2 gravam estado em ~)
- dump normalizado: CRLF/CR -> LF, última linha vazia removida

Uso:
    sb = HermeticSandbox("/tmp/oracle-image/rootfs")
    lines = sb.dump("lynx", 80, "/tmp/case.html")
    fp = sb.fingerprint("w3m")
"""

from __future__ import annotations

import glob
import os
import tempfile
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from refimage.modules import config, log, utils
from refimage.modules.errors import ExecutionError
from refimage.modules.models import EngineFingerprint

logger = log.get_logger("sandbox")

TRIPLETS = {
    "amd64": "x86_64-linux-gnu",
    "arm64": "aarch64-linux-gnu",
    "i386": "i386-linux-gnu",
}

LOADER_CANDIDATES = (
    "lib64/ld-linux-x86-64.so.2",
    "usr/lib64/ld-linux-x86-64.so.2",
    "lib/{triplet}/ld-linux*.so*",
    "usr/lib/{triplet}/ld-linux*.so*",
    "lib/ld-linux*.so*",
)


def file_url(path: str) -> str:
    return f"file://{os.path.abspath(path)}"


# ---------------------------
# Engines
# ---------------------------
@dataclass(frozen=True)
class EngineSpec:
    name: str
    binary: str
    version_args: Tuple[str, ...]
    dump_args: Callable[[int, str], List[str]]


ENGINES: Dict[str, EngineSpec] = {
    "lynx": EngineSpec(
        name="lynx",
        binary="usr/bin/lynx",
        version_args=("--version",),
        dump_args=lambda width, html: ["-dump", "-nolist", f"-width={width}", file_url(html)],
    ),
    "w3m": EngineSpec(
        name="w3m",
        binary="usr/bin/w3m",
        version_args=("-version",),
        dump_args=lambda width, html: ["-dump", "-cols", str(width), os.path.abspath(html)],
    ),
    "links2": EngineSpec(
        name="links2",
        binary="usr/bin/links2",
        version_args=("-version",),
        dump_args=lambda width, html: ["-dump", "-width", str(width), file_url(html)],
    ),
}


def engine_spec(name: str) -> EngineSpec:
    spec = ENGINES.get(name)
    if spec is None:
        raise ExecutionError("unsupported_engine", f"engine não suportada: {name} (use {', '.join(sorted(ENGINES))})")
    return spec


def normalize_lines(text: str) -> List[str]:
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def resolve_in_rootfs(rootfs: str, relpath: str, max_hops: int = 16) -> str:
    """
    Segue symlinks sem sair do rootfs: alvo absoluto é reancorado no rootfs
    (lib64/ld-linux-x86-64.so.2 -> /lib/x86_64-linux-gnu/... no libc6).
    """
    path = os.path.join(rootfs, relpath.lstrip("/"))
    for _ in range(max_hops):
        if not os.path.islink(path):
            return path
        target = os.readlink(path)
        if os.path.isabs(target):
            path = os.path.join(rootfs, target.lstrip("/"))
        else:
            path = os.path.normpath(os.path.join(os.path.dirname(path), target))
    return path


# ---------------------------
# Classe principal
# ---------------------------
class HermeticSandbox:
    def __init__(self, rootfs: str, architecture: Optional[str] = None, timeout: Optional[float] = None):
        """
        :param rootfs: diretório materializado (RootfsMaterializer)
        :param architecture: arquitetura Debian (define o triplet das libs)
        :param timeout: limite por execução, em segundos
        """
        self.rootfs = os.path.abspath(rootfs)
        arch = architecture or config.get("architecture")
        self.triplet = TRIPLETS.get(arch, f"{arch}-linux-gnu")
        self.timeout = timeout if timeout is not None else config.get("exec_timeout")

    # ---------------------------
    # Ambiente
    # ---------------------------
    def ld_library_path(self) -> str:
        return ":".join([
            os.path.join(self.rootfs, "lib", self.triplet),
            os.path.join(self.rootfs, "usr", "lib", self.triplet),
            os.path.join(self.rootfs, "usr", "lib"),
        ])

    def find_loader(self) -> Optional[str]:
        for pattern in LOADER_CANDIDATES:
            rel = pattern.format(triplet=self.triplet)
            for hit in sorted(glob.glob(os.path.join(self.rootfs, rel))):
                resolved = resolve_in_rootfs(self.rootfs, os.path.relpath(hit, self.rootfs))
                if os.path.isfile(resolved):
                    return resolved
        return None

    def build_env(self, home: str) -> Dict[str, str]:
        env = {
            "PATH": ":".join([
                os.path.join(self.rootfs, "usr", "bin"),
                os.path.join(self.rootfs, "bin"),
                "/usr/bin",
                "/bin",
            ]),
            "LD_LIBRARY_PATH": self.ld_library_path(),
            "HOME": home,
            "TERM": "xterm-256color",
            "LANG": "C.UTF-8",
            "LC_ALL": "C.UTF-8",
            "TZ": "UTC",
        }
        lynx_cfg = os.path.join(self.rootfs, "etc", "lynx", "lynx.cfg")
        if os.path.isfile(lynx_cfg):
            env["LYNX_CFG"] = lynx_cfg
        lynx_lss = os.path.join(self.rootfs, "etc", "lynx", "lynx.lss")
        if os.path.isfile(lynx_lss):
            env["LYNX_LSS"] = lynx_lss
        return env

    def binary_path(self, engine: str) -> str:
        spec = engine_spec(engine)
        path = resolve_in_rootfs(self.rootfs, spec.binary)
        if not os.path.isfile(path):
            raise ExecutionError("engine_missing", f"binário de {engine} ausente no rootfs", path=path)
        return path

    def command(self, engine: str, args: List[str]) -> List[str]:
        binary = self.binary_path(engine)
        loader = self.find_loader()
        if loader:
            return [loader, "--library-path", self.ld_library_path(), binary, *args]
        return [binary, *args]

    # ---------------------------
    # Execução
    # ---------------------------
    def run(self, engine: str, args: List[str]) -> str:
        cmd = self.command(engine, args)
        with tempfile.TemporaryDirectory(prefix="refimage-home-") as home:
            rc, out, err = utils.run(cmd, cwd=home, env=self.build_env(home), check=False, timeout=self.timeout)
        if rc != 0:
            raise ExecutionError("engine_failed", f"{engine} terminou com erro",
                                 returncode=rc, stdout=out, stderr=err)
        return out

    def dump(self, engine: str, width: int, html_path: str) -> List[str]:
        spec = engine_spec(engine)
        if not isinstance(width, int) or width <= 0:
            raise ExecutionError("engine_failed", f"largura inválida: {width!r}")
        if not os.path.isfile(html_path):
            raise ExecutionError("engine_failed", "arquivo HTML não encontrado", path=html_path)
        logger.debug("dump %s width=%d %s", engine, width, html_path)
        return normalize_lines(self.run(engine, spec.dump_args(width, html_path)))

    def fingerprint(self, engine: str) -> EngineFingerprint:
        spec = engine_spec(engine)
        binary = self.binary_path(engine)
        version = self.run(engine, list(spec.version_args)).strip()
        return EngineFingerprint(
            engine=engine,
            binary_path=binary,
            size_bytes=os.path.getsize(binary),
            sha256=utils.sha256_file(binary),
            version_string=version,
        )


# ---------------------------
# API de módulo
# ---------------------------
def run_dump(rootfs_path: str, engine: str, width: int, html_path: str) -> List[str]:
    return HermeticSandbox(rootfs_path).dump(engine, width, html_path)


def fingerprint_engines(rootfs_path: str, engines: Optional[List[str]] = None) -> List[EngineFingerprint]:
    sb = HermeticSandbox(rootfs_path)
    names = sorted(engines or ENGINES)
    fps = [sb.fingerprint(name) for name in names]
    for fp in fps:
        logger.info("%s: %s (%d bytes) %s", fp.engine, fp.sha256[:12], fp.size_bytes,
                    fp.version_string.splitlines()[0] if fp.version_string else "")
    return fps
