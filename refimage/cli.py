#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
cli.py — CLI do refimage (imagem hermética das engines de referência)

    refimage prepare [--rebuild-lock]
    refimage refresh-lock [--snapshot-id ID] [--snapshot-root URL] [--keyring-path P] [--mirror URL ...]
    refimage verify-lock
    refimage diff-lock CANDIDATE
    refimage dump ENGINE WIDTH HTML
    refimage fingerprint
    refimage audit [--report PATH]
    refimage config list|get KEY
"""

from __future__ import annotations
import argparse
import json
import sys
from typing import Any

from refimage.modules import config as config_mod
from refimage.modules import log as log_mod
from refimage.modules import bootstrap as bootstrap_mod
from refimage.modules import healthcheck as health_mod
from refimage.modules import lockfile as lock_mod
from refimage.modules import sandbox as sb_mod
from refimage.modules.errors import ImageError

# ANSI colors simples
C = {
    "reset": "\033[0m",
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "cyan": "\033[36m",
    "bold": "\033[1m",
}

def color(text: str, col: str) -> str:
    return f"{C.get(col, '')}{text}{C['reset']}"

logger = log_mod.get_logger("cli")

# Small helpers
def _print_json_or_plain(data: Any, as_json: bool) -> None:
    if as_json:
        print(json.dumps(data, ensure_ascii=False, indent=2))
    else:
        if isinstance(data, dict):
            for k, v in data.items():
                print(f"{color(str(k), 'cyan')}: {v}")
        elif isinstance(data, list):
            for item in data:
                print(item)
        else:
            print(data)

def _setup_logging(verbose: bool) -> None:
    log_mod.set_level("debug" if verbose else str(config_mod.get("log_level")))

def _fail(what: str, e: ImageError) -> int:
    log_mod.log_image_error(logger, e, what)
    print(color(f"[ERRO] {what}: {e}", "red"), file=sys.stderr)
    return 2

def _rootfs(args) -> str:
    rootfs = getattr(args, "rootfs", None)
    if rootfs:
        return rootfs
    return bootstrap_mod.load_state().rootfs_path

# ---------------------------
# Command handlers
# ---------------------------

def cmd_prepare(args):
    """
    refimage prepare [--rebuild-lock]
    """
    try:
        state = bootstrap_mod.ensure_image(rebuild_lock=args.rebuild_lock)
        print(color("[OK] Imagem pronta", "green"))
        _print_json_or_plain(state.to_dict(), args.json)
        return 0
    except ImageError as e:
        return _fail("Preparação falhou", e)

def cmd_refresh_lock(args):
    """
    refimage refresh-lock [--snapshot-id ID] [--snapshot-root URL] [--keyring-path P] [--mirror URL ...]
    """
    config_mod.override(
        snapshot_id=args.snapshot_id,
        snapshot_root=args.snapshot_root,
        keyring_path=args.keyring_path,
        mirrors=args.mirror or None,
    )
    try:
        lock, diff = bootstrap_mod.ImageBuilder().refresh_lock(write=not args.dry_run)
        print(color(f"[OK] Lock regenerado: {len(lock.packages)} pacotes, fingerprint={lock.fingerprint}", "green"))
        if diff is not None:
            _print_json_or_plain(diff, args.json)
        return 0
    except ImageError as e:
        return _fail("Refresh do lock falhou", e)

def cmd_verify_lock(args):
    """
    refimage verify-lock [--lock PATH]
    """
    path = args.lock or config_mod.get("lock_path")
    try:
        lock = lock_mod.load_lock(path, require_signed=bool(config_mod.get("require_signed")))
    except ImageError as e:
        return _fail("Lock inválido", e)
    print(color("[OK] Lock válido", "green"))
    _print_json_or_plain({
        "path": path,
        "formatVersion": lock.format_version,
        "snapshotId": lock.source_policy.snapshot_id,
        "packages": len(lock.packages),
        "fingerprint": lock.fingerprint,
    }, args.json)
    return 0

def cmd_diff_lock(args):
    """
    refimage diff-lock CANDIDATE [--lock PATH]
    """
    path = args.lock or config_mod.get("lock_path")
    try:
        current = lock_mod.load_lock(path, require_signed=False)
        candidate = lock_mod.load_lock(args.candidate, require_signed=False)
    except ImageError as e:
        return _fail("Não foi possível carregar os locks", e)
    diff = lock_mod.diff_locks(current, candidate)
    _print_json_or_plain(diff, args.json)
    if diff["ok"]:
        print(color("[OK] Locks equivalentes", "green"))
        return 0
    print(color("[WARN] Locks divergem", "yellow"))
    return 1

def cmd_dump(args):
    """
    refimage dump ENGINE WIDTH HTML [--rootfs DIR]
    """
    try:
        lines = sb_mod.run_dump(_rootfs(args), args.engine, args.width, args.html)
    except ImageError as e:
        return _fail(f"Dump de {args.engine} falhou", e)
    if args.json:
        print(json.dumps(lines, ensure_ascii=False, indent=2))
    else:
        for line in lines:
            print(line)
    return 0

def cmd_fingerprint(args):
    """
    refimage fingerprint [--rootfs DIR]
    """
    try:
        fps = sb_mod.fingerprint_engines(_rootfs(args))
    except ImageError as e:
        return _fail("Fingerprint falhou", e)
    if args.json:
        print(json.dumps([fp.to_dict() for fp in fps], ensure_ascii=False, indent=2))
    else:
        for fp in fps:
            version = fp.version_string.splitlines()[0] if fp.version_string else ""
            print(f"{color(fp.engine, 'cyan')}: {fp.sha256} {fp.size_bytes} bytes  {version}")
    return 0

def cmd_audit(args):
    """
    refimage audit [--report PATH]
    """
    try:
        lock = lock_mod.load_lock(args.lock or config_mod.get("lock_path"),
                                  require_signed=bool(config_mod.get("require_signed")))
        state = bootstrap_mod.load_state()
        fps = sb_mod.fingerprint_engines(state.rootfs_path)
    except ImageError as e:
        return _fail("Auditoria falhou", e)

    supply = health_mod.check_supply_chain(lock, fps)
    drift = health_mod.check_fingerprint_drift(lock, state, fps)
    result = {"supplyChain": supply, "fingerprintDrift": drift, "ok": supply["ok"] and drift["ok"]}
    if args.report:
        health_mod.write_runtime_report(args.report, state, fps, extra={"audit": result})
    _print_json_or_plain(result, args.json)
    if result["ok"]:
        print(color("[OK] Auditoria sem problemas", "green"))
        return 0
    print(color("[WARN] Auditoria encontrou problemas", "yellow"))
    return 1

def cmd_config(args):
    """
    refimage config get <chave>
    refimage config list
    """
    if args.action == "list":
        _print_json_or_plain(config_mod.all(), args.json)
        return 0
    if not args.key:
        print(color("Uso: refimage config get <chave>", "yellow"), file=sys.stderr)
        return 1
    if args.key not in config_mod.all():
        print(color(f"[WARN] chave não definida: {args.key}", "yellow"), file=sys.stderr)
        return 1
    value = config_mod.get(args.key)
    print(json.dumps(value, ensure_ascii=False) if args.json else value)
    return 0

# ---------------------------
# Parser
# ---------------------------

def build_parser():
    p = argparse.ArgumentParser(prog="refimage", description="refimage - imagem hermética das engines de referência")
    p.add_argument("--verbose", "-v", action="store_true", help="Modo verboso")
    p.add_argument("--json", action="store_true", help="Imprime JSON quando aplicável")
    p.add_argument("--config", default=None, help="Arquivo de configuração YAML")
    sub = p.add_subparsers(dest="command")

    # prepare
    sp = sub.add_parser("prepare", help="Construir (rebuild) ou reproduzir (replay) a imagem")
    sp.add_argument("--rebuild-lock", action="store_true", help="Resolver e verificar o snapshot de novo")
    sp.set_defaults(func=cmd_prepare)

    # refresh-lock
    sr = sub.add_parser("refresh-lock", help="Regenerar o lock sem materializar o rootfs")
    sr.add_argument("--snapshot-id", default=None)
    sr.add_argument("--snapshot-root", default=None)
    sr.add_argument("--keyring-path", default=None)
    sr.add_argument("--mirror", action="append", default=None, help="Mirror alternativo (repetível)")
    sr.add_argument("--dry-run", action="store_true", help="Não grava o lock; só mostra o diff")
    sr.set_defaults(func=cmd_refresh_lock)

    # verify-lock
    sv = sub.add_parser("verify-lock", help="Validar o lock em disco")
    sv.add_argument("--lock", default=None)
    sv.set_defaults(func=cmd_verify_lock)

    # diff-lock
    sd = sub.add_parser("diff-lock", help="Comparar o lock atual com um candidato")
    sd.add_argument("candidate")
    sd.add_argument("--lock", default=None)
    sd.set_defaults(func=cmd_diff_lock)

    # dump
    sdu = sub.add_parser("dump", help="Renderizar HTML com uma engine de referência")
    sdu.add_argument("engine", choices=sorted(sb_mod.ENGINES))
    sdu.add_argument("width", type=int)
    sdu.add_argument("html")
    sdu.add_argument("--rootfs", default=None)
    sdu.set_defaults(func=cmd_dump)

    # fingerprint
    sf = sub.add_parser("fingerprint", aliases=["fp"], help="Fingerprint das engines instaladas")
    sf.add_argument("--rootfs", default=None)
    sf.set_defaults(func=cmd_fingerprint)

    # audit
    sa = sub.add_parser("audit", help="Política de supply chain + deriva de fingerprint")
    sa.add_argument("--lock", default=None)
    sa.add_argument("--report", default=None, help="Grava relatório de runtime em JSON")
    sa.set_defaults(func=cmd_audit)

    # config
    sc = sub.add_parser("config", help="Consultar configuração do refimage")
    sc.add_argument("action", choices=["get", "list"])
    sc.add_argument("key", nargs="?")
    sc.set_defaults(func=cmd_config)

    return p

def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        if args.config:
            config_mod.load_config(args.config)
        _setup_logging(args.verbose)
        rc = args.func(args)
    except ImageError as e:
        log_mod.log_image_error(logger, e, args.command)
        print(color(f"[ERRO] {e}", "red"), file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        logger.exception("Erro inesperado em %s", args.command)
        print(color(f"[ERRO] {e}", "red"), file=sys.stderr)
        sys.exit(1)
    sys.exit(rc if isinstance(rc, int) else 0)

if __name__ == "__main__":
    main()
