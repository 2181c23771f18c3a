#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
healthcheck.py - Auditoria da imagem de referência

Funções:
- Política de supply chain do lock (limite de pacotes, raízes obrigatórias,
  fingerprint de todas as engines).
- Deriva de fingerprint: esperado (recalculado) x declarado (lock/estado)
  x runtime, mais fingerprints de engine fracos.
- Relatório de runtime em JSON.
"""

import re

from refimage.modules import config, log, utils
from refimage.modules.lockfile import compute_fingerprint
from refimage.modules.models import UNKNOWN_SIGNER
from refimage.modules.sandbox import ENGINES

logger = log.get_logger("healthcheck")

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")

# ---------- verificadores ----------

def check_supply_chain(lock, fingerprints, max_package_count=None, required_roots=None):
    """Relatório da política de supply chain para um lock já validado."""
    max_package_count = int(max_package_count or config.get("max_package_count"))
    required_roots = list(required_roots or config.get("root_packages"))
    engines = {fp.engine for fp in fingerprints}

    missing_roots = sorted(set(required_roots) - set(lock.root_packages))
    missing_engines = sorted(set(ENGINES) - engines)
    report = {
        "packageCount": len(lock.packages),
        "maxPackageCount": max_package_count,
        "packageCountOk": len(lock.packages) <= max_package_count,
        "missingRootPackages": missing_roots,
        "missingEngineFingerprints": missing_engines,
        "hasAllEngineFingerprints": not missing_engines,
        "signedReleases": all(r.signature_key_id and r.signature_key_id != UNKNOWN_SIGNER for r in lock.release_records),
    }
    report["ok"] = (report["packageCountOk"] and not missing_roots
                    and report["hasAllEngineFingerprints"] and report["signedReleases"])
    return report


def weak_fingerprints(fingerprints):
    weak = []
    for fp in fingerprints:
        problems = []
        if not _SHA256_RE.match(fp.sha256 or ""):
            problems.append("sha256")
        if fp.size_bytes <= 0:
            problems.append("sizeBytes")
        if not fp.version_string.strip():
            problems.append("versionString")
        if problems:
            weak.append({"engine": fp.engine, "problems": problems})
    return weak


def check_fingerprint_drift(lock, image_state, fingerprints):
    """Compara fingerprint recalculado, declarado no lock e o do estado da imagem."""
    expected = compute_fingerprint(lock.packages)
    declared = lock.fingerprint
    runtime = image_state.fingerprint if image_state else None
    weak = weak_fingerprints(fingerprints)
    report = {
        "expectedFingerprint": expected,
        "declaredFingerprint": declared,
        "runtimeFingerprint": runtime,
        "declaredMatchesExpected": declared == expected,
        "runtimeMatchesExpected": runtime == expected,
        "weakEngineFingerprints": weak,
    }
    report["ok"] = report["declaredMatchesExpected"] and report["runtimeMatchesExpected"] and not weak
    if not report["ok"]:
        logger.warning("Deriva de fingerprint detectada: declarado=%s runtime=%s esperado=%s",
                       declared, runtime, expected)
    return report

# ---------- relatório ----------

def write_runtime_report(path, image_state, fingerprints, extra=None):
    payload = {
        "image": image_state.to_dict(),
        "engines": [fp.to_dict() for fp in fingerprints],
    }
    if extra:
        payload.update(extra)
    utils.write_json(path, payload)
    logger.info("Relatório de runtime gravado em %s", path)
    return payload
