#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
lockfile.py — Construção e validação do lock da imagem (oracle-image.lock.json)

- cruza o hash anunciado pelo apt com o índice verificado (divergência = adulteração)
- downloadUrl = URL base do snapshot + caminho relativo no pool
- ordena por (name, version) em ordem de bytes
- fingerprint = sha256("\\n".join(f"{name}@{version}:{sha256}:{downloadUrl}"))
- validação lista TODAS as violações com os índices ofensores
- formatVersion abaixo do mínimo é rejeitado (sem adivinhar campos)
- diff entre lock atual e candidato (refresh)
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from refimage.modules import log, utils
from refimage.modules.errors import LockFormatError, VerificationError
from refimage.modules.models import (
    OracleLock,
    PackageRecord,
    ReleaseRecord,
    ResolvedPackage,
    SourcePolicy,
    UNKNOWN_SIGNER,
)

logger = log.get_logger("lockfile")

FORMAT_VERSION = 2
MIN_FORMAT_VERSION = 2

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


# ---------------------------------------------------------------------
# Fingerprint
# ---------------------------------------------------------------------

def sort_records(records: Iterable[PackageRecord]) -> List[PackageRecord]:
    return sorted(records, key=lambda r: r.sort_key())


def compute_fingerprint(records: Iterable[PackageRecord]) -> str:
    """Função pura do conjunto de pacotes: independe da ordem de entrada."""
    basis = "\n".join(
        f"{r.name}@{r.version}:{r.content_sha256}:{r.download_url}"
        for r in sort_records(records)
    )
    return utils.sha256_text(basis)


# ---------------------------------------------------------------------
# Construção
# ---------------------------------------------------------------------

def build_package_records(resolved: Iterable[ResolvedPackage], indexes: Mapping, base_url: str) -> List[PackageRecord]:
    """
    indexes: (suite, component) -> VerifiedIndex (ver snapshot.py).
    Qualquer divergência entre metadados anunciados e índice verificado é fatal.
    """
    records: List[PackageRecord] = []
    for pkg in resolved:
        verified = indexes.get((pkg.suite, pkg.component))
        if verified is None:
            raise VerificationError(
                "index_missing",
                f"nenhum índice verificado para {pkg.suite}/{pkg.component}",
                package=pkg.name,
            )
        key = (pkg.name, pkg.version, pkg.filename)
        indexed_sha = verified.lookup.get(key)
        if indexed_sha is None:
            raise VerificationError(
                "package_not_in_index",
                f"{pkg.name}={pkg.version} ({pkg.filename}) ausente do índice verificado",
                package=pkg.name, url=verified.ref.index_url,
            )
        if indexed_sha != pkg.advertised_sha256.lower():
            raise VerificationError(
                "package_sha256_mismatch",
                f"hash anunciado para {pkg.name}={pkg.version} difere do índice assinado",
                package=pkg.name, url=verified.ref.index_url,
                sha256_expected=indexed_sha, sha256_got=pkg.advertised_sha256,
            )
        records.append(PackageRecord(
            name=pkg.name,
            version=pkg.version,
            suite=pkg.suite,
            component=pkg.component,
            source_index_url=verified.ref.index_url,
            filename=pkg.filename,
            download_url=base_url + pkg.filename.lstrip("/"),
            content_sha256=indexed_sha,
        ))
    return sort_records(records)


def build_lock(root_packages: List[str], policy: SourcePolicy, release_records: List[ReleaseRecord],
               records: List[PackageRecord], generated_at: Optional[str] = None,
               require_signed: bool = True) -> OracleLock:
    records = sort_records(records)
    lock = OracleLock(
        format_version=FORMAT_VERSION,
        generated_at=generated_at or datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        root_packages=list(root_packages),
        source_policy=policy,
        release_records=sorted(release_records, key=lambda r: r.suite.encode()),
        packages=records,
        fingerprint=compute_fingerprint(records),
    )
    violations = validate_lock(lock, require_signed=require_signed)
    if violations:
        raise LockFormatError("lock_invalid", "lock recém-construído é inválido", violations)
    return lock


# ---------------------------------------------------------------------
# Validação
# ---------------------------------------------------------------------

def validate_packages(packages: List[PackageRecord]) -> List[str]:
    violations: List[str] = []
    if not packages:
        violations.append("packages: lista vazia")
        return violations
    seen: Dict[Tuple[str, str], int] = {}
    for i, rec in enumerate(packages):
        label = f"packages[{i}] ({rec.name}@{rec.version})"
        if not rec.name or not rec.version:
            violations.append(f"{label}: name/version vazio")
        if not isinstance(rec.content_sha256, str) or not _SHA256_RE.match(rec.content_sha256):
            violations.append(f"{label}: contentSha256 malformado")
        if not rec.download_url:
            violations.append(f"{label}: downloadUrl vazio")
        if rec.identity in seen:
            violations.append(f"{label}: identidade duplicada (igual a packages[{seen[rec.identity]}])")
        else:
            seen[rec.identity] = i
        if i > 0 and packages[i - 1].sort_key() > rec.sort_key():
            violations.append(f"{label}: fora de ordem (depois de packages[{i - 1}] {packages[i - 1].name}@{packages[i - 1].version})")
    return violations


def validate_lock(lock: OracleLock, require_signed: bool = True) -> List[str]:
    """Lista de violações (vazia = válido)."""
    violations = validate_packages(lock.packages)
    if not lock.root_packages:
        violations.append("rootPackages: lista vazia")
    if lock.packages and lock.fingerprint != compute_fingerprint(lock.packages):
        violations.append("fingerprint: não corresponde aos pacotes")
    if require_signed:
        for i, rel in enumerate(lock.release_records):
            if not rel.signature_key_id or rel.signature_key_id == UNKNOWN_SIGNER:
                violations.append(f"releaseRecords[{i}] ({rel.suite}): signatário desconhecido")
    return violations


# ---------------------------------------------------------------------
# Persistência
# ---------------------------------------------------------------------

PACKAGE_STR_FIELDS = ("name", "version", "suite", "component", "sourceIndexUrl",
                      "filename", "downloadUrl", "contentSha256")
RELEASE_STR_FIELDS = ("suite", "releaseUrl", "releaseSha256", "signatureKeyId")


def _entry_problems(section: str, entries: List[Any], fields: Tuple[str, ...]) -> List[str]:
    """Entradas que não são objeto ou têm campos texto com outro tipo (null, número...)."""
    problems: List[str] = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            problems.append(f"{section}[{i}]: não é objeto")
            continue
        for name in fields:
            if name in entry and not isinstance(entry[name], str):
                problems.append(f"{section}[{i}].{name}: tipo inválido ({type(entry[name]).__name__})")
    return problems


def lock_from_dict(data: Any, path: str = "<memory>") -> OracleLock:
    if not isinstance(data, dict):
        raise LockFormatError("lock_invalid", f"lock deve ser um objeto JSON: {path}", path=path)
    version = data.get("formatVersion")
    if not isinstance(version, int) or version < MIN_FORMAT_VERSION:
        raise LockFormatError(
            "lock_format_unsupported",
            f"formatVersion {version!r} abaixo do mínimo suportado {MIN_FORMAT_VERSION}; regenere com refresh-lock",
            path=path,
        )
    problems: List[str] = []
    for key, kind in (("rootPackages", list), ("packages", list), ("releaseRecords", list),
                      ("sourcePolicy", dict), ("fingerprint", str)):
        if not isinstance(data.get(key), kind):
            problems.append(f"{key}: ausente ou com tipo inválido")
    if problems:
        raise LockFormatError("lock_invalid", f"lock malformado: {path}", problems, path=path)

    problems += [f"rootPackages[{i}]: tipo inválido" for i, p in enumerate(data["rootPackages"])
                 if not isinstance(p, str)]
    problems += _entry_problems("packages", data["packages"], PACKAGE_STR_FIELDS)
    problems += _entry_problems("releaseRecords", data["releaseRecords"], RELEASE_STR_FIELDS)
    for i, rel in enumerate(data["releaseRecords"]):
        if isinstance(rel, dict):
            indexes = rel.get("packageIndexes", [])
            if not isinstance(indexes, list) or not all(isinstance(x, dict) for x in indexes):
                problems.append(f"releaseRecords[{i}].packageIndexes: tipo inválido")
    if problems:
        raise LockFormatError("lock_invalid", f"lock malformado: {path}", problems, path=path)

    return OracleLock(
        format_version=version,
        generated_at=str(data.get("generatedAt", "")),
        root_packages=list(data["rootPackages"]),
        source_policy=SourcePolicy.from_dict(data["sourcePolicy"]),
        release_records=[ReleaseRecord.from_dict(r) for r in data["releaseRecords"]],
        packages=[PackageRecord.from_dict(p) for p in data["packages"]],
        fingerprint=data["fingerprint"],
    )


def load_lock(path: str, require_signed: bool = True) -> OracleLock:
    """Carrega e valida; qualquer problema estrutural é fatal (todos listados)."""
    try:
        data = utils.load_json(path)
    except FileNotFoundError as e:
        raise LockFormatError("lock_missing", "arquivo de lock não existe", path=path) from e
    except json.JSONDecodeError as e:
        raise LockFormatError("lock_invalid", f"JSON inválido: {e}", path=path) from e
    lock = lock_from_dict(data, path)
    violations = validate_lock(lock, require_signed=require_signed)
    if violations:
        raise LockFormatError("lock_invalid", f"lock inválido: {path}", violations, path=path)
    logger.debug("Lock carregado: %s (%d pacotes)", path, len(lock.packages))
    return lock


def save_lock(path: str, lock: OracleLock) -> str:
    utils.write_json(path, lock.to_dict())
    logger.info("Lock gravado: %s (fingerprint=%s, pacotes=%d)", path, lock.fingerprint, len(lock.packages))
    return path


# ---------------------------------------------------------------------
# Diff (refresh)
# ---------------------------------------------------------------------

DIFF_FIELDS = ("filename", "content_sha256", "download_url", "suite", "component")


def diff_locks(current: OracleLock, candidate: OracleLock) -> Dict[str, Any]:
    """Compara lock atual com um candidato regenerado do mesmo snapshot."""
    cur = {f"{p.name}@{p.version}": p for p in current.packages}
    cand = {f"{p.name}@{p.version}": p for p in candidate.packages}

    added = [{"key": k, "filename": cand[k].filename, "contentSha256": cand[k].content_sha256}
             for k in sorted(set(cand) - set(cur))]
    removed = [{"key": k, "filename": cur[k].filename, "contentSha256": cur[k].content_sha256}
               for k in sorted(set(cur) - set(cand))]
    changed = []
    for k in sorted(set(cur) & set(cand)):
        fields = [f for f in DIFF_FIELDS if getattr(cur[k], f) != getattr(cand[k], f)]
        if fields:
            changed.append({"key": k, "fields": [_camel(f) for f in fields]})

    source_policy_matches = current.source_policy.to_dict() == candidate.source_policy.to_dict()
    release_records_match = ([r.to_dict() for r in current.release_records]
                             == [r.to_dict() for r in candidate.release_records])
    fingerprint_matches = current.fingerprint == candidate.fingerprint
    return {
        "fingerprint": {"current": current.fingerprint, "candidate": candidate.fingerprint, "match": fingerprint_matches},
        "packageCounts": {"current": len(current.packages), "candidate": len(candidate.packages)},
        "sourcePolicyMatches": source_policy_matches,
        "releaseRecordsMatch": release_records_match,
        "added": added,
        "removed": removed,
        "changed": changed,
        "ok": fingerprint_matches and source_policy_matches and release_records_match
              and not added and not removed and not changed,
    }


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.capitalize() for p in rest)
