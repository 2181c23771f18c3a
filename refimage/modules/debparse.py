#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
debparse.py — Parsers de texto das ferramentas e metadados Debian

Cada parser recebe texto e devolve registros tipados; nenhum deles decide
confiança. A verificação (hashes, assinaturas) fica em snapshot.py e
lockfile.py, assim um bug de parsing e um bug da cadeia de confiança
falham de formas diferentes.

Formatos:
- deb822 (Release, Packages, apt-cache show)
- apt-cache depends --recurse
- apt-cache policy <pkg>
- gpgv --status-fd
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

# ---------------------------------------------------------------------
# deb822
# ---------------------------------------------------------------------

def parse_deb822(text: str) -> List[Dict[str, str]]:
    """
    Divide texto deb822 em estrofes (dict campo -> valor).
    Linhas de continuação (começam com espaço/tab) são anexadas com '\\n';
    uma linha " ." vira linha vazia.
    """
    stanzas: List[Dict[str, str]] = []
    current: Dict[str, str] = {}
    last_key: Optional[str] = None
    for raw in text.splitlines():
        if not raw.strip():
            if current:
                stanzas.append(current)
            current, last_key = {}, None
            continue
        if raw.startswith("#"):
            continue
        if raw[0] in " \t":
            if last_key is None:
                continue
            cont = raw.strip()
            current[last_key] += "\n" + ("" if cont == "." else cont)
            continue
        key, sep, value = raw.partition(":")
        if not sep:
            continue
        last_key = key.strip()
        current[last_key] = value.strip()
    if current:
        stanzas.append(current)
    return stanzas


# ---------------------------------------------------------------------
# apt-cache depends --recurse
# ---------------------------------------------------------------------

_DEPENDS_RE = re.compile(r"^\s*\|?(Depends|PreDepends):\s+(.+)$")


def strip_arch_qualifier(name: str) -> str:
    """'perl:any' -> 'perl'"""
    return name.split(":", 1)[0]


def parse_depends_output(text: str) -> List[str]:
    """Nomes alvo de Depends/PreDepends (inclui alternativas '|'), sem virtuais '<x>'."""
    names = set()
    for line in text.splitlines():
        m = _DEPENDS_RE.match(line)
        if not m:
            continue
        candidate = m.group(2).strip().split()[0] if m.group(2).strip() else ""
        if not candidate or candidate.startswith("<"):
            continue
        names.add(strip_arch_qualifier(candidate))
    return sorted(names)


# ---------------------------------------------------------------------
# apt-cache policy
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class PolicySource:
    priority: int
    url: str
    suite: str = ""
    component: str = ""
    architecture: str = ""

    @property
    def is_status_file(self) -> bool:
        return self.url.startswith("/")


@dataclass
class PolicyVersion:
    version: str
    priority: int
    installed: bool = False
    sources: List[PolicySource] = field(default_factory=list)


@dataclass
class PolicyInfo:
    package: str
    installed: Optional[str]
    candidate: Optional[str]
    versions: List[PolicyVersion] = field(default_factory=list)

    def version_entry(self, version: str) -> Optional[PolicyVersion]:
        for v in self.versions:
            if v.version == version:
                return v
        return None


def _none_if_absent(value: str) -> Optional[str]:
    value = value.strip()
    if not value or value == "(none)":
        return None
    return value


def _is_source_line(tokens: List[str]) -> bool:
    # "500 http://... bookworm/main amd64 Packages" ou "100 /var/lib/dpkg/status"
    # versões Debian nunca contêm '/'
    return len(tokens) >= 2 and re.fullmatch(r"-?\d+", tokens[0]) is not None and "/" in tokens[1]


def parse_policy(text: str) -> PolicyInfo:
    info = PolicyInfo(package="", installed=None, candidate=None)
    in_table = False
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if not line[0].isspace() and stripped.endswith(":"):
            info.package = strip_arch_qualifier(stripped[:-1])
            continue
        if stripped.startswith("Installed:"):
            info.installed = _none_if_absent(stripped[len("Installed:"):])
            continue
        if stripped.startswith("Candidate:"):
            info.candidate = _none_if_absent(stripped[len("Candidate:"):])
            continue
        if stripped.startswith("Version table:"):
            in_table = True
            continue
        if not in_table:
            continue

        installed = stripped.startswith("***")
        tokens = stripped.lstrip("*").split()
        if _is_source_line(tokens) and not installed:
            if not info.versions:
                continue
            url = tokens[1]
            suite = component = arch = ""
            if len(tokens) >= 3:
                dist = tokens[2]
                if "/" in dist:
                    suite, component = dist.rsplit("/", 1)
                else:
                    suite = dist
            if len(tokens) >= 4:
                arch = tokens[3]
            info.versions[-1].sources.append(
                PolicySource(priority=int(tokens[0]), url=url, suite=suite, component=component, architecture=arch)
            )
            continue
        if len(tokens) == 2 and re.fullmatch(r"-?\d+", tokens[1]):
            info.versions.append(PolicyVersion(version=tokens[0], priority=int(tokens[1]), installed=installed))
    return info


# ---------------------------------------------------------------------
# Release manifest
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ReleaseHash:
    path: str
    sha256: str
    size: int


@dataclass
class ReleaseManifest:
    suite: str
    codename: str
    components: List[str]
    architectures: List[str]
    sha256: Dict[str, ReleaseHash]


class ReleaseParseError(ValueError):
    pass


def parse_release(text: str) -> ReleaseManifest:
    """Extrai a tabela SHA256 (path -> sha256, size) de um arquivo Release."""
    stanzas = parse_deb822(text)
    if not stanzas:
        raise ReleaseParseError("Release vazio")
    fields = stanzas[0]
    table: Dict[str, ReleaseHash] = {}
    for line in fields.get("SHA256", "").splitlines():
        parts = line.split()
        if len(parts) != 3:
            continue
        digest, size, path = parts
        if not re.fullmatch(r"[0-9a-fA-F]{64}", digest) or not size.isdigit():
            raise ReleaseParseError(f"linha SHA256 inválida: {line!r}")
        table[path] = ReleaseHash(path=path, sha256=digest.lower(), size=int(size))
    if not table:
        raise ReleaseParseError("Release sem tabela SHA256")
    return ReleaseManifest(
        suite=fields.get("Suite", ""),
        codename=fields.get("Codename", ""),
        components=fields.get("Components", "").split(),
        architectures=fields.get("Architectures", "").split(),
        sha256=table,
    )


# ---------------------------------------------------------------------
# Packages index
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class IndexEntry:
    name: str
    version: str
    filename: str
    sha256: str
    size: int = 0


def parse_packages_index(text: str) -> List[IndexEntry]:
    """Estrofes de um Packages (ou de apt-cache show) -> IndexEntry."""
    entries: List[IndexEntry] = []
    for st in parse_deb822(text):
        name = st.get("Package")
        version = st.get("Version")
        filename = st.get("Filename")
        sha = st.get("SHA256")
        if not name or not version or not filename or not sha:
            continue
        size = st.get("Size", "0")
        entries.append(IndexEntry(
            name=name,
            version=version,
            filename=filename,
            sha256=sha.strip().lower(),
            size=int(size) if size.isdigit() else 0,
        ))
    return entries


# ---------------------------------------------------------------------
# gpgv --status-fd
# ---------------------------------------------------------------------

@dataclass
class SignatureStatus:
    valid_key_ids: List[str] = field(default_factory=list)
    bad: List[str] = field(default_factory=list)
    missing_keys: List[str] = field(default_factory=list)

    @property
    def key_id(self) -> Optional[str]:
        return self.valid_key_ids[0] if self.valid_key_ids else None

    @property
    def ok(self) -> bool:
        return bool(self.valid_key_ids) and not self.bad


_BAD_TOKENS = ("BADSIG", "EXPKEYSIG", "REVKEYSIG", "EXPSIG")


def parse_gpgv_status(text: str) -> SignatureStatus:
    """
    Interpreta as linhas [GNUPG:] do gpgv.
    VALIDSIG dá a impressão digital da chave primária (último campo, quando
    presente); GOODSIG sem VALIDSIG fornece o long key id.
    """
    status = SignatureStatus()
    goodsig: List[str] = []
    for line in text.splitlines():
        if not line.startswith("[GNUPG:] "):
            continue
        tokens = line[len("[GNUPG:] "):].split()
        if not tokens:
            continue
        kw = tokens[0]
        if kw == "VALIDSIG" and len(tokens) >= 2:
            primary = tokens[-1] if len(tokens) >= 11 else tokens[1]
            status.valid_key_ids.append(primary.upper())
        elif kw == "GOODSIG" and len(tokens) >= 2:
            goodsig.append(tokens[1].upper())
        elif kw in _BAD_TOKENS:
            status.bad.append(tokens[1] if len(tokens) > 1 else kw)
        elif kw in ("ERRSIG", "NO_PUBKEY") and len(tokens) >= 2:
            status.missing_keys.append(tokens[1])
    if not status.valid_key_ids and goodsig:
        status.valid_key_ids.extend(goodsig)
    return status
