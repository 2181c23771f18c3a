#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/dependency.py — Resolver de dependências das engines de referência

Funcionalidades principais:
- Fecho transitivo via `apt-cache depends --recurse` (só Depends/PreDepends)
- Versão candidata por pacote (`apt-cache policy`); sem candidato = descartado
- Registro de origem (mirror, suite, componente) com desempate determinístico
- Metadados anunciados (Filename, SHA256) via `apt-cache show name=version`
- API: DependencyResolver.resolve(roots) -> List[ResolvedPackage]

Toda a saída das ferramentas passa pelos parsers de debparse.py.
"""

from __future__ import annotations

from typing import Callable, Iterable, List, Optional, Tuple

from refimage.modules import log, utils
from refimage.modules.debparse import (
    PolicySource,
    parse_depends_output,
    parse_packages_index,
    parse_policy,
)
from refimage.modules.errors import ResolutionError
from refimage.modules.models import ResolvedPackage

logger = log.get_logger("dependency")

# Executor de comandos: recebe argv, devolve stdout. Injetável para testes.
CommandRunner = Callable[[List[str]], str]

DEPENDS_FLAGS = [
    "--recurse",
    "--no-recommends",
    "--no-suggests",
    "--no-conflicts",
    "--no-breaks",
    "--no-replaces",
    "--no-enhances",
]


def _apt_runner(cmd: List[str]) -> str:
    _, out, _ = utils.run(cmd, check=True)
    return out


def pick_source(sources: Iterable[PolicySource]) -> Optional[PolicySource]:
    """
    Escolhe o registro de origem de uma versão candidata.

    Ignora o arquivo de status do dpkg; entre os restantes vence a maior
    prioridade de pin, e empates são decididos por (suite, componente, URL)
    em ordem de bytes. Assim um pacote presente em bookworm e
    bookworm-security com a mesma prioridade sempre resolve igual.
    """
    remote = [s for s in sources if not s.is_status_file]
    if not remote:
        return None
    remote.sort(key=lambda s: (-s.priority, s.suite.encode(), s.component.encode(), s.url.encode()))
    return remote[0]


class DependencyResolver:
    """
    Resolve o conjunto de pacotes necessário para as engines raiz.

    - runner: função argv -> stdout (default: apt-cache via utils.run)
    """

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or _apt_runner

    # ---------------------------
    # Fecho de dependências
    # ---------------------------
    def closure(self, roots: List[str]) -> List[str]:
        """Nomes deduplicados e ordenados; sempre inclui as raízes."""
        if not roots:
            raise ResolutionError("no_root_packages", "nenhum pacote raiz informado")
        out = self.runner(["apt-cache", "depends", *DEPENDS_FLAGS, *roots])
        names = set(roots) | set(parse_depends_output(out))
        return sorted(names, key=lambda n: n.encode())

    # ---------------------------
    # Versão candidata e origem
    # ---------------------------
    def candidate(self, name: str) -> Tuple[Optional[str], Optional[PolicySource]]:
        """(versão candidata, origem) ou (None, None) quando não há candidato."""
        info = parse_policy(self.runner(["apt-cache", "policy", name]))
        if info.candidate is None:
            return None, None
        entry = info.version_entry(info.candidate)
        source = pick_source(entry.sources) if entry else None
        if source is None:
            raise ResolutionError(
                "no_source_record",
                f"versão candidata {info.candidate} sem registro de origem na tabela de policy",
                package=name,
            )
        if not source.suite or not source.component:
            raise ResolutionError(
                "no_source_record",
                f"registro de origem incompleto para {info.candidate}: {source.url} {source.suite}/{source.component}",
                package=name,
                url=source.url,
            )
        return info.candidate, source

    def advertised(self, name: str, version: str) -> Tuple[str, str]:
        """(Filename, SHA256) anunciados pelo apt para name=version."""
        out = self.runner(["apt-cache", "show", f"{name}={version}"])
        for entry in parse_packages_index(out):
            if entry.name == name and entry.version == version:
                return entry.filename, entry.sha256
        raise ResolutionError(
            "no_source_record",
            f"apt-cache show não trouxe Filename/SHA256 para {name}={version}",
            package=name,
        )

    # ---------------------------
    # API principal
    # ---------------------------
    def resolve(self, roots: List[str]) -> List[ResolvedPackage]:
        names = self.closure(roots)
        logger.info("Fecho de dependências: %d nomes para raízes %s", len(names), ", ".join(roots))

        resolved: List[ResolvedPackage] = []
        for name in names:
            version, source = self.candidate(name)
            if version is None:
                if name in roots:
                    raise ResolutionError("no_candidate", "pacote raiz sem versão candidata", package=name)
                logger.debug("Sem candidato (virtual/meta): %s", name)
                continue
            filename, sha = self.advertised(name, version)
            resolved.append(ResolvedPackage(
                name=name,
                version=version,
                suite=source.suite,
                component=source.component,
                origin_url=source.url,
                filename=filename,
                advertised_sha256=sha,
            ))

        resolved.sort(key=lambda r: (r.name.encode(), r.version.encode()))
        logger.info("Resolvidos %d pacotes com candidato", len(resolved))
        return resolved
