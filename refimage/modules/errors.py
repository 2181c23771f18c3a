# errors.py
"""
Erros estruturados do refimage.

Toda falha do núcleo é uma exceção com reason_code estável e contexto útil
para auditoria (pacote, URL, hashes). Nada é "recuperado e continuado".
"""

from __future__ import annotations

from typing import List, Optional


class ImageError(Exception):
    """Erro base: reason_code + mensagem legível + contexto opcional."""

    def __init__(self, reason_code: str, message: str, *,
                 package: Optional[str] = None,
                 url: Optional[str] = None,
                 path: Optional[str] = None,
                 sha256_expected: Optional[str] = None,
                 sha256_got: Optional[str] = None):
        self.reason_code = reason_code
        self.message = message
        self.package = package
        self.url = url
        self.path = path
        self.sha256_expected = sha256_expected
        self.sha256_got = sha256_got
        super().__init__(self.format_human())

    def to_dict(self) -> dict:
        return {
            "reason_code": self.reason_code,
            "message": self.message,
            "package": self.package,
            "url": self.url,
            "path": self.path,
            "sha256_expected": self.sha256_expected,
            "sha256_got": self.sha256_got,
        }

    def format_human(self) -> str:
        parts: List[str] = [f"[{self.reason_code}] {self.message}"]
        if self.package:
            parts.append(f"package={self.package}")
        if self.url:
            parts.append(f"url={self.url}")
        if self.path:
            parts.append(f"path={self.path}")
        if self.sha256_expected or self.sha256_got:
            parts.append(f"sha256_expected={self.sha256_expected}")
            parts.append(f"sha256_got={self.sha256_got}")
        return " ".join(parts)


class ConfigError(ImageError):
    """Configuração ausente ou inválida."""


class ResolutionError(ImageError):
    """Versão candidata ou registro de origem impossível de resolver."""


class VerificationError(ImageError):
    """Assinatura, hash de índice ou hash de pacote não confere."""


class AcquisitionError(ImageError):
    """Falha de rede em todas as URLs candidatas."""


class LockFormatError(ImageError):
    """Lock malformado ou em formato antigo; lista todas as violações."""

    def __init__(self, reason_code: str, message: str, violations: Optional[List[str]] = None, **kwargs):
        self.violations = list(violations or [])
        if self.violations:
            message = f"{message}: " + "; ".join(self.violations)
        super().__init__(reason_code, message, **kwargs)


class ImageBusyError(ImageError):
    """Outra construção já segura o lease da imagem."""

    def __init__(self, path: str):
        super().__init__("already_building", "imagem já está em construção (already building)", path=path)


class ExecutionError(ImageError):
    """Binário ou ferramenta externa terminou com erro."""

    def __init__(self, reason_code: str, message: str, returncode: Optional[int] = None,
                 stdout: str = "", stderr: str = "", **kwargs):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        if returncode is not None:
            message = f"{message} (status={returncode})"
        if stderr.strip():
            message = f"{message}\nstderr={stderr.strip()}"
        super().__init__(reason_code, message, **kwargs)
