import os
import shutil
import hashlib
import subprocess
import json
import time
import tempfile
from urllib.parse import urlparse, unquote

import requests

from refimage.modules import log, config
from refimage.modules.errors import AcquisitionError, ExecutionError

logger = log.get_logger("utils")


# -------------------------
# Sistema de arquivos
# -------------------------
def ensure_dir(path: str):
    """Cria diretório se não existir"""
    os.makedirs(path, exist_ok=True)


def clean_dir(path: str):
    """Remove diretório se existir e recria vazio"""
    if os.path.isdir(path):
        shutil.rmtree(path)
    os.makedirs(path)


def rm(path: str):
    """Remove arquivo ou diretório"""
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.remove(path)


# -------------------------
# Execução de comandos
# -------------------------
def run(cmd: list[str], cwd: str | None = None, env: dict | None = None, check=True,
        timeout: float | None = None):
    """Wrapper para rodar comandos com log"""
    try:
        rc, out, err = log.run_cmd(cmd, cwd=cwd, env=env, timeout=timeout)
    except FileNotFoundError as e:
        raise ExecutionError("tool_failed", f"comando não encontrado: {cmd[0]}") from e
    except subprocess.TimeoutExpired as e:
        raise ExecutionError("tool_timeout", f"tempo esgotado ({timeout}s): {cmd[0]}") from e
    if check and rc != 0:
        raise ExecutionError("tool_failed", f"comando falhou: {' '.join(cmd)}",
                             returncode=rc, stdout=out, stderr=err)
    return rc, out, err


# -------------------------
# Hashes
# -------------------------
def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str) -> str:
    return sha256_bytes(text.encode("utf-8"))


def sha256_file(path: str) -> str:
    """SHA256 de um arquivo (leitura em blocos)"""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()


# -------------------------
# Rede (requests + file://)
# -------------------------
def _timeout():
    t = config.get("fetch_timeout")
    if isinstance(t, (list, tuple)):
        return tuple(t)
    return t


def _local_path(url: str) -> str | None:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return unquote(parsed.path)
    return None


def fetch_bytes(url: str, retries: int | None = None) -> bytes:
    """
    Baixa o conteúdo de uma URL para memória.
    Tenta `retries` vezes com back-off linear; falha final vira AcquisitionError.
    """
    local = _local_path(url)
    if local is not None:
        try:
            with open(local, "rb") as f:
                return f.read()
        except OSError as e:
            raise AcquisitionError("download_failed", f"falha ao ler {local}: {e}", url=url) from e

    retries = retries or int(config.get("fetch_retries"))
    last_error = None
    for attempt in range(1, retries + 1):
        try:
            r = requests.get(url, timeout=_timeout())
            r.raise_for_status()
            return r.content
        except requests.RequestException as e:
            last_error = e
            logger.warning("Falha ao baixar %s (tentativa %d/%d): %s", url, attempt, retries, e)
            if attempt < retries:
                time.sleep(attempt)
    raise AcquisitionError("download_failed", f"falha ao baixar após {retries} tentativas: {last_error}", url=url)


def download(url: str, dest: str, retries: int | None = None) -> str:
    """
    Baixa arquivo para `dest` (stream em arquivo temporário + rename).
    Não verifica hash: quem chama decide o que aceitar.
    """
    ensure_dir(os.path.dirname(dest))
    local = _local_path(url)
    if local is not None:
        try:
            shutil.copyfile(local, dest)
        except OSError as e:
            raise AcquisitionError("download_failed", f"falha ao copiar {local}: {e}", url=url) from e
        return dest

    retries = retries or int(config.get("fetch_retries"))
    last_error = None
    for attempt in range(1, retries + 1):
        fd, tmp = tempfile.mkstemp(dir=os.path.dirname(dest), prefix=".part-")
        try:
            logger.debug("Baixando %s → %s", url, dest)
            with os.fdopen(fd, "wb") as f:
                with requests.get(url, stream=True, timeout=_timeout()) as r:
                    r.raise_for_status()
                    for chunk in r.iter_content(chunk_size=1 << 16):
                        f.write(chunk)
            os.replace(tmp, dest)
            return dest
        except requests.RequestException as e:
            last_error = e
            logger.warning("Falha ao baixar %s (tentativa %d/%d): %s", url, attempt, retries, e)
            if attempt < retries:
                time.sleep(attempt)
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)
    raise AcquisitionError("download_failed", f"falha ao baixar após {retries} tentativas: {last_error}", url=url)


# -------------------------
# JSON
# -------------------------
def load_json(path: str):
    """Carrega JSON"""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def write_json(path: str, data) -> str:
    """Grava JSON (indent 2 + newline) de forma atômica"""
    ensure_dir(os.path.dirname(os.path.abspath(path)))
    tmp = f"{path}.tmp.{os.getpid()}"
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(json.dumps(data, indent=2, ensure_ascii=False) + "\n")
    os.replace(tmp, path)
    return path
