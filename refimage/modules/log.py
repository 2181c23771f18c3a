"""
log.py — Logging do refimage

- logger raiz "refimage"; módulos pedem filhos com get_logger("snapshot") etc.
- console colorido (nível vem de log_level na config, -v força debug)
- arquivo rotativo em log_dir, sempre em debug; se log_dir não puder ser
  criado o refimage segue só com o console
- run_cmd: subprocess com stdout/stderr capturados e registrados em debug
"""

import logging
import os
import subprocess
from logging.handlers import RotatingFileHandler
from datetime import datetime

from refimage.modules import config

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_root_logger = logging.getLogger("refimage")
_root_logger.setLevel(logging.DEBUG)


class ColorFormatter(logging.Formatter):
    """Console: [hora] nível[módulo] mensagem, com o reason_code quando houver."""
    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[41m",
    }
    RESET = "\033[0m"

    def format(self, record):
        color = self.COLORS.get(record.levelno, self.RESET)
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        module = f"[{record.name.split('.', 1)[-1]}]" if record.name != "refimage" else ""
        reason = getattr(record, "reason_code", None)
        tag = f" ({reason})" if reason else ""
        return f"{color}[{ts}] {record.levelname.lower():<8}{module}{tag}{self.RESET} {super().format(record)}"


def _level(name):
    return LEVELS.get(str(name).lower(), logging.INFO)


def _setup_handlers():
    if _root_logger.handlers:
        return

    ch = logging.StreamHandler()
    ch.setLevel(_level(config.get("log_level")))
    ch.setFormatter(ColorFormatter("%(message)s"))
    _root_logger.addHandler(ch)

    log_dir = config.get("log_dir")
    try:
        os.makedirs(log_dir, exist_ok=True)
        fh = RotatingFileHandler(os.path.join(log_dir, "refimage.log"),
                                 maxBytes=10 * 1024 * 1024, backupCount=5)
    except OSError as e:
        _root_logger.warning("Log em arquivo desativado (%s): %s", log_dir, e)
        return
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
        "%Y-%m-%d %H:%M:%S"
    ))
    _root_logger.addHandler(fh)


_setup_handlers()


# -------------------------
# API pública
# -------------------------
def get_logger(name: str = "refimage"):
    return _root_logger.getChild(name)


def set_level(level: str):
    """Nível do console; o arquivo continua em debug."""
    if level.lower() not in LEVELS:
        raise ValueError(f"Nível inválido: {level}")
    for handler in _root_logger.handlers:
        if not isinstance(handler, RotatingFileHandler):
            handler.setLevel(LEVELS[level.lower()])


def log_image_error(logger, err, what: str = ""):
    """Registra um ImageError com todo o contexto (pacote, url, hashes) em debug."""
    context = {k: v for k, v in err.to_dict().items() if v and k not in ("reason_code", "message")}
    logger.debug("%s%s %s", f"{what}: " if what else "", err.message, context,
                 extra={"reason_code": err.reason_code})


def run_cmd(cmd: list[str], cwd: str | None = None, env: dict | None = None,
            timeout: float | None = None):
    """
    Executa comando externo e devolve (returncode, stdout, stderr).
    A saída é registrada em debug depois que o processo termina.
    """
    logger = get_logger("cmd")
    logger.debug("Executando: %s", " ".join(cmd))

    proc = subprocess.run(
        cmd,
        cwd=cwd,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        timeout=timeout,
    )

    for line in proc.stdout.splitlines():
        logger.debug("[stdout] %s", line)
    for line in proc.stderr.splitlines():
        logger.debug("[stderr] %s", line)
    if proc.returncode != 0:
        logger.debug("%s terminou com código %s", cmd[0], proc.returncode)

    return proc.returncode, proc.stdout, proc.stderr
