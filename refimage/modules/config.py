#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
config.py — Configuração do refimage

- Ordem: --config explícito > $REFIMAGE_CONFIG > ~/.config/refimage/config.yml
  > /etc/refimage/config.yml > defaults (só o primeiro arquivo encontrado vale)
- Âncoras de confiança (snapshot_root, snapshot_id, keyring_path, mirrors)
  nunca têm default: precisam vir do arquivo ou da linha de comando
- Nenhum default altera o conteúdo do lock
"""

import os
import re
import yaml

from refimage.modules.errors import ConfigError

USER_CONFIG = os.path.expanduser("~/.config/refimage/config.yml")
SYSTEM_CONFIG = "/etc/refimage/config.yml"

SNAPSHOT_ID_RE = re.compile(r"^\d{8}T\d{6}Z$")

DEFAULTS = {
    # Diretórios
    "image_root": os.path.abspath("tmp/oracle-image"),
    "lock_path": os.path.abspath("oracle-image.lock.json"),
    "log_dir": os.path.expanduser("~/.cache/refimage/log"),
    "log_level": "info",

    # Engines de referência
    "root_packages": ["lynx", "w3m", "links2"],
    "architecture": "amd64",

    # Rede
    "fetch_timeout": [10, 120],  # (connect, read) segundos
    "fetch_retries": 3,
    "download_workers": 4,

    # Execução
    "exec_timeout": 60,
    "extractor": "auto",  # auto | dpkg | python

    # Política
    "require_signed": True,
    "max_package_count": 110,
}

_config = DEFAULTS.copy()


def _load_from(path: str) -> dict:
    """YAML -> dict; arquivo que não é mapeamento é ignorado."""
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError("config_invalid", f"YAML inválido em {path}: {e}", path=path) from e
    return data if isinstance(data, dict) else {}


def _candidates():
    env_path = os.getenv("REFIMAGE_CONFIG")
    if env_path:
        yield env_path
    yield USER_CONFIG
    yield SYSTEM_CONFIG


def load_config(path: str | None = None) -> dict:
    """Recarrega a configuração; devolve o dict efetivo."""
    global _config

    if path:
        if not os.path.isfile(path):
            raise ConfigError("config_missing", f"arquivo de configuração não encontrado: {path}", path=path)
        _config = {**DEFAULTS, **_load_from(path)}
        return _config

    for candidate in _candidates():
        if os.path.isfile(candidate):
            _config = {**DEFAULTS, **_load_from(candidate)}
            return _config

    _config = DEFAULTS.copy()
    return _config


def get(key: str, default=None):
    return _config.get(key, DEFAULTS.get(key, default))


def require(key: str):
    """Chave obrigatória; ausente ou vazia levanta ConfigError."""
    value = _config.get(key)
    if value is None or value == "" or value == []:
        raise ConfigError("config_missing", f"chave de configuração obrigatória ausente: {key}")
    return value


def override(**values) -> None:
    """Flags da CLI por cima do arquivo. Valores None são ignorados."""
    _config.update({k: v for k, v in values.items() if v is not None})


def validate_snapshot_id(snapshot_id: str) -> str:
    if not isinstance(snapshot_id, str) or not SNAPSHOT_ID_RE.match(snapshot_id):
        raise ConfigError("config_invalid", f"snapshot_id inválido (esperado AAAAMMDDTHHMMSSZ): {snapshot_id!r}")
    return snapshot_id


def all() -> dict:
    return dict(_config)


load_config()
