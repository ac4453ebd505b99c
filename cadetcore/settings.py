"""
Runtime configuration.

Rules live in ``data/rules.json`` next to the package; a ``rules.json`` in the
user data directory (see ``utils.user_data_dir``) is merged on top, key by key.
A couple of limits can also be overridden from the environment:

  CADETCORE_PROCESSING_TIMEOUT   seconds allowed for text extraction / OCR
  CADETCORE_MAX_CADETS           cadet roster cap
"""
from __future__ import annotations
import os
import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from .utils import load_json, rules_path, user_rules_path

logger = logging.getLogger(__name__)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


@dataclass
class RemoteSettings:
    connect_timeout: float = 5.0
    read_timeout: float = 30.0
    retries: int = 2
    max_redirects: int = 5
    user_agent: str = "Mozilla/5.0"


@dataclass
class Settings:
    header_aliases: Dict[str, List[str]] = field(default_factory=dict)
    header_fuzzy_threshold: int = 92
    external_id_pattern: str = r"^(?=[A-Za-z0-9./-]*\d)[A-Za-z0-9]+(?:[-./][A-Za-z0-9]+)*$"
    external_id_search: str = r"(?<![\w@.-])\d{4}-\d{3,6}(?![\w-])|(?<![\w@.-])\d{6,10}(?![\w-])"
    attendance_tokens: Dict[str, List[str]] = field(default_factory=dict)
    ledger_tokens: Dict[str, List[str]] = field(default_factory=dict)
    rank_prefixes: List[str] = field(default_factory=list)
    surname_particles: List[str] = field(default_factory=list)
    default_rank: Dict[str, str] = field(default_factory=dict)
    default_role: Dict[str, str] = field(default_factory=dict)
    max_roster_size: Dict[str, int] = field(default_factory=lambda: {"cadet": 5000, "staff": 500})
    require_external_id: Dict[str, bool] = field(default_factory=lambda: {"cadet": True, "staff": False})
    default_total_training_days: int = 15
    present_statuses: List[str] = field(default_factory=lambda: ["present"])
    processing_timeout: float = 60.0
    remote: RemoteSettings = field(default_factory=RemoteSettings)
    ocr_language: str = "eng"

    def __post_init__(self):
        self.id_full_re = re.compile(self.external_id_pattern)
        self.id_search_re = re.compile(self.external_id_search)

    @classmethod
    def from_rules(cls, rules: Dict[str, Any]) -> "Settings":
        remote = rules.get("remote", {}) or {}
        kwargs: Dict[str, Any] = {
            "header_aliases": rules.get("header_aliases", {}),
            "attendance_tokens": rules.get("attendance", {}),
            "ledger_tokens": rules.get("ledger_types", {}),
            "rank_prefixes": rules.get("rank_prefixes", []),
            "surname_particles": rules.get("surname_particles", []),
            "default_rank": rules.get("default_rank", {}),
            "default_role": rules.get("default_role", {}),
            "remote": RemoteSettings(
                connect_timeout=float(remote.get("connect_timeout", 5)),
                read_timeout=float(remote.get("read_timeout", 30)),
                retries=int(remote.get("retries", 2)),
                max_redirects=int(remote.get("max_redirects", 5)),
                user_agent=str(remote.get("user_agent", "Mozilla/5.0")),
            ),
        }
        for k in ("header_fuzzy_threshold", "external_id_pattern", "external_id_search",
                  "max_roster_size", "require_external_id", "default_total_training_days",
                  "present_statuses", "processing_timeout", "ocr_language"):
            if k in rules:
                kwargs[k] = rules[k]
        return cls(**kwargs)


def _env_number(name: str, cast):
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not a number", name, raw)
        return None


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> Settings:
    rules = load_json(rules_path(), {})
    user_rules = load_json(user_rules_path(), {})
    if user_rules and user_rules_path() != rules_path():
        rules = _merge(rules, user_rules)
    if overrides:
        rules = _merge(rules, overrides)

    settings = Settings.from_rules(rules)

    timeout = _env_number("CADETCORE_PROCESSING_TIMEOUT", float)
    if timeout is not None:
        settings.processing_timeout = timeout
    max_cadets = _env_number("CADETCORE_MAX_CADETS", int)
    if max_cadets is not None:
        settings.max_roster_size = dict(settings.max_roster_size, cadet=max_cadets)
    return settings
