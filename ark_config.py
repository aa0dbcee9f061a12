"""
Runtime configuration and logging for the Ark client core.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from ark_terms import RestOperatorTermsProvider

log = logging.getLogger("ark")
log.addHandler(logging.NullHandler())

NETWORKS = ("mainnet", "testnet", "signet", "mutinynet", "regtest")


def setup_logging(log_file: str = "ark.log") -> None:
    """
    Configure production logging with rotating file + console.

    Every ``ark.*`` module logger propagates here.  Safe to call more
    than once.
    """
    if getattr(setup_logging, "_done", False):
        return

    fmt = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    file_handler = RotatingFileHandler(
        log_file, maxBytes=10 * 1024 * 1024, backupCount=5,
    )
    file_handler.setFormatter(fmt)
    file_handler.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(fmt)
    console_handler.setLevel(logging.WARNING)

    log.addHandler(file_handler)
    log.addHandler(console_handler)
    log.setLevel(logging.INFO)

    setup_logging._done = True  # type: ignore[attr-defined]


@dataclass
class ArkConfig:
    network: str = "mainnet"
    operator_url: str = "http://localhost:7070"
    log_file: str = "ark.log"
    request_timeout: int = 30
    terms_cache_ttl: float = 60.0
    # register intents are accepted for this long after valid_at
    intent_validity_seconds: int = 120

    def __post_init__(self) -> None:
        if self.network not in NETWORKS:
            raise ValueError(f"unknown network {self.network!r}")
        if self.intent_validity_seconds <= 0:
            raise ValueError("intent validity window must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ArkConfig":
        known = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def from_file(cls, filepath: str) -> "ArkConfig":
        return cls.from_dict(json.loads(Path(filepath).read_text()))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ArkConfig":
        """Read ``ARK_*`` variables; anything unset keeps its default."""
        env = os.environ if environ is None else environ
        d: Dict[str, Any] = {}
        if "ARK_NETWORK" in env:
            d["network"] = env["ARK_NETWORK"]
        if "ARK_OPERATOR_URL" in env:
            d["operator_url"] = env["ARK_OPERATOR_URL"]
        if "ARK_LOG_FILE" in env:
            d["log_file"] = env["ARK_LOG_FILE"]
        if "ARK_REQUEST_TIMEOUT" in env:
            d["request_timeout"] = int(env["ARK_REQUEST_TIMEOUT"])
        if "ARK_TERMS_CACHE_TTL" in env:
            d["terms_cache_ttl"] = float(env["ARK_TERMS_CACHE_TTL"])
        if "ARK_INTENT_VALIDITY" in env:
            d["intent_validity_seconds"] = int(env["ARK_INTENT_VALIDITY"])
        return cls.from_dict(d)

    def intent_window(self, now: int) -> Tuple[int, int]:
        """(valid_at, expire_at) for an intent created at ``now``."""
        return now, now + self.intent_validity_seconds

    def terms_provider(self) -> RestOperatorTermsProvider:
        return RestOperatorTermsProvider(
            self.operator_url, timeout=self.request_timeout, cache_ttl=self.terms_cache_ttl,
        )
