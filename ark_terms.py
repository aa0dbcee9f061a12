"""
Operator terms
==============
Per-round constants published by the Ark operator: its signing key,
network, dust limit and the relative delays used for exit paths.
The core treats them as trusted for the duration of a round.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from ark_scripts import RelativeLocktime, TimelockUnit, parse_xonly

log = logging.getLogger("ark.terms")
log.addHandler(logging.NullHandler())

# operator network name -> local network name
_NETWORK_ALIASES = {
    "bitcoin": "mainnet",
    "mainnet": "mainnet",
    "testnet": "testnet",
    "signet": "signet",
    "mutinynet": "mutinynet",
    "regtest": "regtest",
}


def delay_from_operator(value: int) -> RelativeLocktime:
    """Operators publish delays as a bare number: below 512 means blocks."""
    if value < 512:
        return RelativeLocktime(value, TimelockUnit.BLOCKS)
    return RelativeLocktime(value, TimelockUnit.SECONDS)


@dataclass(frozen=True)
class ArkOperatorTerms:
    signer_pubkey: bytes           # x-only
    network: str
    unilateral_exit_delay: RelativeLocktime
    boarding_exit_delay: Optional[RelativeLocktime] = None
    dust: int = 330
    forfeit_address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signer_pubkey": self.signer_pubkey.hex(),
            "network": self.network,
            "unilateral_exit_delay": self.unilateral_exit_delay.to_descriptor(),
            "boarding_exit_delay": (self.boarding_exit_delay.to_descriptor()
                                    if self.boarding_exit_delay else None),
            "dust": self.dust,
            "forfeit_address": self.forfeit_address,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ArkOperatorTerms":
        boarding = d.get("boarding_exit_delay")
        return cls(
            signer_pubkey=parse_xonly(d["signer_pubkey"]),
            network=d["network"],
            unilateral_exit_delay=RelativeLocktime.from_descriptor(d["unilateral_exit_delay"]),
            boarding_exit_delay=RelativeLocktime.from_descriptor(boarding) if boarding else None,
            dust=int(d.get("dust", 330)),
            forfeit_address=d.get("forfeit_address"),
        )

    @classmethod
    def from_info(cls, info: Dict[str, Any]) -> "ArkOperatorTerms":
        """Parse the operator's ``GET /v1/info`` response body."""
        network = _NETWORK_ALIASES.get(str(info.get("network", "")).lower())
        if network is None:
            raise ValueError(f"Unknown network {info.get('network')!r}")
        boarding = info.get("boardingExitDelay")
        return cls(
            signer_pubkey=parse_xonly(info["signerPubkey"]),
            network=network,
            unilateral_exit_delay=delay_from_operator(int(info["unilateralExitDelay"])),
            boarding_exit_delay=delay_from_operator(int(boarding)) if boarding else None,
            dust=int(info.get("dust", 330)),
            forfeit_address=info.get("forfeitAddress") or None,
        )


class OperatorTermsProvider(ABC):

    @abstractmethod
    def get_operator_terms(self) -> ArkOperatorTerms:
        ...


class StaticOperatorTerms(OperatorTermsProvider):
    def __init__(self, terms: ArkOperatorTerms) -> None:
        self._terms = terms

    def get_operator_terms(self) -> ArkOperatorTerms:
        return self._terms


class RestOperatorTermsProvider(OperatorTermsProvider):
    """
    Fetches terms from an operator's REST gateway and caches them.

    A failed fetch is logged and raised; retrying is the caller's call.
    """

    def __init__(self, base_url: str, timeout: int = 30, cache_ttl: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self._terms: Optional[ArkOperatorTerms] = None
        self._fetched_at = 0.0

    def get_operator_terms(self) -> ArkOperatorTerms:
        if self._terms is not None and time.monotonic() - self._fetched_at < self.cache_ttl:
            return self._terms
        try:
            resp = requests.get(f"{self.base_url}/v1/info", timeout=self.timeout)
        except requests.RequestException as exc:
            log.error("Failed to update operator terms: %s", exc)
            raise RuntimeError(f"operator connection failed: {exc}") from exc

        if resp.status_code != 200:
            log.error("Failed to update operator terms: HTTP %d", resp.status_code)
            raise RuntimeError(f"operator HTTP {resp.status_code}: {resp.text[:200]}")

        terms = ArkOperatorTerms.from_info(resp.json())
        self._terms = terms
        self._fetched_at = time.monotonic()
        log.info("Operator terms updated: network=%s signer=%s",
                 terms.network, terms.signer_pubkey.hex())
        return terms
