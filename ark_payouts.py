"""
Automated payout processing.

Each pending payout is handed to a spend callback.  A failed spend marks
that payout FAILED and is logged with its traceback; the remaining
payouts still run, and the batch then raises ``PayoutBatchError`` so the
caller sees every failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

log = logging.getLogger("ark.payouts")
log.addHandler(logging.NullHandler())


class PayoutState(Enum):
    AWAITING = "awaiting"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"


@dataclass
class Payout:
    payout_id: str
    destination: str
    amount: int
    state: PayoutState = PayoutState.AWAITING
    proof: Optional[str] = None
    error: Optional[str] = None


class PayoutBatchError(RuntimeError):
    def __init__(self, failed: List[Payout]) -> None:
        ids = ", ".join(p.payout_id for p in failed)
        super().__init__(f"{len(failed)} payout(s) failed: {ids}")
        self.failed = failed


SpendFn = Callable[[Payout], Awaitable[str]]


async def process_payouts(payouts: Sequence[Payout], spend: SpendFn) -> List[Payout]:
    """Spend every awaiting payout; return the ones now in progress."""
    started: List[Payout] = []
    failed: List[Payout] = []
    for payout in payouts:
        if payout.state is not PayoutState.AWAITING or payout.proof is not None:
            continue
        try:
            payout.proof = await spend(payout)
        except Exception as exc:
            log.exception("Payout %s to %s failed", payout.payout_id, payout.destination)
            payout.state = PayoutState.FAILED
            payout.error = str(exc)
            failed.append(payout)
            continue
        payout.state = PayoutState.IN_PROGRESS
        started.append(payout)
        log.info("Payout %s in progress (%s)", payout.payout_id, payout.proof)
    if failed:
        raise PayoutBatchError(failed)
    return started
