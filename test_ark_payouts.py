# Copyright (c) 2026 Emiliano G Solazzi
# 
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
# 
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
# 
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.
# 
# Commercial licenses available. Contact: emiliano.arlington@gmail.com
import asyncio
import pytest
from ark_payouts import *


def _payouts():
    return [
        Payout("p1", "tark1alice", 10_000),
        Payout("p2", "tark1bob", 20_000),
        Payout("p3", "tark1carol", 30_000, state=PayoutState.IN_PROGRESS, proof="done"),
    ]


class TestProcessPayouts:

    def test_all_succeed(self):
        payouts = _payouts()

        async def spend(payout):
            return f"txid-{payout.payout_id}"

        started = asyncio.run(process_payouts(payouts, spend))
        assert [p.payout_id for p in started] == ["p1", "p2"]
        assert all(p.state is PayoutState.IN_PROGRESS for p in payouts)
        assert payouts[0].proof == "txid-p1"
        assert payouts[2].proof == "done"

    def test_failure_is_recorded_and_others_continue(self, caplog):
        payouts = _payouts()

        async def spend(payout):
            if payout.payout_id == "p1":
                raise RuntimeError("insufficient funds")
            return "txid"

        with pytest.raises(PayoutBatchError, match="1 payout") as err:
            asyncio.run(process_payouts(payouts, spend))
        assert err.value.failed == [payouts[0]]
        assert payouts[0].state is PayoutState.FAILED
        assert payouts[0].error == "insufficient funds"
        assert payouts[1].state is PayoutState.IN_PROGRESS
        assert "Payout p1 to tark1alice failed" in caplog.text

    def test_failed_payouts_not_retried(self):
        payouts = [Payout("p1", "tark1alice", 1, state=PayoutState.FAILED)]

        async def spend(payout):
            raise AssertionError("should not be called")

        assert asyncio.run(process_payouts(payouts, spend)) == []
