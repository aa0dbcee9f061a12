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
import pytest
import requests
from ark_scripts import RelativeLocktime, TimelockUnit
from ark_terms import *

SIGNER = "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"

INFO = {
    "signerPubkey": SIGNER,
    "network": "bitcoin",
    "unilateralExitDelay": 86528,
    "boardingExitDelay": 144,
    "dust": 546,
    "forfeitAddress": "bc1qexample",
}


class FakeResp:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        return self._body


class TestOperatorTerms:

    def test_from_info(self):
        terms = ArkOperatorTerms.from_info(INFO)
        assert terms.network == "mainnet"
        assert terms.signer_pubkey == bytes.fromhex(SIGNER)[1:]
        assert terms.unilateral_exit_delay == RelativeLocktime(86528, TimelockUnit.SECONDS)
        assert terms.boarding_exit_delay == RelativeLocktime(144)
        assert terms.dust == 546

    def test_unknown_network(self):
        with pytest.raises(ValueError, match="Unknown network"):
            ArkOperatorTerms.from_info(dict(INFO, network="liquid"))

    def test_dict_roundtrip(self):
        terms = ArkOperatorTerms.from_info(INFO)
        assert ArkOperatorTerms.from_dict(terms.to_dict()) == terms

    def test_delay_units(self):
        assert delay_from_operator(511).unit is TimelockUnit.BLOCKS
        assert delay_from_operator(512).unit is TimelockUnit.SECONDS
        with pytest.raises(ValueError, match="multiple of 512"):
            delay_from_operator(600)

    def test_static_provider(self):
        terms = ArkOperatorTerms.from_info(INFO)
        assert StaticOperatorTerms(terms).get_operator_terms() is terms


class TestRestProvider:
    """GET /v1/info with requests mocked out."""

    def test_fetch_and_cache(self, monkeypatch):
        calls = []

        def fake_get(url, **kw):
            calls.append((url, kw))
            return FakeResp(body=INFO)

        monkeypatch.setattr(requests, "get", fake_get)
        provider = RestOperatorTermsProvider("http://operator:7070/", timeout=5)
        first = provider.get_operator_terms()
        second = provider.get_operator_terms()
        assert first is second
        assert calls == [("http://operator:7070/v1/info", {"timeout": 5})]

    def test_cache_expiry(self, monkeypatch):
        calls = []
        monkeypatch.setattr(requests, "get",
                            lambda *a, **kw: calls.append(a) or FakeResp(body=INFO))
        provider = RestOperatorTermsProvider("http://operator:7070", cache_ttl=0)
        provider.get_operator_terms()
        provider.get_operator_terms()
        assert len(calls) == 2

    def test_http_error(self, monkeypatch):
        monkeypatch.setattr(requests, "get",
                            lambda *a, **kw: FakeResp(503, text="Service Unavailable"))
        with pytest.raises(RuntimeError, match="operator HTTP 503"):
            RestOperatorTermsProvider("http://operator:7070").get_operator_terms()

    def test_connection_error(self, monkeypatch, caplog):
        def refuse(*a, **kw):
            raise requests.ConnectionError("connection refused")

        monkeypatch.setattr(requests, "get", refuse)
        with pytest.raises(RuntimeError, match="operator connection failed"):
            RestOperatorTermsProvider("http://operator:7070").get_operator_terms()
        assert "Failed to update operator terms" in caplog.text
