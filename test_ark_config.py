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
import json
import logging
import pytest
from ark_config import *
from ark_terms import RestOperatorTermsProvider


class TestArkConfig:

    def test_defaults(self):
        config = ArkConfig()
        assert config.network == "mainnet"
        assert config.intent_validity_seconds == 120

    def test_from_env(self):
        config = ArkConfig.from_env({
            "ARK_NETWORK": "mutinynet",
            "ARK_OPERATOR_URL": "https://mutinynet.arkade.sh",
            "ARK_REQUEST_TIMEOUT": "10",
            "ARK_INTENT_VALIDITY": "300",
            "UNRELATED": "x",
        })
        assert config.network == "mutinynet"
        assert config.operator_url == "https://mutinynet.arkade.sh"
        assert config.request_timeout == 10
        assert config.intent_validity_seconds == 300
        assert config.terms_cache_ttl == 60.0

    def test_from_dict_ignores_unknown(self):
        config = ArkConfig.from_dict({"network": "regtest", "colour": "blue"})
        assert config.network == "regtest"
        assert ArkConfig.from_dict(config.to_dict()) == config

    def test_from_file(self, tmp_path):
        path = tmp_path / "ark.json"
        path.write_text(json.dumps({"network": "signet", "terms_cache_ttl": 5}))
        config = ArkConfig.from_file(str(path))
        assert config.network == "signet"
        assert config.terms_cache_ttl == 5

    def test_invalid_network(self):
        with pytest.raises(ValueError, match="unknown network"):
            ArkConfig(network="liquid")

    def test_invalid_window(self):
        with pytest.raises(ValueError, match="must be positive"):
            ArkConfig(intent_validity_seconds=0)

    def test_intent_window(self):
        assert ArkConfig(intent_validity_seconds=60).intent_window(1000) == (1000, 1060)

    def test_terms_provider(self):
        provider = ArkConfig(operator_url="http://op:7070", request_timeout=3).terms_provider()
        assert isinstance(provider, RestOperatorTermsProvider)
        assert provider.base_url == "http://op:7070"
        assert provider.timeout == 3


class TestLogging:

    def test_setup_logging_idempotent(self, tmp_path, monkeypatch):
        monkeypatch.setattr(setup_logging, "_done", False, raising=False)
        logger = logging.getLogger("ark")
        before = list(logger.handlers)
        try:
            setup_logging(str(tmp_path / "ark.log"))
            added = len(logger.handlers) - len(before)
            setup_logging(str(tmp_path / "ark.log"))
            assert added == 2
            assert len(logger.handlers) == len(before) + 2
            logging.getLogger("ark.intent").info("intent built")
            for handler in logger.handlers:
                handler.flush()
            assert "intent built" in (tmp_path / "ark.log").read_text()
        finally:
            for handler in logger.handlers[len(before):]:
                handler.close()
            logger.handlers[:] = before
