"""Unit tests for configuration parsing and backend selection."""

from __future__ import annotations

import pytest

from auction_server.balance.client import (
    HttpBalanceClient,
    LegacyBalanceClient,
    build_balance_client,
)
from auction_server.balance.local import BalanceAuthority, LocalBalanceClient
from auction_server.bidding.fsm import (
    AdmissionEvent,
    AdmissionState,
    InvalidTransition,
    transition,
)
from auction_server.config import get_server_config, parse_server_config
from auction_server.storage import build_storage
from auction_server.storage.in_memory import InMemoryStorage


class TestServerConfig:
    def test_defaults(self):
        config = parse_server_config({})
        assert config.storage.backend == "in_memory"
        assert config.balance_authority.backend == "local"
        assert config.balance_authority.protocol == "reserve"
        assert config.balance_authority.timeout_seconds == 2.0
        assert config.reconciliation.max_attempts == 5
        assert config.alerts.webhook_url == ""

    def test_unknown_protocol(self):
        with pytest.raises(ValueError):
            parse_server_config({"balance_authority": {"protocol": "debit"}})

    def test_bundled_file_loads(self):
        config = get_server_config()
        assert config.storage.backend == "in_memory"
        assert config.reconciliation.backoff_ms == 200


class TestBackendSelection:
    def test_in_memory_storage(self):
        assert isinstance(build_storage(parse_server_config({})), InMemoryStorage)

    def test_unknown_storage(self):
        with pytest.raises(ValueError):
            build_storage(parse_server_config({"storage": {"backend": "sqlite"}}))

    def test_local_client_needs_authority(self):
        config = parse_server_config({}).balance_authority
        with pytest.raises(ValueError):
            build_balance_client(config)
        assert isinstance(build_balance_client(config, BalanceAuthority()), LocalBalanceClient)

    @pytest.mark.parametrize(
        "protocol,expected",
        [("reserve", HttpBalanceClient), ("legacy", LegacyBalanceClient)],
    )
    def test_http_clients(self, protocol, expected):
        config = parse_server_config(
            {"balance_authority": {"backend": "http", "protocol": protocol}}
        ).balance_authority
        assert isinstance(build_balance_client(config), expected)


class TestAdmissionStateMachine:
    def test_commit_requires_reserved_funds(self):
        with pytest.raises(InvalidTransition):
            transition(AdmissionState.VALIDATED, AdmissionEvent.COMMIT_SUCCEEDED)

    def test_deferred_confirm_still_accepts(self):
        state = transition(AdmissionState.COMMITTED, AdmissionEvent.CONFIRM_DEFERRED)
        assert state is AdmissionState.ACCEPTED
