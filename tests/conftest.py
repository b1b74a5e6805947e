"""
Pytest configuration and shared fixtures.
"""
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest

from tradestate.domain.mapping import patch_for
from tradestate.domain.models import EntityKind, WriteSource, entity_key
from tradestate.domain.protocols import MutationResult
from tradestate.state.store import StateStore


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture
def store():
    return StateStore()


@pytest.fixture
def position_payload():
    """Factory for PaperPosition-shaped wire payloads."""

    def make(position_id: Any = 1, **overrides: Any) -> Dict[str, Any]:
        payload = {
            "id": position_id,
            "symbol": "BTCUSD",
            "market": "crypto",
            "type": "Buy",
            "volume": 0.1,
            "openPrice": 50000,
            "currentPrice": 50100,
            "stopLoss": None,
            "takeProfit": None,
            "profit": 10,
            "profitPercent": 0.2,
            "status": "Open",
            "openTime": "2026-01-05T10:00:00Z",
            "strategyId": 7,
            "strategyName": "Breakout",
        }
        payload.update(overrides)
        return payload

    return make


@pytest.fixture
def subscription_payload():
    """Factory for StrategySubscription-shaped wire payloads."""

    def make(subscription_id: Any = 11, **overrides: Any) -> Dict[str, Any]:
        payload = {
            "id": subscription_id,
            "strategyId": 7,
            "isActive": True,
            "isPaused": False,
            "tradeMode": "paper",
            "lots": 1,
            "strategy": {"id": 7, "name": "Breakout"},
        }
        payload.update(overrides)
        return payload

    return make


@pytest.fixture
def seed(store):
    """Write a full payload into the store as a REST snapshot entry. Returns the store key."""

    def apply(kind: EntityKind, payload: Dict[str, Any]) -> str:
        entity_id = entity_key(kind, payload["id"])
        result = store.upsert(entity_id, patch_for(kind, payload, full=True), WriteSource.REST, store.next_sequence())
        assert result.created, result
        return entity_id

    return apply


@pytest.fixture
def gateway():
    """MutationGateway fake: every call succeeds with no response data."""
    gw = AsyncMock()
    gw.modify_position.return_value = MutationResult(success=True)
    gw.close_position.return_value = MutationResult(success=True)
    gw.update_strategy.return_value = MutationResult(success=True)
    gw.set_trade_mode.return_value = MutationResult(success=True)
    return gw
