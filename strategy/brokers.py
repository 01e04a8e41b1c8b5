"""Contracts the execution engine relies on for order routing and pricing."""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Protocol


class BrokerRouter(ABC):
    """Routes orders to a broker bridge (EA/MT4/MT5 connector, REST API...).

    Every method resolves to a mapping with a boolean ``success`` key and an
    ``error`` string on failure. Implementations report expected failures
    through that mapping instead of raising.
    """

    supports_reconciliation = False

    @abstractmethod
    async def place_order(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def close_position(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def modify_position(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        pass

    async def get_status(self) -> Dict[str, Any]:
        return {'success': True}

    async def get_health_snapshots(self) -> List[Dict[str, Any]]:
        return []

    async def run_reconciliation(self) -> List[Dict[str, Any]]:
        """Return fills seen by the broker since the previous call."""
        return []


class PriceSource(Protocol):
    async def get_current_price_for_pair(self, pair: str) -> float:
        ...
