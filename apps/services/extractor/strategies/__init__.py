"""
Vendor strategy registry.

Maps vendor name -> strategy object. Unknown vendors get EmptyStrategy.
"""

from typing import Dict, Optional

from apps.services.extractor.schema_builder import FieldDefinition
from apps.services.extractor.strategies.base import EmptyStrategy, StrategyContext, VendorStrategy
from apps.services.extractor.strategies.superdrug import SuperdrugStrategy

__all__ = ["StrategyRegistry", "StrategyContext", "VendorStrategy", "EmptyStrategy", "SuperdrugStrategy"]


class StrategyRegistry:
    """Capability-keyed lookup of vendor strategies."""

    def __init__(self, strategies: Optional[Dict[str, VendorStrategy]] = None):
        if strategies is None:
            strategies = {"superdrug": SuperdrugStrategy()}
        self._strategies = dict(strategies)
        self._empty = EmptyStrategy()

    def register(self, vendor: str, strategy: VendorStrategy):
        self._strategies[vendor] = strategy

    def get(self, vendor: str) -> VendorStrategy:
        return self._strategies.get(vendor, self._empty)

    def has_strategy(self, vendor: str) -> bool:
        return vendor in self._strategies

    def custom_fields(self, vendor: str) -> Dict[str, FieldDefinition]:
        return dict(self.get(vendor).custom_fields)
