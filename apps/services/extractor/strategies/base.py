"""
extractor/strategies/base.py

Vendor strategy contract.

A strategy contributes vendor-specific DOM logic (gallery heuristics,
marketplace flags, ...) and may declare extra fields that the generic
field table does not know about. Strategies are looked up by vendor name
in the StrategyRegistry; vendors without one get EmptyStrategy.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from apps.services.extractor.schema_builder import FieldDefinition


@dataclass
class StrategyContext:
    """What a strategy knows about the page it runs on."""
    url: str
    vendor: str
    sku: Optional[str] = None
    image_url: Optional[str] = None
    product_name: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_work_item(cls, work_item: Dict[str, Any], product_name: Optional[str] = None) -> "StrategyContext":
        return cls(
            url=work_item.get("url", ""),
            vendor=work_item.get("vendor", ""),
            sku=work_item.get("sku") or work_item.get("sku_id"),
            image_url=work_item.get("image_url"),
            product_name=product_name,
        )


class VendorStrategy:
    """Base strategy: no custom fields, contributes nothing."""

    name: str = "generic"
    custom_fields: Dict[str, FieldDefinition] = {}

    async def extract(self, page, context: StrategyContext) -> Optional[Dict[str, Any]]:
        return None

    def learnable_custom_fields(self) -> Dict[str, FieldDefinition]:
        """Custom fields simple enough (str/bool) to get a learned selector."""
        return {
            name: definition
            for name, definition in self.custom_fields.items()
            if definition.type in (str, bool)
        }


class EmptyStrategy(VendorStrategy):
    name = "empty"
