"""
extractor/schema_builder.py

Runtime-built extraction schemas.

The model-driven extraction call only asks for the fields that direct
extraction could not supply, so the request schema is assembled per call:
the static FIELD_DEFINITIONS table plus the vendor's custom-field table,
filtered down to the selected keys and turned into a pydantic model.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, create_model


@dataclass(frozen=True)
class FieldDefinition:
    """Type + description for one extractable field."""
    type: type
    description: str

    @property
    def is_list(self) -> bool:
        return self.type is list

    @property
    def is_boolean(self) -> bool:
        return self.type is bool

    def default(self) -> Any:
        if self.type is list:
            return []
        if self.type is bool:
            return False
        return ""


FIELD_DEFINITIONS: Dict[str, FieldDefinition] = {
    "name": FieldDefinition(str, "The exact product name shown on the page"),
    "main_image": FieldDefinition(
        str,
        "Direct URL to the primary/hero product image starting with http:// or https:// "
        "(return empty string if no valid image URL found)",
    ),
    "images": FieldDefinition(
        list,
        "Gallery of product images. Array of ALL product image URLs starting with http:// or https://",
    ),
    "price": FieldDefinition(str, "Displayed price text, including currency symbol if shown"),
    "stock_status": FieldDefinition(str, 'Stock availability status: "In stock" or "Out of stock"'),
    "weight": FieldDefinition(str, "Pack size/weight/volume text if available, e.g., 500g or 2x100ml"),
    "description": FieldDefinition(str, "Primary product description or details shown on the page"),
    "category": FieldDefinition(str, "Primary product category or breadcrumb category text shown on the page"),
    "discount": FieldDefinition(
        str, "Displayed discount or promotion text (e.g., 10% off or £5 off) if available"
    ),
}

# Fields re-checked by the model whenever direct extraction did not supply them;
# never skipped by the snapshot cache and never sent to selector learning.
DYNAMIC_FIELDS = frozenset({"images"})

# Human wording used when only part of the field set is requested
FIELD_PROMPT_NAMES = {
    "main_image": "primary image URL",
    "images": "all product image URLs",
    "stock_status": "stock status",
    "weight": "pack size/weight",
    "discount": "discount information",
}

FULL_INSTRUCTION = (
    "Extract the product's name, primary image URL, displayed price, all product image URLs, "
    "stock status, pack size/weight, category, any discount information, and a concise description."
)


class SchemaBuilder:
    """Builds per-call extraction schemas and instructions."""

    def __init__(self, base_definitions: Optional[Dict[str, FieldDefinition]] = None):
        self.base_definitions = dict(base_definitions or FIELD_DEFINITIONS)

    def definitions_for(self, custom_fields: Optional[Dict[str, FieldDefinition]] = None) -> Dict[str, FieldDefinition]:
        merged = dict(self.base_definitions)
        merged.update(custom_fields or {})
        return merged

    def build(
        self,
        fields: Iterable[str],
        custom_fields: Optional[Dict[str, FieldDefinition]] = None,
        model_name: str = "ProductExtraction",
    ) -> Type[BaseModel]:
        """Pydantic model with only the requested fields (unknown names are ignored)."""
        definitions = self.definitions_for(custom_fields)
        model_fields: Dict[str, Any] = {}
        for field_name in fields:
            definition = definitions.get(field_name)
            if definition is None:
                continue
            annotation = List[str] if definition.is_list else definition.type
            model_fields[field_name] = (
                annotation,
                Field(default_factory=definition.default, description=definition.description),
            )
        return create_model(
            model_name,
            __config__=ConfigDict(extra="ignore", coerce_numbers_to_str=True),
            **model_fields,
        )

    def instruction(self, fields: List[str], partial: bool) -> str:
        if not partial:
            return FULL_INSTRUCTION
        names = [FIELD_PROMPT_NAMES.get(field_name, field_name.replace("_", " ")) for field_name in fields]
        return f"Extract only the following product information: {', '.join(names)}."

    def defaults(self, custom_fields: Optional[Dict[str, FieldDefinition]] = None) -> Dict[str, Any]:
        return {name: definition.default() for name, definition in self.definitions_for(custom_fields).items()}
