"""
Unit tests for runtime extraction schemas.
"""

from apps.services.extractor.schema_builder import FIELD_DEFINITIONS, FieldDefinition, SchemaBuilder


class TestSchemaBuilder:
    def test_only_requested_fields(self):
        schema = SchemaBuilder().build(["price", "images", "unknown"])
        assert set(schema.model_fields) == {"price", "images"}

    def test_defaults_and_coercion(self):
        schema = SchemaBuilder().build(["price", "images", "name"])
        parsed = schema.model_validate({"price": 12.5, "extra": "ignored"})
        assert parsed.price == "12.5"
        assert parsed.images == []
        assert parsed.name == ""

    def test_custom_fields(self):
        custom = {"marketplace": FieldDefinition(bool, "Marketplace seller")}
        builder = SchemaBuilder()
        schema = builder.build(["marketplace"], custom)
        assert schema.model_validate({}).marketplace is False
        assert builder.defaults(custom)["marketplace"] is False
        assert len(builder.definitions_for(custom)) == len(FIELD_DEFINITIONS) + 1

    def test_instructions(self):
        builder = SchemaBuilder()
        assert builder.instruction(["price"], partial=False).startswith("Extract the product's name")
        assert builder.instruction(["images", "weight"], partial=True) == (
            "Extract only the following product information: all product image URLs, pack size/weight."
        )
