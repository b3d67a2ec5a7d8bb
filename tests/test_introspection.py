import pytest

from core_logic.data_models import ColumnDescriptor, TableDescriptor
from ingestion.introspection import (
    SchemaCatalog,
    detect_column_patterns,
    detect_implicit_relationships,
    infer_semantic_type,
    relationship_confidence,
)
from tests.fakes import FakeSource, merchant_one_tables


def _fast_catalog(**kwargs) -> SchemaCatalog:
    kwargs.setdefault("retry_base_delay", 0)
    return SchemaCatalog(**kwargs)


def _structure(schema):
    return {
        name: (
            tuple((c.name, c.data_type) for c in table.columns),
            table.text_columns,
            table.numeric_columns,
            table.date_columns,
            tuple(c.analysis.semantic_type if c.analysis else None for c in table.columns),
        )
        for name, table in schema.tables.items()
    }


@pytest.mark.asyncio
async def test_discover_classifies_columns(source_one):
    """Columns are split into text, numeric and date by declared type"""
    schema = await _fast_catalog().discover(source_one)

    products = schema.tables["products"]
    assert products.text_columns == ("sku", "product_type", "supplier_name", "location")
    assert products.numeric_columns == ("price", "number_of_products_sold")
    assert schema.tables["shipments"].date_columns == ("shipped_on",)
    assert products.row_count == 4
    assert len(products.sample_rows) == 4
    assert schema.summary.total_tables == 2
    assert schema.summary.total_rows == 5
    assert not schema.is_empty


@pytest.mark.asyncio
async def test_discover_is_idempotent(source_one):
    """Discovering an unchanged source twice gives the same structure"""
    catalog = _fast_catalog()
    first = await catalog.discover(source_one)
    second = await catalog.discover(source_one)

    assert _structure(first) == _structure(second)
    assert set(first.tables) == set(second.tables)


@pytest.mark.asyncio
async def test_broken_table_falls_back_to_minimal_descriptor():
    """A table whose queries fail becomes an empty descriptor; other tables survive"""
    tables = merchant_one_tables()
    tables["broken"] = {"columns": [("x", "text")], "rows": [{"x": "a"}]}
    source = FakeSource("source1", tables, fail_tables={"broken"})

    schema = await _fast_catalog().discover(source)

    assert schema.tables["broken"].columns == ()
    assert schema.tables["broken"].row_count == 0
    assert schema.tables["products"].row_count == 4
    assert schema.tables["shipments"].row_count == 1


@pytest.mark.asyncio
async def test_unreachable_source_retries_then_returns_empty_schema():
    """Whole-source failure is retried, then replaced by an empty schema"""
    source = FakeSource("source1", fail_all=True)
    catalog = _fast_catalog(max_retries=3)

    schema = await catalog.discover(source)

    assert schema.is_empty
    assert schema.source_name == "source1"
    assert len(source.calls) == 4
    assert catalog.get_schema("source1").is_empty


@pytest.mark.asyncio
async def test_top_values_and_semantic_types(source_one):
    """Text columns carry their most frequent values and a semantic type"""
    schema = await _fast_catalog().discover(source_one)
    columns = {c.name: c for c in schema.tables["products"].columns}

    supplier = columns["supplier_name"].analysis
    assert supplier.semantic_type == "supplier"
    assert supplier.top_values[0].value == "Supplier 1"
    assert supplier.top_values[0].frequency == 2
    assert supplier.patterns.is_company_name
    assert columns["product_type"].analysis.semantic_type == "product"
    assert columns["price"].analysis is None


@pytest.mark.asyncio
async def test_relationships_include_declared_and_implicit():
    """Foreign keys are declared edges; synonym column names are implicit edges"""
    fk = {
        "constraint_name": "fk_ship",
        "table_name": "shipments",
        "column_name": "shipment_id",
        "foreign_table_name": "products",
        "foreign_column_name": "sku",
    }
    source = FakeSource("source1", merchant_one_tables(), foreign_keys=[fk])

    schema = await _fast_catalog().discover(source)

    declared = [r for r in schema.relationships if r.kind == "declared"]
    implicit = [r for r in schema.relationships if r.kind == "implicit"]
    assert len(declared) == 1 and declared[0].confidence == 1.0
    assert any({r.column_a, r.column_b} == {"supplier_name", "vendor_name"} for r in implicit)


@pytest.mark.asyncio
async def test_semantic_patterns(source_one):
    schema = await _fast_catalog().discover(source_one)
    patterns = schema.semantic_patterns

    assert ("products", "supplier_name") in {(r.table, r.column) for r in patterns["supplier_columns"]}
    assert ("products", "price") in {(r.table, r.column) for r in patterns["amount_columns"]}
    assert ("shipments", "shipped_on") in {(r.table, r.column) for r in patterns["date_columns"]}


@pytest.mark.asyncio
async def test_refresh_cycle_is_skipped_while_in_flight(source_one):
    """A second refresh cycle does not queue behind a running one"""
    catalog = _fast_catalog()
    catalog._refresh_in_flight = True

    assert await catalog.run_refresh_cycle([source_one]) is False
    assert source_one.calls == []


@pytest.mark.asyncio
async def test_refresh_cycle_only_rediscovers_stale_sources(source_one, source_two):
    now = [1000.0]
    catalog = _fast_catalog(refresh_interval=300, clock=lambda: now[0])
    await catalog.discover(source_one)
    await catalog.discover(source_two)
    source_one.calls.clear()
    source_two.calls.clear()

    assert await catalog.run_refresh_cycle([source_one, source_two]) is True
    assert source_one.calls == [] and source_two.calls == []

    now[0] += 301
    await catalog.run_refresh_cycle([source_one, source_two])
    assert source_one.calls and source_two.calls


@pytest.mark.asyncio
async def test_snapshot_swap_keeps_old_references_intact(source_one):
    """Readers holding an old schema map never see it change"""
    catalog = _fast_catalog()
    await catalog.discover(source_one)
    before = catalog.get_all_schemas()
    old_schema = before["source1"]

    await catalog.refresh(source_one)

    assert before["source1"] is old_schema
    assert catalog.get_schema("source1") is not old_schema


@pytest.mark.asyncio
async def test_initialize_schemas_returns_unified_context(source_one, source_two):
    catalog = _fast_catalog()
    context = await catalog.initialize_schemas([source_one, source_two])
    try:
        assert "SOURCE1 DATABASE" in context
        assert "SOURCE2 DATABASE" in context
        assert "Table: products (4 rows)" in context
        assert "Table: inventory (2 rows)" in context
        assert "QUERY GENERATION RULES" in context

        summary = catalog.get_schema_summary()
        assert summary["source1"]["has_errors"] is False
        assert set(summary["source1"]["tables"]) == {"products", "shipments"}
    finally:
        await catalog.stop_auto_refresh()


def test_unknown_source_gives_empty_schema():
    assert SchemaCatalog().get_schema("nowhere").is_empty


def test_infer_semantic_type_rule_order():
    assert infer_semantic_type("vendor_name", []) == "supplier"
    assert infer_semantic_type("product_category", []) == "product"
    assert infer_semantic_type("category", []) == "category"
    assert infer_semantic_type("facility_location", []) == "location"
    assert infer_semantic_type("brand_name", ["Acme Corp"]) == "company_name"
    assert infer_semantic_type("customer_name", ["Jane"]) == "name"
    assert infer_semantic_type("notes", ["anything"]) == "text"


def test_detect_column_patterns():
    flags = detect_column_patterns(["jane@example.com", "bob@example.org"])
    assert flags.is_email
    assert not flags.is_company_name
    assert detect_column_patterns([]).avg_length == 0.0


def test_relationship_confidence_bounds():
    assert relationship_confidence("sku", "SKU") == 1.0
    assert relationship_confidence("supplier_name", "vendor_name") >= 0.5
    assert 0.0 <= relationship_confidence("price", "unit_cost") <= 1.0


def test_detect_implicit_relationships_skips_same_table():
    tables = {
        "a": TableDescriptor(columns=(ColumnDescriptor(name="item_id", data_type="text"),)),
        "b": TableDescriptor(columns=(ColumnDescriptor(name="product_id", data_type="text"),)),
    }
    edges = detect_implicit_relationships(tables)
    assert len(edges) == 1
    assert (edges[0].table_a, edges[0].table_b) == ("a", "b")
