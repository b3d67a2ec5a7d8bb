import json

import pytest

from core_logic.data_models import SearchMatch
from core_logic.errors import PlanParseError
from core_logic.federation_planner import DynamicPromptBuilder, FederationPlanner, parse_query_plan
from ingestion.indexing import ContentIndexer
from ingestion.introspection import SchemaCatalog
from tests.fakes import FakeCompletionClient

PLAN = {
    "target": "both",
    "source1_query": "SELECT SUM(price) AS total FROM products",
    "source2_query": "SELECT SUM(unit_price) AS total FROM inventory",
    "use_unified_query": False,
    "query_unstructured": False,
    "unstructured_keywords": None,
    "explanation": "Total price on both merchants",
    "aggregation_needed": True,
}


def test_parse_plain_json():
    plan = parse_query_plan(json.dumps(PLAN))
    assert plan.target == "both"
    assert plan.queries_for_target() == {
        "source1": PLAN["source1_query"],
        "source2": PLAN["source2_query"],
    }


def test_parse_strips_code_fences():
    plan = parse_query_plan("```json\n" + json.dumps(PLAN) + "\n```")
    assert plan.aggregation_needed is True


def test_null_strings_become_none():
    payload = dict(PLAN, target="source1", source2_query="null", explanation=None)
    plan = parse_query_plan(json.dumps(payload))
    assert plan.source2_query is None
    assert plan.explanation == ""
    assert list(plan.queries_for_target()) == ["source1"]


def test_invalid_json_is_a_plan_parse_error():
    with pytest.raises(PlanParseError) as excinfo:
        parse_query_plan("Sure! Here is your query: SELECT 1")
    assert "SELECT 1" in excinfo.value.raw_text


def test_unknown_target_is_rejected():
    with pytest.raises(PlanParseError):
        parse_query_plan(json.dumps(dict(PLAN, target="merchant3")))


def test_plan_without_work_is_rejected():
    payload = dict(PLAN, target="source2", source2_query=None)
    with pytest.raises(PlanParseError):
        parse_query_plan(json.dumps(payload))


def test_unstructured_only_plan_is_accepted():
    payload = dict(PLAN, target="source1", source1_query=None, query_unstructured=True)
    plan = parse_query_plan(json.dumps(payload))
    assert plan.queries_for_target() == {}


def test_prompt_embeds_hints_mappings_and_question():
    builder = DynamicPromptBuilder(labels=("Alpha", "Beta"), equivalences={"sku": "product_id"})
    match = SearchMatch(
        value="Lipstick", source="source1", table="products", column="product_type",
        bucket="products", search_term="lipstik", match_type="fuzzy",
    )
    prompt = builder.build_plan_prompt("How many lipsticks?", "SCHEMA CONTEXT HERE", [match])

    assert "SCHEMA CONTEXT HERE" in prompt
    assert "- sku <-> product_id" in prompt
    assert '"Lipstick" (products.product_type in source1' in prompt
    assert 'User Question: "How many lipsticks?"' in prompt
    assert "Alpha" in prompt and "Beta" in prompt


def test_prompt_without_matches_uses_generic_hint():
    prompt = DynamicPromptBuilder().build_plan_prompt("q", "ctx", [])
    assert "INTELLIGENT SEARCH: Use fuzzy matching" in prompt


@pytest.mark.asyncio
async def test_planner_returns_validated_plan():
    completion = FakeCompletionClient(["```json\n" + json.dumps(PLAN) + "\n```"])
    planner = FederationPlanner(completion, SchemaCatalog(), ContentIndexer())

    plan = await planner.plan("What is the total price across merchants?")

    assert plan.target == "both"
    assert completion.calls == 1
    assert "What is the total price across merchants?" in completion.prompts[0]


@pytest.mark.asyncio
async def test_planner_parse_failure_is_not_retried():
    completion = FakeCompletionClient(["not json", json.dumps(PLAN)])
    planner = FederationPlanner(completion, SchemaCatalog(), ContentIndexer())

    with pytest.raises(PlanParseError):
        await planner.plan("anything")
    assert completion.calls == 1
