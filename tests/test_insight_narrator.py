import pytest

from core_logic.data_models import ReconciledResult, UnstructuredSummary
from core_logic.errors import QuotaExhaustedError
from core_logic.insight_narrator import InsightNarrator, PostQueryScrubber
from tests.fakes import FakeCompletionClient

LABELS = ("Merchant_one", "Merchant_two")


@pytest.mark.asyncio
async def test_no_data_returns_none_without_calling_llm():
    """Empty row sets and a failed unstructured pass skip narration entirely"""
    completion = FakeCompletionClient([])
    narrator = InsightNarrator(completion, labels=LABELS)

    insight = await narrator.narrate("q", [], [], None, UnstructuredSummary(success=False, message="none"))

    assert insight is None
    assert completion.calls == 0


@pytest.mark.asyncio
async def test_quota_exhaustion_returns_none():
    completion = FakeCompletionClient([QuotaExhaustedError("All 3 API keys exhausted")])
    narrator = InsightNarrator(completion, labels=LABELS)

    assert await narrator.narrate("q", [{"total": 1}], None) is None


@pytest.mark.asyncio
async def test_insight_is_cleaned_of_markdown():
    completion = FakeCompletionClient(["**Merchant_one** sells more.\n```"])
    narrator = InsightNarrator(completion, labels=LABELS)

    insight = await narrator.narrate("Who sells more?", [{"total": 10}], [{"total": 5}])

    assert insight == "Merchant_one sells more."
    assert 'User Question: "Who sells more?"' in completion.prompts[0]


@pytest.mark.asyncio
async def test_unstructured_only_answer_is_narrated():
    completion = FakeCompletionClient(["Customers love it."])
    narrator = InsightNarrator(completion, labels=LABELS)
    summary = UnstructuredSummary(success=True, analysis="Mostly positive reviews.", entries_analyzed=4)

    assert await narrator.narrate("q", None, None, None, summary) == "Customers love it."
    assert "Unstructured Data Analysis (4 entries)" in completion.prompts[0]
    assert "Mostly positive reviews." in completion.prompts[0]


def test_digest_is_bounded_per_source():
    narrator = InsightNarrator(FakeCompletionClient([]), rows_per_source=5, labels=LABELS)
    rows = [{"sku": f"SKU{i}"} for i in range(7)]

    digest = narrator.build_digest("q", rows, [{"sku": "P-1"}], None, None)

    assert "Merchant_one Results (7 rows)" in digest
    assert "... and 2 more rows" in digest
    assert "SKU4" in digest and "SKU5" not in digest
    assert "Merchant_two Results (1 rows)" in digest


def test_digest_includes_reconciled_aggregate():
    narrator = InsightNarrator(FakeCompletionClient([]), labels=LABELS)
    reconciled = ReconciledResult(kind="single_value", total_combined=25.0, contributions={"Merchant_one": 10.0})

    digest = narrator.build_digest("q", [{"total": 10}], [{"total": 15}], reconciled, None)

    assert "Combined/Aggregated Results" in digest
    assert '"total_combined": 25.0' in digest


def test_digest_masks_pii():
    narrator = InsightNarrator(FakeCompletionClient([]), scrubber=PostQueryScrubber(), labels=LABELS)
    rows = [{"contact": "jane@example.com", "phone": "555-123-4567", "qty": 3}]

    digest = narrator.build_digest("q", rows, None, None, None)

    assert "jane@example.com" not in digest
    assert "[MASKED_EMAIL]" in digest
    assert "[MASKED_PHONE]" in digest
    assert '"qty": 3' in digest
