import pytest

from ingestion.unstructured_corpus import UnstructuredCorpus, extract_keywords, parse_corpus
from tests.fakes import FakeCompletionClient


@pytest.fixture
def corpus(corpus_text):
    return UnstructuredCorpus(entries=parse_corpus(corpus_text))


def test_parse_assigns_entry_types(corpus_text):
    entries = parse_corpus(corpus_text)
    assert [e["type"] for e in entries] == ["support_ticket", "social_media", "product_review", "market_report"]
    assert entries[0]["description"].startswith("Lipstick arrived broken")
    assert entries[3]["report_type"] == "Trend Analysis"


def test_unrecognized_block_is_skipped():
    assert parse_corpus("=== SUPPORT TICKET XX-1 ===\nFoo: bar\n") == []


def test_load_reads_file_once(tmp_path, corpus_text):
    path = tmp_path / "unstructured_data.txt"
    path.write_text(corpus_text, encoding="utf-8")
    corpus = UnstructuredCorpus(data_path=str(path))

    assert corpus.load() == 4
    path.unlink()
    assert corpus.load() == 4


def test_load_missing_file_raises(tmp_path):
    with pytest.raises(OSError):
        UnstructuredCorpus(data_path=str(tmp_path / "missing.txt")).load()


def test_search_filters(corpus):
    assert len(corpus.search("lipstick")) == 2
    assert len(corpus.search("", merchant="merchant_one")) == 2
    assert len(corpus.search("", category="skin")) == 2
    assert len(corpus.search("", sentiment="NEGATIVE")) == 1
    assert len(corpus.search("lipstick serum", limit=3)) == 3


def test_typed_getters(corpus):
    assert len(corpus.support_tickets()) == 1
    assert len(corpus.social_media_posts()) == 1
    assert len(corpus.product_reviews(merchant="Merchant_one")) == 1
    assert len(corpus.market_reports()) == 1


def test_product_sentiment(corpus):
    assert corpus.product_sentiment("P100") == {"positive": 1, "negative": 0, "neutral": 0, "total": 2}


def test_stats(corpus):
    stats = corpus.stats()
    assert stats["total_entries"] == 4
    assert stats["support_tickets"] == 1
    assert stats["products"] == ["P100", "P200"]
    assert stats["categories"] == ["Cosmetics", "Skincare"]


def test_context_for_llm(corpus):
    context = corpus.context_for_llm("serum")
    assert context.startswith("Found 2 relevant unstructured data entries")
    assert "Key Finding: Demand for serums grew 20% quarter over quarter" in context
    assert corpus.context_for_llm("refrigerator") == "No relevant unstructured data found."


def test_extract_keywords():
    assert extract_keywords("What are customers saying about the lipstick") == "customers saying lipstick"


@pytest.mark.asyncio
async def test_query_with_llm(corpus):
    completion = FakeCompletionClient(["Customers like the shade but packaging breaks."])

    summary = await corpus.query_with_llm("What do customers say about lipstick", completion)

    assert summary.success
    assert summary.entries_analyzed == 2
    assert summary.analysis.startswith("Customers like")
    assert "raw_text" not in summary.sample_data[0]
    assert "Question: What do customers say about lipstick" in completion.prompts[0]


@pytest.mark.asyncio
async def test_query_with_llm_no_matches(corpus):
    completion = FakeCompletionClient([])
    summary = await corpus.query_with_llm("refrigerator defects", completion)
    assert not summary.success
    assert summary.message
    assert completion.calls == 0


@pytest.mark.asyncio
async def test_query_with_llm_failure_is_reported(corpus):
    completion = FakeCompletionClient([RuntimeError("upstream down")])
    summary = await corpus.query_with_llm("lipstick complaints", completion)
    assert not summary.success
    assert summary.error == "upstream down"
