import pytest

from tests.fakes import SAMPLE_CORPUS, FakeSource, merchant_one_tables, merchant_two_tables


@pytest.fixture
def source_one() -> FakeSource:
    return FakeSource("source1", merchant_one_tables(), label="Merchant_one")


@pytest.fixture
def source_two() -> FakeSource:
    return FakeSource("source2", merchant_two_tables(), label="Merchant_two")

@pytest.fixture
def corpus_text() -> str:
    return SAMPLE_CORPUS
