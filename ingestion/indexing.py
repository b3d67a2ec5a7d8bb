# QueryBridge/ingestion/indexing.py
import logging
import re
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from difflib import SequenceMatcher
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from config.settings import (
    BUCKET_THRESHOLDS, COMBINED_SIMILARITY_FLOOR, INDEX_SAMPLE_ROWS, TEXT_TYPES,
)
from core_logic.data_models import BUCKETS, ContentEntry, SearchMatch
from core_logic.similarity import combined_similarity, normalize_company_name, phonetic_match
from ingestion.introspection import COLUMNS_QUERY, TABLES_QUERY, quote_ident

indexing_logger = logging.getLogger('QueryBridge.Indexer')
indexing_logger.setLevel(logging.INFO)

# Ordered (column-name keywords, bucket) rules; unmatched columns land in "categories".
BUCKET_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("product", "category"), "products"),
    (("supplier", "vendor"), "companies"),
    (("location",), "locations"),
)
DEFAULT_BUCKET = "categories"

CATEGORY_INDICATORS = (
    (re.compile(r"lipstick|lip\s*stick", re.IGNORECASE), "cosmetics"),
    (re.compile(r"phone|mobile|smartphone", re.IGNORECASE), "electronics"),
    (re.compile(r"shirt|pant|dress|cloth", re.IGNORECASE), "apparel"),
    (re.compile(r"food|snack|beverage", re.IGNORECASE), "consumables"),
)

COMPANY_PATTERNS = (
    re.compile(r"\b([A-Z]\.?\s*[A-Z]\.?\s*)", re.IGNORECASE),               # initials: K.P, A.B
    re.compile(r"\b(\w+)\s+(?:traders?|corp|ltd|inc|pvt)", re.IGNORECASE),   # company suffix
    re.compile(r"\b(\w+)\s+(\w+)\s+(?:traders?|corp|ltd)", re.IGNORECASE),   # full name + suffix
)

STOP_WORDS = frozenset(["the", "a", "an", "and", "or", "but", "from", "to", "with", "by", "for"])

# Relevance boosts
EXACT_CONTAINMENT_BOOST = 50
SEMANTIC_MATCH_BOOST = 30
PHONETIC_MATCH_BOOST = 20
COMPANY_BUCKET_BOOST = 15


def classify_bucket(column_name: str) -> str:
    name = column_name.lower()
    for keywords, bucket in BUCKET_RULES:
        if any(keyword in name for keyword in keywords):
            return bucket
    return DEFAULT_BUCKET


def fuzzy_distance(term: str, value: str) -> float:
    """0.0 for a perfect (or substring) hit, 1.0 for nothing in common."""
    if term in value:
        return 0.0
    best = SequenceMatcher(None, term, value).ratio()
    for token in value.split():
        best = max(best, SequenceMatcher(None, term, token).ratio())
    return 1.0 - best


def extract_search_terms(query: str) -> List[str]:
    terms = []
    for word in query.lower().split():
        if len(word) <= 2 or word in STOP_WORDS:
            continue
        word = re.sub(r"[^\w]", "", word)
        if word:
            terms.append(word)
    return terms


class FuzzyIndex:
    """Approximate value lookup over one bucket of content entries."""
    def __init__(self, entries: Sequence[ContentEntry], threshold: float):
        self.entries = tuple(entries)
        self.threshold = threshold
        self._lowered = tuple(entry.value.lower() for entry in self.entries)

    def search(self, term: str) -> List[Tuple[ContentEntry, float]]:
        term = term.lower().strip()
        if not term:
            return []
        hits = []
        for entry, value in zip(self.entries, self._lowered):
            distance = fuzzy_distance(term, value)
            if distance <= self.threshold:
                hits.append((entry, distance))
        hits.sort(key=lambda hit: hit[1])
        return hits

    def __len__(self) -> int:
        return len(self.entries)


class SemanticPatternGraph:
    """Undirected term graph; edge weights count how often an edge was asserted."""
    def __init__(self):
        self._adjacency: Dict[str, Dict[str, int]] = {}

    def add_edge(self, term_a: str, term_b: str, weight: int = 1) -> None:
        if term_a == term_b:
            return
        for left, right in ((term_a, term_b), (term_b, term_a)):
            neighbours = self._adjacency.setdefault(left, {})
            neighbours[right] = neighbours.get(right, 0) + weight

    def related(self, term: str) -> List[str]:
        return list(self._adjacency.get(term, {}))

    def weight(self, term_a: str, term_b: str) -> int:
        return self._adjacency.get(term_a, {}).get(term_b, 0)

    def expand(self, term: str) -> List[str]:
        """
        Direct neighbours of `term`, plus the neighbours of every key that contains
        `term` or is contained in it. The substring clause is deliberately loose:
        short terms can expand to many unrelated values.
        """
        term = term.lower().strip()
        if not term:
            return []
        expansions: Dict[str, None] = dict.fromkeys(self.related(term))
        for key, neighbours in self._adjacency.items():
            if term in key or key in term:
                expansions.update(dict.fromkeys(neighbours))
        return list(expansions)

    def as_dict(self) -> Dict[str, List[str]]:
        return {term: list(neighbours) for term, neighbours in self._adjacency.items()}

    def __contains__(self, term: str) -> bool:
        return term in self._adjacency

    def __len__(self) -> int:
        return len(self._adjacency)


@dataclass(frozen=True)
class IndexHandle:
    """One immutable build of the content index. Replaced wholesale on rebuild."""
    buckets: Dict[str, Tuple[ContentEntry, ...]]
    fuzzy: Dict[str, FuzzyIndex]
    graph: SemanticPatternGraph
    entry_count: int = 0
    built_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def empty(cls) -> "IndexHandle":
        return cls(
            buckets={b: () for b in BUCKETS},
            fuzzy={b: FuzzyIndex((), BUCKET_THRESHOLDS[b]) for b in BUCKETS},
            graph=SemanticPatternGraph(),
        )


def build_semantic_graph(entries: Sequence[ContentEntry]) -> SemanticPatternGraph:
    """Co-occurrence edges, then category-indicator edges, then company-name variants."""
    graph = SemanticPatternGraph()

    # 1. Statistical co-occurrence: values seen together in the same row at least twice.
    rows: Dict[Tuple[str, str, int], List[ContentEntry]] = defaultdict(list)
    for entry in entries:
        rows[entry.row_ref].append(entry)

    cooccurrence: Counter = Counter()
    for members in rows.values():
        for item in members:
            for other in members:
                if other.value != item.value:
                    cooccurrence[(item.value.lower(), other.value.lower())] += 1

    for (term_a, term_b), frequency in cooccurrence.items():
        if frequency >= 2 and term_a < term_b:
            graph.add_edge(term_a, term_b, weight=frequency)

    # 2. Rule-based category tags.
    for pattern, category in CATEGORY_INDICATORS:
        for entry in entries:
            if pattern.search(entry.value):
                graph.add_edge(entry.value.lower(), category)

    # 3. Normalized company-name variants.
    for entry in entries:
        column = entry.column.lower()
        if "supplier" not in column and "vendor" not in column:
            continue
        if any(pattern.search(entry.value) for pattern in COMPANY_PATTERNS):
            normalized = normalize_company_name(entry.value)
            if normalized:
                graph.add_edge(normalized, entry.value.lower())

    return graph


class ContentIndexer:
    """
    Builds fuzzy-search indexes over every text value in the relational sources
    and answers intelligent-search queries against the current build.
    """
    def __init__(
        self,
        sample_rows: int = INDEX_SAMPLE_ROWS,
        bucket_thresholds: Optional[Dict[str, float]] = None,
        similarity_floor: float = COMBINED_SIMILARITY_FLOOR,
    ):
        self.sample_rows = sample_rows
        self.bucket_thresholds = dict(bucket_thresholds or BUCKET_THRESHOLDS)
        self.similarity_floor = similarity_floor
        self._handle = IndexHandle.empty()

    @property
    def handle(self) -> IndexHandle:
        return self._handle

    @property
    def is_ready(self) -> bool:
        return self._handle.entry_count > 0

    # --- Build ---

    async def index(self, sources: Iterable[Any]) -> IndexHandle:
        indexing_logger.info("Analyzing all database content for intelligent search...")
        entries: List[ContentEntry] = []
        for source in sources:
            entries.extend(await self.extract_all_content(source))

        handle = self.build_handle(entries)
        self._handle = handle
        indexing_logger.info(
            f"Analyzed {handle.entry_count} database entries; discovered {len(handle.graph)} semantic patterns."
        )
        return handle

    async def extract_all_content(self, source: Any) -> List[ContentEntry]:
        """One ContentEntry per non-empty text cell in a bounded sample of every table."""
        entries: List[ContentEntry] = []
        try:
            table_rows = await source.fetch(TABLES_QUERY)
        except Exception as e:
            indexing_logger.error(f"Error listing tables for {source.name}: {e}")
            return entries

        for table_row in table_rows:
            table_name = table_row["table_name"]
            try:
                column_rows = await source.fetch(COLUMNS_QUERY, {"table_name": table_name})
                text_columns = [c["column_name"] for c in column_rows if c["data_type"] in TEXT_TYPES]
                if not text_columns:
                    indexing_logger.info(f"Skipping {table_name} - no text columns found")
                    continue

                select_list = ", ".join(quote_ident(c) for c in text_columns)
                data_rows = await source.fetch(
                    f"SELECT {select_list} FROM {quote_ident(table_name)} LIMIT {self.sample_rows}"
                )
            except Exception as e:
                indexing_logger.warning(f"Error processing table {table_name} in {source.name}: {e}")
                continue

            for ordinal, row in enumerate(data_rows):
                for column in text_columns:
                    raw = row.get(column)
                    value = str(raw).strip() if raw is not None else ""
                    if value:
                        entries.append(ContentEntry(
                            source=source.name,
                            table=table_name,
                            column=column,
                            value=value,
                            row_ref=(source.name, table_name, ordinal),
                        ))
            indexing_logger.info(f"Extracted {len(data_rows)} rows from {source.name}.{table_name}")

        return entries

    def build_handle(self, entries: Sequence[ContentEntry]) -> IndexHandle:
        buckets: Dict[str, List[ContentEntry]] = {bucket: [] for bucket in BUCKETS}
        for entry in entries:
            buckets[classify_bucket(entry.column)].append(entry)

        return IndexHandle(
            buckets={bucket: tuple(items) for bucket, items in buckets.items()},
            fuzzy={
                bucket: FuzzyIndex(items, self.bucket_thresholds[bucket])
                for bucket, items in buckets.items()
            },
            graph=build_semantic_graph(entries),
            entry_count=len(entries),
        )

    # --- Query ---

    def _buckets_in_scope(self, bucket: str) -> Tuple[str, ...]:
        if bucket == "all":
            return BUCKETS
        if bucket not in BUCKETS:
            raise ValueError(f"Unknown content bucket '{bucket}'. Expected one of {BUCKETS} or 'all'.")
        return (bucket,)

    def _fuzzy_search(self, handle: IndexHandle, term: str, bucket: str, match_type: str) -> List[SearchMatch]:
        results = []
        for bucket_name in self._buckets_in_scope(bucket):
            for entry, _distance in handle.fuzzy[bucket_name].search(term):
                similarity = combined_similarity(term, entry.value)
                if similarity.combined < self.similarity_floor:
                    continue
                results.append(SearchMatch(
                    value=entry.value,
                    source=entry.source,
                    table=entry.table,
                    column=entry.column,
                    bucket=bucket_name,
                    search_term=term,
                    match_type=match_type,
                    similarity=similarity,
                ))
        return results

    def _phonetic_search(self, handle: IndexHandle, term: str, bucket: str) -> List[SearchMatch]:
        results = []
        term = term.lower()
        for bucket_name in self._buckets_in_scope(bucket):
            for entry in handle.buckets[bucket_name]:
                soundex_equal, metaphone_equal = phonetic_match(term, entry.value.lower())
                if soundex_equal or metaphone_equal:
                    results.append(SearchMatch(
                        value=entry.value,
                        source=entry.source,
                        table=entry.table,
                        column=entry.column,
                        bucket=bucket_name,
                        search_term=term,
                        match_type="phonetic",
                    ))
        return results

    def search(self, term: str, bucket: str = "all") -> List[SearchMatch]:
        """Fuzzy plus phonetic retrieval for a single term, ranked."""
        handle = self._handle
        matches = self._fuzzy_search(handle, term, bucket, "fuzzy") + self._phonetic_search(handle, term, bucket)
        return rank_and_deduplicate(matches, term)

    def get_semantic_expansions(self, term: str) -> List[str]:
        return self._handle.graph.expand(term)

    def perform_intelligent_search(self, query: str, bucket: str = "all") -> List[SearchMatch]:
        """Fuzzy, semantic-expansion and phonetic search for every meaningful term in `query`."""
        handle = self._handle
        matches: List[SearchMatch] = []
        for term in extract_search_terms(query):
            matches.extend(self._fuzzy_search(handle, term, bucket, "fuzzy"))
            for expanded in handle.graph.expand(term):
                matches.extend(self._fuzzy_search(handle, expanded, bucket, "semantic"))
            matches.extend(self._phonetic_search(handle, term, bucket))
        return rank_and_deduplicate(matches, query)


def relevance_score(match: SearchMatch, original_query: str) -> float:
    score = match.similarity.combined * 100 if match.similarity else 0.0
    if original_query.lower() in match.value.lower():
        score += EXACT_CONTAINMENT_BOOST
    if match.match_type == "semantic":
        score += SEMANTIC_MATCH_BOOST
    if match.match_type == "phonetic":
        score += PHONETIC_MATCH_BOOST
    if match.bucket == "companies":
        score += COMPANY_BUCKET_BOOST
    return score


def rank_and_deduplicate(matches: Sequence[SearchMatch], original_query: str) -> List[SearchMatch]:
    """Keeps the first match per (value, source, table), then sorts by relevance (stable)."""
    seen = set()
    unique = []
    for match in matches:
        key = (match.value, match.source, match.table)
        if key in seen:
            continue
        seen.add(key)
        match.relevance = relevance_score(match, original_query)
        unique.append(match)
    return sorted(unique, key=lambda m: m.relevance, reverse=True)
