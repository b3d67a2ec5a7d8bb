# QueryBridge/ingestion/unstructured_corpus.py
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from config.prompts import UNSTRUCTURED_ANALYSIS_PROMPT_TEMPLATE
from config.settings import UNSTRUCTURED_DATA_PATH, UNSTRUCTURED_MAX_ENTRIES
from core_logic.data_models import UnstructuredSummary

corpus_logger = logging.getLogger('QueryBridge.Corpus')
corpus_logger.setLevel(logging.INFO)

ENTRY_MARKER = re.compile(r"===\s+(?:SUPPORT TICKET|SOCIAL MEDIA POST|PRODUCT REVIEW|MARKET REPORT)\s+")
FIELD_LINE = re.compile(r"^(\w+):\s*(.+)$")

# ID prefix on the first line of an entry -> entry type
ENTRY_TYPES = (
    ("CS-", "support_ticket"),
    ("SM-", "social_media"),
    ("RV-", "product_review"),
    ("MR-", "market_report"),
)

KEYWORD_STOP_WORDS = frozenset([
    "what", "how", "why", "when", "where", "who", "which", "is", "are", "was", "were",
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
    "by", "from", "about", "show", "me", "all", "find", "get", "list",
])

# Fields rendered for each entry type in the LLM context
_CONTEXT_FIELDS = {
    "support_ticket": (
        ("Ticket ID", "ticketid"), ("Category", "category"), ("Merchant", "merchant"), ("Status", "status"),
        ("Priority", "priority"), ("Issue", "issuetype"), ("Description", "description"), ("Resolution", "resolution"),
    ),
    "social_media": (
        ("Platform", "platform"), ("User", "user"), ("Category", "category"), ("Merchant", "merchant"),
        ("Sentiment", "sentiment"), ("Content", "content"), ("Engagement", "engagement"),
    ),
    "product_review": (
        ("Category", "category"), ("Merchant", "merchant"), ("Rating", "rating"), ("Verified", "verified"),
        ("Review", "reviewtext"),
    ),
    "market_report": (
        ("Report ID", "reportid"), ("Category", "category"), ("Key Finding", "keyfinding"), ("Impact", "impact"),
        ("Recommendation", "recommendation"),
    ),
}


def parse_entry(entry_text: str) -> Optional[Dict[str, str]]:
    """One flat field->string mapping per entry, or None for an unrecognized block."""
    lines = [line for line in entry_text.split("\n") if line.strip()]
    if not lines:
        return None

    entry_type = next((kind for prefix, kind in ENTRY_TYPES if prefix in lines[0]), None)
    if entry_type is None:
        return None

    entry = {"raw_text": entry_text, "type": entry_type}
    for line in lines:
        match = FIELD_LINE.match(line.strip())
        if match:
            # "type" is reserved for the entry kind
            key = match.group(1).lower()
            if key == "type":
                key = "report_type"
            entry[key] = match.group(2).strip().strip('"').strip()
    return entry


def parse_corpus(text: str) -> List[Dict[str, str]]:
    entries = []
    for chunk in ENTRY_MARKER.split(text):
        if not chunk.strip():
            continue
        parsed = parse_entry(chunk)
        if parsed is not None:
            entries.append(parsed)
    return entries


def extract_keywords(question: str) -> str:
    words = question.lower().split()
    return " ".join(word for word in words if word not in KEYWORD_STOP_WORDS and len(word) > 2)


class UnstructuredCorpus:
    """
    The third data source: support tickets, social media posts, product reviews
    and market reports parsed from a flat text file.
    """
    def __init__(self, data_path: str = UNSTRUCTURED_DATA_PATH,
                 entries: Optional[Iterable[Dict[str, str]]] = None,
                 max_entries: int = UNSTRUCTURED_MAX_ENTRIES):
        self.data_path = Path(data_path)
        self.max_entries = max_entries
        self.entries: List[Dict[str, str]] = list(entries) if entries is not None else []
        self.is_initialized = entries is not None

    def load(self) -> int:
        """Reads and parses the corpus file once. Raises OSError when it cannot be read."""
        if self.is_initialized:
            return len(self.entries)

        corpus_logger.info(f"Loading unstructured data from {self.data_path}...")
        self.entries = parse_corpus(self.data_path.read_text(encoding="utf-8"))
        self.is_initialized = True

        stats = self.stats()
        corpus_logger.info(
            f"Unstructured data loaded: {stats['total_entries']} entries "
            f"({stats['support_tickets']} tickets, {stats['social_media_posts']} posts, "
            f"{stats['product_reviews']} reviews, {stats['market_reports']} reports)"
        )
        return len(self.entries)

    # --- Search ---

    def search(self, query: str = "", type: Optional[str] = None, merchant: Optional[str] = None,
               category: Optional[str] = None, product_id: Optional[str] = None,
               sentiment: Optional[str] = None, limit: int = 50) -> List[Dict[str, str]]:
        results = self.entries

        if type:
            results = [e for e in results if e["type"] == type]
        if merchant:
            results = [e for e in results if merchant.lower() in e.get("merchant", "").lower()]
        if category:
            results = [e for e in results if category.lower() in e.get("category", "").lower()]
        if product_id:
            results = [e for e in results if product_id.lower() in e.get("productid", "").lower()]
        if sentiment:
            results = [e for e in results if e.get("sentiment", "").lower() == sentiment.lower()]

        if query and query.strip():
            keywords = query.lower().split()
            results = [
                e for e in results
                if any(keyword in json.dumps(e).lower() for keyword in keywords)
            ]

        return results[:limit]

    def support_tickets(self, **filters) -> List[Dict[str, str]]:
        return self.search("", type="support_ticket", **filters)

    def social_media_posts(self, **filters) -> List[Dict[str, str]]:
        return self.search("", type="social_media", **filters)

    def product_reviews(self, **filters) -> List[Dict[str, str]]:
        return self.search("", type="product_review", **filters)

    def market_reports(self, **filters) -> List[Dict[str, str]]:
        return self.search("", type="market_report", **filters)

    def product_sentiment(self, product_id: str) -> Dict[str, int]:
        entries = self.search("", product_id=product_id)
        sentiments = {"positive": 0, "negative": 0, "neutral": 0, "total": len(entries)}
        for entry in entries:
            label = entry.get("sentiment", "").lower()
            if label in sentiments and label != "total":
                sentiments[label] += 1
        return sentiments

    def stats(self) -> Dict[str, Any]:
        counts = {kind: 0 for _, kind in ENTRY_TYPES}
        products, merchants, categories = set(), set(), set()
        for entry in self.entries:
            counts[entry["type"]] += 1
            if entry.get("productid"):
                products.add(entry["productid"])
            if entry.get("merchant"):
                merchants.add(entry["merchant"])
            if entry.get("category"):
                categories.add(entry["category"])
        return {
            "total_entries": len(self.entries),
            "support_tickets": counts["support_ticket"],
            "social_media_posts": counts["social_media"],
            "product_reviews": counts["product_review"],
            "market_reports": counts["market_report"],
            "products": sorted(products),
            "merchants": sorted(merchants),
            "categories": sorted(categories),
        }

    # --- LLM context ---

    @staticmethod
    def format_entry_for_llm(entry: Dict[str, str]) -> str:
        lines = [f"Type: {entry['type'].replace('_', ' ').upper()}"]
        if entry["type"] != "market_report":
            lines.append(f"Product: {entry.get('productname', 'N/A')} ({entry.get('productid', 'N/A')})")
        for title, key in _CONTEXT_FIELDS.get(entry["type"], ()):
            lines.append(f"{title}: {entry.get(key, 'N/A')}")
        return "\n".join(lines) + "\n"

    def context_for_llm(self, query: str, max_entries: int = 20) -> str:
        results = self.search(query, limit=max_entries)
        if not results:
            return "No relevant unstructured data found."

        context = f"Found {len(results)} relevant unstructured data entries:\n\n"
        for entry in results:
            context += self.format_entry_for_llm(entry) + "\n---\n\n"
        return context

    async def query_with_llm(self, question: str, completion) -> UnstructuredSummary:
        """Keyword-filters the corpus and asks the completion capability to analyze the hits."""
        try:
            keywords = extract_keywords(question)
            relevant = self.search(keywords, limit=self.max_entries)
            if not relevant:
                return UnstructuredSummary(
                    success=False, message="No relevant unstructured data found for this query."
                )

            prompt = UNSTRUCTURED_ANALYSIS_PROMPT_TEMPLATE.format(
                question=question,
                context=self.context_for_llm(keywords, self.max_entries),
            )
            analysis = await completion.complete(prompt)
            corpus_logger.info(f"Analyzed {len(relevant)} unstructured entries.")
            return UnstructuredSummary(
                success=True,
                analysis=analysis,
                entries_analyzed=len(relevant),
                sample_data=[{k: v for k, v in e.items() if k != "raw_text"} for e in relevant[:5]],
            )
        except Exception as e:
            corpus_logger.error(f"Error querying unstructured data with LLM: {e}")
            return UnstructuredSummary(success=False, error=str(e))
