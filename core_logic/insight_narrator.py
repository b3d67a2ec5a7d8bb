# QueryBridge/core_logic/insight_narrator.py
import json
import logging
import re
import time
from typing import Any, Dict, List, Optional, Tuple

from config.prompts import INSIGHT_PROMPT_TEMPLATE
from config.settings import DIGEST_ROWS_PER_SOURCE, SCRUB_PII_IN_DIGEST, SOURCE1_LABEL, SOURCE2_LABEL
from core_logic.data_models import ReconciledResult, UnstructuredSummary

narrator_logger = logging.getLogger('QueryBridge.Narrator')
narrator_logger.setLevel(logging.INFO)


class PostQueryScrubber:
    """
    Masks PII in result rows before they are sent to the completion capability.
    """
    def __init__(self):
        self.pii_patterns = {
            "EMAIL": re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),
            "PHONE": re.compile(r"(\+?\d{1,3}[-.\s]?)?(\(\d{3}\)\s*|\d{3}[-.\s])\d{3}[-.\s]\d{4}\b"),
        }

    def _mask_value(self, value: str) -> str:
        masked_text = value
        for pii_type, pattern in self.pii_patterns.items():
            if pattern.search(masked_text):
                narrator_logger.warning(f"PII detected and masked: {pii_type}")
                masked_text = pattern.sub(f"[MASKED_{pii_type}]", masked_text)
        return masked_text

    def scrub_results(self, result_set: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Masks every string value; other values pass through."""
        return [
            {key: self._mask_value(value) if isinstance(value, str) else value for key, value in row.items()}
            for row in result_set
        ]


class InsightNarrator:
    """
    Produces a short conversational summary of a federated answer.
    Never raises: any failure of the completion capability yields None.
    """
    def __init__(self, completion, rows_per_source: int = DIGEST_ROWS_PER_SOURCE,
                 scrubber: Optional[PostQueryScrubber] = None,
                 labels: Tuple[str, str] = (SOURCE1_LABEL, SOURCE2_LABEL)):
        self.completion = completion
        self.rows_per_source = rows_per_source
        if scrubber is None and SCRUB_PII_IN_DIGEST:
            scrubber = PostQueryScrubber()
        self.scrubber = scrubber
        self.labels = labels

    def _rows_section(self, label: str, rows: List[Dict[str, Any]]) -> str:
        shown = rows[: self.rows_per_source]
        if self.scrubber is not None:
            shown = self.scrubber.scrub_results(shown)
        section = f"{label} Results ({len(rows)} rows):\n{json.dumps(shown, indent=2, default=str)}\n"
        if len(rows) > self.rows_per_source:
            section += f"... and {len(rows) - self.rows_per_source} more rows\n"
        return section + "\n"

    def build_digest(self, question: str, rows_a: Optional[List[Dict[str, Any]]],
                     rows_b: Optional[List[Dict[str, Any]]], reconciled: Optional[ReconciledResult],
                     unstructured: Optional[UnstructuredSummary]) -> str:
        digest = f'User Question: "{question}"\n\n'
        for label, rows in zip(self.labels, (rows_a, rows_b)):
            if rows:
                digest += self._rows_section(label, rows)

        if reconciled is not None and reconciled.kind != "empty":
            aggregate = reconciled.model_dump(exclude_defaults=True)
            if self.scrubber is not None and aggregate.get("combined_data"):
                aggregate["combined_data"] = self.scrubber.scrub_results(
                    aggregate["combined_data"][: self.rows_per_source]
                )
            digest += f"Combined/Aggregated Results:\n{json.dumps(aggregate, indent=2, default=str)}\n\n"

        if unstructured is not None and unstructured.success:
            digest += f"\nUnstructured Data Analysis ({unstructured.entries_analyzed} entries):\n"
            digest += f"{unstructured.analysis}\n\n"
        return digest

    async def narrate(self, question: str, rows_a: Optional[List[Dict[str, Any]]],
                      rows_b: Optional[List[Dict[str, Any]]], reconciled: Optional[ReconciledResult] = None,
                      unstructured: Optional[UnstructuredSummary] = None) -> Optional[str]:
        has_unstructured = unstructured is not None and unstructured.success
        if not rows_a and not rows_b and not has_unstructured:
            narrator_logger.info("No data from any source; skipping insight generation.")
            return None

        prompt = INSIGHT_PROMPT_TEMPLATE.format(
            digest=self.build_digest(question, rows_a, rows_b, reconciled, unstructured)
        )
        start_time = time.time()
        try:
            insight = await self.completion.complete(prompt)
        except Exception as e:
            narrator_logger.warning(f"Insight generation failed: {e}")
            return None
        narrator_logger.info(f"Narration Latency: {time.time() - start_time:.2f}s")

        insight = insight.replace("```", "").replace("**", "").strip()
        return insight or None
