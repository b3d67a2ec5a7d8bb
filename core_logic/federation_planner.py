# QueryBridge/core_logic/federation_planner.py
import json
import logging
import re
import time
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from config.prompts import NO_SEARCH_CONTEXT, PLAN_PROMPT_TEMPLATE, SEARCH_CONTEXT_TEMPLATE
from config.settings import COLUMN_EQUIVALENCES, SEARCH_TOP_N_HINTS, SOURCE1_LABEL, SOURCE2_LABEL
from core_logic.data_models import QueryPlan, SearchMatch
from core_logic.errors import PlanParseError

planner_logger = logging.getLogger('QueryBridge.Planner')
planner_logger.setLevel(logging.INFO)

_CODE_FENCE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)


def strip_code_fences(response_text: str) -> str:
    """Removes a leading ```json / ``` and a trailing ``` around the payload."""
    return _CODE_FENCE.sub("", response_text.strip()).strip()


def parse_query_plan(response_text: str) -> QueryPlan:
    """
    Parses the completion's raw text into a validated QueryPlan.
    Malformed JSON or a plan that fails validation raises PlanParseError.
    """
    cleaned = strip_code_fences(response_text)
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise PlanParseError(f"LLM response was not valid JSON: {e}", raw_text=response_text) from e

    if not isinstance(payload, dict):
        raise PlanParseError("LLM response was not a JSON object", raw_text=response_text)

    try:
        return QueryPlan.model_validate(payload)
    except ValidationError as e:
        raise PlanParseError(f"LLM returned an invalid query plan: {e}", raw_text=response_text) from e


# --- Prompt Builder ---
class DynamicPromptBuilder:
    """
    Assembles the planning prompt from the schema context, the ranked search
    matches and the user's question.
    """
    def __init__(
        self,
        labels: Tuple[str, str] = (SOURCE1_LABEL, SOURCE2_LABEL),
        equivalences: Optional[Dict[str, str]] = None,
    ):
        self.labels = labels
        self.equivalences = dict(COLUMN_EQUIVALENCES if equivalences is None else equivalences)

    def _field_mappings(self) -> str:
        return "\n".join(f"- {a} <-> {b}" for a, b in self.equivalences.items())

    def _search_context(self, matches: Sequence[SearchMatch]) -> str:
        if not matches:
            return NO_SEARCH_CONTEXT
        match_lines = []
        for match in matches:
            line = f'- "{match.value}" ({match.table}.{match.column} in {match.source}'
            if match.similarity is not None:
                line += f", similarity: {match.similarity.combined * 100:.1f}%"
            match_lines.append(line + f", {match.match_type} match)")
        return SEARCH_CONTEXT_TEMPLATE.format(match_lines="\n".join(match_lines))

    def build_plan_prompt(self, question: str, schema_context: str, matches: Sequence[SearchMatch]) -> str:
        source1_label, source2_label = self.labels
        return PLAN_PROMPT_TEMPLATE.format(
            source1_label=source1_label,
            source2_label=source2_label,
            field_mappings=self._field_mappings(),
            schema_context=schema_context,
            search_context=self._search_context(matches),
            question=question,
        )


class FederationPlanner:
    """Turns a natural-language question into a QueryPlan via the completion capability."""
    def __init__(self, completion, catalog, indexer, top_n: int = SEARCH_TOP_N_HINTS,
                 prompt_builder: Optional[DynamicPromptBuilder] = None):
        self.completion = completion
        self.catalog = catalog
        self.indexer = indexer
        self.top_n = top_n
        self.prompt_builder = prompt_builder or DynamicPromptBuilder()
        self.last_matches: List[SearchMatch] = []

    async def plan(self, question: str) -> QueryPlan:
        # 1. Retrieval: ranked content matches as hints
        start_time = time.time()
        matches = self.indexer.perform_intelligent_search(question)[: self.top_n]
        self.last_matches = matches
        planner_logger.info(f"Retrieval Latency: {time.time() - start_time:.2f}s. {len(matches)} search hints.")

        # 2. Prompt
        schema_context = self.catalog.generate_unified_schema_context()
        prompt = self.prompt_builder.build_plan_prompt(question, schema_context, matches)

        # 3. Generation (quota errors are retried inside the completion client)
        start_time = time.time()
        response_text = await self.completion.complete(prompt)
        planner_logger.info(f"Plan Generation Latency: {time.time() - start_time:.2f}s")

        try:
            plan = parse_query_plan(response_text)
        except PlanParseError:
            planner_logger.error(f"Failed to parse query plan from LLM response: {response_text[:200]}")
            raise

        planner_logger.info(f"Query plan: target={plan.target}, unified={plan.use_unified_query}, "
                            f"unstructured={plan.query_unstructured}")
        return plan
