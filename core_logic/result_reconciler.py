# QueryBridge/core_logic/result_reconciler.py
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config.prompts import COLUMN_MAPPING_PROMPT_TEMPLATE
from config.settings import (
    COLUMN_EQUIVALENCES, COLUMN_MAPPING_STRATEGY, DISPLAY_ROW_LIMIT, SOURCE1_LABEL, SOURCE2_LABEL,
)
from core_logic.data_models import ReconciledResult
from core_logic.federation_planner import strip_code_fences

reconciler_logger = logging.getLogger('QueryBridge.Reconciler')
reconciler_logger.setLevel(logging.INFO)

SOURCE_TAG = "_source"
AGGREGATE_FIELD_NAMES = frozenset(["count", "product_count", "total", "sum"])
AGGREGATE_QUESTION_KEYWORDS = ("distribution", "count", "how many")
AVERAGE_QUESTION_KEYWORDS = ("average", "avg")
FALLBACK_MAPPING_MIN_SCORE = 0.5

_NUMERIC_PREFIX = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def parse_number(value: Any) -> Optional[float]:
    """
    Leading-number parse: 12.5, "12.5", "12.5 kg" and "2024-01-05" all yield a float
    (12.5, 12.5, 12.5, 2024.0). None, booleans and non-numeric text yield None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = _NUMERIC_PREFIX.match(str(value))
    if match is None:
        return None
    return float(match.group(0))


def fallback_mapping(cols_a: Sequence[str], cols_b: Sequence[str]) -> Dict[str, str]:
    """Maps each source2 column to the source1 column sharing the most characters (score > 0.5)."""
    mapping = {}
    for col_b in cols_b:
        lower_b = col_b.lower().replace("_", "")
        best_match, best_score = None, 0.0
        for col_a in cols_a:
            lower_a = col_a.lower().replace("_", "")
            longest = max(len(lower_a), len(lower_b))
            if longest == 0:
                continue
            common = sum(1 for char in lower_a if char in lower_b)
            score = common / longest
            if score > best_score and score > FALLBACK_MAPPING_MIN_SCORE:
                best_match, best_score = col_a, score
        if best_match:
            mapping[col_b] = best_match
    return mapping


class ColumnMapper:
    """
    Produces a {source2 column: source1 column} mapping for two result sets.
    Strategy "static" uses the known equivalence table (in either direction);
    strategy "llm" asks the completion capability and falls back to a
    character-overlap heuristic when that call fails.
    """
    def __init__(self, strategy: str = COLUMN_MAPPING_STRATEGY, completion=None,
                 equivalences: Optional[Dict[str, str]] = None,
                 labels: Tuple[str, str] = (SOURCE1_LABEL, SOURCE2_LABEL)):
        if strategy not in ("llm", "static"):
            raise ValueError(f"Unknown column mapping strategy '{strategy}'")
        self.strategy = strategy
        self.completion = completion
        self.equivalences = dict(COLUMN_EQUIVALENCES if equivalences is None else equivalences)
        self.labels = labels

    def static_mapping(self, cols_a: Sequence[str], cols_b: Sequence[str]) -> Dict[str, str]:
        mapping = {}
        for left, right in self.equivalences.items():
            if right in cols_b and left in cols_a:
                mapping[right] = left
            elif left in cols_b and right in cols_a:
                mapping[left] = right
        return mapping

    async def _llm_mapping(self, cols_a, cols_b, sample_a, sample_b) -> Dict[str, str]:
        prompt = COLUMN_MAPPING_PROMPT_TEMPLATE.format(
            source1_label=self.labels[0],
            source2_label=self.labels[1],
            columns_a=", ".join(cols_a),
            sample_a=json.dumps(sample_a or {}, default=str),
            columns_b=", ".join(cols_b),
            sample_b=json.dumps(sample_b or {}, default=str),
        )
        response_text = await self.completion.complete(prompt)
        payload = json.loads(strip_code_fences(response_text))
        if not isinstance(payload, dict):
            raise ValueError("column mapping response was not a JSON object")
        return {
            str(col_b): str(col_a)
            for col_b, col_a in payload.items()
            if col_b in cols_b and isinstance(col_a, str)
        }

    async def build_mapping(self, cols_a: Sequence[str], cols_b: Sequence[str],
                            sample_a: Optional[Dict[str, Any]] = None,
                            sample_b: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        if sorted(cols_a) == sorted(cols_b) or not cols_a or not cols_b:
            return {}

        if self.strategy == "static":
            return self.static_mapping(cols_a, cols_b)

        if self.completion is None:
            return fallback_mapping(cols_a, cols_b)

        try:
            mapping = await self._llm_mapping(cols_a, cols_b, sample_a, sample_b)
            reconciler_logger.info(f"AI-generated column mapping: {mapping}")
            return mapping
        except Exception as e:
            reconciler_logger.warning(f"Error in intelligent column mapping, using fallback: {e}")
            mapping = fallback_mapping(cols_a, cols_b)
            reconciler_logger.info(f"Fallback column mapping: {mapping}")
            return mapping


def _needs_aggregation(first_row: Dict[str, Any], question: str) -> bool:
    lowered = question.lower()
    if any(key in AGGREGATE_FIELD_NAMES or key.endswith("_count") for key in first_row):
        return True
    return any(keyword in lowered for keyword in AGGREGATE_QUESTION_KEYWORDS)


def _grouping_fields(first_row: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """(group key, measure) when the row has exactly one of each; otherwise (None, None)."""
    non_numeric, numeric = [], []
    for key, value in first_row.items():
        if key == SOURCE_TAG:
            continue
        (non_numeric if parse_number(value) is None else numeric).append(key)
    if len(non_numeric) == 1 and len(numeric) == 1:
        return non_numeric[0], numeric[0]
    return None, None


class ResultReconciler:
    """Merges the row sets of the two relational sources into one ReconciledResult."""
    def __init__(self, column_mapper: Optional[ColumnMapper] = None, display_limit: int = DISPLAY_ROW_LIMIT,
                 labels: Tuple[str, str] = (SOURCE1_LABEL, SOURCE2_LABEL)):
        self.column_mapper = column_mapper or ColumnMapper(strategy="static")
        self.display_limit = display_limit
        self.labels = labels

    async def reconcile(self, rows_a: List[Dict[str, Any]], rows_b: List[Dict[str, Any]],
                        question: str) -> ReconciledResult:
        rows_a, rows_b = rows_a or [], rows_b or []
        if len(rows_a) == 1 and len(rows_b) == 1:
            return self._reconcile_single_value(rows_a[0], rows_b[0], question)
        if rows_a or rows_b:
            return await self._reconcile_rows(rows_a, rows_b, question)
        return ReconciledResult(kind="empty", note="No data to aggregate")

    # --- 1. Single-value results (COUNT/SUM/AVG on both sides) ---

    def _reconcile_single_value(self, row_a: Dict[str, Any], row_b: Dict[str, Any], question: str) -> ReconciledResult:
        label_a, label_b = self.labels
        values: List[Dict[str, Any]] = []
        for label, row in ((label_a, row_a), (label_b, row_b)):
            for column, raw in row.items():
                number = parse_number(raw)
                if number is not None:
                    values.append({"source": label, "column": column, "value": number})

        breakdown = [{"source": v["source"], "column": v["column"], "value": round(v["value"], 2)} for v in values]
        source_records = {label_a: 1, label_b: 1}
        lowered = question.lower()

        if any(keyword in lowered for keyword in AVERAGE_QUESTION_KEYWORDS):
            # Mean of each source's first numeric value; extra numeric fields are ignored.
            firsts = {}
            for v in values:
                firsts.setdefault(v["source"], v["value"])
            averages = {label: round(value, 2) for label, value in firsts.items()}
            combined_average = round(sum(firsts.values()) / len(firsts), 2) if firsts else None
            return ReconciledResult(
                kind="single_value",
                note="Average of both sources",
                total_records=2,
                source_records=source_records,
                combined_average=combined_average,
                averages=averages,
                breakdown=breakdown,
            )

        contributions = {}
        for v in values:
            contributions.setdefault(v["source"], round(v["value"], 2))
        return ReconciledResult(
            kind="single_value",
            note="Sum of all numeric values across both sources",
            total_records=2,
            source_records=source_records,
            total_combined=round(sum(v["value"] for v in values), 2),
            contributions=contributions,
            breakdown=breakdown,
        )

    # --- 2. Multi-row results ---

    async def _reconcile_rows(self, rows_a, rows_b, question: str) -> ReconciledResult:
        label_a, label_b = self.labels
        cols_a = list(rows_a[0]) if rows_a else []
        cols_b = list(rows_b[0]) if rows_b else []
        mapping = await self.column_mapper.build_mapping(
            cols_a, cols_b, rows_a[0] if rows_a else None, rows_b[0] if rows_b else None
        )

        combined: List[Dict[str, Any]] = []
        for row in rows_a:
            combined.append({**row, SOURCE_TAG: label_a})
        for row in rows_b:
            normalized = {mapping.get(key, key): value for key, value in row.items()}
            normalized[SOURCE_TAG] = label_b
            combined.append(normalized)

        source_records = {label_a: len(rows_a), label_b: len(rows_b)}

        if len(combined) > 1 and _needs_aggregation(combined[0], question):
            group_by, measure = _grouping_fields(combined[0])
            if group_by is not None:
                totals: Dict[Any, float] = {}
                for row in combined:
                    key = row.get(group_by)
                    totals[key] = totals.get(key, 0.0) + (parse_number(row.get(measure)) or 0.0)
                grouped = [{group_by: key, measure: total} for key, total in totals.items()]
                return ReconciledResult(
                    kind="grouped",
                    note=f"Aggregated results: Combined totals by {group_by.replace('_', ' ')}",
                    total_records=len(grouped),
                    source_records=source_records,
                    combined_data=grouped,
                    group_by=group_by,
                    measure=measure,
                )
            reconciler_logger.info("Could not identify a single group key and measure; returning combined rows.")

        if len(combined) > self.display_limit:
            note = f"Showing first {self.display_limit} of {len(combined)} total records"
        else:
            note = "All records combined"
        return ReconciledResult(
            kind="rows",
            note=note,
            total_records=len(combined),
            source_records=source_records,
            combined_data=combined[: self.display_limit],
        )
