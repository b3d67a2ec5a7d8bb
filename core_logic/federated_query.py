# QueryBridge/core_logic/federated_query.py
import logging
import time
from typing import Any, Dict, List, Sequence

from core_logic.data_models import FederatedQueryResult, SearchMatch, SourceSchema

federation_logger = logging.getLogger('QueryBridge.Federation')
federation_logger.setLevel(logging.INFO)

PLAN_KEYS = ("source1", "source2")


class FederatedQueryService:
    """
    Outbound facade over the catalog, the content index and the per-request
    pipeline (plan -> execute -> reconcile -> narrate).

    `sources` are the two relational connectors, in plan-key order: the first
    answers "source1" queries, the second "source2" queries.
    """
    def __init__(self, sources: Sequence[Any], catalog, indexer, planner, executor, reconciler, narrator,
                 corpus=None, completion=None):
        if len(sources) != len(PLAN_KEYS):
            raise ValueError(f"FederatedQueryService expects exactly {len(PLAN_KEYS)} relational sources")
        self.sources = list(sources)
        self._by_plan_key = dict(zip(PLAN_KEYS, self.sources))
        self._by_name = {source.name: source for source in self.sources}
        self.catalog = catalog
        self.indexer = indexer
        self.planner = planner
        self.executor = executor
        self.reconciler = reconciler
        self.narrator = narrator
        self.corpus = corpus
        self.completion = completion

    # --- 1. Startup and schema access ---

    async def initialize_schemas(self) -> str:
        """Discovers schemas, builds the content index and loads the text corpus."""
        context = await self.catalog.initialize_schemas(self.sources, on_refresh=self.rebuild_index)
        await self.rebuild_index()

        if self.corpus is not None:
            try:
                self.corpus.load()
            except OSError as e:
                federation_logger.error(f"Failed to load unstructured data: {e}")

        federation_logger.info("--- System Ready. ---")
        return context

    async def rebuild_index(self) -> None:
        """Rebuilds the content index and swaps it in; the previous index stays on failure."""
        try:
            await self.indexer.index(self.sources)
        except Exception as e:
            federation_logger.error(f"Failed to build content index: {e}")

    def get_schema(self, name: str) -> SourceSchema:
        return self.catalog.get_schema(name)

    def get_all_schemas(self) -> Dict[str, SourceSchema]:
        return self.catalog.get_all_schemas()

    async def refresh_schema(self, name: str) -> SourceSchema:
        if name not in self._by_name:
            raise KeyError(f"Unknown source: {name}")
        return await self.catalog.refresh(self._by_name[name])

    def perform_intelligent_search(self, query: str, bucket: str = "all") -> List[SearchMatch]:
        return self.indexer.perform_intelligent_search(query, bucket)

    def get_semantic_expansions(self, term: str) -> List[str]:
        return self.indexer.get_semantic_expansions(term)

    # --- 2. Federated query pipeline ---

    async def _execute_plan_queries(self, result: FederatedQueryResult) -> None:
        for plan_key, query_text in result.plan.queries_for_target().items():
            source = self._by_plan_key[plan_key]
            try:
                result.per_source_rows[source.name] = await self.executor.execute(source, query_text)
            except Exception as e:
                federation_logger.warning(f"Execution failed on {source.name}: {str(e)[:100]}")
                result.per_source_rows[source.name] = None
                result.errors[source.name] = str(e)

    async def run_federated_query(self, question: str) -> FederatedQueryResult:
        federation_logger.info(f"--- PROCESSING USER QUERY: '{question}' ---")
        start_time = time.time()
        result = FederatedQueryResult(status="failure", question=question)

        # 1. Planning: any failure here is terminal for the request
        try:
            result.plan = await self.planner.plan(question)
        except Exception as e:
            federation_logger.error(f"PLANNING FAILURE ({type(e).__name__}): {e}")
            result.error = f"Failed to process query: {e}"
            result.total_latency_s = time.time() - start_time
            return result

        plan = result.plan

        # 2. Execution, isolated per source
        await self._execute_plan_queries(result)
        name_a, name_b = (source.name for source in self.sources)
        rows_a = result.per_source_rows.get(name_a)
        rows_b = result.per_source_rows.get(name_b)

        if plan.use_unified_query and plan.target == "both":
            result.combined = (rows_a or []) + (rows_b or [])
            federation_logger.info(f"Combined results: {len(result.combined)} total rows")

        # 3. Unstructured corpus
        if plan.query_unstructured and self.corpus is not None and self.completion is not None:
            result.unstructured_summary = await self.corpus.query_with_llm(
                plan.unstructured_keywords or question, self.completion
            )

        # 4. Reconciliation
        if plan.aggregation_needed and rows_a is not None and rows_b is not None:
            result.reconciled = await self.reconciler.reconcile(rows_a, rows_b, question)

        # 5. Narration (never fails the request)
        result.insight = await self.narrator.narrate(
            question, rows_a, rows_b, result.reconciled, result.unstructured_summary
        )

        got_rows = any(rows is not None for rows in result.per_source_rows.values())
        got_text = result.unstructured_summary is not None and result.unstructured_summary.success
        if result.errors and not got_rows and not got_text:
            result.error = "; ".join(f"{name}: {message}" for name, message in result.errors.items())
            federation_logger.error(f"AGENT FAILURE: {result.error}")
        else:
            result.status = "success"

        result.total_latency_s = time.time() - start_time
        federation_logger.info(f"Query finished with status {result.status} in {result.total_latency_s:.2f}s")
        return result

    async def shutdown(self) -> None:
        await self.catalog.stop_auto_refresh()
        for source in self.sources:
            await source.close()
