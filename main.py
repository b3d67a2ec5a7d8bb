# QueryBridge/main.py
import asyncio
import json
import logging
import sys

from config.settings import (
    COLUMN_MAPPING_STRATEGY, LLM_API_KEYS,
    SOURCE1_DB_URI, SOURCE1_LABEL, SOURCE1_NAME,
    SOURCE2_DB_URI, SOURCE2_LABEL, SOURCE2_NAME,
)
from core_logic.federated_query import FederatedQueryService
from core_logic.federation_planner import FederationPlanner
from core_logic.insight_narrator import InsightNarrator
from core_logic.llm_client import CredentialPool, RotatingCompletionClient
from core_logic.query_executor import QueryExecutor
from core_logic.result_reconciler import ColumnMapper, ResultReconciler
from core_logic.source_connector import SourceConnector
from ingestion.indexing import ContentIndexer
from ingestion.introspection import SchemaCatalog
from ingestion.unstructured_corpus import UnstructuredCorpus

# Configure basic logging to see the flow
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
main_logger = logging.getLogger('QueryBridge.Main')


# --- 1. Component Wiring ---
def build_service() -> FederatedQueryService:
    main_logger.info("--- 1. INITIALIZING QUERYBRIDGE ---")

    sources = [
        SourceConnector(SOURCE1_NAME, SOURCE1_LABEL, db_uri=SOURCE1_DB_URI),
        SourceConnector(SOURCE2_NAME, SOURCE2_LABEL, db_uri=SOURCE2_DB_URI),
    ]
    completion = RotatingCompletionClient(CredentialPool(LLM_API_KEYS))
    catalog = SchemaCatalog()
    indexer = ContentIndexer()

    return FederatedQueryService(
        sources=sources,
        catalog=catalog,
        indexer=indexer,
        planner=FederationPlanner(completion, catalog, indexer),
        executor=QueryExecutor(),
        reconciler=ResultReconciler(ColumnMapper(COLUMN_MAPPING_STRATEGY, completion=completion)),
        narrator=InsightNarrator(completion),
        corpus=UnstructuredCorpus(),
        completion=completion,
    )


# --- 2. Run Query Function ---
async def main(question: str) -> int:
    service = build_service()
    try:
        await service.initialize_schemas()
        result = await service.run_federated_query(question)
    finally:
        await service.shutdown()

    print(json.dumps(result.model_dump(mode="json"), indent=2))
    if result.status != "success":
        main_logger.error(f"QueryBridge Error: {result.error}")
        return 1
    return 0


if __name__ == '__main__':
    if len(sys.argv) < 2:
        print('Usage: python main.py "<question>"')
        sys.exit(2)
    sys.exit(asyncio.run(main(" ".join(sys.argv[1:]))))
