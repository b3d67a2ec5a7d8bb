# QueryBridge/core_logic/query_executor.py
import logging
import time
from typing import Any, Dict, List, Optional

executor_logger = logging.getLogger('QueryBridge.Executor')
executor_logger.setLevel(logging.INFO)


def split_statements(query_text: Optional[str]) -> List[str]:
    """Newlines become spaces; split on ';'; empty fragments dropped."""
    if not query_text:
        return []
    flattened = query_text.replace("\r", " ").replace("\n", " ")
    return [fragment.strip() for fragment in flattened.split(";") if fragment.strip()]


class QueryExecutor:
    """
    Runs planned query text against one source.

    Only read statements are expected. Nothing here rejects writes: that is left
    to the planning prompt and to the database role (see ENFORCE_READ_ONLY).
    """

    async def execute(self, source: Any, query_text: Optional[str]) -> List[Dict[str, Any]]:
        statements = split_statements(query_text)
        if not statements:
            return []

        start_time = time.time()
        if len(statements) == 1:
            rows = await source.fetch(statements[0])
            executor_logger.info(
                f"Execution Latency on {source.name}: {time.time() - start_time:.2f}s ({len(rows)} rows)"
            )
            return rows

        executor_logger.info(f"Detected {len(statements)} statements for {source.name}; executing separately.")
        all_rows: List[Dict[str, Any]] = []
        for index, statement in enumerate(statements, start=1):
            try:
                rows = await source.fetch(statement)
            except Exception as e:
                executor_logger.warning(f"Statement {index} failed on {source.name}: {str(e)[:100]}")
                continue
            executor_logger.info(f"Statement {index}: {len(rows)} rows")
            all_rows.extend(rows)

        executor_logger.info(
            f"Execution Latency on {source.name}: {time.time() - start_time:.2f}s ({len(all_rows)} rows total)"
        )
        return all_rows
