# QueryBridge/ingestion/introspection.py
import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from config.settings import (
    COLUMN_TOP_VALUES, DATE_TYPES, NUMERIC_TYPES, SCHEMA_MAX_RETRIES,
    SCHEMA_REFRESH_INTERVAL_SECONDS, SCHEMA_RETRY_BASE_DELAY_SECONDS,
    SCHEMA_SAMPLE_ROWS, TEXT_TYPES,
)
from core_logic.data_models import (
    ColumnAnalysis, ColumnDescriptor, ColumnRef, PatternFlags, RelationshipEdge,
    SchemaSummary, SourceSchema, TableDescriptor, ValueFrequency,
)
from core_logic.similarity import normalized_edit_similarity

ingestion_logger = logging.getLogger('QueryBridge.Catalog')
ingestion_logger.setLevel(logging.INFO)

TABLES_QUERY = """
    SELECT table_name, table_type, table_schema
    FROM information_schema.tables
    WHERE table_schema = 'public'
    AND table_type = 'BASE TABLE'
    ORDER BY table_name
"""

COLUMNS_QUERY = """
    SELECT column_name, data_type, is_nullable, column_default,
           character_maximum_length, numeric_precision, numeric_scale
    FROM information_schema.columns
    WHERE table_name = :table_name
    AND table_schema = 'public'
    ORDER BY ordinal_position
"""

FOREIGN_KEYS_QUERY = """
    SELECT tc.constraint_name, tc.table_name, kcu.column_name,
           ccu.table_name AS foreign_table_name,
           ccu.column_name AS foreign_column_name
    FROM information_schema.table_constraints AS tc
    JOIN information_schema.key_column_usage AS kcu
        ON tc.constraint_name = kcu.constraint_name
    JOIN information_schema.constraint_column_usage AS ccu
        ON ccu.constraint_name = tc.constraint_name
    WHERE tc.constraint_type = 'FOREIGN KEY'
"""

# Column-name synonym groups used for implicit relationship inference.
SYNONYM_GROUPS: Tuple[Tuple[str, ...], ...] = (
    ("supplier", "vendor"),
    ("product", "item"),
    ("location", "address", "place"),
    ("amount", "price", "cost", "revenue"),
    ("name", "title"),
)
SYNONYM_CONFIDENCE_FLOOR = 0.5

_EMAIL_PATTERN = re.compile(r"\S+@\S+\.\S+")
_PHONE_PATTERN = re.compile(r"[\d\s\-\(\)\+]{7,}")
_COMPANY_PATTERN = re.compile(r"\b(ltd|limited|inc|incorporated|corp|corporation|llc|pvt|private|traders?)\b", re.IGNORECASE)
_LOCATION_PATTERN = re.compile(r"\b(street|st|avenue|ave|road|rd|city|town|state|country|zip|postal)\b", re.IGNORECASE)


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    return any(keyword in text for keyword in keywords)


# Ordered (predicate, label) rules; the first match wins. Column-name keywords are
# checked before sample-value keywords.
SEMANTIC_TYPE_RULES: List[Tuple[Callable[[str, List[str]], bool], str]] = [
    (lambda name, samples: _contains_any(name, ("supplier", "vendor", "company")), "supplier"),
    (lambda name, samples: _contains_any(name, ("product", "item", "goods")), "product"),
    (lambda name, samples: _contains_any(name, ("category", "type", "class")), "category"),
    (lambda name, samples: _contains_any(name, ("location", "address", "city", "place")), "location"),
    (
        lambda name, samples: _contains_any(name, ("name", "title"))
        and any(_contains_any(value, ("ltd", "corp", "inc")) for value in samples),
        "company_name",
    ),
    (lambda name, samples: _contains_any(name, ("name", "title")), "name"),
]


def classify_columns(column_rows: Sequence[Dict[str, Any]]) -> Tuple[Tuple[str, ...], Tuple[str, ...], Tuple[str, ...]]:
    """Splits column names into (text, numeric, date) by exact declared type."""
    text = tuple(c["column_name"] for c in column_rows if c["data_type"] in TEXT_TYPES)
    numeric = tuple(c["column_name"] for c in column_rows if c["data_type"] in NUMERIC_TYPES)
    dates = tuple(c["column_name"] for c in column_rows if c["data_type"] in DATE_TYPES)
    return text, numeric, dates


def detect_column_patterns(values: Sequence[str]) -> PatternFlags:
    values = [str(v) for v in values if v]
    if not values:
        return PatternFlags()

    prefixes, suffixes = set(), set()
    for value in values:
        if len(value) > 3:
            prefixes.add(value[:3].lower())
            suffixes.add(value[-3:].lower())

    return PatternFlags(
        is_email=any(_EMAIL_PATTERN.search(v) for v in values),
        is_phone=any(_PHONE_PATTERN.search(v) for v in values),
        is_company_name=any(_COMPANY_PATTERN.search(v) for v in values),
        is_location=any(_LOCATION_PATTERN.search(v) for v in values),
        avg_length=sum(len(v) for v in values) / len(values),
        common_prefixes=frozenset(prefixes),
        common_suffixes=frozenset(suffixes),
    )


def infer_semantic_type(column_name: str, values: Sequence[str]) -> str:
    name = column_name.lower()
    samples = [str(v).lower() for v in list(values)[:5] if v is not None]
    for predicate, label in SEMANTIC_TYPE_RULES:
        if predicate(name, samples):
            return label
    return "text"


def are_columns_related(name1: str, name2: str) -> bool:
    n1, n2 = name1.lower(), name2.lower()
    if n1 == n2:
        return True
    return _share_synonym_group(n1, n2)


def _share_synonym_group(n1: str, n2: str) -> bool:
    return any(_contains_any(n1, group) and _contains_any(n2, group) for group in SYNONYM_GROUPS)


def relationship_confidence(name1: str, name2: str) -> float:
    """1.0 on exact match, else 1 - normalized edit distance, floored for synonyms."""
    n1, n2 = name1.lower(), name2.lower()
    if n1 == n2:
        return 1.0
    confidence = normalized_edit_similarity(n1, n2)
    if _share_synonym_group(n1, n2):
        confidence = max(confidence, SYNONYM_CONFIDENCE_FLOOR)
    return confidence


def detect_implicit_relationships(tables: Dict[str, TableDescriptor]) -> List[RelationshipEdge]:
    """Compares every column pair across every table pair."""
    relationships = []
    table_names = list(tables)
    for i, table_a in enumerate(table_names):
        for table_b in table_names[i + 1:]:
            for col_a in tables[table_a].columns:
                for col_b in tables[table_b].columns:
                    if are_columns_related(col_a.name, col_b.name):
                        relationships.append(RelationshipEdge(
                            kind="implicit",
                            table_a=table_a,
                            column_a=col_a.name,
                            table_b=table_b,
                            column_b=col_b.name,
                            confidence=relationship_confidence(col_a.name, col_b.name),
                        ))
    return relationships


def detect_semantic_patterns(tables: Dict[str, TableDescriptor]) -> Dict[str, Tuple[ColumnRef, ...]]:
    patterns: Dict[str, List[ColumnRef]] = {
        "supplier_columns": [],
        "product_columns": [],
        "location_columns": [],
        "amount_columns": [],
        "date_columns": [],
    }
    for table_name, table in tables.items():
        for column in table.columns:
            semantic_type = column.analysis.semantic_type if column.analysis else None
            name = column.name.lower()
            ref = ColumnRef(table=table_name, column=column.name)

            if semantic_type == "supplier" or _contains_any(name, ("supplier", "vendor")):
                patterns["supplier_columns"].append(ref)
            if semantic_type == "product" or _contains_any(name, ("product", "item")):
                patterns["product_columns"].append(ref)
            if semantic_type == "location" or _contains_any(name, ("location", "address")):
                patterns["location_columns"].append(ref)
            if _contains_any(name, ("amount", "price", "cost", "revenue")):
                patterns["amount_columns"].append(ref)
            if _contains_any(column.data_type, ("date", "timestamp")):
                patterns["date_columns"].append(ref)

    return {key: tuple(refs) for key, refs in patterns.items()}


class SchemaCatalog:
    """
    Discovers and caches the schema of every relational source.

    Discovery fails closed: a broken table becomes a minimal descriptor, a broken
    source is retried with backoff and then replaced by an empty schema. The cache
    is a dict that is swapped for a new one on every store, so readers never see a
    half-written schema.
    """
    def __init__(
        self,
        max_retries: int = SCHEMA_MAX_RETRIES,
        retry_base_delay: float = SCHEMA_RETRY_BASE_DELAY_SECONDS,
        refresh_interval: float = SCHEMA_REFRESH_INTERVAL_SECONDS,
        sample_rows: int = SCHEMA_SAMPLE_ROWS,
        top_values: int = COLUMN_TOP_VALUES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.refresh_interval = refresh_interval
        self.sample_rows = sample_rows
        self.top_values = top_values
        self._clock = clock
        self._schemas: Dict[str, SourceSchema] = {}
        self._last_success: Dict[str, float] = {}
        self._refresh_in_flight = False
        self._refresh_task: Optional[asyncio.Task] = None
        self._on_refresh: Optional[Callable[[], Awaitable[None]]] = None

    # --- Discovery ---

    async def initialize_schemas(
        self, sources: Sequence[Any], on_refresh: Optional[Callable[[], Awaitable[None]]] = None
    ) -> str:
        """
        Discovers every source, starts the periodic refresh and returns the unified context.

        `on_refresh` is awaited after each refresh cycle that rediscovered at least one
        source, so dependent indexes can be rebuilt against the new schemas.
        """
        self._on_refresh = on_refresh
        ingestion_logger.info("Initializing dynamic schema discovery...")
        results = await asyncio.gather(*(self.discover(s) for s in sources), return_exceptions=True)
        for source, result in zip(sources, results):
            if isinstance(result, Exception):
                ingestion_logger.error(f"Failed to discover schema for {source.name}: {result}")
                self._store(source.name, SourceSchema.empty(source.name))

        self.start_auto_refresh(sources)
        return self.generate_unified_schema_context()

    async def discover(self, source: Any) -> SourceSchema:
        """Discovers one source. Never raises; falls back to an empty schema."""
        for attempt in range(self.max_retries + 1):
            try:
                schema = await self._discover_once(source)
            except Exception as e:
                ingestion_logger.error(f"Schema discovery failed for {source.name}: {e}")
                if attempt < self.max_retries:
                    delay = self.retry_base_delay * (attempt + 1)
                    ingestion_logger.info(
                        f"Retrying schema discovery for {source.name} ({attempt + 1}/{self.max_retries}) in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                continue

            self._store(source.name, schema)
            self._last_success[source.name] = self._clock()
            ingestion_logger.info(f"Schema discovery complete for {source.name}: {schema.summary.model_dump()}")
            return schema

        empty = SourceSchema.empty(source.name)
        self._store(source.name, empty)
        return empty

    async def refresh(self, source: Any) -> SourceSchema:
        ingestion_logger.info(f"Force refreshing schema for {source.name}...")
        return await self.discover(source)

    async def _discover_once(self, source: Any) -> SourceSchema:
        table_rows = await source.fetch(TABLES_QUERY)
        ingestion_logger.info(f"Found {len(table_rows)} tables in {source.name}.")

        tables: Dict[str, TableDescriptor] = {}
        for table_row in table_rows:
            table_name = table_row["table_name"]
            try:
                tables[table_name] = await self._describe_table(source, table_name)
                ingestion_logger.info(
                    f"Table {table_name}: {len(tables[table_name].columns)} columns, {tables[table_name].row_count} rows"
                )
            except Exception as e:
                ingestion_logger.warning(f"Error analyzing table {table_name} in {source.name}: {e}")
                tables[table_name] = TableDescriptor.minimal()

        relationships = await self.detect_table_relationships(source, tables)
        return SourceSchema(
            source_name=source.name,
            tables=tables,
            relationships=tuple(relationships),
            semantic_patterns=detect_semantic_patterns(tables),
            summary=SchemaSummary(
                total_tables=len(tables),
                total_columns=sum(len(t.columns) for t in tables.values()),
                text_columns=sum(len(t.text_columns) for t in tables.values()),
                total_rows=sum(t.row_count for t in tables.values()),
            ),
        )

    async def _describe_table(self, source: Any, table_name: str) -> TableDescriptor:
        column_rows = await source.fetch(COLUMNS_QUERY, {"table_name": table_name})
        sample_rows = await source.fetch(f"SELECT * FROM {quote_ident(table_name)} LIMIT {self.sample_rows}")
        count_rows = await source.fetch(f"SELECT COUNT(*) AS row_count FROM {quote_ident(table_name)}")
        analysis = await self._analyze_table_columns(source, table_name, column_rows)

        text_columns, numeric_columns, date_columns = classify_columns(column_rows)
        columns = tuple(
            ColumnDescriptor(
                name=col["column_name"],
                data_type=col["data_type"],
                nullable=col.get("is_nullable") == "YES",
                default=None if col.get("column_default") is None else str(col["column_default"]),
                max_length=col.get("character_maximum_length"),
                precision=col.get("numeric_precision"),
                scale=col.get("numeric_scale"),
                analysis=analysis.get(col["column_name"]),
            )
            for col in column_rows
        )
        return TableDescriptor(
            columns=columns,
            sample_rows=tuple(sample_rows),
            row_count=int(count_rows[0]["row_count"]) if count_rows else 0,
            text_columns=text_columns,
            numeric_columns=numeric_columns,
            date_columns=date_columns,
        )

    async def _analyze_table_columns(
        self, source: Any, table_name: str, column_rows: Sequence[Dict[str, Any]]
    ) -> Dict[str, ColumnAnalysis]:
        analysis = {}
        for column in column_rows:
            if column["data_type"] not in TEXT_TYPES:
                continue
            name = column["column_name"]
            col = quote_ident(name)
            query = (
                f"SELECT {col} AS value, COUNT(*) AS frequency FROM {quote_ident(table_name)} "
                f"WHERE {col} IS NOT NULL AND LENGTH(TRIM({col})) > 0 "
                f"GROUP BY {col} ORDER BY COUNT(*) DESC LIMIT {self.top_values}"
            )
            try:
                rows = await source.fetch(query)
            except Exception as e:
                ingestion_logger.warning(f"Error analyzing column {table_name}.{name}: {e}")
                analysis[name] = ColumnAnalysis(error=str(e))
                continue

            values = [str(r["value"]) for r in rows if r.get("value") is not None]
            analysis[name] = ColumnAnalysis(
                top_values=tuple(ValueFrequency(value=str(r["value"]), frequency=int(r["frequency"])) for r in rows),
                patterns=detect_column_patterns(values),
                semantic_type=infer_semantic_type(name, values),
            )
        return analysis

    def _get_fk_description(self, fk_row: Dict[str, Any]) -> RelationshipEdge:
        source_table = fk_row["table_name"]
        target_table = fk_row["foreign_table_name"]
        source_column = fk_row["column_name"]
        target_column = fk_row["foreign_column_name"]
        desc = (
            f"The '{source_table}' table is linked to the '{target_table}' table "
            f"via the Foreign Key relationship between its column '{source_column}' "
            f"and the target column '{target_column}'."
        )
        return RelationshipEdge(
            kind="declared",
            table_a=source_table,
            column_a=source_column,
            table_b=target_table,
            column_b=target_column,
            confidence=1.0,
            description=desc,
        )

    async def detect_table_relationships(self, source: Any, tables: Dict[str, TableDescriptor]) -> List[RelationshipEdge]:
        relationships: List[RelationshipEdge] = []
        try:
            fk_rows = await source.fetch(FOREIGN_KEYS_QUERY)
            relationships.extend(self._get_fk_description(row) for row in fk_rows)
        except Exception as e:
            ingestion_logger.warning(f"Could not detect formal relationships in {source.name}: {e}")

        relationships.extend(detect_implicit_relationships(tables))
        return relationships

    def _store(self, name: str, schema: SourceSchema) -> None:
        self._schemas = {**self._schemas, name: schema}

    # --- Periodic refresh ---

    def start_auto_refresh(self, sources: Sequence[Any]) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(self._auto_refresh_loop(list(sources)))

    async def stop_auto_refresh(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _auto_refresh_loop(self, sources: List[Any]) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            await self.run_refresh_cycle(sources)

    async def run_refresh_cycle(self, sources: Sequence[Any]) -> bool:
        """Refreshes stale sources. Returns False when a cycle is already running."""
        if self._refresh_in_flight:
            ingestion_logger.info("Schema refresh already in progress; skipping this cycle.")
            return False

        self._refresh_in_flight = True
        try:
            ingestion_logger.info("Auto-refreshing database schemas...")
            rediscovered = False
            for source in sources:
                last = self._last_success.get(source.name)
                if last is None or self._clock() - last > self.refresh_interval:
                    await self.discover(source)
                    rediscovered = rediscovered or self._last_success.get(source.name) != last

            if rediscovered and self._on_refresh is not None:
                try:
                    await self._on_refresh()
                except Exception as e:
                    ingestion_logger.error(f"Post-refresh rebuild failed: {e}")
        finally:
            self._refresh_in_flight = False
        return True

    # --- Read side ---

    def get_schema(self, name: str) -> SourceSchema:
        return self._schemas.get(name) or SourceSchema.empty(name)

    def get_all_schemas(self) -> Dict[str, SourceSchema]:
        return dict(self._schemas)

    def get_schema_summary(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "last_updated": schema.last_updated,
                "tables": list(schema.tables),
                "total_columns": schema.summary.total_columns,
                "total_rows": schema.summary.total_rows,
                "has_errors": any(not table.columns for table in schema.tables.values()),
            }
            for name, schema in self._schemas.items()
        }

    def _describe_table_for_context(self, table_name: str, table: TableDescriptor) -> str:
        lines = [f"   Table: {table_name} ({table.row_count} rows)"]
        for kind, columns in (("text", table.text_columns), ("numeric", table.numeric_columns), ("date", table.date_columns)):
            if columns:
                lines.append(f"      - {kind}: {', '.join(columns)}")
        semantic = [
            f"{c.name} ({c.analysis.semantic_type})"
            for c in table.columns
            if c.analysis is not None and c.analysis.error is None
        ]
        if semantic:
            lines.append(f"      - semantic types: {', '.join(semantic)}")
        return "\n".join(lines)

    def generate_unified_schema_context(self) -> str:
        """Renders every cached schema as prompt text for the planner."""
        parts = [
            "DYNAMIC DATABASE SCHEMA CONTEXT",
            "This schema is automatically discovered and updated. Do not assume any other table or column names.",
            "",
            "AVAILABLE DATABASES:",
        ]
        for name, schema in self._schemas.items():
            parts.append(f"\n{name.upper()} DATABASE:")
            parts.append(f"   Last Updated: {schema.last_updated.isoformat()}")
            parts.append(
                f"   Tables: {schema.summary.total_tables}, Columns: {schema.summary.total_columns}, "
                f"Rows: {schema.summary.total_rows}\n"
            )
            for table_name, table in schema.tables.items():
                parts.append(self._describe_table_for_context(table_name, table))

            populated = {k: refs for k, refs in schema.semantic_patterns.items() if refs}
            if populated:
                parts.append("   SEMANTIC PATTERNS:")
                for kind, refs in populated.items():
                    parts.append(f"      - {kind}: {', '.join(f'{r.table}.{r.column}' for r in refs)}")

        parts.append(
            "\nQUERY GENERATION RULES:\n"
            "1. Use ONLY the tables and columns listed above\n"
            "2. Always use ILIKE for text searches (case-insensitive)\n"
            "3. Handle NULL values gracefully with COALESCE when needed\n"
            "4. Use semantic column mapping (supplier columns for company searches, etc.)\n"
            "5. Generate proper PostgreSQL syntax"
        )
        return "\n".join(parts)
