# QueryBridge/core_logic/data_models.py
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SemanticType = Literal["supplier", "product", "category", "location", "name", "company_name", "text"]
Bucket = Literal["products", "companies", "locations", "categories"]
BUCKETS: Tuple[str, ...] = ("products", "companies", "locations", "categories")


class _Snapshot(BaseModel):
    """Schema and index records are replaced wholesale, never edited in place."""
    model_config = ConfigDict(frozen=True)


# --- Schema Catalog records ---

class ValueFrequency(_Snapshot):
    value: str
    frequency: int


class PatternFlags(_Snapshot):
    """Content detectors computed over a text column's most frequent values."""
    is_email: bool = False
    is_phone: bool = False
    is_company_name: bool = False
    is_location: bool = False
    avg_length: float = 0.0
    common_prefixes: FrozenSet[str] = frozenset()
    common_suffixes: FrozenSet[str] = frozenset()


class ColumnAnalysis(_Snapshot):
    top_values: Tuple[ValueFrequency, ...] = ()
    patterns: PatternFlags = Field(default_factory=PatternFlags)
    semantic_type: SemanticType = "text"
    error: Optional[str] = Field(default=None, description="Set when the column could not be analyzed.")


class ColumnDescriptor(_Snapshot):
    """Defines metadata for a single database column."""
    name: str = Field(description="The exact column name (e.g., supplier_name).")
    data_type: str = Field(description="The declared SQL data type as reported by information_schema.")
    nullable: bool = True
    default: Optional[str] = None
    max_length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    analysis: Optional[ColumnAnalysis] = None


class TableDescriptor(_Snapshot):
    columns: Tuple[ColumnDescriptor, ...] = ()
    sample_rows: Tuple[Dict[str, Any], ...] = ()
    row_count: int = 0
    text_columns: Tuple[str, ...] = ()
    numeric_columns: Tuple[str, ...] = ()
    date_columns: Tuple[str, ...] = ()

    @classmethod
    def minimal(cls) -> "TableDescriptor":
        """Stand-in for a table whose column, sample or count query failed."""
        return cls()


class ColumnRef(_Snapshot):
    table: str
    column: str


class RelationshipEdge(_Snapshot):
    """A declared (foreign key) or inferred link between two columns."""
    kind: Literal["declared", "implicit"]
    table_a: str
    column_a: str
    table_b: str
    column_b: str
    confidence: float = Field(ge=0.0, le=1.0)
    description: str = ""


class SchemaSummary(_Snapshot):
    total_tables: int = 0
    total_columns: int = 0
    text_columns: int = 0
    total_rows: int = 0


class SourceSchema(_Snapshot):
    """The complete discovered description of one relational source."""
    source_name: str
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    tables: Dict[str, TableDescriptor] = Field(default_factory=dict)
    relationships: Tuple[RelationshipEdge, ...] = ()
    semantic_patterns: Dict[str, Tuple[ColumnRef, ...]] = Field(default_factory=dict)
    summary: SchemaSummary = Field(default_factory=SchemaSummary)
    is_empty: bool = False

    @classmethod
    def empty(cls, source_name: str = "unknown") -> "SourceSchema":
        """Sentinel used when a source cannot be discovered at all."""
        return cls(source_name=source_name, is_empty=True)


# --- Content Indexer records ---

class ContentEntry(_Snapshot):
    source: str
    table: str
    column: str
    value: str
    row_ref: Tuple[str, str, int] = Field(
        description="Identity of the physical row (source, table, ordinal); used only for co-occurrence."
    )


class SimilarityScores(_Snapshot):
    levenshtein: float
    jaro_winkler: float
    soundex: float
    metaphone: float
    combined: float


class SearchMatch(BaseModel):
    """One ranked hit from the intelligent search."""
    value: str
    source: str
    table: str
    column: str
    bucket: Bucket
    search_term: str
    match_type: Literal["fuzzy", "semantic", "phonetic"]
    similarity: Optional[SimilarityScores] = None
    relevance: float = 0.0


# --- Per-request records ---

class QueryPlan(BaseModel):
    """The structured plan the completion capability must return as JSON."""
    model_config = ConfigDict(extra="ignore")

    target: Literal["source1", "source2", "both"]
    source1_query: Optional[str] = None
    source2_query: Optional[str] = None
    use_unified_query: bool = False
    query_unstructured: bool = False
    unstructured_keywords: Optional[str] = None
    explanation: str = ""
    aggregation_needed: bool = False

    @field_validator("source1_query", "source2_query", "unstructured_keywords", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in ("", "null", "none"):
            return None
        return value

    @field_validator("explanation", mode="before")
    @classmethod
    def _explanation_text(cls, value: Any) -> Any:
        return "" if value is None else value

    @model_validator(mode="after")
    def _has_work(self) -> "QueryPlan":
        if not self.queries_for_target() and not self.query_unstructured:
            raise ValueError(f"plan targets '{self.target}' but carries no query for it")
        return self

    def queries_for_target(self) -> Dict[str, str]:
        """Per-source query text for the sources named by `target`, skipping nulls."""
        wanted = ("source1", "source2") if self.target == "both" else (self.target,)
        queries = {"source1": self.source1_query, "source2": self.source2_query}
        return {key: queries[key] for key in wanted if queries[key]}


class UnstructuredSummary(BaseModel):
    success: bool
    analysis: Optional[str] = None
    entries_analyzed: int = 0
    sample_data: List[Dict[str, Any]] = Field(default_factory=list)
    message: Optional[str] = None
    error: Optional[str] = None


class ReconciledResult(BaseModel):
    kind: Literal["single_value", "grouped", "rows", "empty"]
    note: str = ""
    total_records: int = 0
    source_records: Dict[str, int] = Field(default_factory=dict)
    combined_data: List[Dict[str, Any]] = Field(default_factory=list)
    # single_value only
    total_combined: Optional[float] = None
    contributions: Dict[str, float] = Field(default_factory=dict)
    combined_average: Optional[float] = None
    averages: Dict[str, float] = Field(default_factory=dict)
    breakdown: List[Dict[str, Any]] = Field(default_factory=list)
    # grouped only
    group_by: Optional[str] = None
    measure: Optional[str] = None


class FederatedQueryResult(BaseModel):
    status: Literal["success", "failure"]
    question: str
    plan: Optional[QueryPlan] = None
    per_source_rows: Dict[str, Optional[List[Dict[str, Any]]]] = Field(default_factory=dict)
    combined: Optional[List[Dict[str, Any]]] = None
    reconciled: Optional[ReconciledResult] = None
    unstructured_summary: Optional[UnstructuredSummary] = None
    insight: Optional[str] = None
    errors: Dict[str, str] = Field(default_factory=dict)
    error: Optional[str] = None
    total_latency_s: float = 0.0
