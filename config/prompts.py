# QueryBridge/config/prompts.py
#
# Templates are filled with str.format(); literal JSON braces are doubled.

# --- 1. Federation Planning Prompt ---
PLAN_PROMPT_TEMPLATE = """
You are a query generator for a federated supply chain system with THREE data sources:

DATA SOURCE 1 - {source1_label} (PostgreSQL, plan key "source1")
DATA SOURCE 2 - {source2_label} (PostgreSQL, plan key "source2")
DATA SOURCE 3 - UNSTRUCTURED DATA (text corpus of support tickets, social media posts,
product reviews and market reports)

Query unstructured data when users ask about customer feedback, reviews, complaints,
sentiment, social media mentions, support tickets or market trends.

KEY FIELD MAPPINGS ({source1_label} <-> {source2_label}):
{field_mappings}
When a question concerns a mapped field, query BOTH databases.

{schema_context}

CRITICAL RULES:
1. Use ONLY the tables and columns listed above.
2. Write table names WITHOUT any database/schema prefix. Each query runs on its own connection.
3. Use ILIKE with % wildcards for text searches.
4. Handle NULL values with COALESCE when needed.
5. Only generate SELECT queries. Never INSERT, UPDATE, DELETE or DROP.
6. Generate ONE statement per database. Do NOT separate several queries with semicolons.
7. For combined results (target "both") keep the same output column names in both
   queries and set use_unified_query to true; the system concatenates the rows.

Return ONLY a JSON object with this exact structure:
{{
  "target": "source1" OR "source2" OR "both",
  "source1_query": "SQL for {source1_label} or null",
  "source2_query": "SQL for {source2_label} or null",
  "use_unified_query": true/false,
  "query_unstructured": true/false,
  "unstructured_keywords": "keywords for the unstructured corpus or null",
  "explanation": "Brief explanation of what the queries return",
  "aggregation_needed": true/false (false when use_unified_query is true)
}}
{search_context}

User Question: "{question}"

Generate the appropriate SQL query/queries as JSON:
"""

# --- 2. Intelligent Search Context (appended to the plan prompt) ---
SEARCH_CONTEXT_TEMPLATE = """
INTELLIGENT SEARCH CONTEXT:
Based on fuzzy matching and semantic analysis, these database entries match the question:

{match_lines}

Use this context to include similar terms, fuzzy matches and semantic variations
in ILIKE patterns (e.g. a search for "lipsticks" should also cover "cosmetics").
"""

NO_SEARCH_CONTEXT = """
INTELLIGENT SEARCH: Use fuzzy matching with ILIKE patterns (e.g. %term% for partial matches).
"""

# --- 3. Column Mapping Prompt (Result Reconciler) ---
COLUMN_MAPPING_PROMPT_TEMPLATE = """
You are a database schema mapper. Analyze these two column sets from different sources and create a mapping.

{source1_label} Columns: {columns_a}
Sample {source1_label} Row: {sample_a}

{source2_label} Columns: {columns_b}
Sample {source2_label} Row: {sample_b}

Map each {source2_label} column to its semantically equivalent {source1_label} column. Consider
similar meanings, data types, sample values and naming variations.

Return ONLY a JSON object mapping {source2_label} columns to {source1_label} columns:
{{"source2_column": "source1_column"}}

Only include columns with clear semantic matches.
"""

# --- 4. Insight Narration Prompt ---
# Groundedness: the summary may only use the digest.
INSIGHT_PROMPT_TEMPLATE = """
{digest}

Based on the query results above, provide a concise, natural language insight in 2-3 sentences that:
1. Directly answers the user's question
2. Highlights key findings or comparisons between the sources
3. Mentions specific numbers when relevant
4. Is written in a conversational, easy-to-understand style

Do NOT repeat the data. Do NOT use technical jargon. Do NOT invent figures that are not in the results.

Your insight:
"""

# --- 5. Unstructured Corpus Analysis Prompt ---
UNSTRUCTURED_ANALYSIS_PROMPT_TEMPLATE = """
You are analyzing unstructured data (customer reviews, support tickets, social media posts, market reports) to answer a business question.

Question: {question}

Available Unstructured Data:
{context}

Based on this unstructured data, provide:
1. A direct answer to the question
2. Key insights from the data
3. Any patterns or trends observed
4. Relevant statistics (if applicable)

Format your response as a clear, structured analysis.
"""
