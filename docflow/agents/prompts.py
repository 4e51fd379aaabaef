# =============================================================================
# Agent Prompts
# =============================================================================
# Every worker reply must be ONE JSON object. The templates below are filled
# with str.format(); literal braces in the JSON examples are doubled.
#
# Shared placeholders:
#   {question} {intent} {timestamp} {article} {context}
#   {previous_block}  previous document's text + timestamp, or ""
#   {history_block}   earlier scores of the same index, or ""
# =============================================================================

JSON_ONLY = (
    "Output only the JSON object as described above. Do not wrap it in "
    "markdown code blocks or any other formatting."
)

# ---------------------------------------------------------------------------
# Intent phase
# ---------------------------------------------------------------------------

INTENT_SYSTEM_PROMPT = "You turn research requests into precise task definitions."

INTENT_PROMPTS: dict[str, str] = {
    "indices": """A user wants a numeric index tracked across a series of documents.

Request: {query}

Return a JSON object:
{{
  "taskName": "short display name for this run",
  "intent": "what exactly should be scored, and what -1 and +1 mean",
  "indexName": "one fixed name for the index, reused for every document"
}}
""" + JSON_ONLY,
    "deep_research": """A user wants a research article built from a series of documents.

Request: {query}

Return a JSON object:
{{
  "taskName": "short display name for this run",
  "intent": "the research question each document should be read against"
}}
""" + JSON_ONLY,
    "change_statement": """A user wants to track how statements, tone and messaging change across a series of documents.

Request: {query}

Return a JSON object:
{{
  "taskName": "short display name for this run",
  "intent": "which statements or themes to follow and what counts as a change",
  "analysisName": "one fixed name for this analysis, reused for every document"
}}
""" + JSON_ONLY,
}

# ---------------------------------------------------------------------------
# Worker phase
# ---------------------------------------------------------------------------

PREVIOUS_DOCUMENT_BLOCK = """
Previous document ({previous_timestamp}):
{previous_text}
"""

HISTORY_BLOCK = """
Historical scores of this index:
{history}
"""

SCORING_SYSTEM_PROMPT = "You are a careful analyst who scores documents on a fixed index."

SCORING_PROMPT = """You are given an article, the previous article in the series, and the running notes of this analysis.

1. Score the article on the index "{index_name}" for the question below. The score is a decimal between -1 and 1.
2. Stay consistent with earlier scores, but move the score when the article's content or tone has changed relative to the previous article.
3. Quote the sentences from the article that support the score.

Return a JSON object:
{{
  "score_name": "{index_name}",
  "score_value": 0.4,
  "article_id": "{article_id}",
  "quotes": ["sentence from the article", "another sentence"],
  "rationale": "why this score, and how it moved relative to the previous article"
}}
Use exactly "{index_name}" as score_name.

Question: {question}
Intent: {intent}
Document Timestamp: {timestamp}

Article:
{article}
{previous_block}{history_block}
Running notes:
{context}

""" + JSON_ONLY

RESEARCH_SYSTEM_PROMPT = "You are a research analyst who answers questions from primary documents."

RESEARCH_PROMPT = """Answer the research question using the article, citing it directly. Note what is new compared with the previous article and with the running notes.

Return a JSON object:
{{
  "answer": "the answer this article supports",
  "article_id": "{article_id}",
  "quotes": ["sentence from the article"],
  "rationale": "how the quotes support the answer and what changed since the previous article"
}}

Question: {question}
Intent: {intent}
Document Timestamp: {timestamp}

Article:
{article}
{previous_block}
Running notes:
{context}

""" + JSON_ONLY

CHANGE_STATEMENT_SYSTEM_PROMPT = (
    "You analyse changes in statements, language, tone and messaging across documents."
)

CHANGE_STATEMENT_PROMPT = """Identify how the statements, language, tone or messaging in this article changed compared with the previous article and the running notes.

Return a JSON object:
{{
  "analysis_name": "{index_name}",
  "change_type": "one line naming the change (or 'no material change')",
  "article_id": "{article_id}",
  "quotes": ["sentence from the article showing the change"],
  "change_description": "what changed and how",
  "comparison_context": "what the earlier documents said instead"
}}
Use exactly "{index_name}" as analysis_name.

Question: {question}
Intent: {intent}
Document Timestamp: {timestamp}

Article:
{article}
{previous_block}
Running notes:
{context}

""" + JSON_ONLY

# ---------------------------------------------------------------------------
# Writing phase (deep research)
# ---------------------------------------------------------------------------

TITLE_SYSTEM_PROMPT = "You write concise, specific titles for research articles."

TITLE_PROMPT = """Write one title (max 12 words) for a research article answering:

{question}

Intent: {intent}

Reply with the title only, no quotes."""

WRITING_SYSTEM_PROMPT = "You are a research writer producing well-sourced markdown articles."

WRITING_PROMPT = """Write a research article in markdown titled "{title}".

Question: {question}
Intent: {intent}

Base the article on the findings below, one per source document in chronological order, and on the running research notes. Cite sources by filename and date using the source list. Describe how the picture evolved over time, then conclude.

Sources:
{sources}

Findings:
{findings}

Research notes:
{context}
"""
