"""
askbase - Answer & Prompt Templates
=====================================
Centralised answer formatting and prompt management for the RAG
engine.  All user-visible strings live here so they can be versioned
and reviewed independently of application logic.

Exports
-------
NO_CONTEXT_RESPONSE, CONTEXT_HEADER, MATCH_TEMPLATE, MATCH_SEPARATOR,
UNTITLED_PLACEHOLDER, SYSTEM_PROMPT, SYNTHESIS_PROMPT_TEMPLATE.
"""

# ══════════════════════════════════════════════════════════════════════
#  RAW-CONTEXT ANSWER
# ══════════════════════════════════════════════════════════════════════

NO_CONTEXT_RESPONSE: str = "No relevant information found in the knowledge base."

CONTEXT_HEADER: str = "Based on the knowledge base, here are the most relevant passages:\n\n"

# {rank} is 1-based; {similarity} is already a percentage.
MATCH_TEMPLATE: str = "[Document {rank} - {similarity:.1f}% match]\n{title}\n{content}"

# Surrounded by blank lines so it cannot be confused with a markdown rule inside content.
MATCH_SEPARATOR: str = "\n\n---\n\n"

UNTITLED_PLACEHOLDER: str = "Untitled"


# ══════════════════════════════════════════════════════════════════════
#  GENERATIVE SYNTHESIS
# ══════════════════════════════════════════════════════════════════════

SYSTEM_PROMPT: str = "You are a helpful assistant. Answer the question based on the provided context."

SYNTHESIS_PROMPT_TEMPLATE: str = """Context:
{context}

Question: {question}

Provide a clear and concise answer based on the context."""
