"""
Prompt helpers

Modules:
- rag_context: renders a RAGContext and splices it into an interpretation prompt
"""
