"""
Dream RAG Engine

Hybrid lexical + semantic retrieval over psychoanalytic source texts,
used to ground dream interpretations.

Packages:
- utils: retrieval components (analyzer, BM25, vector store, fusion, diversity)
- prompts: prompt enrichment helpers
- data: static theme vocabulary and symbol lexicon assets
"""
