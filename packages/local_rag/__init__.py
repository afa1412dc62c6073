"""
Local document chat core.

This package contains:
- Data models for documents, chunks and conversation turns
- Character-based chunking with sentence/paragraph preference
- An embedding provider with a deterministic fallback
- A JSON-file document store and brute-force cosine retrieval
- Prompt assembly for several chat templates
"""
