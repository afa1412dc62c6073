"""
Chat orchestration on top of the local RAG core.

Turns a user message into a grounded prompt and hands it to a local
inference engine.
"""
