"""Askoro backend: provider sync into a managed RAG knowledge base."""

__version__ = "0.1.0"
