"""HereIAm: local semantic document search.

Point it at a folder, it chunks and embeds the text it finds, and answers
natural-language queries with the most similar chunks. Raw files stay local;
only chunk metadata (SQLite) and embeddings (FAISS) are stored.
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
