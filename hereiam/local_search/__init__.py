"""Local indexing + search for HereIAm.

Raw files stay where they are. Chunk metadata lives in a local SQLite DB and
chunk embeddings in a FAISS index file next to it; the two are tied together
by the embedding handle (a chunk's row number in the index).

Keep this package import lightweight: the embedding worker runs
``python -m hereiam.local_search.embed_worker`` in a child process.
"""
