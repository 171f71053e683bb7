"""Embedding worker, run as ``python -m hereiam.local_search.embed_worker``.

Reads ``{"model": ..., "texts": [...], "cache_dir": ...}`` from stdin and
writes ``{"model": ..., "dim": ..., "embeddings": [[...], ...]}`` to stdout.
Exits non-zero with a message on stderr when anything goes wrong.
"""

from __future__ import annotations

import json
import os
import sys

import numpy as np


def main() -> int:
    try:
        request = json.loads(sys.stdin.buffer.read().decode("utf-8"))
        model = request["model"]
        texts = [str(t) for t in request["texts"]]
        cache_dir = request.get("cache_dir")
    except (ValueError, KeyError, TypeError) as e:
        print(f"embed_worker: bad request: {e}", file=sys.stderr)
        return 2

    if cache_dir:
        os.environ.setdefault("FASTEMBED_CACHE_PATH", cache_dir)

    try:
        from fastembed import TextEmbedding

        embedding = TextEmbedding(model_name=model, cache_dir=cache_dir)
        vectors = [np.asarray(v, dtype=np.float32) for v in embedding.embed(texts)]
    except Exception as e:
        print(f"embed_worker: {type(e).__name__}: {e}", file=sys.stderr)
        return 1

    dim = int(vectors[0].shape[0]) if vectors else 0
    out = {"model": model, "dim": dim, "embeddings": [v.tolist() for v in vectors]}
    sys.stdout.write(json.dumps(out))
    sys.stdout.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
