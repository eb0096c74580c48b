"""Embedding generation using Model2Vec (lightweight, CPU-only)."""

from __future__ import annotations

import logging

import numpy as np

logger = logging.getLogger(__name__)

_models: dict = {}


def get_model(model_name: str = "minishlab/potion-base-8M"):
    """Lazy-load an embedding model, once per name."""
    if model_name not in _models:
        from model2vec import StaticModel

        logger.info("Loading embedding model: %s", model_name)
        _models[model_name] = StaticModel.from_pretrained(model_name)
    return _models[model_name]


def embed_texts(texts: list[str], model_name: str = "minishlab/potion-base-8M") -> np.ndarray:
    """Generate embeddings for a list of texts. Returns (N, D) array."""
    if not texts:
        return np.zeros((0, 0), dtype=np.float32)
    model = get_model(model_name)
    return np.asarray(model.encode(texts), dtype=np.float32)
