"""
Sentence embeddings for the vectors solver.

The model is loaded once per process and shared by every run. Nothing else is kept
between calls: each `embed` call tokenizes, runs the encoder and mean-pools, so two
runs never see each other's inputs.
"""

import logging
import threading
from enum import Enum
from typing import Optional, Protocol, Sequence

import numpy as np
import torch
from transformers import AutoModel, AutoTokenizer

from wikirunner.config import EMBEDDING_MODEL
from wikirunner.errors import EmbeddingError

logger = logging.getLogger(__name__)

MAX_TOKENS = 128


class EmbeddingProvider(Protocol):
    def embed(self, texts: Sequence[str]) -> np.ndarray:
        """Return a (len(texts), dim) float32 matrix."""
        ...


class ModelState(str, Enum):
    UNLOADED = "UNLOADED"
    LOADING = "LOADING"
    READY = "READY"
    ERROR = "ERROR"


class TransformerEmbedder:
    def __init__(self, model_name: str = EMBEDDING_MODEL):
        self.model_name = model_name
        self.state = ModelState.UNLOADED
        self.error: Optional[BaseException] = None
        self._tokenizer = None
        self._model = None
        self._lock = threading.Lock()
        self._finished_loads = 0

    def load(self) -> None:
        """
        Load tokenizer and encoder weights. Concurrent callers block on the lock and
        reuse the first caller's result instead of loading a second copy.
        """
        if self.state is ModelState.READY:
            return

        seen = self._finished_loads
        with self._lock:
            if self.state is ModelState.READY:
                return
            if self.state is ModelState.ERROR and self._finished_loads != seen:
                # a load that was running while we waited has just failed
                raise EmbeddingError(f"Could not load embedding model '{self.model_name}': {self.error}") from self.error

            self.state = ModelState.LOADING
            logger.info("Loading embedding model %s", self.model_name)
            try:
                tokenizer = AutoTokenizer.from_pretrained(self.model_name)
                model = AutoModel.from_pretrained(self.model_name)
                model.eval()
            except Exception as e:
                self._finished_loads += 1
                self.state = ModelState.ERROR
                self.error = e
                logger.error("Failed to load embedding model %s: %s", self.model_name, e)
                raise EmbeddingError(f"Could not load embedding model '{self.model_name}': {e}") from e

            self._finished_loads += 1
            self._tokenizer = tokenizer
            self._model = model
            self.error = None
            self.state = ModelState.READY
            logger.info("Embedding model %s loaded", self.model_name)

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            raise EmbeddingError("Nothing to embed.")
        self.load()

        try:
            encoded = self._tokenizer(
                list(texts),
                padding=True,
                truncation=True,
                max_length=MAX_TOKENS,
                return_tensors="pt",
            )
            with torch.no_grad():
                output = self._model(**encoded)
        except Exception as e:
            raise EmbeddingError(f"Embedding model failed: {e}") from e

        # Mean pooling over real tokens only, so padding in a batch does not change a row
        token_embeddings = output.last_hidden_state
        mask = encoded["attention_mask"].unsqueeze(-1).to(token_embeddings.dtype)
        summed = (token_embeddings * mask).sum(dim=1)
        counts = mask.sum(dim=1).clamp(min=1e-9)
        pooled = summed / counts

        return pooled.cpu().numpy().astype(np.float32)


_embedder: Optional[TransformerEmbedder] = None
_embedder_lock = threading.Lock()


def get_embedder() -> TransformerEmbedder:
    """Return the process-wide embedder, creating it (unloaded) on first use."""
    global _embedder
    if _embedder is None:
        with _embedder_lock:
            if _embedder is None:
                _embedder = TransformerEmbedder()
    return _embedder


def preload() -> TransformerEmbedder:
    embedder = get_embedder()
    embedder.load()
    return embedder
