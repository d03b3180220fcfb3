"""Tests for wikirunner.embeddings: TransformerEmbedder lifecycle and pooling."""

import threading
import time
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
import torch

from wikirunner import embeddings
from wikirunner.embeddings import ModelState, TransformerEmbedder, get_embedder
from wikirunner.errors import EmbeddingError


class FakeTokenizer:
    def __init__(self, masks):
        self.masks = masks

    def __call__(self, texts, **kwargs):
        mask = torch.tensor(self.masks[: len(texts)])
        return {"input_ids": torch.ones_like(mask), "attention_mask": mask}


class FakeModel:
    def __init__(self, hidden):
        self.hidden = hidden

    def eval(self):
        return self

    def __call__(self, input_ids, attention_mask):
        return SimpleNamespace(last_hidden_state=torch.tensor(self.hidden[: input_ids.shape[0]]))


@pytest.fixture
def patched_hf():
    tokenizer = FakeTokenizer([[1, 1], [1, 0]])
    model = FakeModel([
        [[1.0, 1.0], [3.0, 3.0]],
        [[2.0, 0.0], [100.0, 100.0]],  # second token is padding
    ])
    with patch.object(embeddings.AutoTokenizer, "from_pretrained", return_value=tokenizer) as tok, \
            patch.object(embeddings.AutoModel, "from_pretrained", return_value=model) as mod:
        yield tok, mod


class TestTransformerEmbedder:
    def test_starts_unloaded(self):
        assert TransformerEmbedder("some/model").state is ModelState.UNLOADED

    def test_mean_pooling_ignores_padding(self, patched_hf):
        out = TransformerEmbedder("some/model").embed(["long text", "short"])
        assert out.dtype == np.float32
        assert np.allclose(out, [[2.0, 2.0], [2.0, 0.0]])

    def test_loads_once(self, patched_hf):
        tok, mod = patched_hf
        embedder = TransformerEmbedder("some/model")
        embedder.embed(["a"])
        embedder.embed(["b"])
        assert embedder.state is ModelState.READY
        tok.assert_called_once_with("some/model")
        mod.assert_called_once_with("some/model")

    def test_concurrent_loads_converge(self):
        model = FakeModel([[[1.0]]])

        def slow_model(name):
            time.sleep(0.05)
            return model

        with patch.object(embeddings.AutoTokenizer, "from_pretrained", return_value=FakeTokenizer([[1]])), \
                patch.object(embeddings.AutoModel, "from_pretrained", side_effect=slow_model) as mod:
            embedder = TransformerEmbedder("some/model")
            threads = [threading.Thread(target=embedder.load) for _ in range(5)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        assert mod.call_count == 1
        assert embedder.state is ModelState.READY

    def test_failed_load_sets_error_state(self):
        with patch.object(embeddings.AutoTokenizer, "from_pretrained", side_effect=OSError("no such model")):
            embedder = TransformerEmbedder("missing/model")
            with pytest.raises(EmbeddingError, match="missing/model"):
                embedder.embed(["a"])
        assert embedder.state is ModelState.ERROR
        assert isinstance(embedder.error, OSError)

    def test_concurrent_waiters_share_a_failed_load(self):
        def slow_failure(name):
            time.sleep(0.1)
            raise OSError("hub unreachable")

        errors = []

        def load():
            try:
                embedder.load()
            except EmbeddingError as e:
                errors.append(e)

        with patch.object(embeddings.AutoTokenizer, "from_pretrained", side_effect=slow_failure) as tok:
            embedder = TransformerEmbedder("some/model")
            threads = [threading.Thread(target=load) for _ in range(5)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert tok.call_count == 1
            assert len(errors) == 5
            assert all("hub unreachable" in str(e) for e in errors)

            # a fresh call after the failure tries again
            with pytest.raises(EmbeddingError):
                embedder.load()
            assert tok.call_count == 2

    def test_empty_batch_raises(self):
        with pytest.raises(EmbeddingError):
            TransformerEmbedder("some/model").embed([])

    def test_model_crash_is_embedding_error(self, patched_hf):
        embedder = TransformerEmbedder("some/model")
        embedder.load()
        embedder._model = MagicMock(side_effect=RuntimeError("CUDA gone"))
        with pytest.raises(EmbeddingError, match="CUDA gone"):
            embedder.embed(["a"])


class TestGetEmbedder:
    def test_singleton(self):
        with patch.object(embeddings, "_embedder", None):
            first = get_embedder()
            second = get_embedder()
        assert first is second
        assert first.state is ModelState.UNLOADED
