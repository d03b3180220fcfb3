import asyncio
import logging
from typing import Sequence

import tinker
from tinker import types

from wikirunner.config import DEFAULT_MODELS
from wikirunner.models import Node, SolverMove, SolverType
from wikirunner.remote import build_prompt, parse_move, require_links, resolve_move

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are playing the WikiGame. Output ONLY the JSON object requested, with no extra text."


class TinkerLLM:
    def __init__(self, model: str = DEFAULT_MODELS[SolverType.TINKER], api_key: str | None = None):
        """
        Initialize the Tinker sampling client for a given base model.
        """
        self.model = model

        # ServiceClient falls back to the TINKER_API_KEY env var when no key is passed
        self.service_client = tinker.ServiceClient(api_key=api_key) if api_key else tinker.ServiceClient()

        logger.info("Initializing Tinker SamplingClient with model: %s", self.model)
        self.sampling_client = self.service_client.create_sampling_client(base_model=self.model)
        self.tokenizer = self.sampling_client.get_tokenizer()

    def chat(self, messages: list[dict], max_tokens: int = 512, temperature: float = 0.0) -> str:
        """
        Generate a chat completion and return the assistant message text.

        Blocks until the sample is ready.
        """
        try:
            # add_generation_prompt=True ensures the model generates the assistant response
            text_input = self.tokenizer.apply_chat_template(
                messages,
                tokenize=False,
                add_generation_prompt=True
            )
        except Exception as e:
            raise ValueError(f"Failed to apply chat template: {e}") from e

        tokens = self.tokenizer.encode(text_input, add_special_tokens=False)
        prompt = types.ModelInput.from_ints(tokens)

        params = types.SamplingParams(max_tokens=max_tokens, temperature=temperature)
        future = self.sampling_client.sample(prompt, num_samples=1, sampling_params=params)
        result = future.result()

        if not result.sequences:
            return ""
        return self.tokenizer.decode(result.sequences[0].tokens)


class TinkerSolver:
    """Asks a Tinker-hosted model for the next link."""

    kind = SolverType.TINKER

    def __init__(self, llm: TinkerLLM):
        self.llm = llm

    async def choose(self, node: Node, target: str, visited: Sequence[str]) -> SolverMove:
        require_links(node)
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_prompt(node, target, visited)},
        ]
        text = await asyncio.to_thread(self.llm.chat, messages)
        logger.debug("Tinker raw response: %r", text[:300])
        return resolve_move(parse_move(text), node)
