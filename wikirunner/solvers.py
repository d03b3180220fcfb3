import logging
from typing import Optional, Protocol, Sequence

from wikirunner.candidates import filter_candidates, visited_keys
from wikirunner.config import RunConfig
from wikirunner.embeddings import EmbeddingProvider, get_embedder
from wikirunner.errors import ConfigurationError
from wikirunner.models import Node, SolverMove, SolverType, canonical_title
from wikirunner.similarity import select_best

logger = logging.getLogger(__name__)


class Solver(Protocol):
    """
    A decision strategy. Given the current page, the target and the titles visited
    before it, return one outgoing link of the page and a short rationale.
    Solvers never see or change run state.
    """

    kind: SolverType

    async def choose(self, node: Node, target: str, visited: Sequence[str]) -> SolverMove:
        ...


def direct_match(node: Node, target: str) -> Optional[str]:
    target_key = canonical_title(target)
    for link in node.links:
        if canonical_title(link) == target_key:
            return link
    return None


class VectorSolver:
    """Picks the link whose title embeds closest to the target title."""

    kind = SolverType.VECTORS

    def __init__(self, embedder: Optional[EmbeddingProvider] = None):
        self._embedder = embedder

    @property
    def embedder(self) -> EmbeddingProvider:
        if self._embedder is None:
            self._embedder = get_embedder()
        return self._embedder

    async def choose(self, node: Node, target: str, visited: Sequence[str]) -> SolverMove:
        # The target itself is one click away: take it without touching the model
        link = direct_match(node, target)
        if link is not None:
            return SolverMove(link=link, rationale=f'Target identified! "{link}" is a direct match for the goal.')

        result = filter_candidates(node, node.links, visited_keys(visited, node))
        best, score = select_best(self.embedder, target, result.candidates)

        rationale = f'BERT Similarity Score: {score:.3f}. "{best}" is semantically closest to "{target}".'
        if result.used_fallback:
            rationale += " (Note: All unique links were previously visited; forced to loop.)"
        else:
            rationale += " (Visited pages excluded to prevent loops.)"

        logger.debug("Vectors picked '%s' (%.3f) out of %d candidates", best, score, len(result.candidates))
        return SolverMove(link=best, rationale=rationale)


def build_solver(config: RunConfig) -> Solver:
    """Create the solver a run configuration asks for."""
    if config.solver is SolverType.VECTORS:
        return VectorSolver()

    api_key = config.credential()
    if not api_key:
        raise ConfigurationError(f"API key is missing for the {config.solver.value} solver.")

    model = config.model_name()

    if config.solver is SolverType.TINKER:
        from wikirunner.tinker_llm import TinkerLLM, TinkerSolver

        return TinkerSolver(TinkerLLM(model=model, api_key=api_key))

    from wikirunner.remote import CHAT_FACTORIES, ChatModelSolver

    return ChatModelSolver(config.solver, CHAT_FACTORIES[config.solver](model, api_key))
