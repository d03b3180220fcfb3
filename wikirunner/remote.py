"""
Solvers that delegate the link choice to a hosted chat model.

Model output is free-form text that is supposed to hold one JSON object. It is read
in three tiers: the whole (fence-stripped) reply as JSON, then the first well-formed
object found inside the text, then a safe default. A reply the parser cannot make
sense of never fails the run; it turns into "follow the first link" with a rationale
that says so.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Union

from langchain_anthropic import ChatAnthropic
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI

from wikirunner.config import PROMPT_LINK_LIMIT
from wikirunner.errors import NoCandidatesError
from wikirunner.models import Node, SolverMove, SolverType, canonical_title

logger = logging.getLogger(__name__)

NO_REASONING = "No reasoning provided."
PARSE_FAILURE = "Failed to parse AI response. Picking first link."

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL)


# -----------------------------
# Prompt
# -----------------------------
PROMPT_TEMPLATE = """You are an expert Wikipedia Speedrunner AI.
Your goal is to reach the target page by clicking links from the current page.

CRITICAL RULES:
1. You CANNOT go back. You must always move forward.
2. Choose the link that is semantically closest or most likely to lead to the target.
3. If the target page title is in the list of links, you MUST select it.

Current Page: {current_title}
Target Page: {target}

Current Page Summary: {summary}

Available Links ({link_count} total):
{links}

Path taken so far: {path}

Analyze the target and the current page's links. Explain your reasoning and then provide the exact name of the link you want to click.

Respond in strictly VALID JSON with two keys: "reasoning" (string) and "selectedLink" (string). Do not include any markdown formatting."""


def build_prompt(node: Node, target: str, visited: Sequence[str]) -> str:
    shown = list(dict.fromkeys(node.links))[:PROMPT_LINK_LIMIT]
    path = list(visited) + [node.title]
    return PROMPT_TEMPLATE.format(
        current_title=node.title,
        target=target,
        summary=node.summary,
        link_count=len(node.links),
        links=", ".join(shown),
        path=" -> ".join(path),
    )


# -----------------------------
# Response parsing
# -----------------------------
@dataclass(frozen=True)
class Parsed:
    data: Dict[str, Any]


@dataclass(frozen=True)
class Recovered:
    data: Dict[str, Any]


@dataclass(frozen=True)
class Defaulted:
    reason: str


MoveParse = Union[Parsed, Recovered, Defaulted]


def strip_fences(text: str) -> str:
    """Strip markdown code fences from LLM output if present."""
    match = _FENCE_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def _first_json_object(text: str) -> Optional[Dict[str, Any]]:
    decoder = json.JSONDecoder()
    for match in re.finditer(r"\{", text):
        try:
            obj, _ = decoder.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            return obj
    return None


def parse_move(text: str) -> MoveParse:
    """
    Read a model reply. Returns Parsed when the reply is a JSON object, Recovered when
    an object had to be dug out of surrounding noise, Defaulted when neither worked.
    """
    if not text or not text.strip():
        return Defaulted("empty response")

    try:
        data = json.loads(strip_fences(text))
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict):
        return Parsed(data)

    recovered = _first_json_object(text)
    if recovered is not None:
        return Recovered(recovered)

    return Defaulted(f"no JSON object in response: {text.strip()[:120]!r}")


def _match_link(choice: str, node: Node) -> str:
    """Map the model's spelling of a link onto the page's own spelling when they agree."""
    if choice in node.links:
        return choice
    key = canonical_title(choice)
    for link in node.links:
        if canonical_title(link) == key:
            return link
    return choice


def require_links(node: Node) -> None:
    if not node.links:
        raise NoCandidatesError(f"No usable outgoing links from '{node.title}'.")


def resolve_move(outcome: MoveParse, node: Node) -> SolverMove:
    require_links(node)
    first_link = node.links[0]

    if isinstance(outcome, Defaulted):
        logger.warning("Unparsable model response on '%s' (%s)", node.title, outcome.reason)
        return SolverMove(link=first_link, rationale=PARSE_FAILURE)

    if isinstance(outcome, Recovered):
        logger.info("Recovered JSON from a noisy model response on '%s'", node.title)

    choice = outcome.data.get("selectedLink")
    reasoning = outcome.data.get("reasoning")

    link = _match_link(choice.strip(), node) if isinstance(choice, str) and choice.strip() else first_link
    rationale = reasoning.strip() if isinstance(reasoning, str) and reasoning.strip() else NO_REASONING
    return SolverMove(link=link, rationale=rationale)


def message_text(message: Any) -> str:
    """Pull plain text out of a chat model message (string or list of content parts)."""
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type", "text") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return str(content)


# -----------------------------
# Chat-model solvers
# -----------------------------
def gemini_chat(model: str, api_key: str):
    return ChatGoogleGenerativeAI(model=model, google_api_key=api_key, temperature=0, max_retries=0)


def openai_chat(model: str, api_key: str):
    return ChatOpenAI(
        model=model,
        api_key=api_key,
        temperature=0,
        max_retries=0,
        model_kwargs={"response_format": {"type": "json_object"}},
    )


def claude_chat(model: str, api_key: str):
    return ChatAnthropic(model=model, api_key=api_key, max_tokens=1024, temperature=0, max_retries=0)


CHAT_FACTORIES: Dict[SolverType, Callable[[str, str], Any]] = {
    SolverType.GEMINI: gemini_chat,
    SolverType.OPENAI: openai_chat,
    SolverType.CLAUDE: claude_chat,
}


class ChatModelSolver:
    """Asks a LangChain chat model for the next link."""

    def __init__(self, kind: SolverType, llm: Any):
        self.kind = kind
        self.llm = llm

    async def choose(self, node: Node, target: str, visited: Sequence[str]) -> SolverMove:
        require_links(node)
        prompt = build_prompt(node, target, visited)
        logger.debug("%s prompt for '%s' (%d chars)", self.kind.value, node.title, len(prompt))

        response = await self.llm.ainvoke([{"role": "user", "content": prompt}])
        text = message_text(response)
        logger.debug("%s raw response: %r", self.kind.value, text[:300])

        return resolve_move(parse_move(text), node)
