import os
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator

from wikirunner.models import SolverType

load_dotenv()


# -----------------------------
# Wikipedia
# -----------------------------
WIKI_API = os.getenv("WIKIRUNNER_WIKI_API", "https://en.wikipedia.org/w/api.php")
USER_AGENT = os.getenv("WIKIRUNNER_USER_AGENT", "WikiRunner/1.0 (autonomous wiki game agent)")
HTTP_TIMEOUT_S = float(os.getenv("WIKIRUNNER_HTTP_TIMEOUT", "25"))

# Link scraping
MAX_HTML_LINKS = 6000
SUMMARY_MAX_CHARS = 1200


# -----------------------------
# Runs
# -----------------------------
DEFAULT_STEP_BUDGET = int(os.getenv("WIKIRUNNER_STEP_BUDGET", "40"))
WALL_CLOCK_BUDGET_S = float(os.getenv("WIKIRUNNER_WALL_CLOCK_BUDGET", str(5 * 60)))

# Pause between a decision and loading the next page. Purely cosmetic.
PACING_DELAY_S = float(os.getenv("WIKIRUNNER_PACING_DELAY", "0"))

# Candidate pool handed to the similarity scorer, and links shown to remote models
MAX_CANDIDATES = 200
PROMPT_LINK_LIMIT = 200


# -----------------------------
# Solvers
# -----------------------------
EMBEDDING_MODEL = os.getenv("WIKIRUNNER_EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2")

DEFAULT_MODELS: Dict[SolverType, str] = {
    SolverType.GEMINI: "gemini-2.0-flash-exp",
    SolverType.OPENAI: "gpt-4o-mini",
    SolverType.CLAUDE: "claude-haiku-4-5-20251001",
    SolverType.TINKER: os.getenv("TINKER_MODEL", "meta-llama/Llama-3.1-8B-Instruct"),
}

API_KEY_ENV: Dict[SolverType, str] = {
    SolverType.GEMINI: "GOOGLE_API_KEY",
    SolverType.OPENAI: "OPENAI_API_KEY",
    SolverType.CLAUDE: "ANTHROPIC_API_KEY",
    SolverType.TINKER: "TINKER_API_KEY",
}


class RunConfig(BaseModel):
    """Everything needed to launch one run."""

    target: str
    start: Optional[str] = None  # random page when empty
    solver: SolverType = SolverType.VECTORS
    model: Optional[str] = None
    api_key: Optional[SecretStr] = None
    step_budget: int = Field(default=DEFAULT_STEP_BUDGET, ge=1)
    wall_clock_budget: float = Field(default=WALL_CLOCK_BUDGET_S, gt=0)

    @field_validator("target")
    @classmethod
    def _target_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Target page must be a non-empty string.")
        return value

    @field_validator("start")
    @classmethod
    def _strip_start(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None

    def model_name(self) -> Optional[str]:
        """Return the requested model, or the solver's default one."""
        return self.model or DEFAULT_MODELS.get(self.solver)

    def credential(self) -> Optional[str]:
        """Return the explicit API key, falling back to the solver's env var."""
        if self.api_key is not None and self.api_key.get_secret_value():
            return self.api_key.get_secret_value()
        env_var = API_KEY_ENV.get(self.solver)
        return os.getenv(env_var) if env_var else None
