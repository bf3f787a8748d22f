"""
Operation configuration registry.

Maps a named operation to its model, reasoning effort and result contract.
The table is static and read-only; unknown names resolve to the generic
``general_completion`` configuration so callers can still make a best-effort
call.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple

import structlog

from .types import OperationOverrides

logger = structlog.get_logger(__name__)


class ReasoningEffort(Enum):
    """Reasoning effort passed through to the model."""
    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Verbosity(Enum):
    """Text verbosity passed through to the model."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ResultShape(Enum):
    """Expected top-level shape of an operation's parsed result."""
    OBJECT = "object"
    COLLECTION = "collection"
    ANY = "any"


@dataclass(frozen=True)
class OperationConfig:
    """Immutable descriptor for one operation."""
    name: str
    description: str
    model: str
    reasoning: ReasoningEffort = ReasoningEffort.MINIMAL
    verbosity: Verbosity = Verbosity.LOW
    required_fields: Tuple[str, ...] = ()
    use_web_search: bool = False
    shape: ResultShape = ResultShape.OBJECT

    @property
    def allows_collection(self) -> bool:
        return self.shape == ResultShape.COLLECTION

    def merged(self, overrides: Optional[OperationOverrides]) -> "OperationConfig":
        """Return a copy with every non-None override applied."""
        if overrides is None:
            return self
        changes = {}
        if overrides.model:
            changes["model"] = overrides.model
        if overrides.reasoning is not None:
            changes["reasoning"] = ReasoningEffort(overrides.reasoning)
        if overrides.verbosity is not None:
            changes["verbosity"] = Verbosity(overrides.verbosity)
        if overrides.use_web_search is not None:
            changes["use_web_search"] = overrides.use_web_search
        return replace(self, **changes)


DEFAULT_OPERATION = "general_completion"

OPERATION_CONFIGS: Dict[str, OperationConfig] = {
    config.name: config
    for config in (
        OperationConfig(
            name="job_extraction",
            description="Extract comprehensive job data from job postings",
            model="gpt-5-nano",
            required_fields=("title", "company"),
        ),
        OperationConfig(
            name="salary_analysis",
            description="Analyze salary data and market information",
            model="gpt-5-mini",
            use_web_search=True,
        ),
        OperationConfig(
            name="resume_parsing",
            description="Extract structured data from resume text",
            model="gpt-5-nano",
            required_fields=("skills", "experience"),
        ),
        OperationConfig(
            name="company_analysis",
            description="Analyze company information and culture",
            model="gpt-5-mini",
            use_web_search=True,
        ),
        OperationConfig(
            name="skill_matching",
            description="Match job requirements with user skills",
            model="gpt-5-nano",
        ),
        OperationConfig(
            name="skills_extraction",
            description="Extract a list of skills with category and proficiency",
            model="gpt-5-nano",
            required_fields=("name",),
            shape=ResultShape.COLLECTION,
        ),
        OperationConfig(
            name="negotiation_coaching",
            description="Generate negotiation strategies and tips",
            model="gpt-5-mini",
        ),
        OperationConfig(
            name="web_search",
            description="Search web for current market data",
            model="gpt-5-mini",
            use_web_search=True,
            shape=ResultShape.ANY,
        ),
        OperationConfig(
            name=DEFAULT_OPERATION,
            description="General AI text completion",
            model="gpt-5-nano",
            shape=ResultShape.ANY,
        ),
    )
}


class OperationRegistry:
    """Read-only lookup from operation name to configuration."""

    def __init__(
        self,
        configs: Optional[Dict[str, OperationConfig]] = None,
        default: str = DEFAULT_OPERATION,
    ):
        self._configs = dict(configs if configs is not None else OPERATION_CONFIGS)
        if default not in self._configs:
            raise ValueError(f"Default operation '{default}' is not configured")
        self._default = default

    def get_config(self, name: str) -> OperationConfig:
        """Get configuration for an operation, falling back to the default."""
        config = self._configs.get(name)
        if config is None:
            logger.debug("operation_unknown", operation=name, fallback=self._default)
            return self._configs[self._default]
        return config

    def names(self) -> List[str]:
        return list(self._configs)

    def __contains__(self, name: str) -> bool:
        return name in self._configs


PROMPT_TEMPLATES = {
    "json_response": (
        "Return ONLY a valid JSON value. No explanations, no markdown, "
        "no code blocks."
    ),
    "extraction_rules": (
        "CRITICAL EXTRACTION RULES:\n"
        "- Extract ALL available information completely\n"
        "- Use null for missing information, never use generic defaults\n"
        "- Follow JSON format exactly"
    ),
    "validation_notice": (
        "VALIDATION REQUIREMENTS:\n"
        "- These fields must be present and non-empty: {fields}\n"
        "- Double-check JSON syntax before responding"
    ),
    "no_fallbacks": (
        "IMPORTANT: No fallbacks or hardcoded values allowed. If information "
        "is not available in the source, use null or empty arrays."
    ),
}


def build_prompt(
    config: OperationConfig,
    content: str,
    additional_instructions: Optional[str] = None,
) -> str:
    """Build the final prompt for an operation."""
    sections = [
        PROMPT_TEMPLATES["json_response"],
        f"OPERATION: {config.description}",
        PROMPT_TEMPLATES["extraction_rules"],
    ]
    if config.required_fields:
        sections.append(
            PROMPT_TEMPLATES["validation_notice"].format(
                fields=", ".join(config.required_fields)
            )
        )
    sections.append(PROMPT_TEMPLATES["no_fallbacks"])
    if additional_instructions and additional_instructions.strip():
        sections.append(additional_instructions.strip())
    sections.append(f"CONTENT TO PROCESS:\n{content}")
    sections.append("JSON OUTPUT:")
    return "\n\n".join(sections)
