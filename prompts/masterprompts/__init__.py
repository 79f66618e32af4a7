"""Prompt definitions for structured item generation.

Each JSON file in this directory describes one prompt variant: a system
message, a user template with named placeholders filled from the
calibration bounds, the JSON reply contract, and one corrective directive
per validation issue code. Templates are checked at load time so a typo in
a placeholder fails on startup, not on the first generation attempt.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from string import Formatter
from typing import Dict, Iterable, List, Mapping, Sequence

_PROMPT_DIR = Path(__file__).resolve().parent

# Placeholders the generator supplies when rendering a user template.
PLACEHOLDERS = frozenset(
    {
        "category",
        "grade",
        "difficulty",
        "min_value",
        "max_value",
        "max_factor",
        "max_divisor",
        "max_denominator",
        "allowed_operations",
        "complexity",
        "allow_negative",
        "exemplars",
        "feedback",
    }
)

_REQUIRED_KEYS = ("id", "variant", "prompt_version", "system_template", "user_template", "json_instructions")


class PromptDefinitionError(ValueError):
    """Raised when a prompt file cannot be used for generation."""


@dataclass(frozen=True)
class ItemPrompt:
    id: str
    variant: str
    prompt_version: str
    system_template: str
    user_template: str
    json_instructions: str
    feedback_directives: Mapping[str, str] = field(default_factory=dict)

    def directive_for(self, issue_code: str) -> str:
        return self.feedback_directives.get(issue_code) or self.feedback_directives["default"]

    def corrections(self, issue_codes: Sequence[str]) -> str:
        """Corrective block appended to a retry prompt, one line per distinct directive."""
        lines: List[str] = []
        for code in issue_codes:
            line = f"- {self.directive_for(code)}"
            if line not in lines:
                lines.append(line)
        if not lines:
            return ""
        return "Corrections required:\n" + "\n".join(lines)

    def render(self, **values: object) -> str:
        missing = sorted(_template_fields(self.user_template) - values.keys())
        if missing:
            raise PromptDefinitionError(f"Prompt {self.id} needs values for: {', '.join(missing)}")
        body = self.user_template.format(**values)
        return f"{body.rstrip()}\n\n{self.json_instructions}"


def _template_fields(template: str) -> set:
    return {name for _, name, _, _ in Formatter().parse(template) if name}


def parse_prompt(payload: Mapping[str, object], source: str = "<memory>") -> ItemPrompt:
    missing = [key for key in _REQUIRED_KEYS if not payload.get(key)]
    if missing:
        raise PromptDefinitionError(f"Prompt file {source} missing keys: {', '.join(missing)}")

    user_template = str(payload["user_template"])
    try:
        fields = _template_fields(user_template)
    except ValueError as exc:
        raise PromptDefinitionError(f"Prompt file {source} has a malformed user_template: {exc}") from exc
    unknown = sorted(fields - PLACEHOLDERS)
    if unknown:
        raise PromptDefinitionError(f"Prompt file {source} uses unknown placeholders: {', '.join(unknown)}")

    directives = payload.get("feedback_directives") or {}
    if not isinstance(directives, dict):
        raise PromptDefinitionError(f"Prompt file {source} feedback_directives must be an object")
    if not directives.get("default"):
        raise PromptDefinitionError(f"Prompt file {source} needs a 'default' feedback directive")

    return ItemPrompt(
        id=str(payload["id"]),
        variant=str(payload["variant"]).lower(),
        prompt_version=str(payload["prompt_version"]),
        system_template=str(payload["system_template"]),
        user_template=user_template,
        json_instructions=str(payload["json_instructions"]),
        feedback_directives={str(k): str(v) for k, v in directives.items()},
    )


def _prompt_files(directory: Path) -> Iterable[Path]:
    return (path for path in sorted(directory.glob("*.json")) if path.is_file())


@lru_cache(maxsize=4)
def load_prompts(directory: Path | None = None) -> Mapping[str, ItemPrompt]:
    base_dir = Path(directory) if directory else _PROMPT_DIR
    prompts: Dict[str, ItemPrompt] = {}
    for path in _prompt_files(base_dir):
        prompt = parse_prompt(json.loads(path.read_text(encoding="utf-8")), path.name)
        if prompt.variant in prompts:
            raise PromptDefinitionError(f"Duplicate prompt variant detected: {prompt.variant}")
        prompts[prompt.variant] = prompt
    if not prompts:
        raise RuntimeError(f"No prompt definitions found in {base_dir}")
    return prompts


def get_prompt(variant: str = "structured") -> ItemPrompt:
    prompts = load_prompts()
    try:
        return prompts[variant.lower()]
    except KeyError:
        raise KeyError(f"Unknown prompt variant '{variant}'. Available: {', '.join(sorted(prompts))}") from None


__all__ = ["ItemPrompt", "PLACEHOLDERS", "PromptDefinitionError", "get_prompt", "load_prompts", "parse_prompt"]
