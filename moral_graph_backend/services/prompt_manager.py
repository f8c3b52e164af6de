"""
Prompt templates for the LLM arbiter.

Templates live in prompts.json next to the package and use string.Template
placeholders (`$context`). The file is re-read whenever its mtime changes,
so prompt tuning does not need a worker restart.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Any, Dict, List, Optional

DEFAULT_PROMPTS_FILE = Path(__file__).resolve().parent.parent / "prompts.json"


@dataclass(frozen=True)
class PromptTemplate:
    name: str
    template: str
    temperature: float
    max_tokens: int
    description: str = ""

    def render(self, variables: Optional[Dict[str, Any]] = None) -> str:
        try:
            return Template(self.template).substitute(variables or {})
        except KeyError as exc:
            raise ValueError(f"Prompt {self.name!r} needs variable {exc.args[0]!r}") from exc


class PromptManager:
    def __init__(self, prompts_file: Optional[Path] = None):
        self.prompts_file = Path(prompts_file) if prompts_file else DEFAULT_PROMPTS_FILE
        self._templates: Dict[str, PromptTemplate] = {}
        self._loaded_mtime: Optional[float] = None
        self.reload()

    def reload(self) -> None:
        if not self.prompts_file.exists():
            raise FileNotFoundError(f"Prompts file not found: {self.prompts_file}")

        raw = json.loads(self.prompts_file.read_text())
        defaults = raw.get("defaults", {})
        self._templates = {
            name: PromptTemplate(
                name=name,
                template=entry.get("template", ""),
                temperature=entry.get("temperature", defaults.get("default_temperature", 0.2)),
                max_tokens=entry.get("max_tokens", defaults.get("default_max_tokens", 4000)),
                description=entry.get("description", ""),
            )
            for name, entry in raw.get("prompts", {}).items()
        }
        self._loaded_mtime = self.prompts_file.stat().st_mtime

    def _refresh(self) -> None:
        if self.prompts_file.exists() and self.prompts_file.stat().st_mtime != self._loaded_mtime:
            self.reload()

    def get(self, prompt_name: str) -> PromptTemplate:
        """Raises KeyError for an unknown prompt."""
        self._refresh()
        try:
            return self._templates[prompt_name]
        except KeyError:
            raise KeyError(f"Prompt not found: {prompt_name}") from None

    def render(self, prompt_name: str, variables: Optional[Dict[str, Any]] = None) -> str:
        return self.get(prompt_name).render(variables)

    def names(self) -> List[str]:
        self._refresh()
        return list(self._templates)
