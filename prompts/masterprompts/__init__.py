"""Utilities for loading the per-operation master prompts."""
from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Mapping, Optional

_PROMPT_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class MasterPrompt:
    """System instructions, output schema and sampling defaults for one operation."""

    id: str
    operation: str
    prompt_version: str
    system_text: str
    output_schema: str
    temperature: Optional[float]
    max_tokens: Optional[int]

    @property
    def normalized_operation(self) -> str:
        return self.operation.lower()


def _load_prompt(path: Path) -> MasterPrompt:
    payload = json.loads(path.read_text(encoding="utf-8"))
    required = {"id", "operation", "prompt_version", "system_text", "output_schema"}
    missing = sorted(required - payload.keys())
    if missing:
        raise ValueError(f"Prompt file {path.name} missing keys: {', '.join(missing)}")
    schema = payload["output_schema"]
    if isinstance(schema, (dict, list)):
        schema = json.dumps(schema, ensure_ascii=False, indent=2)
    if not str(schema).strip():
        raise ValueError(f"Prompt file {path.name} has an empty output_schema")
    temperature = payload.get("temperature")
    max_tokens = payload.get("max_tokens")
    return MasterPrompt(
        id=str(payload["id"]),
        operation=str(payload["operation"]),
        prompt_version=str(payload["prompt_version"]),
        system_text=str(payload["system_text"]),
        output_schema=str(schema),
        temperature=float(temperature) if temperature is not None else None,
        max_tokens=int(max_tokens) if max_tokens is not None else None,
    )


@lru_cache(maxsize=1)
def load_prompts(directory: Path | None = None) -> Mapping[str, MasterPrompt]:
    """Load every ``*.json`` prompt under ``directory``, keyed by operation."""
    base_dir = Path(directory) if directory else _PROMPT_DIR
    prompts: Dict[str, MasterPrompt] = {}
    for file_path in sorted(p for p in base_dir.glob("*.json") if p.is_file()):
        prompt = _load_prompt(file_path)
        if prompt.normalized_operation in prompts:
            raise ValueError(f"Two prompt files declare operation '{prompt.operation}'")
        prompts[prompt.normalized_operation] = prompt
    if not prompts:
        raise RuntimeError(f"No prompt files found in {base_dir}")
    return prompts


def get_prompt(operation: str) -> MasterPrompt:
    prompts = load_prompts()
    key = str(operation).lower()
    if key not in prompts:
        raise KeyError(f"Unknown master prompt operation '{operation}'. Available: {', '.join(sorted(prompts))}")
    return prompts[key]


__all__ = ["MasterPrompt", "load_prompts", "get_prompt"]
