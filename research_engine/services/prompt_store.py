"""JSON prompt catalog, reloaded when the file changes on disk."""
from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any


PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"

_cache: dict[str, Any] = {"mtime_ns": None, "catalog": None}


def load_catalog(path: Path = PROMPTS_PATH) -> dict[str, Any]:
    mtime_ns = path.stat().st_mtime_ns
    if _cache["catalog"] is not None and _cache["mtime_ns"] == mtime_ns:
        return _cache["catalog"]

    catalog = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(catalog, dict):
        raise ValueError(f"Prompt catalog at {path} must be a JSON object.")
    _cache["catalog"] = catalog
    _cache["mtime_ns"] = mtime_ns
    return catalog


def get_prompt(key: str) -> str:
    """Look up a dotted key such as ``planner.system``."""
    node: Any = load_catalog()
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            raise KeyError(f"Prompt key not found: {key}")
        node = node[part]
    if isinstance(node, list):
        node = "\n".join(str(line) for line in node)
    if not isinstance(node, str):
        raise TypeError(f"Prompt key must map to text: {key}")
    return node


def render_prompt(key: str, **values: Any) -> str:
    template = Template(get_prompt(key))
    try:
        return template.substitute(**values)
    except KeyError as exc:
        raise KeyError(f"Missing template value '{exc.args[0]}' for prompt '{key}'") from exc


def clear_prompt_cache() -> None:
    _cache["catalog"] = None
    _cache["mtime_ns"] = None
