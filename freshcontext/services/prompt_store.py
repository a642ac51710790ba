"""Prompt catalog backed by ``freshcontext/prompts/prompts.json``.

The catalog is a tree of sections (``chat``, ``chat.context``, ``research.draft``)
whose leaves are ``string.Template`` strings, addressed by dotted keys such as
``chat.context.intro``. Message prompts are sections holding a ``system`` and a
``user`` leaf. The file is re-read when its mtime changes.
"""
from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any

from freshcontext.exceptions import PromptCatalogError

PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"
MESSAGE_ROLES = ("system", "user")

_catalog: dict[str, Any] | None = None
_catalog_mtime_ns: int | None = None


def _load_catalog() -> dict[str, Any]:
    global _catalog, _catalog_mtime_ns
    mtime_ns = PROMPTS_PATH.stat().st_mtime_ns
    if _catalog is not None and _catalog_mtime_ns == mtime_ns:
        return _catalog

    payload = json.loads(PROMPTS_PATH.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise PromptCatalogError(f"{PROMPTS_PATH.name} must hold a JSON object of prompt sections")
    _catalog, _catalog_mtime_ns = payload, mtime_ns
    return payload


def _resolve(key: str) -> Any:
    node: Any = _load_catalog()
    walked: list[str] = []
    for part in key.split("."):
        section = ".".join(walked) or "<root>"
        if not isinstance(node, dict):
            raise PromptCatalogError(f"Prompt '{section}' is a template, so '{key}' cannot go below it")
        if part not in node:
            raise PromptCatalogError(
                f"Unknown prompt '{key}': section '{section}' has no '{part}' "
                f"(available: {', '.join(sorted(node)) or 'none'})"
            )
        walked.append(part)
        node = node[part]
    return node


def get_prompt(key: str) -> str:
    node = _resolve(key)
    if isinstance(node, dict):
        raise PromptCatalogError(
            f"Prompt '{key}' is a section; use one of: {', '.join(f'{key}.{k}' for k in sorted(node))}"
        )
    if not isinstance(node, str):
        raise PromptCatalogError(f"Prompt '{key}' must be a string, got {type(node).__name__}")
    return node


def render_prompt(key: str, **values: Any) -> str:
    template = Template(get_prompt(key))
    try:
        return template.substitute(**values)
    except KeyError as exc:
        expected = sorted({m[1] or m[2] for m in template.pattern.findall(template.template) if m[1] or m[2]})
        raise PromptCatalogError(
            f"Prompt '{key}' needs ${exc.args[0]} (placeholders: {', '.join(expected)})"
        ) from exc


def render_messages(key: str, **values: Any) -> list[dict[str, str]]:
    """System + user message pair for a section holding ``system`` and ``user`` leaves."""
    section = _resolve(key)
    missing = [role for role in MESSAGE_ROLES if not isinstance(section, dict) or role not in section]
    if missing:
        raise PromptCatalogError(f"Prompt '{key}' is not a message prompt; it lacks {' and '.join(missing)}")
    return [{"role": role, "content": render_prompt(f"{key}.{role}", **values)} for role in MESSAGE_ROLES]


def clear_prompt_cache() -> None:
    global _catalog, _catalog_mtime_ns
    _catalog = None
    _catalog_mtime_ns = None
