from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

from dotenv import load_dotenv
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .oracle import (
    DOMAIN_GENERATION,
    SUBDOMAIN_GENERATION,
    TASK_GENERATION,
    Deferred,
    DeferringOracle,
    GenerativeOracle,
    OracleResponse,
    parse_structured_text,
)
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3

_SYSTEM_PROMPTS: dict[str, str] = {
    DOMAIN_GENERATION: (
        "You are a curriculum architect. Propose top-level learning domains that together form a "
        "comprehensive roadmap toward the learner's goal. Domains must be short noun phrases. "
        "Return a JSON array of strings only."
    ),
    SUBDOMAIN_GENERATION: (
        "You are a curriculum architect. Propose logical sub-domains (1-3 word noun phrases) that sit "
        "under the given domain. Return a JSON array of strings only."
    ),
    TASK_GENERATION: (
        "You are an expert in learning design. Generate actionable, concrete tasks tailored to the "
        "learner's level and context. No templates or generic placeholders. Return a JSON array of "
        "objects with keys: title, description, difficulty (1-5), duration (minutes), prerequisites "
        "(array of titles, may be empty)."
    ),
}


class SupportsAsyncInvoke(Protocol):
    """Any LangChain-compatible runnable that supports ainvoke."""

    async def ainvoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required when PLANNER_ORACLE=openai")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.2,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with validated API key.

    Timeout and retry policy live here, on the client, rather than in the planner.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(
        model=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
    )


def content_to_text(content: Any) -> str:
    """Extract plain text from heterogeneous chat response content."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                chunks.append(item["text"])
            else:
                chunks.append(str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    return str(content)


def render_messages(kind: str, payload: dict[str, Any]) -> list[SystemMessage | HumanMessage]:
    system = _SYSTEM_PROMPTS.get(kind)
    if system is None:
        raise ValueError(f"Unknown oracle request kind: {kind}")
    instruction = str(payload.get("instruction", "")).strip()
    details = {key: value for key, value in payload.items() if key != "instruction"}
    body = json.dumps(details, indent=2, sort_keys=True, default=str)
    human = f"{instruction}\n\nRequest:\n{body}" if instruction else f"Request:\n{body}"
    return [SystemMessage(content=system), HumanMessage(content=human)]


class ChatModelOracle:
    """Oracle backed by a LangChain chat model.

    Transport failures are reported as :class:`Deferred` so the caller can finish the
    request out-of-band instead of losing it.
    """

    def __init__(self, model: SupportsAsyncInvoke) -> None:
        self.model = model

    async def propose(self, kind: str, payload: dict[str, Any]) -> OracleResponse:
        messages = render_messages(kind, payload)
        try:
            response = await self.model.ainvoke(messages)
        except Exception as exc:  # noqa: BLE001 - any client failure degrades to a deferred request.
            logger.warning("Oracle call for %s failed: %s", kind, exc)
            return Deferred(descriptor={"kind": kind, "payload": dict(payload)}, reason="oracle_unavailable")
        text = content_to_text(getattr(response, "content", response))
        return parse_structured_text(text)


def build_oracle(settings: RuntimeSettings, *, repo_root: Path | None = None) -> GenerativeOracle:
    """Construct the oracle selected by ``PLANNER_ORACLE``."""
    if settings.oracle_mode == "deferred":
        return DeferringOracle()
    model = get_chat_model(
        model_name=settings.model_name,
        temperature=settings.temperature,
        timeout=settings.oracle_timeout,
        max_retries=settings.oracle_max_retries,
        repo_root=repo_root,
    )
    return ChatModelOracle(model)
