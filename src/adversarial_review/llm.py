from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Searches the environment first, then falls back to a ``.env`` file at the
    given ``repo_root`` (or cwd if not specified).

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for critic and fix agents")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_completion_tokens: int | None = None,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with validated API key and production defaults.

    ``max_retries`` is the bounded backoff for transient upstream errors (rate
    limits, 5xx, network). The review loop itself never retries a model call.

    Args:
        model_name: OpenAI model identifier (e.g. 'gpt-4o', 'gpt-4o-mini').
        temperature: Sampling temperature.
        timeout: Request timeout in seconds.
        max_retries: Maximum number of retry attempts on transient failures.
        max_completion_tokens: Maximum tokens for the completion response.
        repo_root: Optional repo root for .env file resolution.

    Raises:
        ValueError: If model_name is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": max_retries,
    }
    if max_completion_tokens is not None:
        kwargs["max_completion_tokens"] = max_completion_tokens
    return ChatOpenAI(**kwargs)


def _content_to_text(content: Any) -> str:
    """Recursively extract plain text from heterogeneous LLM response content."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
                continue
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    chunks.append(text_value)
                    continue
                nested = item.get("content")
                if nested is not None:
                    chunks.append(_content_to_text(nested))
                    continue
                chunks.append(json.dumps(item, sort_keys=True))
                continue
            chunks.append(str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict):
        if "content" in content:
            return _content_to_text(content["content"])
        return json.dumps(content, sort_keys=True)
    return str(content)


def extract_text(response: Any) -> str:
    """Extract the final text content from a chat model or agent response.

    Navigates dicts with ``messages``/``output``/``content`` keys and objects
    with a ``content`` attribute to produce a single text string.
    """
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        if "messages" in response and isinstance(response["messages"], list) and response["messages"]:
            return extract_text(response["messages"][-1])
        if "output" in response:
            return extract_text(response["output"])
        if "content" in response:
            return _content_to_text(response["content"])
    content = getattr(response, "content", None)
    if content is not None:
        return _content_to_text(content)
    return _content_to_text(response)


def invoke_text(*, model_name: str, system_prompt: str, user_message: str, repo_root: Path | None = None) -> str:
    """Send one system + user message pair and return the response text."""
    model = get_chat_model(model_name=model_name, repo_root=repo_root)
    response = model.invoke([SystemMessage(content=system_prompt), HumanMessage(content=user_message)])
    text = extract_text(response)
    logger.debug("model=%s returned %d characters", model_name, len(text))
    return text
