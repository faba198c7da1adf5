"""OpenAI-compatible API helpers for embeddings, match explanations, and prompt refinement."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any
import urllib.error
import urllib.request

from contract_inbox.models import Contract


_LOGGER = logging.getLogger(__name__)
_DEFAULT_BASE_URL = "https://api.openai.com/v1"
_MAX_EMBED_CHARS = 8000


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


@dataclass(frozen=True)
class OpenAIConfig:
    embed_model: str
    chat_model: str

    @classmethod
    def from_env(cls) -> "OpenAIConfig":
        return cls(
            embed_model=os.getenv("CI_EMBED_MODEL", "text-embedding-3-small"),
            chat_model=os.getenv("CI_CHAT_MODEL", "gpt-4o-mini"),
        )


class OpenAIClient:
    def __init__(self, *, api_key: str, base_url: str, timeout_seconds: float, max_retries: int) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = max(1.0, float(timeout_seconds))
        self.max_retries = max(0, int(max_retries))

    def _post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = json.dumps(payload).encode("utf-8")
        endpoint = f"{self.base_url}{path}"
        request = urllib.request.Request(
            endpoint,
            data=body,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            method="POST",
        )

        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                    return json.loads(response.read().decode("utf-8"))
            except urllib.error.HTTPError as exc:
                response_body = exc.read().decode("utf-8", errors="ignore")
                retryable = exc.code in {408, 409, 429, 500, 502, 503, 504}
                if retryable and attempt < self.max_retries:
                    time.sleep(0.4 * (2**attempt))
                    continue
                raise RuntimeError(
                    f"OpenAI request failed ({exc.code}) at {path}: {response_body or exc.reason}"
                ) from exc
            except urllib.error.URLError as exc:
                last_error = exc
                if attempt < self.max_retries:
                    time.sleep(0.4 * (2**attempt))
                    continue
                raise RuntimeError(f"OpenAI request failed at {path}: {exc.reason}") from exc

        raise RuntimeError(f"OpenAI request failed at {path}: {last_error}")

    @staticmethod
    def _extract_chat_text(payload: dict[str, Any]) -> str:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return ""
        first = choices[0]
        if not isinstance(first, dict):
            return ""
        message = first.get("message")
        if not isinstance(message, dict):
            return ""
        content = message.get("content")
        if isinstance(content, str):
            return content.strip()
        return ""

    @staticmethod
    def _extract_embeddings(payload: dict[str, Any]) -> list[list[float]]:
        rows = payload.get("data")
        if not isinstance(rows, list):
            return []

        indexed: list[tuple[int, list[float]]] = []
        for position, row in enumerate(rows):
            if not isinstance(row, dict) or not isinstance(row.get("embedding"), list):
                continue
            try:
                vector = [float(value) for value in row["embedding"]]
            except (TypeError, ValueError):
                continue
            index = row.get("index")
            indexed.append((index if isinstance(index, int) else position, vector))

        indexed.sort(key=lambda item: item[0])
        return [vector for _index, vector in indexed]

    def chat_text(
        self,
        *,
        prompt: str,
        model: str,
        system: str | None = None,
        temperature: float = 0.2,
        max_tokens: int | None = None,
    ) -> str:
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens is not None:
            payload["max_tokens"] = int(max_tokens)
        response = self._post_json("/chat/completions", payload)
        return self._extract_chat_text(response)

    def embed_texts(self, *, texts: list[str], model: str) -> list[list[float]]:
        cleaned = [str(text).strip()[:_MAX_EMBED_CHARS] for text in texts if str(text).strip()]
        if not cleaned:
            return []

        payload = {
            "model": model,
            "input": cleaned,
            "encoding_format": "float",
        }
        response = self._post_json("/embeddings", payload)
        vectors = self._extract_embeddings(response)
        if len(vectors) != len(cleaned):
            raise RuntimeError("OpenAI embedding response shape mismatch.")
        return vectors


def _load_private_endpoint_overrides() -> dict[str, Any]:
    config_path = os.getenv("CI_OPENAI_CONFIG_PATH", "").strip()
    if not config_path:
        return {}

    path = Path(config_path)
    if not path.exists() or not path.is_file():
        return {}

    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        _LOGGER.warning("Ignoring unreadable OpenAI config override at %s.", path)
        return {}

    if not isinstance(parsed, dict):
        return {}
    return parsed


def api_key_configured() -> bool:
    if os.getenv("OPENAI_API_KEY", "").strip():
        return True
    return bool(str(_load_private_endpoint_overrides().get("api_key", "")).strip())


def make_client() -> OpenAIClient:
    overrides = _load_private_endpoint_overrides()

    api_key = os.getenv("OPENAI_API_KEY", "").strip()
    if not api_key:
        api_key = str(overrides.get("api_key", "")).strip()
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY is not set.")

    timeout_seconds = _env_float("CI_OPENAI_TIMEOUT_SECONDS", float(overrides.get("timeout_seconds", 20.0) or 20.0))
    max_retries = _env_int("CI_OPENAI_MAX_RETRIES", int(overrides.get("max_retries", 1) or 1))
    base_url = os.getenv("OPENAI_API_BASE_URL", "").strip() or str(
        overrides.get("base_url", _DEFAULT_BASE_URL)
    ).strip()

    return OpenAIClient(
        api_key=api_key,
        base_url=base_url or _DEFAULT_BASE_URL,
        timeout_seconds=timeout_seconds,
        max_retries=max_retries,
    )


class OpenAIEmbedder:
    """Embedder backed by the embeddings endpoint."""

    def __init__(self, client: OpenAIClient, *, model: str) -> None:
        self.client = client
        self.model = model

    def embed(self, text: str) -> list[float]:
        vectors = self.client.embed_texts(texts=[text], model=self.model)
        if not vectors:
            raise RuntimeError("Cannot embed empty text.")
        return vectors[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return self.client.embed_texts(texts=texts, model=self.model)


def explain_match(
    client: OpenAIClient,
    *,
    query: str,
    contract: Contract,
    model: str,
) -> str:
    value_text = f"GBP {contract.value:,.0f}" if contract.value is not None else "Not specified"
    prompt = (
        "You are helping explain why a contract matches a user's search query.\n\n"
        f'User\'s query: "{query}"\n\n'
        "Contract:\n"
        f"Title: {contract.title}\n"
        f"Authority: {contract.authority}\n"
        f"Description: {contract.description[:500]}\n"
        f"Value: {value_text}\n"
        f"Classification: {contract.buyer_classification}\n\n"
        "Write a brief 1-2 sentence explanation of why this contract is relevant to the query. "
        "Focus on the key matching aspects (topic alignment, buyer type, value range)."
    )
    text = client.chat_text(
        prompt=prompt,
        model=model,
        system="You explain contract relevance clearly and concisely.",
        temperature=0.7,
        max_tokens=150,
    )
    return text or "Relevant to your search query."


def refine_prompt_with_feedback(
    client: OpenAIClient,
    *,
    original_prompt: str,
    hide_reasons: list[str],
    model: str,
) -> str:
    if not hide_reasons:
        return original_prompt

    system = (
        "You refine a search query for public sector contracts. The user hid several contracts that had "
        "high match scores, so the query is too broad or misses their intent.\n"
        "Write a refined query that keeps the core intent, excludes what the hide reasons reject, "
        "emphasises what the user does want, and stays to 1-2 sentences of plain language.\n"
        "Return ONLY the refined query."
    )
    reasons = "\n".join(f"{index}. {reason}" for index, reason in enumerate(hide_reasons, start=1))
    prompt = (
        f'Original search query: "{original_prompt}"\n\n'
        f"The user hid contracts with HIGH match scores for these reasons:\n{reasons}\n\n"
        "Generate a refined search query."
    )
    try:
        refined = client.chat_text(prompt=prompt, model=model, system=system, temperature=0.3)
    except RuntimeError:
        _LOGGER.warning("Prompt refinement failed; keeping the original prompt.", exc_info=True)
        return original_prompt
    return refined.strip().strip('"').strip() or original_prompt
