"""Generation backends: an OpenAI-style HTTP client and an offline generator."""

from __future__ import annotations

import json
import logging
import os
import random
import time
from typing import Any, Dict, Mapping, Optional, Protocol
from uuid import uuid4

import requests

from engines.operations import format_answer, get_operation, sample_operands

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_SYSTEM_PROMPT = "You write short, correct maths practice items and reply with JSON only."

_LLM_LOGGER = logging.getLogger("itemflow.llm")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False


class TransientError(Exception):
    """Timeout, connection failure or retryable HTTP status from a backend."""


class CompletionBackend(Protocol):
    def complete(self, prompt: str, params: Mapping[str, Any]) -> str:
        raise NotImplementedError("CompletionBackend implementations must define complete().")


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ChatCompletionBackend:
    """Client for an OpenAI-compatible ``/v1/chat/completions`` endpoint."""

    def __init__(
        self,
        url: str,
        model: str = DEFAULT_MODEL,
        *,
        timeout: float = 30.0,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        self.url = url
        self.model = model
        self.timeout = timeout
        self.system_prompt = system_prompt

    def _messages(self, prompt: str, params: Mapping[str, Any]) -> list[dict]:
        return [
            {"role": "system", "content": str(params.get("system") or self.system_prompt)},
            {"role": "user", "content": prompt},
        ]

    def complete(self, prompt: str, params: Mapping[str, Any]) -> str:
        messages = self._messages(prompt, params)
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": float(params.get("temperature", 0.7)),
            "response_format": {"type": "json_object"},
        }
        if params.get("seed") is not None:
            payload["seed"] = int(params["seed"])

        # One budget covers both the full and the minimal request.
        budget = min(self.timeout, float(params.get("timeout_s") or self.timeout))
        call_id = str(uuid4())
        start = time.perf_counter()
        tokens_in: Optional[int] = None
        tokens_out: Optional[int] = None
        status: Optional[int] = None
        outcome = "error"
        try:
            try:
                r = requests.post(self.url, json=payload, timeout=budget)
                if r.status_code == 400:
                    # Fallback: send minimal payload
                    remaining = budget - (time.perf_counter() - start)
                    if remaining <= 0:
                        raise requests.Timeout("no time left for the minimal payload retry")
                    minimal = {"model": self.model, "messages": messages}
                    r = requests.post(self.url, json=minimal, timeout=remaining)
                status = r.status_code
                if status == 429 or status >= 500:
                    outcome = "transient"
                    raise TransientError(f"generation backend returned HTTP {status}")
                r.raise_for_status()
                data = r.json()
            except (requests.Timeout, requests.ConnectionError) as exc:
                outcome = "transient"
                raise TransientError(f"generation backend unreachable: {exc}") from exc

            usage = data.get("usage") if isinstance(data, dict) else None
            if isinstance(usage, dict):
                tokens_in = _coerce_int(usage.get("prompt_tokens") or usage.get("input_tokens"))
                tokens_out = _coerce_int(usage.get("completion_tokens") or usage.get("output_tokens"))

            try:
                content = data["choices"][0]["message"]["content"]
            except (KeyError, IndexError, TypeError):
                try:
                    content = data["choices"][0]["text"]
                except (KeyError, IndexError, TypeError):
                    raise ValueError(f"Unexpected completion response: {str(data)[:300]}") from None
            outcome = "ok"
            return str(content)
        finally:
            log_record = {
                "event": "llm_call",
                "call_id": call_id,
                "purpose": params.get("purpose", "generation"),
                "category": params.get("category"),
                "model": self.model,
                "status": status,
                "outcome": outcome,
                "latency_ms": int((time.perf_counter() - start) * 1000),
                "tokens_in": tokens_in,
                "tokens_out": tokens_out,
            }
            _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False))


class OfflineCompletionBackend:
    """Deterministic backend that synthesises items from calibration hints.

    The output has the same JSON shape a model is asked to produce, so the
    generator parses and checks it exactly like remote output.
    """

    model = "offline"

    def complete(self, prompt: str, params: Mapping[str, Any]) -> str:
        if params.get("purpose") == "calibration":
            return "{}"
        category = str(params.get("category") or "")
        spec = get_operation(category)
        rng = random.Random(int(params.get("seed") or 0))
        operands = sample_operands(category, params, rng)
        answer = spec.evaluate(operands)
        payload = {
            "category": category,
            "operands": operands,
            "answer": answer,
            "explanation": spec.explain(operands, answer),
        }
        _LLM_LOGGER.info(
            json.dumps(
                {
                    "event": "llm_call",
                    "purpose": params.get("purpose", "generation"),
                    "category": category,
                    "model": self.model,
                    "outcome": "ok",
                    "answer": format_answer(answer),
                },
                ensure_ascii=False,
            )
        )
        return json.dumps(payload)


def backend_from_env() -> CompletionBackend:
    """Return the HTTP backend when ``GENERATOR_URL`` is set, else the offline one."""

    url = os.getenv("GENERATOR_URL", "").strip()
    if not url:
        logger.info("GENERATOR_URL not set; using the offline generation backend")
        return OfflineCompletionBackend()
    raw_timeout = os.getenv("GENERATOR_TIMEOUT", "")
    try:
        timeout = float(raw_timeout) if raw_timeout else 30.0
    except ValueError:
        timeout = 30.0
    return ChatCompletionBackend(url, os.getenv("GENERATOR_MODEL") or DEFAULT_MODEL, timeout=timeout)


__all__ = [
    "ChatCompletionBackend",
    "CompletionBackend",
    "OfflineCompletionBackend",
    "TransientError",
    "backend_from_env",
]
