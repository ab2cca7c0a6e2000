from __future__ import annotations

import json
import logging
import os
import re
import urllib.error
import urllib.request
from typing import Any, Protocol

import jsonschema

from ..utils import log_event

API_KEY_ENV = "SD_LLM_API_KEY"

SUMMARY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "description": {"type": "string"},
        "summary": {"type": "string"},
    },
    "required": ["description", "summary"],
}

SYSTEM_PROMPT = (
    "You are creating concise, informative summaries for an llms.txt file. "
    "Focus on the main purpose, key information and technical details that would "
    "be valuable for LLMs. Respond with a JSON object only."
)


class Summarizer(Protocol):
    def summarize(self, text: str, prompt: str, *, url: str = "", model: str | None = None) -> dict[str, str]:
        ...


class ChatCompletionSummarizer:
    """Summaries from an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        base_url: str,
        model: str,
        *,
        api_key: str | None = None,
        timeout_seconds: int = 60,
        temperature: float = 0.3,
        max_tokens: int = 500,
        max_input_chars: int = 12000,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key if api_key is not None else os.environ.get(API_KEY_ENV)
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_input_chars = max_input_chars
        self.logger = logger or logging.getLogger("sitedigest.llm")

    def summarize(self, text: str, prompt: str, *, url: str = "", model: str | None = None) -> dict[str, str]:
        user = f"{prompt}\n\nURL: {url}\n\n{text[: self.max_input_chars]}"
        payload = {
            "model": model or self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }
        response = self._http_request(payload)
        raw = _read_content(response)
        parsed = _maybe_parse_json(raw)
        validation = _validate_json(SUMMARY_SCHEMA, parsed)
        if not validation["ok"]:
            log_event(
                self.logger,
                logging.WARNING,
                "summary_schema_invalid",
                url=url,
                error=validation["error"][:200],
            )
            raise ValueError("summary_schema_invalid")
        return {
            "description": parsed["description"].strip(),
            "summary": parsed["summary"].strip(),
        }

    def _http_request(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self.base_url + "/chat/completions", data=data, method="POST"
        )
        request.add_header("Content-Type", "application/json")
        if self.api_key:
            request.add_header("Authorization", f"Bearer {self.api_key}")
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raw = exc.read().decode("utf-8", errors="ignore")
            raise ValueError(f"http_error {exc.code}: {raw[:500]}") from exc
        except urllib.error.URLError as exc:
            raise ValueError(f"network_error: {exc}") from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return {"raw": raw}


def _read_content(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise ValueError("llm_missing_choices")
    return choices[0]["message"]["content"] or ""


def _maybe_parse_json(raw: str) -> Any:
    text = raw.strip()
    fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", text, re.DOTALL)
    if fenced:
        text = fenced.group(1)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return raw


def _validate_json(schema: dict[str, Any], payload: Any) -> dict[str, Any]:
    try:
        jsonschema.validate(payload, schema)
        return {"ok": True}
    except jsonschema.ValidationError as exc:
        return {"ok": False, "error": str(exc)}
