"""
Optional natural-language enrichment for monitor and adaptation results.

The engines treat a Summarizer as an independently failable capability: any
failure surfaces as EnrichmentUnavailableError and the rule-based result
stands on its own.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional, Protocol

import httpx

from ..exceptions import ConfigurationError, EnrichmentUnavailableError
from .settings_config_service import get_settings_service


class Summarizer(Protocol):
    def summarize(self, kind: str, payload: Dict[str, Any]) -> str: ...

    def suggest_adaptations(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]: ...


SYSTEM_PROMPT = (
    "You are a study coach for a learner preparing for a certification exam. "
    "Be concise and specific."
)


class HttpSummarizer:
    """Summarizer backed by an Ollama or OpenAI-compatible chat endpoint"""

    def __init__(
        self,
        provider: str,
        url: str,
        model: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        if provider not in ("ollama", "openai"):
            raise ConfigurationError(f"Unsupported summarizer provider: {provider}")
        self.provider = provider
        self.url = url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.logger = logging.getLogger(__name__)
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout, connect=5.0))

    def close(self):
        self._client.close()

    def _complete(self, prompt: str) -> str:
        start_time = time.time()
        try:
            if self.provider == "ollama":
                response = self._client.post(
                    f"{self.url}/api/generate",
                    json={
                        "model": self.model,
                        "prompt": prompt,
                        "system": SYSTEM_PROMPT,
                        "stream": False,
                    },
                )
                response.raise_for_status()
                content = response.json()["response"]
            else:
                headers = {"Content-Type": "application/json"}
                if self.api_key:
                    headers["Authorization"] = f"Bearer {self.api_key}"
                response = self._client.post(
                    f"{self.url}/v1/chat/completions",
                    headers=headers,
                    json={
                        "model": self.model,
                        "messages": [
                            {"role": "system", "content": SYSTEM_PROMPT},
                            {"role": "user", "content": prompt},
                        ],
                    },
                )
                response.raise_for_status()
                content = response.json()["choices"][0]["message"]["content"]
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
            self.logger.warning(f"Summarizer call failed: {e}")
            raise EnrichmentUnavailableError(f"Summarizer unavailable: {e}") from e

        self.logger.info(f"Summarizer call completed in {time.time() - start_time:.2f}s")
        return str(content).strip()

    def summarize(self, kind: str, payload: Dict[str, Any]) -> str:
        prompt = (
            f"Summarize this {kind} report for the learner in 2-3 sentences.\n\n"
            f"{json.dumps(payload, default=str)}"
        )
        return self._complete(prompt)

    def suggest_adaptations(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        prompt = (
            "Suggest up to 3 adjustments to this study plan. Reply with a JSON list "
            'of objects with keys "type", "description" and "reason".\n\n'
            f"{json.dumps(payload, default=str)}"
        )
        text = self._complete(prompt)
        start, end = text.find("["), text.rfind("]")
        if start == -1 or end <= start:
            raise EnrichmentUnavailableError("Summarizer reply contained no JSON list")
        try:
            suggestions = json.loads(text[start : end + 1])
        except json.JSONDecodeError as e:
            raise EnrichmentUnavailableError(f"Summarizer reply was not valid JSON: {e}") from e
        return [s for s in suggestions if isinstance(s, dict)]


_summarizer = None
_summarizer_loaded = False


def get_summarizer() -> Optional[Summarizer]:
    """Get the configured summarizer, or None when enrichment is disabled"""
    global _summarizer, _summarizer_loaded
    if not _summarizer_loaded:
        config = get_settings_service().get_summarizer_defaults()
        if config["enabled"]:
            _summarizer = HttpSummarizer(
                provider=config["provider"],
                url=config["url"],
                model=config["model"],
                api_key=config["api_key"] or None,
                timeout=config["timeout_seconds"],
            )
        _summarizer_loaded = True
    return _summarizer


def reset_summarizer():
    """Forget the cached summarizer. Useful for testing."""
    global _summarizer, _summarizer_loaded
    if _summarizer is not None:
        _summarizer.close()
    _summarizer = None
    _summarizer_loaded = False
