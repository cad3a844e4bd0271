# completion.py
"""OpenAI chat completion wrapper used for WhatsApp replies."""
from __future__ import annotations

import logging
from typing import Any, List, Optional

from openai import OpenAI

from transcript_store import Turn

logger = logging.getLogger("completion")


class OpenAICompleter:
    def __init__(self, api_key: Optional[str], model: str = "gpt-3.5-turbo", client: Any = None):
        self.api_key = api_key
        self.model = model
        self._client = client

    @property
    def enabled(self) -> bool:
        return self._client is not None or bool(self.api_key)

    def _get_client(self) -> Any:
        if self._client is None:
            if not self.api_key:
                raise RuntimeError("OPEN_AI_KEY is required to request completions.")
            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def complete(self, transcript: List[Turn]) -> str:
        messages = [{"role": turn.role, "content": turn.content} for turn in transcript]
        client = self._get_client()
        try:
            completion = client.chat.completions.create(model=self.model, messages=messages)
        except Exception:
            logger.exception("Completion request failed (model=%s, turns=%s)", self.model, len(messages))
            raise
        return completion.choices[0].message.content or ""
