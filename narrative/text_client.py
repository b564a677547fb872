"""
text_client.py
---------------
Thin client for the external text-generation collaborator.

Talks to any OpenAI-compatible chat-completions endpoint. Each call is
attempted once with a timeout (max_retries=0); every client-side failure
is mapped to TextGenerationError so callers only handle one type.
"""

import logging
import os
from typing import Any, Dict, Optional

import openai
from openai import OpenAI

from config.config_loader import get_narrative_config
from core.exceptions import TextGenerationError

logger = logging.getLogger(__name__)


class TextGenerationClient:
    """
    Usage:
        client = TextGenerationClient.from_config()
        text = client.generate(system_prompt, user_prompt)
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        timeout_seconds: float = 10,
        max_tokens: int = 200,
        temperature: float = 0.3,
        client: Optional[Any] = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = client or OpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout_seconds,
            max_retries=0,
        )

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> Optional["TextGenerationClient"]:
        """
        Builds a client from the narrative config block.

        Returns:
            None when the API key environment variable is unset.
        """
        cfg = config or get_narrative_config()
        api_key = os.environ.get(cfg["api_key_env"])
        if not api_key:
            return None
        return cls(
            api_key=api_key,
            base_url=cfg["base_url"],
            model=cfg["model"],
            timeout_seconds=cfg["timeout_seconds"],
            max_tokens=cfg["max_tokens"],
            temperature=cfg["temperature"],
        )

    def generate(self, system_prompt: str, user_prompt: str, max_tokens: Optional[int] = None) -> str:
        """
        Single chat completion.

        Raises:
            TextGenerationError: On timeout, rate limit, quota exhaustion,
                any other API error, or an empty response.
        """
        try:
            completion = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=max_tokens or self.max_tokens,
                temperature=self.temperature,
            )
        except openai.APITimeoutError as e:
            raise TextGenerationError(f"Text service timed out: {e}", retryable=True) from e
        except openai.RateLimitError as e:
            raise TextGenerationError("Rate limit exceeded. Please try again later.", retryable=True) from e
        except openai.APIStatusError as e:
            if e.status_code == 402:
                raise TextGenerationError("Payment required. Please add credits to continue.") from e
            raise TextGenerationError(f"Text service error: {e.status_code}") from e
        except openai.OpenAIError as e:
            raise TextGenerationError(f"Text service unavailable: {e}") from e

        choices = getattr(completion, "choices", None) or []
        content = choices[0].message.content if choices else None
        if not content or not content.strip():
            raise TextGenerationError("No response from text service")
        return content.strip()
