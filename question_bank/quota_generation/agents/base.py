"""
Base Agent Class

Common plumbing for the agents that talk to the external language model:
- OpenAI client pointed at OpenRouter
- Transport retry with exponential backoff
- Call and token accounting (shared by concurrent section tasks)
"""

import logging
import threading
from typing import Optional

import openai
from openai import OpenAI
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_not_exception_type
)

logger = logging.getLogger(__name__)


OPENROUTER_BASE_URL = 'https://openrouter.ai/api/v1'

# Errors that retrying cannot fix
FATAL_API_ERRORS = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.NotFoundError,
)


class BaseAgent:
    """Base class for LLM-backed agents."""

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: Optional[str] = OPENROUTER_BASE_URL,
        name: str = "BaseAgent",
        client: Optional[OpenAI] = None
    ):
        """
        Initialize the agent.

        Args:
            model: Model identifier (e.g., 'anthropic/claude-sonnet-4')
            api_key: API key for authentication
            base_url: Base URL (OpenRouter by default)
            name: Agent name for logging
            client: Pre-built client (tests inject a mock here)
        """
        self.model = model
        self.name = name
        self.api_call_count = 0
        self.input_tokens = 0
        self.output_tokens = 0
        self._lock = threading.Lock()

        if client is not None:
            self.client = client
        else:
            client_kwargs = {'api_key': api_key}
            if base_url:
                client_kwargs['base_url'] = base_url
            self.client = OpenAI(**client_kwargs)

        logger.debug(f"{name} initialized with model: {model}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_not_exception_type(FATAL_API_ERRORS),
        reraise=True
    )
    def _call_llm(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        json_mode: bool = False,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None
    ) -> str:
        """
        Make LLM API call with retry logic.

        Args:
            prompt: User message content
            system_prompt: Optional system message
            json_mode: Enable JSON response format
            temperature: Sampling temperature
            max_tokens: Optional max tokens limit

        Returns:
            str: LLM response content

        Raises:
            Exception: On API failure after retries (fatal errors are not retried)
        """
        messages = []

        if system_prompt:
            messages.append({'role': 'system', 'content': system_prompt})

        messages.append({'role': 'user', 'content': prompt})

        payload = {
            'model': self.model,
            'messages': messages,
            'temperature': temperature
        }

        if json_mode:
            payload['response_format'] = {'type': 'json_object'}

        if max_tokens:
            payload['max_tokens'] = max_tokens

        logger.debug(f"{self.name} calling LLM: model={self.model}, temp={temperature}")

        response = self.client.chat.completions.create(**payload)

        with self._lock:
            self.api_call_count += 1
            usage = getattr(response, 'usage', None)
            prompt_tokens = getattr(usage, 'prompt_tokens', None)
            completion_tokens = getattr(usage, 'completion_tokens', None)
            if isinstance(prompt_tokens, int):
                self.input_tokens += prompt_tokens
            if isinstance(completion_tokens, int):
                self.output_tokens += completion_tokens

        if not response.choices:
            raise ValueError("No choices returned from API")

        content = response.choices[0].message.content
        if content is None:
            raise ValueError("API returned None content")

        logger.debug(f"{self.name} received response: {len(content)} chars")
        return content

    def reset_call_count(self) -> None:
        """Reset the API call and token counters."""
        with self._lock:
            self.api_call_count = 0
            self.input_tokens = 0
            self.output_tokens = 0
