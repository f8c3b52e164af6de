"""
LLM Arbiter

Wraps the language model behind two call shapes:

- generate_structured(prompt, data, schema): returns a validated pydantic object
- generate_text(prompt, message): returns free text

Online mode talks to Anthropic's Messages API; local mode talks to an
OpenAI-compatible chat completions server. Output that does not validate
against the schema is retried a bounded number of times and then surfaced as
SchemaViolation.
"""

import json
import logging
from typing import Any, Dict, Optional, Type, TypeVar

import anthropic
from pydantic import BaseModel, ValidationError

from moral_graph_backend.config import ANTHROPIC_API_KEY, ONLINE_CHAT_MODEL, STRUCTURED_OUTPUT_ATTEMPTS
from moral_graph_backend.services.errors import ProviderRequestError, SchemaViolation, TransientProviderError
from moral_graph_backend.services.llm_config import merge_llm_config
from moral_graph_backend.services.local_llm_client import LocalLLMClient, extract_json_from_text
from moral_graph_backend.services.prompt_manager import PromptManager

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)

TRANSIENT_ANTHROPIC_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
)


class LLMArbiter:
    """Structured and free-text generation on top of a configured LLM backend."""

    def __init__(
        self,
        config: Dict[str, Any],
        prompt_manager: PromptManager,
        anthropic_client: Optional[anthropic.AsyncAnthropic] = None,
        local_client: Optional[LocalLLMClient] = None,
        max_attempts: int = STRUCTURED_OUTPUT_ATTEMPTS,
    ):
        self.config = config
        self.mode = config.get("mode", "online")
        self.prompt_manager = prompt_manager
        self.anthropic_client = anthropic_client
        self.local_client = local_client
        self.max_attempts = max(1, max_attempts)

        if self.mode == "local" and self.local_client is None:
            raise ValueError("Local LLM mode requires a LocalLLMClient")
        if self.mode != "local" and self.anthropic_client is None:
            raise ValueError("Online LLM mode requires an Anthropic client")

    @classmethod
    def from_config(
        cls,
        config: Optional[Dict[str, Any]] = None,
        prompt_manager: Optional[PromptManager] = None,
    ) -> "LLMArbiter":
        """Build an arbiter with the client the configured mode needs."""
        resolved = merge_llm_config(config)
        prompts = prompt_manager or PromptManager()

        if resolved.get("mode") == "local":
            return cls(resolved, prompts, local_client=LocalLLMClient.from_config(resolved))

        if not ANTHROPIC_API_KEY:
            raise ValueError("ANTHROPIC_API_KEY not found in environment")
        client = anthropic.AsyncAnthropic(
            api_key=ANTHROPIC_API_KEY,
            timeout=float(resolved.get("timeout_seconds", 120)),
        )
        return cls(resolved, prompts, anthropic_client=client)

    async def generate_structured(
        self,
        prompt_name: str,
        data: Dict[str, Any],
        schema: Type[SchemaT],
        variables: Optional[Dict[str, Any]] = None,
    ) -> SchemaT:
        """
        Generate an object conforming to `schema` from a prompt and input data.

        Raises:
            SchemaViolation: output never validated within `max_attempts`
            TransientProviderError: the provider failed; retried by the task runner
            ProviderRequestError: the provider rejected the request
        """
        prompt = self.prompt_manager.get(prompt_name)
        system_prompt = (
            prompt.render(variables)
            + "\n\nRespond only with a JSON object that conforms to this JSON schema:\n"
            + json.dumps(schema.model_json_schema())
        )
        user_message = json.dumps(data, ensure_ascii=False, default=str)

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            raw = await self._complete(
                system_prompt,
                user_message,
                temperature=prompt.temperature,
                max_tokens=prompt.max_tokens,
                json_output=True,
            )
            try:
                return schema.model_validate(extract_json_from_text(raw))
            except (ValidationError, ValueError) as exc:
                last_error = exc
                logger.warning(
                    "Prompt %s returned output not matching %s (attempt %s/%s): %s",
                    prompt_name,
                    schema.__name__,
                    attempt,
                    self.max_attempts,
                    exc,
                )

        raise SchemaViolation(
            f"Prompt {prompt_name} did not produce a valid {schema.__name__}",
            {"prompt": prompt_name, "error": str(last_error)},
        )

    async def generate_text(
        self,
        prompt_name: str,
        message: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> str:
        prompt = self.prompt_manager.get(prompt_name)
        system_prompt = prompt.render(variables)
        return await self._complete(
            system_prompt,
            message,
            temperature=prompt.temperature,
            max_tokens=prompt.max_tokens,
            json_output=False,
        )

    async def _complete(
        self,
        system_prompt: str,
        user_message: str,
        temperature: float,
        max_tokens: int,
        json_output: bool,
    ) -> str:
        if self.mode == "local":
            return await self._complete_local(system_prompt, user_message, temperature, max_tokens, json_output)
        return await self._complete_anthropic(system_prompt, user_message, temperature, max_tokens)

    async def _complete_local(
        self,
        system_prompt: str,
        user_message: str,
        temperature: float,
        max_tokens: int,
        json_output: bool,
    ) -> str:
        model = self.config.get("chat_model")
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ]
        if not json_output:
            return await self.local_client.chat_text(model, messages, temperature, max_tokens)

        response = await self.local_client.chat(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        try:
            return response["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise SchemaViolation("Local LLM response has no message content") from exc

    async def _complete_anthropic(
        self,
        system_prompt: str,
        user_message: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        try:
            message = await self.anthropic_client.messages.create(
                model=self.config.get("online_model", ONLINE_CHAT_MODEL),
                max_tokens=max_tokens,
                temperature=temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": user_message}],
            )
        except TRANSIENT_ANTHROPIC_ERRORS as exc:
            raise TransientProviderError("anthropic", str(exc)) from exc
        except anthropic.APIStatusError as exc:
            if "overloaded" in str(exc).lower():
                raise TransientProviderError("anthropic", str(exc)) from exc
            raise ProviderRequestError("anthropic", str(exc), exc.status_code) from exc

        return "".join(
            block.text for block in message.content if getattr(block, "type", None) == "text"
        )
