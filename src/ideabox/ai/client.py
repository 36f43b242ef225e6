"""OpenAI function-calling client.

Every analysis request forces a single function call, so the model always
answers with JSON arguments matching a schema. This module owns credential
checks, the finish-reason and function-call checks, token/cost accounting and
the mapping of SDK exceptions to ``ErrorKind``. Retrying is left to
``ideabox.utils.retry``; the SDK's own retries are disabled.
"""

from __future__ import annotations

import json
import time
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError

from ideabox.config import DEFAULT_MODEL_PRICING, ModelPricing, Settings
from ideabox.exceptions import AuthenticationError, ErrorKind, LLMCallError, TokenLimitError
from ideabox.models import AnalysisResult
from ideabox.utils.retry import RetryPolicy, with_retry

logger = structlog.get_logger()

DEFAULT_MODEL = "gpt-4.1-mini"
MIN_API_KEY_LENGTH = 20


class FunctionSchema(BaseModel):
    """An OpenAI function definition used to force structured output."""

    name: str
    description: str
    parameters: dict[str, Any]


class CallOptions(BaseModel):
    """Per-call overrides; unset fields fall back to settings."""

    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    timeout: float | None = Field(default=None, gt=0)


def mask_api_key(key: str) -> str:
    """Return a loggable preview of an API key."""

    if len(key) <= 12:
        return f"{key[:3]}..."
    return f"{key[:7]}...{key[-4:]}"


def validate_api_key(key: str | None) -> str:
    """Check that an OpenAI API key is present and looks well formed.

    Raises:
        AuthenticationError: If the key is missing or malformed.
    """

    if not key:
        logger.error("openai_api_key_missing", hint="Set IDEABOX_OPENAI_API_KEY")
        raise AuthenticationError("OpenAI API key is not configured (IDEABOX_OPENAI_API_KEY)")

    if not key.startswith("sk-"):
        logger.error("openai_api_key_invalid_format", key_preview=mask_api_key(key))
        raise AuthenticationError(
            f"OpenAI API key has an invalid format: keys start with 'sk-'. Got: {mask_api_key(key)!r}"
        )

    if len(key) < MIN_API_KEY_LENGTH:
        logger.error(
            "openai_api_key_too_short",
            key_preview=mask_api_key(key),
            key_length=len(key),
        )
        raise AuthenticationError(
            f"OpenAI API key is too short ({len(key)} chars). Got: {mask_api_key(key)!r}"
        )

    return key


def map_openai_error(error: Exception) -> Exception:
    """Translate an ``openai`` SDK exception into an IdeaBox error."""

    import openai

    if isinstance(error, openai.AuthenticationError):
        return AuthenticationError(f"OpenAI rejected the API key: {error}")
    if isinstance(error, openai.RateLimitError):
        return LLMCallError(str(error), ErrorKind.RATE_LIMIT)
    if isinstance(error, openai.APITimeoutError):
        return LLMCallError(str(error), ErrorKind.TIMEOUT)
    if isinstance(error, openai.APIStatusError):
        if error.status_code == 401:
            return AuthenticationError(f"OpenAI rejected the API key: {error}")
        if error.status_code >= 500:
            return LLMCallError(str(error), ErrorKind.SERVER_ERROR)
    return LLMCallError(str(error) or type(error).__name__, ErrorKind.OTHER)


class OpenAIClient:
    """Async wrapper around ``chat.completions`` with forced function calls."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: Any | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            settings: Application settings. If None, uses default settings.
            client: Prebuilt ``AsyncOpenAI`` (or compatible) client.
            retry_policy: Policy used by ``analyze_with_retry``.
        """
        from ideabox.config import get_settings

        self.settings = settings or get_settings()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self._client = client

    def _get_client(self) -> Any:
        api_key = validate_api_key(self.settings.openai_api_key)
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                api_key=api_key,
                max_retries=0,
                timeout=self.settings.openai_timeout,
            )
            logger.debug("openai_client_created", key_preview=mask_api_key(api_key))
        return self._client

    def pricing_for(self, model: str) -> ModelPricing:
        pricing = self.settings.model_pricing.get(model)
        if pricing is None:
            logger.warning("openai_model_pricing_unknown", model=model, fallback=DEFAULT_MODEL)
            pricing = self.settings.model_pricing.get(DEFAULT_MODEL, DEFAULT_MODEL_PRICING[DEFAULT_MODEL])
        return pricing

    def estimate_cost(self, model: str, tokens_input: int, tokens_output: int) -> float:
        pricing = self.pricing_for(model)
        return tokens_input / 1000 * pricing.input_per_1k + tokens_output / 1000 * pricing.output_per_1k

    async def analyze(
        self,
        system_prompt: str,
        user_content: str,
        schema: FunctionSchema,
        options: CallOptions | None = None,
        result_type: type[BaseModel] | None = None,
    ) -> AnalysisResult[Any]:
        """Run one forced function call and return its parsed arguments.

        Args:
            system_prompt: Instructions for the model.
            user_content: The content to analyze.
            schema: Function the model must call.
            options: Per-call overrides of model, temperature, max tokens and timeout.
            result_type: Optional pydantic model the arguments are validated into.

        Returns:
            AnalysisResult: Parsed data plus token usage, cost and duration.

        Raises:
            AuthenticationError: If the API key is missing, malformed or rejected.
            TokenLimitError: If the output hit ``max_tokens``.
            LLMCallError: For every other failure, with a retryability ``kind``.
        """

        client = self._get_client()
        options = options or CallOptions()
        model = options.model or self.settings.openai_model
        temperature = (
            options.temperature if options.temperature is not None else self.settings.openai_temperature
        )
        max_tokens = options.max_tokens or self.settings.openai_max_tokens
        timeout = options.timeout or self.settings.openai_timeout

        logger.debug(
            "openai_call_started",
            model=model,
            function_name=schema.name,
            content_length=len(user_content),
            temperature=temperature,
            max_tokens=max_tokens,
        )

        started = time.perf_counter()
        try:
            response = await client.chat.completions.create(
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_content},
                ],
                functions=[schema.model_dump()],
                function_call={"name": schema.name},
                timeout=timeout,
            )
        except Exception as exc:  # noqa: BLE001
            mapped = map_openai_error(exc)
            duration_ms = round((time.perf_counter() - started) * 1000)
            if isinstance(mapped, AuthenticationError):
                logger.error(
                    "openai_authentication_failed",
                    model=model,
                    function_name=schema.name,
                    key_preview=mask_api_key(self.settings.openai_api_key or ""),
                    duration_ms=duration_ms,
                )
            else:
                logger.error(
                    "openai_call_failed",
                    model=model,
                    function_name=schema.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    kind=mapped.kind.value,
                    duration_ms=duration_ms,
                )
            raise mapped from exc

        choice = response.choices[0] if response.choices else None
        finish_reason = getattr(choice, "finish_reason", None)
        usage = getattr(response, "usage", None)
        tokens_output = getattr(usage, "completion_tokens", 0) or 0

        if finish_reason == "length":
            logger.error(
                "openai_response_truncated",
                model=model,
                function_name=schema.name,
                max_tokens=max_tokens,
                output_tokens=tokens_output,
            )
            raise TokenLimitError(
                f"Response truncated: max_tokens ({max_tokens}) limit reached for {schema.name}",
                max_tokens=max_tokens,
            )

        message = getattr(choice, "message", None)
        function_call = getattr(message, "function_call", None)
        arguments = getattr(function_call, "arguments", None)
        if not arguments:
            logger.error(
                "openai_function_call_missing",
                model=model,
                function_name=schema.name,
                finish_reason=finish_reason,
            )
            raise LLMCallError(
                f"OpenAI did not return a function call. Finish reason: {finish_reason or 'unknown'}",
                ErrorKind.INVALID_RESPONSE,
            )

        try:
            data: Any = json.loads(arguments)
        except json.JSONDecodeError as exc:
            logger.warning(
                "openai_arguments_malformed",
                model=model,
                function_name=schema.name,
                error=str(exc),
                arguments_length=len(arguments),
            )
            raise LLMCallError(
                f"Function arguments are not valid JSON: {exc}", ErrorKind.MALFORMED_OUTPUT
            ) from exc

        if result_type is not None:
            try:
                data = result_type.model_validate(data)
            except ValidationError as exc:
                logger.warning(
                    "openai_arguments_invalid",
                    model=model,
                    function_name=schema.name,
                    error_count=exc.error_count(),
                )
                raise LLMCallError(
                    f"Function arguments do not match {result_type.__name__}: {exc}",
                    ErrorKind.INVALID_RESPONSE,
                ) from exc

        tokens_input = getattr(usage, "prompt_tokens", 0) or 0
        tokens_total = getattr(usage, "total_tokens", 0) or 0
        estimated_cost = self.estimate_cost(model, tokens_input, tokens_output)
        duration_ms = round((time.perf_counter() - started) * 1000)

        logger.info(
            "openai_call_succeeded",
            model=model,
            function_name=schema.name,
            tokens_input=tokens_input,
            tokens_output=tokens_output,
            tokens_total=tokens_total,
            estimated_cost=estimated_cost,
            duration_ms=duration_ms,
        )

        return AnalysisResult[Any](
            data=data,
            tokens_input=tokens_input,
            tokens_output=tokens_output,
            tokens_total=tokens_total,
            estimated_cost=estimated_cost,
            duration_ms=duration_ms,
        )

    async def analyze_with_retry(
        self,
        system_prompt: str,
        user_content: str,
        schema: FunctionSchema,
        options: CallOptions | None = None,
        result_type: type[BaseModel] | None = None,
    ) -> AnalysisResult[Any]:
        """``analyze`` wrapped in the configured retry policy."""

        return await with_retry(
            lambda: self.analyze(system_prompt, user_content, schema, options, result_type),
            self.retry_policy,
            operation_name=f"openai_{schema.name}",
        )
