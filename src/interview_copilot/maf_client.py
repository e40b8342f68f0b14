"""Thin wrapper around Microsoft Agent Framework chat completion clients.

This module is the single cloud language-model boundary of the copilot. The
rest of the application only sees :class:`CompletionRequest` and
:class:`CompletionResult`; any provider problem surfaces as
:class:`LLMCallError` so callers can degrade to the rules path.
"""

from __future__ import annotations

from dataclasses import dataclass
from importlib import import_module
from typing import Any, Dict, List, Optional, Protocol

from agent_framework import ChatMessage as MAFChatMessage, Role

from .config import ModelSettings


class MAFIntegrationError(RuntimeError):
    """Raised when the MAF client cannot be initialized."""


class LLMCallError(RuntimeError):
    """Raised when a completion call fails or returns nothing usable."""


@dataclass(frozen=True, slots=True)
class TokenUsage:
    """Token accounting reported by the provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True, slots=True)
class CompletionRequest:
    """A single system + user instruction round trip."""

    system_instruction: str
    user_instruction: str
    json_mode: bool = True
    max_tokens: int = 220
    temperature: float = 0.2


@dataclass(frozen=True, slots=True)
class CompletionResult:
    """Raw model text plus token usage."""

    text: str
    usage: TokenUsage


class CompletionClient(Protocol):
    """Anything that can answer a :class:`CompletionRequest`."""

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        ...


def _coerce_role(role: str) -> Role:
    try:
        return Role(role)
    except ValueError as exc:
        raise ValueError(
            "Unsupported role for MAF chat message: {role}".format(role=role)
        ) from exc


def _usage_from_response(response: Any) -> TokenUsage:
    details = getattr(response, "usage_details", None)
    if details is None:
        return TokenUsage()
    prompt_tokens = getattr(details, "input_token_count", None) or 0
    completion_tokens = getattr(details, "output_token_count", None) or 0
    return TokenUsage(
        prompt_tokens=int(prompt_tokens),
        completion_tokens=int(completion_tokens),
    )


class MAFChatClient:
    """Dispatches completion calls through the configured MAF client."""

    def __init__(self, settings: ModelSettings) -> None:
        self._settings = settings
        self._client = self._create_client(settings)

    @staticmethod
    def _create_client(settings: ModelSettings):
        provider = settings.provider.lower()
        try:
            if provider in {"azure-openai", "azure_openai", "azure"}:
                module = import_module("agent_framework.azure")
                client_cls = getattr(module, "AzureOpenAIChatClient")
                return client_cls(
                    api_key=settings.api_key,
                    deployment_name=settings.model,
                    endpoint=settings.endpoint,
                    api_version=settings.api_version,
                )
            if provider in {"openai", "oai"}:
                module = import_module("agent_framework.openai")
                client_cls = getattr(module, "OpenAIChatClient")
                return client_cls(
                    api_key=settings.api_key,
                    model_id=settings.model,
                    base_url=settings.endpoint,
                )
        except ModuleNotFoundError as exc:  # pragma: no cover - MAF runtime
            missing = exc.name or "a required dependency"
            raise MAFIntegrationError(
                "Microsoft Agent Framework dependency '{missing}' is missing. "
                "Reinstall the project dependencies (e.g. `pip install -e .`)."
                .format(missing=missing)
            ) from exc
        raise MAFIntegrationError(
            f"Unsupported MAF provider '{settings.provider}'."
        )

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """Execute one chat completion call through the MAF client."""

        payload: List[MAFChatMessage] = [
            MAFChatMessage(
                role=_coerce_role("system"), text=request.system_instruction
            ),
            MAFChatMessage(
                role=_coerce_role("user"), text=request.user_instruction
            ),
        ]
        additional: Optional[Dict[str, Any]] = None
        if request.json_mode:
            additional = {"response_format": {"type": "json_object"}}
        try:
            response = await self._client.get_response(
                messages=payload,
                max_tokens=request.max_tokens,
                temperature=request.temperature,
                additional_properties=additional,
            )
        except Exception as exc:  # noqa: BLE001 - provider errors vary
            raise LLMCallError(f"Completion call failed: {exc}") from exc
        text = response.text or ""
        if not text.strip():
            raise LLMCallError("Completion call returned no content.")
        return CompletionResult(text=text, usage=_usage_from_response(response))
