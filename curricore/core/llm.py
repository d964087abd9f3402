"""Structured-completion client contract plus the DSPy-backed default."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol, runtime_checkable

import dspy

from .config import MODEL_ROLES, ModelConfig, RoleModelConfig

LOGGER = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class CompletionError(RuntimeError):
    """The completion call itself failed (transport, provider, timeout)."""


class StructuredOutputError(CompletionError):
    """The model replied, but not with a JSON object."""

    def __init__(self, message: str, *, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text


class CompletionConfigurationError(CompletionError):
    """Raised when a client cannot be configured for the requested role."""


@dataclass(frozen=True, slots=True)
class CompletionOptions:
    model: str
    temperature: float = 0.3
    max_tokens: int | None = None


@dataclass(frozen=True, slots=True)
class CompletionUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True)
class CompletionResult:
    data: Any
    usage: CompletionUsage = field(default_factory=CompletionUsage)


@runtime_checkable
class StructuredCompletionClient(Protocol):
    def send(self, system_prompt: str, user_message: str, options: CompletionOptions) -> CompletionResult:
        ...


def options_for_role(role_cfg: RoleModelConfig, *, default_max_tokens: int | None = None) -> CompletionOptions:
    """Translate a role's config block into per-call options."""
    return CompletionOptions(
        model=role_cfg.model,
        temperature=role_cfg.temperature if role_cfg.temperature is not None else 0.3,
        max_tokens=role_cfg.max_tokens or default_max_tokens,
    )


def extract_json_payload(text: str) -> Any:
    """Pull a JSON object (or array) out of free-form model text.

    Prefers a fenced ```json block, then the span between the first ``{`` and
    the last ``}``. Raises :class:`StructuredOutputError` when neither parses.
    """

    if not text or not text.strip():
        raise StructuredOutputError("Model returned an empty response", raw_text=text or "")

    candidates: List[str] = []
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    candidates.append(text.strip())
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    for snippet in candidates:
        try:
            return json.loads(snippet)
        except json.JSONDecodeError:
            continue
    raise StructuredOutputError("Model response did not contain valid JSON", raw_text=text)


def _normalize_lm_output(raw: Any) -> str:
    if isinstance(raw, list):
        raw = raw[0] if raw else ""
    if isinstance(raw, dict):
        raw = raw.get("text") or raw.get("content") or ""
    return raw if isinstance(raw, str) else str(raw)


def _usage_from_history(lm: Any) -> CompletionUsage:
    history = getattr(lm, "history", None)
    if not history:
        return CompletionUsage()
    last = history[-1]
    usage = last.get("usage") if isinstance(last, dict) else None
    if not isinstance(usage, dict):
        return CompletionUsage()
    return CompletionUsage(
        input_tokens=int(usage.get("prompt_tokens") or usage.get("input_tokens") or 0),
        output_tokens=int(usage.get("completion_tokens") or usage.get("output_tokens") or 0),
    )


def _resolve_api_key(role_cfg: RoleModelConfig) -> str | None:
    preferred_envs = []
    if role_cfg.api_key_env:
        preferred_envs.append(role_cfg.api_key_env)
    preferred_envs.append(f"{role_cfg.provider.upper()}_API_KEY")
    for env_var in preferred_envs:
        if env_var and (value := os.getenv(env_var)):
            return value
    return None


class DSPyCompletionClient:
    """Sends chat messages through ``dspy.LM`` and parses the reply as JSON.

    One LM handle is cached per model name; the model config supplies the
    provider, credentials and token limits for each name it knows about.
    """

    def __init__(self, model_cfg: ModelConfig, *, api_key: str | None = None) -> None:
        self.model_cfg = model_cfg
        self._api_key = api_key
        self._lms: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def _role_for_model(self, model_name: str) -> RoleModelConfig:
        for role in MODEL_ROLES:
            role_cfg = self.model_cfg.get_role(role)
            if role_cfg.model == model_name:
                return role_cfg
        return RoleModelConfig(model=model_name, provider=self.model_cfg.evaluator.provider)

    def _build_lm(self, model_name: str) -> Any:
        role_cfg = self._role_for_model(model_name)
        api_key = self._api_key or _resolve_api_key(role_cfg)
        if not api_key:
            expected_env = role_cfg.api_key_env or f"{role_cfg.provider.upper()}_API_KEY"
            raise CompletionConfigurationError(f"Missing API key for model '{model_name}'; set {expected_env}.")
        kwargs: Dict[str, Any] = {
            "model": f"{role_cfg.provider}/{model_name}",
            "api_key": api_key,
            "max_tokens": role_cfg.max_tokens or self.model_cfg.default_max_tokens,
        }
        if role_cfg.api_base:
            kwargs["api_base"] = role_cfg.api_base
        kwargs.update(role_cfg.extra_kwargs)
        return dspy.LM(**kwargs)

    def _lm_for(self, model_name: str) -> Any:
        with self._lock:
            lm = self._lms.get(model_name)
            if lm is None:
                lm = self._build_lm(model_name)
                self._lms[model_name] = lm
            return lm

    def validate_credentials(self) -> None:
        """Fail fast when any role has no resolvable API key."""
        if self._api_key:
            return
        missing = []
        for role in MODEL_ROLES:
            role_cfg = self.model_cfg.get_role(role)
            if not _resolve_api_key(role_cfg):
                missing.append(role_cfg.api_key_env or f"{role_cfg.provider.upper()}_API_KEY")
        if missing:
            names = ", ".join(sorted(set(missing)))
            raise CompletionConfigurationError(f"Missing API key; set {names}.")

    def send(self, system_prompt: str, user_message: str, options: CompletionOptions) -> CompletionResult:
        call_kwargs: Dict[str, Any] = {"temperature": options.temperature}
        if options.max_tokens:
            call_kwargs["max_tokens"] = options.max_tokens
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ]
        try:
            lm = self._lm_for(options.model)
            raw = lm(messages=messages, **call_kwargs)
        except CompletionError:
            raise
        except Exception as exc:
            raise CompletionError(f"Completion call to '{options.model}' failed: {exc}") from exc

        text = _normalize_lm_output(raw)
        data = extract_json_payload(text)
        usage = _usage_from_history(lm)
        LOGGER.debug(
            "Completion from %s used %s input / %s output tokens",
            options.model,
            usage.input_tokens,
            usage.output_tokens,
        )
        return CompletionResult(data=data, usage=usage)


def build_completion_client(model_cfg: ModelConfig, *, api_key: str | None = None) -> DSPyCompletionClient:
    """Factory used by the bootstrap and CLI.

    Credentials are checked here; LM handles are still created lazily on first send.
    """
    client = DSPyCompletionClient(model_cfg, api_key=api_key)
    client.validate_credentials()
    return client


__all__ = [
    "CompletionConfigurationError",
    "CompletionError",
    "CompletionOptions",
    "CompletionResult",
    "CompletionUsage",
    "DSPyCompletionClient",
    "StructuredCompletionClient",
    "StructuredOutputError",
    "build_completion_client",
    "extract_json_payload",
    "options_for_role",
]
