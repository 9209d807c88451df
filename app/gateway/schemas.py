"""Vendor wire schemas.

Each vendor payload is validated into a fixed pydantic model and then mapped
explicitly into the uniform DTOs. Unknown fields are ignored; missing required
structure raises `pydantic.ValidationError`, which adapters turn into an
`AIError(INVALID_RESPONSE)`.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _VendorModel(BaseModel):
    model_config = ConfigDict(extra="ignore", protected_namespaces=())


class _CamelVendorModel(BaseModel):
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True, protected_namespaces=())


# ---------------------------------------------------------------------------
# OpenAI-compatible (DeepSeek, Kimi)
# ---------------------------------------------------------------------------


class OpenAIUsage(_VendorModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int | None = None


class OpenAIMessage(_VendorModel):
    role: str = "assistant"
    content: str | None = None


class OpenAIChoice(_VendorModel):
    index: int = 0
    message: OpenAIMessage
    finish_reason: str | None = None


class OpenAIChatCompletion(_VendorModel):
    id: str = ""
    model: str = ""
    choices: list[OpenAIChoice] = Field(min_length=1)
    usage: OpenAIUsage | None = None


class OpenAIDelta(_VendorModel):
    role: str | None = None
    content: str | None = None


class OpenAIStreamChoice(_VendorModel):
    index: int = 0
    delta: OpenAIDelta = Field(default_factory=OpenAIDelta)
    finish_reason: str | None = None
    usage: OpenAIUsage | None = None  # Kimi reports usage inside the final choice


class OpenAIStreamEvent(_VendorModel):
    id: str = ""
    model: str = ""
    choices: list[OpenAIStreamChoice] = Field(default_factory=list)
    usage: OpenAIUsage | None = None


class OpenAIModelEntry(_VendorModel):
    id: str
    owned_by: str = ""


class OpenAIModelList(_VendorModel):
    data: list[OpenAIModelEntry] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------


class GeminiPart(_CamelVendorModel):
    text: str | None = None


class GeminiContent(_CamelVendorModel):
    role: str = "model"
    parts: list[GeminiPart] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if p.text)


class GeminiCandidate(_CamelVendorModel):
    content: GeminiContent | None = None
    finish_reason: str | None = None


class GeminiUsage(_CamelVendorModel):
    prompt_token_count: int = 0
    candidates_token_count: int = 0
    total_token_count: int | None = None


class GeminiPromptFeedback(_CamelVendorModel):
    block_reason: str | None = None


class GeminiResponse(_CamelVendorModel):
    candidates: list[GeminiCandidate] = Field(default_factory=list)
    usage_metadata: GeminiUsage | None = None
    prompt_feedback: GeminiPromptFeedback | None = None
    model_version: str | None = None


class GeminiModelInfo(_CamelVendorModel):
    name: str
    display_name: str = ""
    input_token_limit: int = 0
    output_token_limit: int = 0
    supported_generation_methods: list[str] = Field(default_factory=list)


class GeminiModelList(_CamelVendorModel):
    models: list[GeminiModelInfo] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Qwen (DashScope)
# ---------------------------------------------------------------------------


class QwenOutput(_VendorModel):
    text: str | None = None
    finish_reason: str | None = None

    @property
    def finished(self) -> bool:
        # DashScope sends the literal string "null" on intermediate events
        return self.finish_reason not in (None, "", "null")


class QwenUsage(_VendorModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int | None = None


class QwenResponse(_VendorModel):
    request_id: str = ""
    output: QwenOutput
    usage: QwenUsage | None = None


# ---------------------------------------------------------------------------
# Error bodies
# ---------------------------------------------------------------------------


class VendorErrorDetail(_VendorModel):
    message: str = ""
    code: str | int | None = None


class VendorErrorBody(_VendorModel):
    """Covers `{"error": {"message": ...}}` and DashScope's flat `{"code", "message"}`."""

    error: VendorErrorDetail | str | None = None
    message: str | None = None

    @property
    def detail(self) -> str:
        if isinstance(self.error, VendorErrorDetail) and self.error.message:
            return self.error.message
        if isinstance(self.error, str) and self.error:
            return self.error
        return self.message or ""
