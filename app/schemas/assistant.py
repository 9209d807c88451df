from pydantic import BaseModel, Field


class AskRequest(BaseModel):
    conversation_id: str = Field(min_length=1, max_length=128)
    question: str = Field(min_length=1, max_length=8000)
    system_prompt: str | None = Field(None, max_length=8000)
    model: str | None = None
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(1024, ge=1, le=32000)


class UsageResponse(BaseModel):
    input_tokens: int
    output_tokens: int
    total_tokens: int


class AskResponse(BaseModel):
    id: str
    conversation_id: str
    content: str
    provider: str
    model: str
    finish_reason: str
    latency_ms: int
    cost_usd: float
    usage: UsageResponse


class HistoryMessage(BaseModel):
    role: str
    content: str


class HistoryResponse(BaseModel):
    conversation_id: str
    messages: list[HistoryMessage]


class ArchiveResponse(BaseModel):
    conversation_id: str
    archived_messages: int
