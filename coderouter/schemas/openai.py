from typing import List, Literal, Optional
from pydantic import BaseModel


# OpenAI Chat Completions request shape accepted by the local backend


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatCompletionRequest(BaseModel):
    model: str
    messages: List[ChatMessage]
    max_tokens: int
    temperature: float = 0.7
    top_p: float = 0.95
    stream: Optional[bool] = None
    stop: Optional[List[str]] = None
