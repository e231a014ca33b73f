from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

MessageRole = Literal["user", "assistant", "system"]


class Step(BaseModel):
    """Diagnostic trace of one Gateway call, returned to clients."""

    tool: str
    campaign_id: Optional[str] = None
    status: int = 0
    error: Optional[str] = None
    body: Optional[str] = None


class PosterImpression(BaseModel):
    poster_id: str = ""
    poster_name: str = ""
    impressions: int = 0
    play_time: Optional[int] = None


class CampaignImpressions(BaseModel):
    campaign_id: str
    impressions: int = 0
    posters: List[PosterImpression] = Field(default_factory=list)


class ChatData(BaseModel):
    campaign_impressions: Optional[CampaignImpressions] = None


class ChatAttachment(BaseModel):
    file_name: str = ""
    content_type: str = ""
    base64: str = ""


class ChatRequest(BaseModel):
    message: str = ""
    conversation_id: Optional[str] = None
    attachments: List[ChatAttachment] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(data, dict):
            return data
        if data.get("message") is None:
            data["message"] = ""
        conversation_id = data.get("conversation_id")
        if isinstance(conversation_id, str):
            data["conversation_id"] = conversation_id.strip() or None
        return data


class ChatResponse(BaseModel):
    answer: str = ""
    data: Optional[ChatData] = None
    steps: List[Step] = Field(default_factory=list)


class CreateConversationRequest(BaseModel):
    title: Optional[str] = None


class Conversation(BaseModel):
    id: str
    owner_key: str
    title: Optional[str] = None
    created_at: str
    updated_at: str


class Message(BaseModel):
    id: int
    conversation_id: str
    role: str
    content: str
    created_at: str
