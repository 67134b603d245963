from typing import Any, Optional

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    success: bool
    status: str
    reason: Optional[str] = None
    contact_id: Optional[str] = None
    decision: Optional[str] = None
    reply: Optional[str] = None


class StatsResponse(BaseModel):
    ingress: dict[str, Any]
    classifier: dict[str, Any]
    delivery: dict[str, Any]
    router: dict[str, Any]
