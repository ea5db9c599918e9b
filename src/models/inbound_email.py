from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field


EMAIL_RECEIVED_EVENT = "email.received"


class AttachmentDescriptor(BaseModel):
    id: str
    filename: str = "attachment"
    content_type: str = "application/octet-stream"
    size: int | None = None


class InboundEmailData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sender: str = Field(default="", alias="from")
    subject: str = ""
    email_id: str
    text: str | None = None
    html: str | None = None
    attachments: list[AttachmentDescriptor] = Field(default_factory=list)

    @property
    def body(self) -> str:
        return self.text or self.html or ""


class InboundEmailEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    data: InboundEmailData


@dataclass
class FetchedAttachment:
    filename: str
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)
