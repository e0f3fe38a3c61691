from datetime import datetime

from pydantic import BaseModel, Field


class Credential(BaseModel):
    token: str = Field(description="Opaque, unguessable bearer token.")
    task_id: str = Field(description="Task that owns this credential.")
    issued_at: datetime = Field(description="When the credential was minted.")
    expires_at: datetime = Field(description="Hard expiry.")
    revoked: bool = Field(default=False, description="Set once the task is done or cancelled.")
    revoked_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
