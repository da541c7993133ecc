from uuid import UUID

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"username_or_email": "jane@example.com", "password": "s3cret-pass"},
        }
    }

    username_or_email: str = Field(min_length=1)
    password: str
    tenant_id: UUID | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    tenant_id: str
    user_id: str
    trace_id: str
