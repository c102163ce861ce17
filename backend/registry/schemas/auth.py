from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from registry.models.models import RoleEnum


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=120)
    password: str = Field(min_length=1, max_length=128)

    @field_validator("username")
    @classmethod
    def _username_strip(cls, value: str) -> str:
        return value.strip()


class SetupRequest(BaseModel):
    username: str = Field(min_length=3, max_length=120)
    password: str = Field(min_length=8, max_length=128)

    @field_validator("username")
    @classmethod
    def _username_strip(cls, value: str) -> str:
        return value.strip()


class UserPublic(BaseModel):
    id: int
    username: str
    role: RoleEnum
    created_at: datetime

    model_config = {"from_attributes": True}


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserPublic


class UserCreate(SetupRequest):
    role: RoleEnum = RoleEnum.GUEST
