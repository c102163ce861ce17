from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class CategoryCreate(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=1000)
    is_active: bool = True

    @field_validator("name")
    @classmethod
    def _name_strip(cls, value: str) -> str:
        return value.strip()


class CategoryUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=1000)
    is_active: bool | None = None


class CategoryPublic(BaseModel):
    id: int
    name: str
    description: str | None
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class EventBase(BaseModel):
    title: str = Field(min_length=2, max_length=255)
    couple_names: str | None = Field(default=None, max_length=255)
    wedding_date: datetime | None = None
    location: str | None = Field(default=None, max_length=255)
    address: str | None = Field(default=None, max_length=500)
    dress_code: str | None = Field(default="Elegante", max_length=120)
    dress_code_description: str | None = None
    banner_image_url: str | None = None
    additional_info: str | None = None


class EventCreate(EventBase):
    pass


class EventUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=2, max_length=255)
    couple_names: str | None = Field(default=None, max_length=255)
    wedding_date: datetime | None = None
    location: str | None = Field(default=None, max_length=255)
    address: str | None = Field(default=None, max_length=500)
    dress_code: str | None = Field(default=None, max_length=120)
    dress_code_description: str | None = None
    banner_image_url: str | None = None
    additional_info: str | None = None


class EventPublic(EventBase):
    id: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
