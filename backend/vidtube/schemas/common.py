"""Response envelope shared by every endpoint: `{code, data, message}`."""

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    """Snake-case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ApiResponse(CamelModel, Generic[T]):
    code: int
    data: T | None = None
    message: str = "Success"


class Acknowledgement(CamelModel):
    """Returned when an OTP has been sent; nothing is created yet."""

    email: str
    expires_in: int  # seconds until the code expires
