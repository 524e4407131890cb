from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import CurrencyCode, TransactionType
from parsing import MAX_AMOUNT_CENTS


def _normalize_email(value: str) -> str:
    email = value.strip().lower()
    local, sep, domain = email.partition("@")
    if not sep or not local or "." not in domain or " " in email:
        raise ValueError("Enter a valid email address")
    return email


class RegisterIn(BaseModel):
    # passwords are taken verbatim, so no global whitespace stripping here
    email: str = Field(..., min_length=3, max_length=255)
    display_name: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=6, max_length=72)
    password_confirm: str

    @field_validator("email")
    @classmethod
    def email_shape(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator("display_name")
    @classmethod
    def display_name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Display name cannot be empty")
        return value.strip()

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterIn":
        if self.password != self.password_confirm:
            raise ValueError("Passwords do not match")
        return self


class LoginIn(BaseModel):
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def email_lower(cls, value: str) -> str:
        return value.strip().lower()


class AccountIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    currency: CurrencyCode


class AccountCreateIn(AccountIn):
    initial_balance_cents: int = Field(default=0, ge=0, le=MAX_AMOUNT_CENTS)


class CategoryIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    description: Optional[str] = Field(default=None, max_length=500)
