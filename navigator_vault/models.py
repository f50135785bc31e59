"""
Vault Models — password entries, API payloads and the on-disk record unit.

``PasswordEntry`` is only ever serialized inside an encrypted payload;
``EncryptedRecord`` is what reaches the disk.
"""
import base64
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
)

from .exceptions import IntegrityViolation, ValidationError

RECORD_VERSION = 1
MAX_TITLE_LENGTH = 255
MAX_FIELD_LENGTH = 4096
MAX_NOTES_LENGTH = 65536
MAX_TAGS = 64


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_entry_id() -> str:
    """Return a fresh opaque entry id (uuid4, hex)."""
    return uuid.uuid4().hex


def _strip_optional(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    v = v.strip()
    return v or None


def _clean_tags(tags: list[str]) -> list[str]:
    seen: list[str] = []
    for tag in tags:
        tag = tag.strip()
        if not tag:
            raise ValueError("tags cannot be empty strings")
        if tag not in seen:
            seen.append(tag)
    return seen


class EntryInput(BaseModel):
    """Fields supplied by a caller creating an entry."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=MAX_TITLE_LENGTH)
    username: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    password: str = Field(min_length=1, max_length=MAX_FIELD_LENGTH)
    url: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    notes: Optional[str] = Field(default=None, max_length=MAX_NOTES_LENGTH)
    tags: list[str] = Field(default_factory=list, max_length=MAX_TAGS)

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("title cannot be blank")
        return v

    @field_validator("username", "url", "notes")
    @classmethod
    def strip_optional(cls, v: Optional[str]) -> Optional[str]:
        return _strip_optional(v)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: list[str]) -> list[str]:
        return _clean_tags(v)


class EntryUpdate(BaseModel):
    """Partial update; only fields explicitly set are applied."""

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1, max_length=MAX_TITLE_LENGTH)
    username: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    password: Optional[str] = Field(default=None, min_length=1, max_length=MAX_FIELD_LENGTH)
    url: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    notes: Optional[str] = Field(default=None, max_length=MAX_NOTES_LENGTH)
    tags: Optional[list[str]] = Field(default=None, max_length=MAX_TAGS)

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            raise ValueError("title cannot be removed")
        v = v.strip()
        if not v:
            raise ValueError("title cannot be blank")
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            raise ValueError("password cannot be removed")
        return v

    @field_validator("username", "url", "notes")
    @classmethod
    def strip_optional(cls, v: Optional[str]) -> Optional[str]:
        return _strip_optional(v)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: Optional[list[str]]) -> list[str]:
        return _clean_tags(v or [])


class PasswordEntry(BaseModel):
    """A decrypted password entry."""

    id: str
    title: str
    username: Optional[str] = None
    password: str
    url: Optional[str] = None
    notes: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    def __repr__(self) -> str:
        # keep the secret out of reprs and tracebacks
        return f"<PasswordEntry id={self.id} title={self.title!r}>"

    __str__ = __repr__

    def summary(self) -> "EntrySummary":
        return EntrySummary(
            **self.model_dump(exclude={"password", "notes"})
        )


class EntrySummary(BaseModel):
    """Browsable metadata of an entry (no password, no notes)."""

    id: str
    title: str
    username: Optional[str] = None
    url: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


SORTABLE_FIELDS = ("title", "username", "url", "created_at", "updated_at")


class EncryptedRecord(BaseModel):
    """The on-disk unit: one per entry, addressed by its obfuscated name."""

    version: int = RECORD_VERSION
    name: str
    algorithm: str
    nonce: str
    ciphertext: str
    tag: str

    @classmethod
    def seal(cls, name: str, algorithm: str, nonce: bytes, sealed: bytes, tag_size: int) -> "EncryptedRecord":
        """Build a record from AEAD output (ciphertext with trailing tag)."""
        return cls(
            name=name,
            algorithm=algorithm,
            nonce=_b64e(nonce),
            ciphertext=_b64e(sealed[:-tag_size]),
            tag=_b64e(sealed[-tag_size:]),
        )

    def sealed(self) -> tuple[bytes, bytes]:
        """Return (ciphertext + tag, nonce) ready for decryption.

        Raises:
            IntegrityViolation: If the binary fields are not valid base64.
        """
        try:
            nonce = _b64d(self.nonce)
            body = _b64d(self.ciphertext) + _b64d(self.tag)
        except ValueError:
            raise IntegrityViolation() from None
        return body, nonce

    def associated_data(self) -> bytes:
        return record_aad(self.name, self.algorithm, self.version)


class AuthRequest(BaseModel):
    master_password: str = Field(min_length=1)


class AuthResponse(BaseModel):
    token: str
    expires_at: datetime


def record_aad(name: str, algorithm: str, version: int = RECORD_VERSION) -> bytes:
    """Associated data binding a record to its name and algorithm tag."""
    return f"navigator-vault:v{version}:{name}:{algorithm}".encode("utf-8")


def _b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64d(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


def parse_model(model: type[BaseModel], data, message: str = "invalid entry fields") -> BaseModel:
    """Validate raw input into ``model``, raising the vault ValidationError."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as err:
        errors = [
            {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
            for e in err.errors()
        ]
        raise ValidationError(message, errors=errors) from None
