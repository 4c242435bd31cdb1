"""Data models for privilege rules.

A rule is a declarative capability descriptor: URL pattern, HTTP verb,
scopes, and the response moderation the callee attaches when granting.
Rules carry no authorization logic; enforcement happens elsewhere.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional
from urllib.parse import urlparse

from ..config import Config
from ..errors import InvalidMethod, InvalidURL, ValidationError

_WHITESPACE = re.compile(r"\s")


class HttpMethod(str, Enum):
    """HTTP verb a rule applies to."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"
    OPTIONS = "OPTIONS"
    HEAD = "HEAD"
    ALL = "ALL"
    ANY = ""  # Historical loose variant of ALL

    @classmethod
    def parse(cls, value: Any) -> "HttpMethod":
        """
        Parse a wire value into an HttpMethod.

        Matching is case-insensitive. ``None`` is treated as the empty
        (any-method) variant.

        Raises:
            InvalidMethod: If the value is not a recognized verb
        """
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.ANY
        if not isinstance(value, str):
            raise InvalidMethod(f"requestedMethod must be a string, got {type(value).__name__}")
        try:
            return cls(value.strip().upper())
        except ValueError:
            valid = ", ".join(m.value or '""' for m in cls)
            raise InvalidMethod(f"Unrecognized requestedMethod '{value}'. Valid: {valid}")

    @property
    def matches_any(self) -> bool:
        """ALL and the empty variant both mean "any method"."""
        return self in (HttpMethod.ALL, HttpMethod.ANY)


@dataclass
class ResponseModeration:
    """Callee-specified shaping of responses served under a granted privilege."""

    fields: Optional[str] = None
    response_filter_criteria: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.fields and not self.response_filter_criteria

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ResponseModeration":
        if not data:
            return cls()
        return cls(
            fields=data.get("fields"),
            response_filter_criteria=data.get("responseFilterCriteria"),
        )

    @classmethod
    def from_payload(cls, data: Any, index: int) -> "ResponseModeration":
        """
        Build moderation from an explicit grant/reject payload entry.

        Unlike from_dict, both keys must be present and hold strings
        (empty strings are allowed). An omitted key is not the same as
        an empty one.

        Args:
            data: ResponseModeration or mapping supplied by the callee
            index: Position of the rule the entry applies to (for messages)

        Raises:
            ValidationError: If the entry is missing or incomplete
        """
        if isinstance(data, cls):
            if data.fields is None or data.response_filter_criteria is None:
                raise ValidationError(
                    f"responseModeration for rule {index} must set fields and responseFilterCriteria"
                )
            return data
        if not isinstance(data, dict):
            raise ValidationError(f"responseModeration for rule {index} is missing")
        for key in ("fields", "responseFilterCriteria"):
            if not isinstance(data.get(key), str):
                raise ValidationError(
                    f"responseModeration for rule {index} must supply '{key}' as a string"
                )
        return cls(fields=data["fields"], response_filter_criteria=data["responseFilterCriteria"])

    def to_dict(self) -> dict[str, Any]:
        return {
            "fields": self.fields,
            "responseFilterCriteria": self.response_filter_criteria,
        }


def parse_scopes(value: Any) -> list[str]:
    """
    Normalize scopes into an ordered, de-duplicated list.

    Accepts a list or a comma-separated string. Blank entries are dropped;
    first occurrence wins.
    """
    if value is None:
        return []
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = value
    else:
        raise ValidationError(f"scopes must be a list of strings, got {type(value).__name__}")
    return list(dict.fromkeys(str(item).strip() for item in items if str(item).strip()))


def parse_flag(value: Any, label: str) -> bool:
    """
    Read a boolean wire flag. A missing or null flag is False.

    Raises:
        ValidationError: If the value is present but not a JSON boolean
    """
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValidationError(f"{label} must be a boolean, got {value!r}")
    return value


@dataclass
class PrivilegeRule:
    """
    One authorization rule within a privilege.

    Invariants:
    - requested_url is a non-empty path/pattern starting with "/" or an
      absolute http(s) URL
    - requested_method is one of HttpMethod
    - priority >= 0 (not required to be unique)
    """

    requested_url: str
    requested_method: HttpMethod = HttpMethod.GET
    priority: int = 0
    scopes: list[str] = field(default_factory=list)
    description: Optional[str] = None
    response_moderation: ResponseModeration = field(default_factory=ResponseModeration)
    meta_data: dict[str, Any] = field(default_factory=dict)  # opaque pass-through
    skip_user_token_validation: bool = False
    skip_user_token_expiry_validation: bool = False
    id: str = ""  # Server-assigned, unique within the parent record

    @property
    def matches_any_method(self) -> bool:
        return HttpMethod.parse(self.requested_method).matches_any

    def validate(self) -> bool:
        """
        Validate rule invariants.

        Returns:
            True if the rule is valid

        Raises:
            InvalidURL: If requested_url is empty or malformed
            InvalidMethod: If requested_method is not recognized
            ValidationError: If priority is negative or not an integer
        """
        validate_url(self.requested_url)
        self.requested_method = HttpMethod.parse(self.requested_method)
        if isinstance(self.priority, bool) or not isinstance(self.priority, int):
            raise ValidationError(f"priority must be an integer, got {self.priority!r}")
        if self.priority < 0:
            raise ValidationError(f"priority must be >= 0, got {self.priority}")
        if not isinstance(self.meta_data, dict):
            raise ValidationError("metaData must be a mapping")
        self.scopes = parse_scopes(self.scopes)
        return True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PrivilegeRule":
        """Build a rule from its JSON wire shape (accepts the legacy ``_id``)."""
        if not isinstance(data, dict):
            raise ValidationError(f"privilege rule must be an object, got {type(data).__name__}")
        priority = data.get("priority", 0)
        return cls(
            id=data.get("id") or data.get("_id") or "",
            priority=0 if priority is None else priority,
            description=data.get("description"),
            requested_url=data.get("requestedURL") or "",
            scopes=parse_scopes(data.get("scopes")),
            requested_method=HttpMethod.parse(data.get("requestedMethod", HttpMethod.GET.value)),
            response_moderation=ResponseModeration.from_dict(data.get("responseModeration")),
            meta_data=dict(data.get("metaData") or {}),
            skip_user_token_validation=parse_flag(
                data.get("skipUserTokenValidation"), "skipUserTokenValidation"
            ),
            skip_user_token_expiry_validation=parse_flag(
                data.get("skipUserTokenExpiryValidation"), "skipUserTokenExpiryValidation"
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "priority": self.priority,
            "description": self.description,
            "requestedURL": self.requested_url,
            "scopes": list(self.scopes),
            "requestedMethod": HttpMethod.parse(self.requested_method).value,
            "responseModeration": self.response_moderation.to_dict(),
            "metaData": dict(self.meta_data),
            "skipUserTokenValidation": self.skip_user_token_validation,
            "skipUserTokenExpiryValidation": self.skip_user_token_expiry_validation,
        }

    def content_key(self) -> tuple:
        """Structural identity of the rule, excluding the server-assigned id."""
        data = self.to_dict()
        data.pop("id")
        # Scope order is display-only
        data["scopes"] = sorted(set(data["scopes"]))
        return _freeze(data)


def validate_url(url: Any) -> str:
    """
    Check that a requested URL is a usable path, pattern, or absolute URL.

    Raises:
        InvalidURL: If the URL is empty or malformed
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidURL("requestedURL must not be empty")
    if len(url) < Config.URL_MIN_LENGTH:
        raise InvalidURL(
            f"requestedURL must be at least {Config.URL_MIN_LENGTH} characters, got '{url}'"
        )
    if _WHITESPACE.search(url):
        raise InvalidURL(f"requestedURL must not contain whitespace: '{url}'")

    if url.startswith("/"):
        return url

    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise InvalidURL(
            f"requestedURL must be a path starting with '/' or an http(s) URL, got '{url}'"
        )
    return url


def validate(rule: PrivilegeRule) -> bool:
    """Validate a single rule (module-level alias of PrivilegeRule.validate)."""
    return rule.validate()


def _freeze(value: Any) -> Any:
    # Hashable, order-preserving snapshot of nested JSON values
    if isinstance(value, dict):
        return tuple((k, _freeze(v)) for k, v in sorted(value.items()))
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value
