"""
Classification of inbound requests.

Decides from method, path and JSON body whether a request is redirected,
and to which destination. Every non-match ends in a PassThrough carrying
the reason, never an exception.
"""
import enum
import json
import math
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

from .config import RoutingConfig


class PassReason(str, enum.Enum):
    WRONG_PATH = "wrong_path"
    WRONG_METHOD = "wrong_method"
    BODY_UNREADABLE = "body_unreadable"
    INVALID_JSON = "invalid_json"
    FIELD_MISSING = "field_missing"
    UNSUPPORTED_FIELD_TYPE = "unsupported_field_type"
    EMPTY_FIELD = "empty_field"
    NO_DESTINATION = "no_destination"


@dataclass(frozen=True)
class PassThrough:
    reason: PassReason


@dataclass(frozen=True)
class Forward:
    destination: str
    query: str
    key: str

    @property
    def url(self) -> str:
        """Destination with the merged query string applied."""
        if not self.query:
            return self.destination
        return urlunsplit(urlsplit(self.destination)._replace(query=self.query))


class FieldKind(enum.Enum):
    STRING = "string"
    NUMBER = "number"
    OTHER = "other"


@dataclass(frozen=True)
class FieldValue:
    kind: FieldKind
    text: str | None = None


def is_candidate(scope: dict, config: RoutingConfig) -> bool:
    """Path and method gates, evaluated before the body is touched."""
    return gate(scope, config) is None


def gate(scope: dict, config: RoutingConfig) -> PassThrough | None:
    if not scope["path"].startswith(config.activation_path):
        return PassThrough(PassReason.WRONG_PATH)
    if scope["method"] != "POST":
        return PassThrough(PassReason.WRONG_METHOD)
    return None


def _reject_constant(name: str):
    raise ValueError(f"non-standard JSON constant {name}")


def parse_payload(body: bytes) -> dict | None:
    """Parse a body as a JSON object, None if it is anything else."""
    try:
        payload = json.loads(body, parse_constant=_reject_constant)
    except (ValueError, RecursionError):
        return None
    return payload if isinstance(payload, dict) else None


def normalize_field(value) -> FieldValue:
    # bool is an int subclass but is not a routing id
    if isinstance(value, bool):
        return FieldValue(FieldKind.OTHER)
    if isinstance(value, str):
        return FieldValue(FieldKind.STRING, value.strip())
    if isinstance(value, int):
        return FieldValue(FieldKind.NUMBER, str(value))
    if isinstance(value, float):
        # 1e999 parses to inf
        if not math.isfinite(value):
            return FieldValue(FieldKind.OTHER)
        return FieldValue(FieldKind.NUMBER, str(int(value)))
    return FieldValue(FieldKind.OTHER)


def resolve_destination(key: str, config: RoutingConfig) -> str | None:
    if key in config.mappings:
        return config.mappings[key]
    return config.default_destination or None


def merge_query(destination: str, raw_query: str) -> str:
    """
    Append the inbound query to the destination's own query.
    :return: the merged raw query string
    """
    existing = urlsplit(destination).query
    if not raw_query:
        return existing
    if existing:
        return f"{existing}&{raw_query}"
    return raw_query


def classify(scope: dict, body: bytes | None, config: RoutingConfig) -> PassThrough | Forward:
    """
    Decide whether a request is forwarded.

    :param scope: ASGI http scope of the inbound request
    :param body: full request body, None when it could not be read
    :return: PassThrough with a reason, or Forward with the resolved destination
    """
    rejected = gate(scope, config)
    if rejected is not None:
        return rejected

    if body is None:
        return PassThrough(PassReason.BODY_UNREADABLE)

    payload = parse_payload(body)
    if payload is None:
        return PassThrough(PassReason.INVALID_JSON)

    if config.field_name not in payload:
        return PassThrough(PassReason.FIELD_MISSING)

    field = normalize_field(payload[config.field_name])
    if field.kind is FieldKind.OTHER:
        return PassThrough(PassReason.UNSUPPORTED_FIELD_TYPE)
    if not field.text:
        return PassThrough(PassReason.EMPTY_FIELD)

    destination = resolve_destination(field.text, config)
    if destination is None:
        return PassThrough(PassReason.NO_DESTINATION)

    raw_query = scope.get("query_string", b"").decode("latin-1")
    return Forward(destination, merge_query(destination, raw_query), field.text)
