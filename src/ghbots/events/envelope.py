"""CloudEvents envelope model and HTTP codec.

Supports the two HTTP bindings of CloudEvents 1.0:

- Binary mode: attributes travel as ``ce-*`` headers, the body is the
  event data, and ``Content-Type`` is the data content type. Header values
  are percent-encoded UTF-8.
- Structured mode: the whole event is a JSON document with content type
  ``application/cloudevents+json``; data is either ``data`` (JSON) or
  ``data_base64``.

Envelopes are immutable once created.
"""

import base64
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple, Type, TypeVar
from urllib.parse import quote, unquote

from pydantic import BaseModel, ConfigDict, Field, ValidationError


logger = logging.getLogger(__name__)

SPEC_VERSION = "1.0"
STRUCTURED_CONTENT_TYPE = "application/cloudevents+json"
JSON_CONTENT_TYPE = "application/json"

# Context attributes defined by CloudEvents 1.0. Anything else is an extension.
_CORE_ATTRIBUTES = {
    "id",
    "source",
    "type",
    "subject",
    "time",
    "specversion",
    "datacontenttype",
    "dataschema",
}
_REQUIRED_ATTRIBUTES = ("id", "source", "type", "specversion")

# Printable ASCII other than space, double quote and percent travels as-is in
# ce-* headers; everything else is percent-encoded as UTF-8.
_HEADER_SAFE = "".join(
    chr(c) for c in range(0x21, 0x7F) if chr(c) not in "\"%"
)

M = TypeVar("M", bound=BaseModel)


class EnvelopeError(Exception):
    """Raised when an HTTP request does not carry a valid CloudEvent."""


class CloudEvent(BaseModel):
    """A CloudEvents 1.0 envelope.

    Attributes:
        id: Unique identifier of the event.
        source: URI-reference identifying the producer.
        type: Event type, used as the dispatch key.
        subject: Subject of the event within the source.
        time: When the occurrence happened.
        specversion: CloudEvents spec version.
        datacontenttype: Media type of ``data``.
        dataschema: Optional schema URI of ``data``.
        extensions: Extension attributes (lower-case names to scalars).
        data: Raw event data.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    source: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    subject: Optional[str] = None
    time: Optional[datetime] = None
    specversion: str = SPEC_VERSION
    datacontenttype: Optional[str] = None
    dataschema: Optional[str] = None
    extensions: Dict[str, Any] = Field(default_factory=dict)
    data: bytes = b""

    @classmethod
    def new(
        cls,
        type: str,
        source: str,
        data: bytes = b"",
        subject: Optional[str] = None,
        extensions: Optional[Mapping[str, Any]] = None,
        datacontenttype: Optional[str] = JSON_CONTENT_TYPE,
    ) -> "CloudEvent":
        """Create an event with a fresh id and the current time."""
        return cls(
            id=str(uuid.uuid4()),
            source=source,
            type=type,
            subject=subject,
            time=datetime.now(timezone.utc),
            datacontenttype=datacontenttype,
            extensions={k.lower(): v for k, v in (extensions or {}).items()},
            data=data,
        )

    def data_json(self) -> Any:
        """Decode ``data`` as JSON."""
        return json.loads(self.data)

    def data_as(self, model: Type[M]) -> M:
        """Validate ``data`` as JSON into a pydantic model.

        Raises:
            pydantic.ValidationError: If the data does not match the model.
        """
        return model.model_validate_json(self.data)

    def attributes(self) -> Dict[str, Any]:
        """Return all context attributes, extensions included, as a flat dict."""
        attrs: Dict[str, Any] = {
            "id": self.id,
            "source": self.source,
            "type": self.type,
            "specversion": self.specversion,
        }
        if self.subject is not None:
            attrs["subject"] = self.subject
        if self.time is not None:
            attrs["time"] = self.time.isoformat()
        if self.datacontenttype is not None:
            attrs["datacontenttype"] = self.datacontenttype
        if self.dataschema is not None:
            attrs["dataschema"] = self.dataschema
        attrs.update(self.extensions)
        return attrs

    def to_binary_http(self) -> Tuple[Dict[str, str], bytes]:
        """Encode as an HTTP binary-mode message.

        Returns:
            (headers, body) tuple.
        """
        headers: Dict[str, str] = {}
        for name, value in self.attributes().items():
            if name == "datacontenttype":
                headers["Content-Type"] = str(value)
            else:
                headers[f"ce-{name}"] = _header_value(value)
        return headers, self.data

    def to_structured_http(self) -> Tuple[Dict[str, str], bytes]:
        """Encode as an HTTP structured-mode message."""
        doc = self.attributes()
        if self.data:
            if _is_json(self.datacontenttype):
                doc["data"] = json.loads(self.data)
            else:
                doc["data_base64"] = base64.b64encode(self.data).decode("ascii")
        body = json.dumps(doc, separators=(",", ":")).encode("utf-8")
        return {"Content-Type": STRUCTURED_CONTENT_TYPE}, body

    @classmethod
    def from_http(cls, headers: Mapping[str, str], body: bytes) -> "CloudEvent":
        """Decode a CloudEvent from an HTTP request.

        Args:
            headers: Request headers (any case).
            body: Raw request body.

        Raises:
            EnvelopeError: If the request is not a valid CloudEvent.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        content_type = lowered.get("content-type", "")
        if content_type.split(";")[0].strip().lower() == STRUCTURED_CONTENT_TYPE:
            return cls._from_structured(body)
        return cls._from_binary(lowered, body)

    @classmethod
    def _from_binary(cls, headers: Mapping[str, str], body: bytes) -> "CloudEvent":
        attrs: Dict[str, Any] = {}
        for name, value in headers.items():
            if name.startswith("ce-"):
                attrs[name[3:]] = unquote(value)
        if "content-type" in headers:
            attrs["datacontenttype"] = headers["content-type"]
        return cls._build(attrs, body)

    @classmethod
    def _from_structured(cls, body: bytes) -> "CloudEvent":
        try:
            doc = json.loads(body)
        except ValueError as e:
            raise EnvelopeError(f"structured event is not valid JSON: {e}") from e
        if not isinstance(doc, dict):
            raise EnvelopeError("structured event must be a JSON object")

        data = b""
        if "data_base64" in doc:
            try:
                data = base64.b64decode(doc.pop("data_base64"))
            except (ValueError, TypeError) as e:
                raise EnvelopeError(f"invalid data_base64: {e}") from e
        elif "data" in doc:
            raw = doc.pop("data")
            if isinstance(raw, str) and not _is_json(doc.get("datacontenttype")):
                data = raw.encode("utf-8")
            else:
                data = json.dumps(raw, separators=(",", ":")).encode("utf-8")
        return cls._build(doc, data)

    @classmethod
    def _build(cls, attrs: Dict[str, Any], data: bytes) -> "CloudEvent":
        missing = [a for a in _REQUIRED_ATTRIBUTES if not attrs.get(a)]
        if missing:
            raise EnvelopeError(
                f"missing required CloudEvent attributes: {', '.join(missing)}"
            )
        if attrs["specversion"] != SPEC_VERSION:
            raise EnvelopeError(f"unsupported specversion: {attrs['specversion']}")

        core = {k: v for k, v in attrs.items() if k in _CORE_ATTRIBUTES}
        extensions = {k: v for k, v in attrs.items() if k not in _CORE_ATTRIBUTES}
        try:
            return cls(**core, extensions=extensions, data=data)
        except ValidationError as e:
            raise EnvelopeError(f"invalid CloudEvent attributes: {e}") from e


def _is_json(content_type: Optional[str]) -> bool:
    if not content_type:
        return True
    media = content_type.split(";")[0].strip().lower()
    return media == JSON_CONTENT_TYPE or media.endswith("+json")


def _header_value(value: Any) -> str:
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, datetime):
        text = value.isoformat()
    else:
        text = str(value)
    return quote(text, safe=_HEADER_SAFE)
