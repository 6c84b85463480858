"""
Policy resolver - turns the inbound request's `cors` document into a ForwardingPolicy.
"""
from __future__ import annotations

import json
import re
from typing import Any, FrozenSet, Mapping, Optional, Tuple

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from corsproxy.exceptions import ConfigurationMalformed, ConfigurationMissing

POLICY_PARAM = "cors"

HeaderRules = Tuple[Tuple[str, str], ...]

# RFC 7230 token and field-value characters; anything else cannot go on the wire
TOKEN_RE = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")
FIELD_VALUE_RE = re.compile(r"[\t\x20-\x7e]*")


def _header_name(name: str) -> str:
    if not TOKEN_RE.fullmatch(name):
        raise ValueError(f"invalid header name: {name!r}")
    return name.lower()


def _header_value(value: str) -> str:
    if not FIELD_VALUE_RE.fullmatch(value):
        raise ValueError(f"header value must be printable ASCII without line breaks: {value!r}")
    return value


def _alias(*names: str) -> Any:
    return Field(default=None, validation_alias=AliasChoices(*names))


class ForwardingPolicy(BaseModel):
    """
    Forwarding directives for one request.

    Accepts the camelCase keys of the JSON document; the original key names
    (`url`, `body`, `followRedirect`, `forwardIpAddress`, `ignoreRequestHeaders`,
    `setStatusCode`, `setStatusMessage`) are accepted as well.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )

    target_url: str = Field(validation_alias=AliasChoices("url", "targetUrl", "target_url"))
    method: Optional[str] = None
    literal_body: Optional[bytes] = _alias("body", "literalBody", "literal_body")
    follow_redirects: bool = Field(
        default=True,
        validation_alias=AliasChoices("followRedirect", "followRedirects", "follow_redirects"),
    )
    forward_request_headers: bool = Field(
        default=True,
        validation_alias=AliasChoices("forwardRequestHeaders", "forward_request_headers"),
    )
    forward_client_address: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "forwardIpAddress", "forwardClientAddress", "forward_client_address"
        ),
    )
    ignore_all_forwarded_headers: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "ignoreRequestHeaders", "ignoreAllForwardedHeaders", "ignore_all_forwarded_headers"
        ),
    )
    delete_request_headers: FrozenSet[str] = Field(
        default=frozenset(),
        validation_alias=AliasChoices("deleteRequestHeaders", "delete_request_headers"),
    )
    set_request_headers: HeaderRules = Field(
        default=(),
        validation_alias=AliasChoices("setRequestHeaders", "set_request_headers"),
    )
    append_request_headers: HeaderRules = Field(
        default=(),
        validation_alias=AliasChoices("appendRequestHeaders", "append_request_headers"),
    )
    delete_response_headers: FrozenSet[str] = Field(
        default=frozenset(),
        validation_alias=AliasChoices("deleteResponseHeaders", "delete_response_headers"),
    )
    set_response_headers: HeaderRules = Field(
        default=(),
        validation_alias=AliasChoices("setResponseHeaders", "set_response_headers"),
    )
    append_response_headers: HeaderRules = Field(
        default=(),
        validation_alias=AliasChoices("appendResponseHeaders", "append_response_headers"),
    )
    override_status_code: Optional[int] = Field(
        default=None,
        ge=100,
        le=599,
        validation_alias=AliasChoices(
            "setStatusCode", "overrideStatusCode", "override_status_code"
        ),
    )
    override_status_message: Optional[str] = _alias(
        "setStatusMessage", "overrideStatusMessage", "override_status_message"
    )

    @field_validator("target_url")
    @classmethod
    def _check_target_url(cls, value: str) -> str:
        try:
            url = httpx.URL(value)
        except httpx.InvalidURL as e:
            raise ValueError(f"invalid url: {e}")
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError("url must be an absolute http or https URL")
        return str(url)

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().upper()
        if not TOKEN_RE.fullmatch(value):
            raise ValueError("method must be an HTTP verb")
        return value

    @field_validator("delete_request_headers", "delete_response_headers")
    @classmethod
    def _check_names(cls, value: FrozenSet[str]) -> FrozenSet[str]:
        return frozenset(_header_name(name) for name in value)

    @field_validator(
        "set_request_headers",
        "append_request_headers",
        "set_response_headers",
        "append_response_headers",
    )
    @classmethod
    def _check_rules(cls, value: HeaderRules) -> HeaderRules:
        return tuple((_header_name(name), _header_value(val)) for name, val in value)

    @field_validator("override_status_message")
    @classmethod
    def _check_status_message(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _header_value(value)

    @property
    def target(self) -> httpx.URL:
        return httpx.URL(self.target_url)


def parse_policy_document(document: str, source: str = "query") -> ForwardingPolicy:
    """
    Parse a serialized policy document.

    Args:
        document: JSON object text
        source: Where the document came from, used in error reporting

    Returns:
        The validated ForwardingPolicy. `method` stays None when the document omits it.

    Raises:
        ConfigurationMalformed: If the text is not JSON or not a valid policy object
    """
    try:
        data = json.loads(document)
    except json.JSONDecodeError as e:
        raise ConfigurationMalformed(source, f"invalid JSON: {e}")

    if not isinstance(data, dict):
        raise ConfigurationMalformed(source, "policy document must be a JSON object")

    try:
        return ForwardingPolicy.model_validate(data)
    except ValidationError as e:
        raise ConfigurationMalformed(source, str(e))


def _referer_policy(referer: str, path: str) -> ForwardingPolicy:
    """Recover the page's base URL from the referer and resolve `path` against it."""
    try:
        referer_url = httpx.URL(referer)
    except httpx.InvalidURL as e:
        raise ConfigurationMalformed("referer", f"invalid referer URL: {e}")

    document = referer_url.params.get(POLICY_PARAM)
    if document is None:
        raise ConfigurationMissing()

    try:
        data = json.loads(document)
    except json.JSONDecodeError as e:
        raise ConfigurationMalformed("referer", f"invalid JSON: {e}")

    base = data.get("url") if isinstance(data, dict) else None
    if not isinstance(base, str):
        raise ConfigurationMalformed("referer", "referer policy has no 'url' string")

    try:
        target = httpx.URL(base).join(path)
    except httpx.InvalidURL as e:
        raise ConfigurationMalformed("referer", f"cannot resolve {path!r} against {base!r}: {e}")

    try:
        return ForwardingPolicy(target_url=str(target))
    except ValidationError as e:
        raise ConfigurationMalformed("referer", str(e))


def resolve_policy(
    method: str,
    query_params: Mapping[str, str],
    headers: Mapping[str, str],
    path: str,
) -> ForwardingPolicy:
    """
    Resolve the forwarding policy of an inbound request.

    Resolution order (first match wins):
    1. `cors` query parameter holding the full policy document
    2. `cors` parameter of the `referer` URL; only its `url` is used, as the
       base the inbound path is resolved against

    Args:
        method: Inbound request method, used when the policy names none
        query_params: Inbound query parameters
        headers: Inbound headers (case-insensitive mapping)
        path: Inbound path including its query string

    Returns:
        A fully resolved ForwardingPolicy

    Raises:
        ConfigurationMissing: If no policy source is present
        ConfigurationMalformed: If a policy source is present but invalid
    """
    document = query_params.get(POLICY_PARAM)
    if document is not None:
        policy = parse_policy_document(document, source="query")
    else:
        referer = headers.get("referer")
        if not referer:
            raise ConfigurationMissing()
        policy = _referer_policy(referer, path)

    if policy.method is None:
        policy = policy.model_copy(update={"method": method.upper()})
    return policy
