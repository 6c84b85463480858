"""
Header transform engine - ordered header multimap and the request/response rewrite passes.
"""
from __future__ import annotations

from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from corsproxy.services.policy import ForwardingPolicy

# Browser-side callers smuggle forbidden request headers under this prefix
OVERRIDE_PREFIX = "x-cors-"

# Inbound preflight headers echoed back with "request" rewritten to "allow"
PREFLIGHT_REQUEST_PREFIX = "access-control-request-"

FORWARDED_FOR_HEADER = "x-forwarded-for"

HeaderPair = Tuple[str, str]


class HeaderSet:
    """
    Ordered multimap of lower-cased header names to values.

    Repeated names (e.g. Set-Cookie) are kept in insertion order.
    `set` replaces every value of a name with a single one, `append` adds
    one more value, `delete` removes all values of a name.
    """

    def __init__(self, items: Optional[Iterable[HeaderPair]] = None):
        self._items: List[HeaderPair] = []
        for name, value in items or ():
            self.append(name, value)

    @classmethod
    def from_raw(cls, raw: Iterable[Tuple[bytes, bytes]]) -> "HeaderSet":
        """Build from ASGI-style byte pairs."""
        return cls((k.decode("latin-1"), v.decode("latin-1")) for k, v in raw)

    def raw(self) -> List[Tuple[bytes, bytes]]:
        """Encode as ASGI-style byte pairs."""
        return [(k.encode("latin-1"), v.encode("latin-1")) for k, v in self._items]

    def append(self, name: str, value: str) -> None:
        self._items.append((name.lower(), str(value)))

    def set(self, name: str, value: str) -> None:
        name = name.lower()
        index = next((i for i, (k, _) in enumerate(self._items) if k == name), None)
        if index is None:
            self._items.append((name, str(value)))
            return
        self._items = [
            item for i, item in enumerate(self._items) if i == index or item[0] != name
        ]
        self._items[index] = (name, str(value))

    def delete(self, name: str) -> None:
        name = name.lower()
        self._items = [item for item in self._items if item[0] != name]

    def clear(self) -> None:
        self._items = []

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        name = name.lower()
        for key, value in self._items:
            if key == name:
                return value
        return default

    def get_all(self, name: str) -> List[str]:
        name = name.lower()
        return [value for key, value in self._items if key == name]

    def names(self) -> List[str]:
        """Distinct names in first-seen order."""
        return list(dict.fromkeys(key for key, _ in self._items))

    def merge(self, other: "HeaderSet") -> None:
        """Add every header of `other`; its names replace this set's values."""
        for name in other.names():
            self.delete(name)
        self._items.extend(other.items())

    def copy(self) -> "HeaderSet":
        return HeaderSet(self._items)

    def items(self) -> List[HeaderPair]:
        return list(self._items)

    def __iter__(self) -> Iterator[HeaderPair]:
        return iter(list(self._items))

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and any(k == name.lower() for k, _ in self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HeaderSet):
            return NotImplemented
        return self._items == other._items

    def __repr__(self) -> str:
        return f"HeaderSet({self._items!r})"


def _strip_override_prefix(name: str) -> str:
    if name.startswith(OVERRIDE_PREFIX):
        return name[len(OVERRIDE_PREFIX):]
    return name


def _apply_rules(
    headers: HeaderSet,
    delete: Iterable[str],
    append: Sequence[HeaderPair],
    set_: Sequence[HeaderPair],
    set_first: bool = False,
) -> None:
    for name in delete:
        headers.delete(name)
    if set_first:
        for name, value in set_:
            headers.set(name, value)
        for name, value in append:
            headers.append(name, value)
    else:
        for name, value in append:
            headers.append(name, value)
        for name, value in set_:
            headers.set(name, value)


def transform_request_headers(
    inbound: HeaderSet,
    policy: ForwardingPolicy,
    target_host: str,
    client_address: Optional[str] = None,
) -> HeaderSet:
    """
    Build the outbound request headers from the caller's headers.

    Args:
        inbound: Headers received from the caller
        policy: Resolved forwarding policy
        target_host: Host (and non-default port) of the upstream target
        client_address: Caller's socket address; None skips x-forwarded-for

    Returns:
        A new HeaderSet; `inbound` is left untouched
    """
    outbound = HeaderSet()

    if policy.forward_request_headers:
        for name, value in inbound:
            outbound.append(_strip_override_prefix(name), value)

    if policy.ignore_all_forwarded_headers:
        outbound.clear()

    if policy.forward_client_address and client_address:
        outbound.append(FORWARDED_FOR_HEADER, client_address)

    _apply_rules(
        outbound,
        delete=policy.delete_request_headers,
        append=policy.append_request_headers,
        set_=policy.set_request_headers,
    )

    # Virtual-hosted origins route on this, whatever the caller sent
    outbound.set("host", target_host)
    return outbound


def transform_response_headers(upstream: HeaderSet, policy: ForwardingPolicy) -> HeaderSet:
    """Apply the policy's delete, set and append rules to the upstream response headers."""
    headers = upstream.copy()
    _apply_rules(
        headers,
        delete=policy.delete_response_headers,
        append=policy.append_response_headers,
        set_=policy.set_response_headers,
        set_first=True,
    )
    return headers


def promote_cors_headers(inbound: HeaderSet) -> HeaderSet:
    """
    Build the CORS headers every client-facing response carries.

    The caller's origin (or `*`) is echoed as access-control-allow-origin and
    each access-control-request-* header is echoed as access-control-allow-*.
    """
    promoted = HeaderSet()
    promoted.set("access-control-allow-origin", inbound.get("origin") or "*")
    for name, value in inbound:
        if name.startswith(PREFLIGHT_REQUEST_PREFIX):
            promoted.set(name.replace("request", "allow", 1), value)
    return promoted
