"""
Core value types flowing through the crawl engine: requests, responses and items.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace as dc_replace
from functools import cached_property
from typing import Any, Dict, Mapping, Optional, Union

SUPPORTED_METHODS = ('GET', 'POST', 'PUT', 'DELETE', 'HEAD')


@dataclass(frozen=True)
class AttemptContext:
    """Retry bookkeeping attached to a request when it is re-enqueued."""
    count: int = 0
    last_failure: Optional[str] = None
    last_attempt_time: Optional[float] = None

    def next(self, reason: str) -> 'AttemptContext':
        return AttemptContext(
            count=self.count + 1,
            last_failure=reason,
            last_attempt_time=time.time()
        )


@dataclass(frozen=True, eq=False)
class Request:
    """
    An immutable crawl request.

    Identity is (method, url): two requests for the same target compare equal
    regardless of headers, body or meta.
    """
    url: str
    method: str = 'GET'
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    meta: Dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    dont_filter: bool = False
    cookies: Optional[Dict[str, str]] = None
    attempt: AttemptContext = field(default_factory=AttemptContext)

    def __post_init__(self):
        object.__setattr__(self, 'method', self.method.upper())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Request):
            return NotImplemented
        return self.method == other.method and self.url == other.url

    def __hash__(self) -> int:
        return hash((self.method, self.url))

    def __repr__(self) -> str:
        return f"<Request {self.method} {self.url} priority={self.priority}>"

    @classmethod
    def get(cls, url: str, **kwargs) -> 'Request':
        return cls(url=url, method='GET', **kwargs)

    @classmethod
    def post(cls, url: str, body: Any = None, **kwargs) -> 'Request':
        return cls(url=url, method='POST', body=body, **kwargs)

    @property
    def scheduler_key(self) -> str:
        """Key used by the scheduler's seen-set."""
        return f"{self.method}:{self.url}"

    @property
    def retry_count(self) -> int:
        return self.attempt.count

    def replace(self, **changes) -> 'Request':
        """Return a copy with the given fields replaced."""
        return dc_replace(self, **changes)

    def retry(self, reason: str) -> 'Request':
        """
        Return a copy scheduled as the next attempt of this request.

        The copy bypasses the scheduler seen-set, which already holds the
        original.
        """
        return dc_replace(self, attempt=self.attempt.next(reason), dont_filter=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'url': self.url,
            'method': self.method,
            'headers': dict(self.headers),
            'body': self.body if isinstance(self.body, (str, dict, list, type(None))) else repr(self.body),
            'meta': dict(self.meta),
            'priority': self.priority,
            'dont_filter': self.dont_filter,
            'cookies': dict(self.cookies) if self.cookies else None,
            'retry_count': self.attempt.count,
            'last_failure': self.attempt.last_failure
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Request':
        """Create Request from dictionary."""
        return cls(
            url=data['url'],
            method=data.get('method', 'GET'),
            headers=dict(data.get('headers') or {}),
            body=data.get('body'),
            meta=dict(data.get('meta') or {}),
            priority=data.get('priority', 0),
            dont_filter=data.get('dont_filter', False),
            cookies=data.get('cookies'),
            attempt=AttemptContext(
                count=data.get('retry_count', 0),
                last_failure=data.get('last_failure')
            )
        )


@dataclass(frozen=True)
class Response:
    """Result of a single HTTP exchange."""
    request: Request
    status: int
    body: bytes = b''
    reason: str = ''
    headers: Dict[str, str] = field(default_factory=dict)
    encoding: Optional[str] = None
    url: str = ''
    meta: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.url:
            object.__setattr__(self, 'url', self.request.url)
        if not self.meta:
            object.__setattr__(self, 'meta', dict(self.request.meta))

    @cached_property
    def text(self) -> str:
        """Decoded body. Never raises."""
        if self.encoding:
            try:
                return self.body.decode(self.encoding)
            except (LookupError, UnicodeDecodeError):
                pass
        try:
            return self.body.decode('utf-8', errors='replace')
        except Exception:
            pass
        try:
            return self.body.decode('latin-1')
        except Exception:
            return ''.join(map(chr, self.body))

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400

    def __repr__(self) -> str:
        return f"<Response {self.status} {self.url}>"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, without the body."""
        return {
            'url': self.url,
            'status': self.status,
            'reason': self.reason,
            'headers': dict(self.headers),
            'encoding': self.encoding,
            'body_length': len(self.body),
            'request': self.request.to_dict()
        }


class Item(ABC):
    """Opaque result record produced by a spider."""

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        """Flatten the item into a key/value mapping."""


class GenericItem(Item):
    """Item backed by a plain mapping."""

    def __init__(self, data: Optional[Mapping[str, Any]] = None, **fields):
        self._data: Dict[str, Any] = dict(data or {})
        self._data.update(fields)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any):
        self._data[key] = value

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, GenericItem):
            return self._data == other._data
        return NotImplemented

    def __repr__(self) -> str:
        return f"GenericItem({self._data!r})"

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)


SpiderOutput = Union[Item, Request, Mapping[str, Any]]
