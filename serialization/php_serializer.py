"""Codec for the PHP length-prefixed serialization format.

Supported tokens::

    N;                      null
    b:0; b:1;               bool
    i:42;                   int
    d:0.5;                  float
    s:LEN:"...";            string, LEN counted in bytes
    a:N:{key;value...}      array with N elements
    O:LEN:"Class":N:{...}   object with N properties

Strings are handled as UTF-8; bytes that are not valid UTF-8 are carried
through with the surrogateescape handler so a decode/encode cycle is
byte-exact. Back-references (r:, R:), custom (C:) and enum (E:) tokens are
not supported and raise SerializationError.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

ENCODING = 'utf-8'
ERRORS = 'surrogateescape'

_INT_PATTERN = re.compile(rb'-?\d+')
_FLOAT_PATTERN = re.compile(rb'-?(?:INF|NAN|[0-9.]+(?:[eE][+-]?\d+)?)')
_LENGTH_PATTERN = re.compile(rb'\d+')
_SCALAR_PATTERN = {
    'b': re.compile(r'^b:[0-9.E-]+;$'),
    'i': re.compile(r'^i:[0-9.E-]+;$'),
    'd': re.compile(r'^d:[0-9.E-]+;$'),
}
_CONTAINER_PATTERN = {
    'a': re.compile(r'^a:[0-9]+:', re.S),
    'O': re.compile(r'^O:[0-9]+:', re.S),
}


class SerializationError(ValueError):
    """Raised when a value cannot be decoded or encoded."""
    pass


@dataclass
class PHPObject:
    """A decoded object: its class name and ordered properties."""

    class_name: str
    properties: Dict[Any, Any] = field(default_factory=dict)


def _to_bytes(text: str) -> bytes:
    return text.encode(ENCODING, ERRORS)


def _to_text(data: bytes) -> str:
    return data.decode(ENCODING, ERRORS)


def is_serialized(data: Any) -> bool:
    """
    Check whether a value is syntactically a serialized token.

    Strict detection: the first character is a type tag followed by ':'
    and the value ends with ';' or '}'.
    """
    if not isinstance(data, str):
        return False

    data = data.strip()
    if data == 'N;':
        return True
    if len(data) < 4 or data[1] != ':':
        return False
    if data[-1] not in (';', '}'):
        return False

    token = data[0]
    if token == 's':
        return data[-2] == '"'
    if token in _CONTAINER_PATTERN:
        return bool(_CONTAINER_PATTERN[token].match(data))
    if token in _SCALAR_PATTERN:
        return bool(_SCALAR_PATTERN[token].match(data))
    return False


_NO_KEY = object()


@dataclass
class _Frame:
    """An array or object whose members are still being read."""

    result: Any
    members: Dict[Any, Any]
    remaining: int
    key: Any = _NO_KEY

    def accept(self, value: Any, decoder: '_Decoder') -> None:
        if self.key is _NO_KEY:
            if not isinstance(value, (int, str)) or isinstance(value, bool):
                raise decoder.error("Invalid array key")
            self.key = value
            return
        self.members[self.key] = value
        self.key = _NO_KEY
        self.remaining -= 1


class _Decoder:
    """Single-pass decoder over the UTF-8 bytes of the input."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def error(self, message: str) -> SerializationError:
        return SerializationError(f"{message} at offset {self.pos}")

    def expect(self, literal: bytes) -> None:
        end = self.pos + len(literal)
        if self.data[self.pos:end] != literal:
            raise self.error(f"Expected {literal!r}")
        self.pos = end

    def match(self, pattern: 're.Pattern') -> bytes:
        found = pattern.match(self.data, self.pos)
        if not found:
            raise self.error("Malformed token")
        self.pos = found.end()
        return found.group(0)

    def read_length(self) -> int:
        return int(self.match(_LENGTH_PATTERN))

    def read_quoted(self, length: int) -> bytes:
        self.expect(b'"')
        end = self.pos + length
        if end > len(self.data):
            raise self.error("String length exceeds input")
        raw = self.data[self.pos:end]
        self.pos = end
        self.expect(b'"')
        return raw

    def read_token(self) -> Tuple[Any, Optional['_Frame']]:
        """Read one token; containers come back as an open frame."""
        if self.pos >= len(self.data):
            raise self.error("Unexpected end of input")

        tag = self.data[self.pos:self.pos + 1]
        if tag == b'N':
            self.expect(b'N;')
            return None, None

        self.pos += 1
        self.expect(b':')

        if tag == b'b':
            raw = self.match(_INT_PATTERN)
            self.expect(b';')
            if raw not in (b'0', b'1'):
                raise self.error("Invalid boolean")
            return raw == b'1', None

        if tag == b'i':
            value = int(self.match(_INT_PATTERN))
            self.expect(b';')
            return value, None

        if tag == b'd':
            raw = self.match(_FLOAT_PATTERN).decode('ascii')
            self.expect(b';')
            return float(raw.replace('INF', 'inf').replace('NAN', 'nan')), None

        if tag == b's':
            length = self.read_length()
            self.expect(b':')
            raw = self.read_quoted(length)
            self.expect(b';')
            return _to_text(raw), None

        if tag == b'a':
            count = self.read_length()
            self.expect(b':{')
            members: Dict[Any, Any] = {}
            return None, _Frame(members, members, count)

        if tag == b'O':
            length = self.read_length()
            self.expect(b':')
            class_name = _to_text(self.read_quoted(length))
            self.expect(b':')
            count = self.read_length()
            self.expect(b':{')
            obj = PHPObject(class_name)
            return None, _Frame(obj, obj.properties, count)

        raise self.error(f"Unsupported type tag {tag!r}")

    def decode_value(self) -> Any:
        """Decode one complete value using an explicit stack of open containers."""
        stack: List[_Frame] = []
        while True:
            value, frame = self.read_token()
            if frame is not None:
                if frame.remaining:
                    stack.append(frame)
                    continue
                self.expect(b'}')
                value = frame.result

            while stack:
                top = stack[-1]
                top.accept(value, self)
                if top.remaining:
                    break
                self.expect(b'}')
                stack.pop()
                value = top.result

            if not stack:
                return value


def loads(data: str) -> Any:
    """
    Decode a serialized string into Python values.

    Arrays become dicts (key order preserved), objects become PHPObject.

    Raises:
        SerializationError: On any grammar or length error, or trailing data
    """
    if not isinstance(data, str):
        raise SerializationError("Serialized data must be a string")

    decoder = _Decoder(_to_bytes(data.strip()))
    value = decoder.decode_value()
    if decoder.pos != len(decoder.data):
        raise decoder.error("Trailing data")
    return value


def _encode_float(value: float) -> str:
    if math.isnan(value):
        return 'NAN'
    if math.isinf(value):
        return 'INF' if value > 0 else '-INF'
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value).replace('e', 'E')


def _encode_scalar(value: Any) -> Optional[bytes]:
    if value is None:
        return b'N;'
    if isinstance(value, bool):
        return b'b:1;' if value else b'b:0;'
    if isinstance(value, int):
        return f'i:{value};'.encode('ascii')
    if isinstance(value, float):
        return f'd:{_encode_float(value)};'.encode('ascii')
    if isinstance(value, str):
        raw = _to_bytes(value)
        return b's:%d:"%s";' % (len(raw), raw)
    return None


@dataclass
class _Close:
    ident: int


def _encode(value: Any) -> bytes:
    parts: List[bytes] = []
    stack: List[Any] = [value]
    open_containers = set()

    while stack:
        item = stack.pop()
        if isinstance(item, _Close):
            parts.append(b'}')
            open_containers.discard(item.ident)
            continue

        scalar = _encode_scalar(item)
        if scalar is not None:
            parts.append(scalar)
            continue

        ident = id(item)
        if isinstance(item, (list, tuple)):
            members = dict(enumerate(item))
            parts.append(b'a:%d:{' % len(members))
        elif isinstance(item, dict):
            members = item
            parts.append(b'a:%d:{' % len(members))
        elif isinstance(item, PHPObject):
            members = item.properties
            name = _to_bytes(item.class_name)
            parts.append(b'O:%d:"%s":%d:{' % (len(name), name, len(members)))
        else:
            raise SerializationError(f"Cannot serialize value of type {type(item).__name__}")

        if ident in open_containers:
            raise SerializationError("Cannot serialize a value that contains itself")
        open_containers.add(ident)

        stack.append(_Close(ident))
        for key, member in reversed(list(members.items())):
            if isinstance(key, bool) or not isinstance(key, (int, str)):
                raise SerializationError(f"Unsupported array key: {key!r}")
            stack.append(member)
            stack.append(key)

    return b''.join(parts)


def dumps(value: Any) -> str:
    """
    Encode Python values, computing every length and count from scratch.

    Lists and tuples are written as arrays with 0-based integer keys.
    """
    return _to_text(_encode(value))


__all__ = ['PHPObject', 'SerializationError', 'dumps', 'is_serialized', 'loads']
