"""
Clarity value handling.

Two directions are covered:

- Parsing the textual ``repr`` the Hiro API attaches to contract log
  events, e.g. ``(tuple (amount u1000000) (event "collateral-deposited"))``.
- Serialising the few Clarity values the relayer passes as contract-call
  arguments (uint and principals), in consensus byte format.

Parsed values map onto Python types:

    u123            -> UInt(123)
    -5 / 5          -> int
    "text" / u"x"   -> str
    'SP...          -> Principal
    0xdead          -> bytes
    true / false    -> bool
    none            -> None
    (some x)        -> x
    (ok x)/(err x)  -> Response
    (list ...)      -> list
    (tuple ...)     -> dict
"""

from dataclasses import dataclass
from typing import Any, Iterator

from .address import c32_address_decode


class ClarityParseError(ValueError):
    """The repr text is not a well-formed Clarity value."""


class UInt(int):
    """Unsigned Clarity integer."""


class Principal(str):
    """Standard (``SP...``) or contract (``SP....name``) principal."""

    @property
    def is_contract(self) -> bool:
        return "." in self


@dataclass(frozen=True)
class Response:
    ok: bool
    value: Any


# Tokens
_LPAREN = "("
_RPAREN = ")"


@dataclass(frozen=True)
class _Token:
    kind: str  # "(", ")", "str", "atom"
    text: str
    pos: int


def _tokenize(text: str) -> Iterator[_Token]:
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c.isspace():
            i += 1
        elif c in "()":
            yield _Token(c, c, i)
            i += 1
        elif c == '"' or (c == "u" and i + 1 < n and text[i + 1] == '"'):
            start = i
            i += 2 if c == "u" else 1
            chars = []
            while True:
                if i >= n:
                    raise ClarityParseError(f"unterminated string at {start}")
                ch = text[i]
                if ch == "\\" and i + 1 < n:
                    nxt = text[i + 1]
                    chars.append({"n": "\n", "t": "\t", "r": "\r"}.get(nxt, nxt))
                    i += 2
                    continue
                if ch == '"':
                    i += 1
                    break
                chars.append(ch)
                i += 1
            yield _Token("str", "".join(chars), start)
        else:
            start = i
            while i < n and not text[i].isspace() and text[i] not in "()":
                i += 1
            yield _Token("atom", text[start:i], start)


class _Symbol(str):
    pass


def _atom_value(token: _Token) -> Any:
    text = token.text
    if text == "true":
        return True
    if text == "false":
        return False
    if text == "none":
        return None
    if text.startswith("'"):
        if len(text) < 2:
            raise ClarityParseError(f"empty principal at {token.pos}")
        return Principal(text[1:])
    if text.startswith("0x"):
        try:
            return bytes.fromhex(text[2:])
        except ValueError as e:
            raise ClarityParseError(f"bad buffer literal {text!r}") from e
    if text.startswith("u") and text[1:].isdigit():
        return UInt(int(text[1:]))
    if text.lstrip("-").isdigit():
        return int(text)
    # Bare symbols only appear as tuple keys
    return _Symbol(text)


class _Parser:
    def __init__(self, text: str):
        self.tokens = list(_tokenize(text))
        self.pos = 0

    def _peek(self) -> _Token | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> _Token:
        token = self._peek()
        if token is None:
            raise ClarityParseError("unexpected end of input")
        self.pos += 1
        return token

    def _expect_close(self) -> None:
        token = self._next()
        if token.kind != _RPAREN:
            raise ClarityParseError(f"expected ')' at {token.pos}, got {token.text!r}")

    def parse(self) -> Any:
        value = self._value()
        if self._peek() is not None:
            raise ClarityParseError(f"trailing input at {self._peek().pos}")  # type: ignore[union-attr]
        return value

    def _value(self) -> Any:
        token = self._next()
        if token.kind == "str":
            return token.text
        if token.kind == "atom":
            value = _atom_value(token)
            if isinstance(value, _Symbol):
                raise ClarityParseError(f"unexpected symbol {token.text!r} at {token.pos}")
            return value
        if token.kind == _RPAREN:
            raise ClarityParseError(f"unexpected ')' at {token.pos}")
        return self._form()

    def _form(self) -> Any:
        head = self._next()
        if head.kind != "atom":
            raise ClarityParseError(f"expected form name at {head.pos}")

        if head.text == "tuple":
            return self._tuple_body()
        if head.text == "list":
            items = []
            while (token := self._peek()) is not None and token.kind != _RPAREN:
                items.append(self._value())
            self._expect_close()
            return items
        if head.text in ("some", "ok", "err"):
            inner = self._value()
            self._expect_close()
            if head.text == "some":
                return inner
            return Response(ok=head.text == "ok", value=inner)
        raise ClarityParseError(f"unknown form {head.text!r} at {head.pos}")

    def _tuple_body(self) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        while True:
            token = self._next()
            if token.kind == _RPAREN:
                return fields
            if token.kind != _LPAREN:
                raise ClarityParseError(f"expected tuple entry at {token.pos}")
            key = self._next()
            if key.kind != "atom":
                raise ClarityParseError(f"expected tuple key at {key.pos}")
            fields[key.text] = self._value()
            self._expect_close()


def parse_repr(text: str) -> Any:
    """Parse a Clarity value repr string."""
    return _Parser(text).parse()


# Consensus serialisation type ids
CV_UINT = 0x01
CV_STANDARD_PRINCIPAL = 0x05
CV_CONTRACT_PRINCIPAL = 0x06


def uint_cv(value: int) -> bytes:
    if value < 0 or value >= 1 << 128:
        raise ValueError(f"uint out of range: {value}")
    return bytes([CV_UINT]) + value.to_bytes(16, "big")


def principal_cv(principal: str) -> bytes:
    """Serialise a standard or contract principal."""
    address, _, name = principal.partition(".")
    version, hash_bytes = c32_address_decode(address)
    if not name:
        return bytes([CV_STANDARD_PRINCIPAL, version]) + hash_bytes
    encoded = name.encode("ascii")
    if len(encoded) > 128:
        raise ValueError(f"contract name too long: {name}")
    return bytes([CV_CONTRACT_PRINCIPAL, version]) + hash_bytes + bytes([len(encoded)]) + encoded
