from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Iterator, Optional


class JossError(Exception):
    """Base class for interpreter errors."""


class JossParseError(JossError):
    """Raised when tokenizing or parsing fails."""


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


ID = "ID"
OP = "OP"
VAR = "VAR"
NUM = "NUM"
STR = "STR"
OPEN_BRACKET = "OPEN_BRACKET"
CLOSE_BRACKET = "CLOSE_BRACKET"
COMMA = "COMMA"
SEMICOLON = "SEMICOLON"
COLON = "COLON"
PERIOD = "PERIOD"
OTHER = "OTHER"
END = "END"

KEYWORDS = (
    "Type",
    "Set",
    "Let",
    "Do",
    "if",
    "for",
    "times",
    "step",
    "part",
)

BRACKET_PAIRS = {"(": ")", "[": "]"}

# Alternation order matters: keywords and word operators must win over VAR.
TOKEN_PATTERNS = (
    ("SPACE", r"\s+"),
    (ID, r"(?:" + "|".join(KEYWORDS) + r")\b"),
    (OP, r"[<>!]=|[-+*/^=<>]|(?:and|or)\b"),
    (VAR, r"[A-Za-z]\w*"),
    (NUM, r"\d+(?:\.\d+)?|\.\d+"),
    # Greedy on purpose: a literal runs to the last quote on the line.
    (STR, r'".*"'),
    (OPEN_BRACKET, r"[(\[]"),
    (CLOSE_BRACKET, r"[)\]]"),
    (COMMA, r","),
    (SEMICOLON, r";"),
    (COLON, r":"),
    (PERIOD, r"\."),
    (OTHER, r"."),
)

TOKEN_REGEX = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in TOKEN_PATTERNS))


def is_comment(text: str) -> bool:
    stripped = text.strip()
    return stripped == "" or stripped.startswith("*") or stripped.endswith("*")


class Lexer:
    def __init__(self, text: str, line: int = 1) -> None:
        self.text = text
        self.line = line

    def tokens(self) -> Iterator[Token]:
        """Yield tokens lazily. Comment lines yield nothing."""
        if is_comment(self.text):
            return
        text = self.text
        index = 0
        n = len(text)
        while index < n:
            # SPACE takes newlines and OTHER takes everything else, so this always matches.
            match = TOKEN_REGEX.match(text, index)
            if match is None:
                raise JossParseError(f"Unreadable input at column {index + 1}")
            kind = match.lastgroup
            if kind != "SPACE":
                yield Token(kind, match.group(), self.line, index + 1)
            index = match.end()

    def stream(self) -> "TokenStream":
        return TokenStream(self.tokens(), Token(END, "", self.line, len(self.text) + 1))


class TokenStream:
    """Single-token lookahead over a lazy token iterator."""

    def __init__(self, tokens: Iterator[Token], terminal: Token) -> None:
        self._tokens = tokens
        self.terminal = terminal
        self._state: Token = self._advance()

    def _advance(self) -> Token:
        token: Optional[Token] = next(self._tokens, None)
        return self.terminal if token is None else token

    def next(self) -> Token:
        current = self._state
        self._state = self._advance()
        return current

    def peek(self) -> Token:
        return self._state


def tokenize(text: str, line: int = 1) -> TokenStream:
    return Lexer(text, line).stream()
