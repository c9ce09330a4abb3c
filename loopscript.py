"""
LoopScript - live-codable cycle patterns.

Mini-notation text is tokenized, parsed into an immutable pattern tree,
queried for the events of one cycle and fired by a cycle scheduler whose
running pattern can be swapped at any instant.

Example:
    import loopscript as ls

    sched = ls.Scheduler(lambda value, onset, dur: print(value), cps=0.5)
    sched.start("[bd sn]*2 <hh oh>")
    sched.replace("bd/8:3 . every 2 rev")
    sched.stop()
"""
import itertools
import math
import queue
import random
import re
import threading
import time as _time
from dataclasses import dataclass, field, replace as _replace
from enum import Enum
from fractions import Fraction
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Protocol, Tuple, Union

# -----------------------------
# Helpers
# -----------------------------
def _clamp(x, lo, hi):
    return lo if x < lo else hi if x > hi else x


def _to_time(value) -> Fraction:
    """Convert a number to cycle time. Floats are limited to 1e-6 resolution."""
    if isinstance(value, Fraction):
        return value
    if isinstance(value, float):
        return Fraction(value).limit_denominator(1000000)
    return Fraction(value)


def _is_number(value) -> bool:
    return isinstance(value, (int, float, Fraction)) and not isinstance(value, bool)


def _whole_number(value, what):
    if not _is_number(value) or int(value) != value:
        raise ValueError(f"{what} must be a whole number, got {value}")
    return int(value)

# -----------------------------
# Debug System
# -----------------------------
_debug_enabled = False
_debug_level = 1

def _log(category: str, msg: str, level: int = 1):
    """
    Internal logging helper.

    Args:
        category: Log category for prefix (e.g., 'scheduler', 'fire')
        msg: Message to log
        level: Required debug level (1=important, 2=verbose)
    """
    if not _debug_enabled:
        return
    if level > _debug_level:
        return
    print(f"[LoopScript:{category}] {msg}")

def _warn(msg: str):
    """Report a non-fatal runtime problem. Always printed."""
    print(f"[LoopScript] {msg}")

def debug(enable=None, *, level=None):
    """
    Toggle or query debug logging.

    Args:
        enable: True to enable, False to disable, None to query
        level: Debug verbosity (1=important events, 2=verbose). Keyword-only.

    Returns:
        dict with 'enabled' and 'level' keys when querying (enable=None)
        None when setting

    Examples:
        ls.debug(True)            # Enable, level 1
        ls.debug(True, level=2)   # Enable, level 2 (every fired event)
        ls.debug(False)           # Disable
        ls.debug()                # {'enabled': True, 'level': 2}
    """
    global _debug_enabled, _debug_level

    if enable is None:
        return {'enabled': _debug_enabled, 'level': _debug_level}

    _debug_enabled = bool(enable)
    if level is not None:
        _debug_level = int(level)

    if _debug_enabled:
        _log("debug", f"enabled (level={_debug_level})")

# -----------------------------
# Errors
# -----------------------------
class LoopScriptError(Exception):
    """Base class for every error raised by LoopScript."""


class LexError(LoopScriptError, ValueError):
    """Notation text that cannot be split into tokens."""

    def __init__(self, msg, pos=None):
        super().__init__(msg)
        self.pos = pos


class MalformedPattern(LoopScriptError, ValueError):
    """Token stream that does not form a valid pattern."""

    def __init__(self, msg, pos=None):
        super().__init__(msg)
        self.pos = pos


class SchedulerError(LoopScriptError):
    """Scheduler used in the wrong state."""


class AlreadyRunning(SchedulerError):
    pass


class NotRunning(SchedulerError):
    pass


class SounderError(LoopScriptError):
    """A Sounder could not produce an event. Reported, never fatal."""

    def __init__(self, msg, value=None, onset=None):
        super().__init__(msg)
        self.value = value
        self.onset = onset

# -----------------------------
# Registry pattern
# -----------------------------
class _Registry:
    """A dict-like container that prints nicely and supports .add()"""

    def __init__(self, name, data):
        self._name = name
        self._data = data

    def __repr__(self):
        """When you type `ls.transforms` in REPL, show the contents."""
        items = ', '.join(sorted(self._data.keys()))
        return f"<{self._name}: {items}>"

    def __getitem__(self, key):
        return self._data.get(key.lower())

    def __contains__(self, key):
        return key.lower() in self._data

    def __iter__(self):
        return iter(self._data.keys())

    def add(self, name, value):
        """Add a custom entry."""
        self._data[name.lower()] = value

    def list(self):
        """Return list of all names."""
        return list(self._data.keys())

    def get(self, key, default=None):
        """Dict-like get with default."""
        return self._data.get(key.lower(), default)

# -----------------------------
# Type Aliases
# -----------------------------
Time = Fraction
Arc = Tuple[Time, Time]

# -----------------------------
# Tokenizer
# -----------------------------
class TokenKind(Enum):
    NUMBER = 'number'
    STRING = 'string'
    SYMBOL = 'symbol'
    LIST_START = '['
    LIST_END = ']'
    ANGLE_START = '<'
    ANGLE_END = '>'
    DOT = '.'
    COLON = ':'
    SLASH = '/'
    STAR = '*'
    PLUS = '+'
    MINUS = '-'
    MODULO = '%'
    TILDE = '~'


class Token(NamedTuple):
    kind: TokenKind
    text: str
    pos: int


_TOKEN_SPEC = [
    ('STRING',       r'"[^"]*"|\'[^\']*\''),
    ('UNTERMINATED', r'["\']'),             # quote with no partner
    ('DECIMAL',      r'\d+\.\d+[\w#]*'),    # 0.25: '.' between digits
    ('WORD',         r'[\w#]+'),            # names and numbers, bd, c#, 1e3
    ('LIST_START',   r'\['),
    ('LIST_END',     r'\]'),
    ('ANGLE_START',  r'<'),
    ('ANGLE_END',    r'>'),
    ('DOT',          r'\.'),
    ('COLON',        r':'),
    ('SLASH',        r'/'),
    ('STAR',         r'\*'),
    ('PLUS',         r'\+'),
    ('MINUS',        r'-'),
    ('MODULO',       r'%'),
    ('TILDE',        r'~'),
    ('WS',           r'\s+'),
    ('MISMATCH',     r'.'),
]

_TOK_REGEX = '|'.join(f'(?P<{name}>{pattern})' for name, pattern in _TOKEN_SPEC)
_IGNORE = {'WS'}


def _classify(word: str) -> TokenKind:
    try:
        value = float(word)
    except ValueError:
        return TokenKind.SYMBOL
    # 'inf' and 'nan' parse as floats but read as names
    return TokenKind.NUMBER if math.isfinite(value) else TokenKind.SYMBOL


def tokenize(text: str) -> List[Token]:
    """
    Split mini-notation text into tokens.

    Whitespace separates words and is dropped, except inside quotes.
    Structural characters end the current word and become one-character
    tokens. A '.' between digits is a decimal point.

    Raises:
        LexError: unterminated string or a character outside the notation
    """
    tokens = []
    for mo in re.finditer(_TOK_REGEX, text):
        kind = mo.lastgroup
        pos = mo.start()
        if kind in _IGNORE:
            continue
        if kind == 'UNTERMINATED':
            raise LexError(f"unterminated string starting at position {pos}", pos=pos)
        if kind == 'MISMATCH':
            raise LexError(f"unrecognized character {mo.group()!r} at position {pos}", pos=pos)

        if kind == 'STRING':
            tokens.append(Token(TokenKind.STRING, mo.group()[1:-1], pos))
        elif kind in ('WORD', 'DECIMAL'):
            tokens.append(Token(_classify(mo.group()), mo.group(), pos))
        else:
            tokens.append(Token(TokenKind[kind], mo.group(), pos))
    return tokens


def _number(text: str):
    try:
        return int(text)
    except ValueError:
        return float(text)

# -----------------------------
# Pattern Tree
# -----------------------------
@dataclass(frozen=True)
class Leaf:
    value: Any


@dataclass(frozen=True)
class Sequence:
    """Children share the parent's span evenly, in order."""
    children: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Parallel:
    """One child per cycle, picked by the choice policy."""
    children: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Call:
    """A transform name and its operands, not yet bound to a subject."""
    operation: str
    operands: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Transform:
    child: Any
    operation: str
    operands: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Euclidean:
    steps: int
    pulses: int
    rotation: int = 0
    child: Any = Leaf(1)


@dataclass(frozen=True)
class Modulation:
    child: Any
    amount: float
    rate: float = 1


@dataclass(frozen=True)
class Operation:
    child: Any
    op: str
    operand: Union[int, float]


PatternNode = Union[Leaf, Sequence, Parallel, Transform, Euclidean, Modulation, Operation]
_NODE_TYPES = (Leaf, Sequence, Parallel, Transform, Euclidean, Modulation, Operation)

# -----------------------------
# Event
# -----------------------------
@dataclass(frozen=True)
class Event:
    """
    A value active over part of a cycle.

    Attributes:
        value: Leaf value (number or name)
        start, end: Active span, cycle-relative
        part: Fragment index when the event was chopped, else None
        whole: The logical span when the event was clipped at a span
               boundary, else None (the event is whole)
    """
    value: Any
    start: Time
    end: Time
    part: Optional[int] = None
    whole: Optional[Arc] = None

    @property
    def duration(self) -> Time:
        return self.end - self.start

    def has_onset(self) -> bool:
        """
        True if the event begins inside its active span.

        A clipped tail of an event that started earlier has no onset and
        must not be fired again.
        """
        return self.whole is None or self.whole[0] == self.start


def _clip(events: List[Event], start: Time, end: Time) -> List[Event]:
    out = []
    for ev in events:
        s = max(ev.start, start)
        e = min(ev.end, end)
        if s >= e:
            continue
        if s == ev.start and e == ev.end:
            out.append(ev)
        else:
            whole = ev.whole if ev.whole is not None else (ev.start, ev.end)
            out.append(Event(ev.value, s, e, ev.part, whole))
    return out


def _mirror(events: List[Event], start: Time, end: Time) -> List[Event]:
    """Reflect events inside [start, end), keeping the span boundaries fixed."""
    pivot = start + end
    out = []
    for ev in reversed(events):
        whole = None if ev.whole is None else (pivot - ev.whole[1], pivot - ev.whole[0])
        out.append(Event(ev.value, pivot - ev.end, pivot - ev.start, ev.part, whole))
    return out

# -----------------------------
# Euclidean rhythms
# -----------------------------
def euclidean(steps: int, pulses: int, rotation: int = 0) -> List[bool]:
    """
    Distribute `pulses` onsets as evenly as possible over `steps` slots.

    Bucket (Bresenham) distribution, then a cyclic left rotation.

    Examples:
        euclidean(8, 3)    -> [1,0,0,1,0,0,1,0]
        euclidean(8, 3, 1) -> [0,0,1,0,0,1,0,1]
    """
    if steps < 1:
        raise ValueError(f"euclid steps must be at least 1, got {steps}")
    pulses = _clamp(pulses, 0, steps)
    if pulses == 0:
        return [False] * steps

    mask = []
    bucket = steps - pulses  # primes the first slot as an onset
    for _ in range(steps):
        bucket += pulses
        if bucket >= steps:
            bucket -= steps
            mask.append(True)
        else:
            mask.append(False)

    shift = rotation % steps
    return mask[shift:] + mask[:shift]

# -----------------------------
# Choice policies (Parallel)
# -----------------------------
def round_robin(cycle: int, count: int, seed=0) -> int:
    """<a b c> plays a on cycle 0, b on cycle 1, c on cycle 2, a on cycle 3..."""
    return cycle % count


def random_choice(cycle: int, count: int, seed=0) -> int:
    """Seeded per-cycle pick; the same seed and cycle always choose the same child."""
    return random.Random(f"{seed}:{cycle}:choice").randrange(count)


policies = _Registry('policies', {
    'round_robin': round_robin,
    'random':      random_choice,
})


def _resolve_policy(choose):
    """A choice policy function, or the name of one in `policies`."""
    if choose is None:
        return round_robin
    if isinstance(choose, str):
        policy = policies[choose]
        if policy is None:
            known = ', '.join(policies.list())
            raise ValueError(f"unknown choice policy '{choose}' (known: {known})")
        return policy
    return choose

# -----------------------------
# Transforms
# -----------------------------
# A transform function receives `render(cycle, start, end)` for its subject
# and returns the events it produces inside [start, end).

class TransformDef(NamedTuple):
    fn: Callable
    min_args: int = 0
    max_args: int = 0
    nested: bool = False                  # ends with a nested transform call
    check: Optional[Callable] = None      # validates operands, raises ValueError


def _fast(render, cycle, start, end, factor: Time) -> List[Event]:
    """
    Squeeze `factor` subject cycles into this span.

    The subject is rendered once per subject cycle overlapping the span and
    clipped to it, so slow factors show the slice belonging to this cycle.
    """
    if factor == 0:
        return []
    width = (end - start) / factor
    begin = cycle * factor
    events = []
    for c in range(math.floor(begin), math.ceil((cycle + 1) * factor)):
        slot_start = start + (c - begin) * width
        events.extend(_clip(render(c, slot_start, slot_start + width), start, end))
    return events


def _apply(call: Call, render, cycle, start, end, ctx) -> List[Event]:
    definition = transforms[call.operation]
    if definition is None:
        raise MalformedPattern(f"unknown transform '{call.operation}'")
    return definition.fn(render, cycle, start, end, call.operands, ctx)


def _t_rev(render, cycle, start, end, operands, ctx):
    return _mirror(render(cycle, start, end), start, end)


def _t_palindrome(render, cycle, start, end, operands, ctx):
    mid = (start + end) / 2
    forward = render(cycle, start, mid)
    backward = _mirror(render(cycle, mid, end), mid, end)
    return forward + backward


def _t_fast(render, cycle, start, end, operands, ctx):
    return _fast(render, cycle, start, end, _to_time(operands[0]))


def _t_slow(render, cycle, start, end, operands, ctx):
    factor = _to_time(operands[0])
    if factor == 0:
        return []
    return _fast(render, cycle, start, end, 1 / factor)


def _t_degrade(render, cycle, start, end, operands, ctx):
    probability = float(operands[0]) if operands else 0.5
    # one draw per event, always, so later draws do not depend on earlier outcomes
    return [ev for ev in render(cycle, start, end) if ctx.rng.random() >= probability]


def _t_chop(render, cycle, start, end, operands, ctx):
    parts = int(operands[0])
    out = []
    for ev in render(cycle, start, end):
        # cut the logical span, so fragments of a clipped tail keep no onset
        lo, hi = ev.whole if ev.whole is not None else (ev.start, ev.end)
        width = (hi - lo) / parts
        pieces = [Event(ev.value, lo + width * i, lo + width * (i + 1), i) for i in range(parts)]
        out.extend(_clip(pieces, ev.start, ev.end))
    return out


def _t_every(render, cycle, start, end, operands, ctx):
    if cycle % int(operands[0]) == 0:
        return _apply(operands[-1], render, cycle, start, end, ctx)
    return render(cycle, start, end)


def _t_when(render, cycle, start, end, operands, ctx):
    if cycle % int(operands[0]) >= operands[1]:
        return _apply(operands[-1], render, cycle, start, end, ctx)
    return render(cycle, start, end)


def _t_sometimes(render, cycle, start, end, operands, ctx):
    probability = float(operands[0]) if len(operands) > 1 else 0.5
    if ctx.rng.random() < probability:
        return _apply(operands[-1], render, cycle, start, end, ctx)
    return render(cycle, start, end)


def _check_factor(operands):
    if operands[0] < 0:
        raise ValueError(f"factor must not be negative, got {operands[0]}")


def _check_probability(operands):
    numbers = [x for x in operands if not isinstance(x, Call)]
    if numbers and not 0 <= numbers[0] <= 1:
        raise ValueError(f"probability must be between 0 and 1, got {numbers[0]}")


def _check_chop(operands):
    if _whole_number(operands[0], "chop count") < 1:
        raise ValueError("chop count must be at least 1")


def _check_every(operands):
    if _whole_number(operands[0], "every period") < 1:
        raise ValueError("every period must be at least 1")


def _check_when(operands):
    if _whole_number(operands[0], "when period") < 1:
        raise ValueError("when period must be at least 1")


transforms = _Registry('transforms', {
    'rev':        TransformDef(_t_rev),
    'palindrome': TransformDef(_t_palindrome),
    'fast':       TransformDef(_t_fast, 1, 1, check=_check_factor),
    'slow':       TransformDef(_t_slow, 1, 1, check=_check_factor),
    'degrade':    TransformDef(_t_degrade, 0, 1, check=_check_probability),
    'chop':       TransformDef(_t_chop, 1, 1, check=_check_chop),
    'every':      TransformDef(_t_every, 1, 1, nested=True, check=_check_every),
    'when':       TransformDef(_t_when, 2, 2, nested=True, check=_check_when),
    'sometimes':  TransformDef(_t_sometimes, 0, 1, nested=True, check=_check_probability),
})

# -----------------------------
# Mini-Notation Parser
# -----------------------------
_CLOSERS = (TokenKind.LIST_END, TokenKind.ANGLE_END)
_OPERATORS = (TokenKind.STAR, TokenKind.PLUS, TokenKind.MINUS, TokenKind.MODULO)
_POSTFIX = _OPERATORS + (TokenKind.SLASH, TokenKind.TILDE)
_VALUES = (TokenKind.NUMBER, TokenKind.STRING, TokenKind.SYMBOL)


class _MiniParser:
    """Recursive descent parser for mini-notation."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0
        self.modulation_depth = 0

    def peek(self, offset: int = 0) -> Optional[Token]:
        """Look at a token without consuming."""
        i = self.pos + offset
        return self.tokens[i] if i < len(self.tokens) else None

    def advance(self) -> Token:
        tok = self.peek()
        if tok is None:
            raise MalformedPattern("unexpected end of input")
        self.pos += 1
        return tok

    def _at_number(self) -> bool:
        tok = self.peek()
        if tok is None:
            return False
        if tok.kind is TokenKind.MINUS:
            nxt = self.peek(1)
            return nxt is not None and nxt.kind is TokenKind.NUMBER
        return tok.kind is TokenKind.NUMBER

    def expect_number(self, after: Token, signed: bool = False):
        """
        Consume a number operand for `after`.

        A leading '-' is a sign (not an operator) when `signed` is set or
        while modulation operands are being parsed.
        """
        tok = self.peek()
        sign = 1
        if tok is not None and tok.kind is TokenKind.MINUS and (signed or self.modulation_depth > 0):
            self.advance()
            sign = -1
            tok = self.peek()
        if tok is None or tok.kind is not TokenKind.NUMBER:
            found = f"'{tok.text}' at position {tok.pos}" if tok else "end of input"
            raise MalformedPattern(
                f"'{after.text}' at position {after.pos} expects a number, found {found}",
                pos=tok.pos if tok else after.pos,
            )
        self.advance()
        return sign * _number(tok.text)

    def parse(self) -> Sequence:
        """
        pattern ::= item*   (implicit outer [...])
        """
        items = self.parse_sequence(None, None)
        return Sequence(tuple(items))

    def parse_sequence(self, closer: Optional[TokenKind], opener: Optional[Token]) -> list:
        """
        sequence ::= ('.' transform | element)*

        Stops before `closer`; the caller consumes it.
        """
        items = []
        while True:
            tok = self.peek()
            if tok is None:
                if closer is not None:
                    raise MalformedPattern(
                        f"unclosed '{opener.text}' at position {opener.pos}", pos=opener.pos)
                return items

            if tok.kind in _CLOSERS:
                if tok.kind is closer:
                    return items
                raise MalformedPattern(f"unmatched '{tok.text}' at position {tok.pos}", pos=tok.pos)

            if tok.kind is TokenKind.DOT:
                self.advance()
                items = [self.parse_transform(items, tok)]
            elif tok.kind in _POSTFIX and items:
                # operator after a transform, or after whitespace
                items[-1] = self.parse_postfix(items[-1])
            else:
                items.append(self.parse_postfix(self.parse_atom()))

    def parse_atom(self):
        """
        atom ::= NUMBER | STRING | SYMBOL (':' word)* | '[' sequence ']'
               | '<' sequence '>' | '/' euclid | '-' NUMBER
        """
        tok = self.advance()

        if tok.kind is TokenKind.NUMBER:
            return Leaf(_number(tok.text))

        elif tok.kind is TokenKind.STRING:
            return Leaf(tok.text)

        elif tok.kind is TokenKind.SYMBOL:
            # bd:3 names a sample variant
            name = tok.text
            while self.peek() is not None and self.peek().kind is TokenKind.COLON:
                nxt = self.peek(1)
                if nxt is None or nxt.kind not in (TokenKind.NUMBER, TokenKind.SYMBOL):
                    colon = self.peek()
                    raise MalformedPattern(f"dangling ':' at position {colon.pos}", pos=colon.pos)
                self.pos += 2
                name = f"{name}:{nxt.text}"
            return Leaf(name)

        elif tok.kind is TokenKind.LIST_START:
            children = self.parse_sequence(TokenKind.LIST_END, tok)
            self.advance()
            return Sequence(tuple(children))

        elif tok.kind is TokenKind.ANGLE_START:
            children = self.parse_sequence(TokenKind.ANGLE_END, tok)
            self.advance()
            return Parallel(tuple(children))

        elif tok.kind is TokenKind.SLASH:
            # Standalone euclid: /8:3 fires the value 1
            return self.parse_euclid(Leaf(1), tok)

        elif tok.kind is TokenKind.MINUS and self.peek() is not None and self.peek().kind is TokenKind.NUMBER:
            return Leaf(-_number(self.advance().text))

        elif tok.kind in _POSTFIX:
            raise MalformedPattern(
                f"operator '{tok.text}' at position {tok.pos} has no preceding element", pos=tok.pos)

        raise MalformedPattern(f"unexpected '{tok.text}' at position {tok.pos}", pos=tok.pos)

    def parse_postfix(self, node):
        """
        postfix ::= '/' euclid | ('*'|'+'|'-'|'%') NUMBER | '~' modulation
        """
        while True:
            tok = self.peek()
            if tok is None or tok.kind not in _POSTFIX:
                return node
            self.advance()

            if tok.kind is TokenKind.SLASH:
                node = self.parse_euclid(node, tok)
            elif tok.kind is TokenKind.TILDE:
                node = self.parse_modulation(node, tok)
            else:
                operand = self.expect_number(tok)
                if tok.kind is TokenKind.MODULO and operand == 0:
                    raise MalformedPattern(f"modulo by zero at position {tok.pos}", pos=tok.pos)
                node = Operation(node, tok.text, operand)

    def parse_euclid(self, child, slash: Token) -> Euclidean:
        """
        euclid ::= steps ':' pulses [':' rotation]
        """
        steps = self.expect_number(slash)
        colon = self.peek()
        if colon is None or colon.kind is not TokenKind.COLON:
            raise MalformedPattern(
                f"euclid at position {slash.pos} needs steps:pulses", pos=slash.pos)
        self.advance()
        pulses = self.expect_number(colon)
        rotation = 0
        if self.peek() is not None and self.peek().kind is TokenKind.COLON:
            rotation = self.expect_number(self.advance(), signed=True)

        try:
            steps = _whole_number(steps, "euclid steps")
            pulses = _whole_number(pulses, "euclid pulses")
            rotation = _whole_number(rotation, "euclid rotation")
        except ValueError as e:
            raise MalformedPattern(f"{e} (position {slash.pos})", pos=slash.pos) from e
        if steps < 1 or pulses < 0:
            raise MalformedPattern(
                f"euclid at position {slash.pos} needs steps >= 1 and pulses >= 0", pos=slash.pos)
        return Euclidean(steps, pulses, rotation, child)

    def parse_modulation(self, child, tilde: Token) -> Modulation:
        """
        modulation ::= amount [rate]
        """
        self.modulation_depth += 1
        try:
            amount = self.expect_number(tilde)
            rate = 1
            if self._at_number():
                rate = self.expect_number(tilde)
        finally:
            self.modulation_depth -= 1
        _log("parser", f"modulation amount={amount} rate={rate}", level=2)
        return Modulation(child, amount, rate)

    def parse_transform(self, items: list, dot: Token) -> Transform:
        """
        transform ::= SYMBOL operand*

        Everything parsed so far in the current sequence is the subject.
        """
        if not items:
            raise MalformedPattern(f"'.' at position {dot.pos} has nothing to transform", pos=dot.pos)
        subject = items[0] if len(items) == 1 else Sequence(tuple(items))
        call = self.parse_call(dot)
        return Transform(subject, call.operation, call.operands)

    def parse_call(self, anchor: Token) -> Call:
        tok = self.peek()
        if tok is None or tok.kind is not TokenKind.SYMBOL:
            raise MalformedPattern(
                f"expected a transform name after position {anchor.pos}", pos=anchor.pos)
        self.advance()
        name = tok.text.lower()
        definition = transforms.get(name)
        if definition is None:
            raise MalformedPattern(f"unknown transform '{tok.text}' at position {tok.pos}", pos=tok.pos)

        operands = []
        while len(operands) < definition.max_args and self._at_number():
            operands.append(self.expect_number(tok, signed=True))
        if len(operands) < definition.min_args:
            raise MalformedPattern(
                f"'{name}' at position {tok.pos} expects {definition.min_args} operand(s), "
                f"got {len(operands)}", pos=tok.pos)

        if definition.nested:
            operands.append(self.parse_call(tok))
        else:
            extra = self.peek()
            if extra is not None and (extra.kind in _VALUES or self._at_number()):
                raise MalformedPattern(
                    f"too many operands for '{name}' at position {extra.pos}", pos=extra.pos)

        if definition.check is not None:
            try:
                definition.check(operands)
            except ValueError as e:
                raise MalformedPattern(f"'{name}' at position {tok.pos}: {e}", pos=tok.pos) from e
        return Call(name, tuple(operands))


def parse(source) -> Sequence:
    """
    Parse mini-notation into a pattern tree. The root is always a Sequence.

    Args:
        source: Notation text, or tokens from tokenize()

    Raises:
        LexError, MalformedPattern
    """
    tokens = tokenize(source) if isinstance(source, str) else list(source)
    root = _MiniParser(tokens).parse()
    _log("parser", f"{len(tokens)} tokens -> {root!r}", level=2)
    return root

# -----------------------------
# Pattern Evaluator
# -----------------------------
class _Context:
    """Per-query state. Never shared between queries."""
    __slots__ = ('seed', 'choose', 'rng')

    def __init__(self, seed, choose, cycle):
        self.seed = seed
        self.choose = choose
        self.rng = random.Random(f"{seed}:{cycle}")


def _render(node, cycle: int, start: Time, end: Time, ctx: _Context) -> List[Event]:
    renderer = _RENDERERS.get(type(node))
    if renderer is None:
        raise TypeError(f"not a pattern node: {node!r}")
    return renderer(node, cycle, start, end, ctx)


def _render_leaf(node, cycle, start, end, ctx):
    return [Event(node.value, start, end)]


def _render_sequence(node, cycle, start, end, ctx):
    n = len(node.children)
    if n == 0:
        return []
    width = (end - start) / n
    events = []
    for i, child in enumerate(node.children):
        events.extend(_render(child, cycle, start + width * i, start + width * (i + 1), ctx))
    return events


def _render_parallel(node, cycle, start, end, ctx):
    count = len(node.children)
    if count == 0:
        return []
    index = ctx.choose(cycle, count, ctx.seed) % count
    # nested alternations advance only on the cycles they are chosen
    return _render(node.children[index], cycle // count, start, end, ctx)


def _render_transform(node, cycle, start, end, ctx):
    def render(c, s, e):
        return _render(node.child, c, s, e, ctx)
    return _apply(Call(node.operation, node.operands), render, cycle, start, end, ctx)


def _render_euclidean(node, cycle, start, end, ctx):
    width = (end - start) / node.steps
    events = []
    for k, hit in enumerate(euclidean(node.steps, node.pulses, node.rotation)):
        if hit:
            events.extend(_render(node.child, cycle, start + width * k, start + width * (k + 1), ctx))
    return events


def _render_modulation(node, cycle, start, end, ctx):
    span = end - start
    events = []
    for ev in _render(node.child, cycle, start, end, ctx):
        wave = math.sin(2 * math.pi * node.rate * (cycle + float(ev.start)))
        offset = _to_time(node.amount * wave) * span
        moved = _clamp(ev.start + offset, start, end - ev.duration)
        shift = moved - ev.start
        whole = None if ev.whole is None else (ev.whole[0] + shift, ev.whole[1] + shift)
        events.append(Event(ev.value, ev.start + shift, ev.end + shift, ev.part, whole))
    return events


_ARITHMETIC = {
    '*': lambda a, b: a * b,
    '+': lambda a, b: a + b,
    '-': lambda a, b: a - b,
    '%': lambda a, b: a % b,
}


def _render_operation(node, cycle, start, end, ctx):
    if node.op == '*' and not (isinstance(node.child, Leaf) and _is_number(node.child.value)):
        # bd*2, [bd sn]*2: repeat the subject
        def render(c, s, e):
            return _render(node.child, c, s, e, ctx)
        return _fast(render, cycle, start, end, _to_time(node.operand))

    fn = _ARITHMETIC[node.op]
    return [
        _replace(ev, value=fn(ev.value, node.operand)) if _is_number(ev.value) else ev
        for ev in _render(node.child, cycle, start, end, ctx)
    ]


_RENDERERS = {
    Leaf:       _render_leaf,
    Sequence:   _render_sequence,
    Parallel:   _render_parallel,
    Transform:  _render_transform,
    Euclidean:  _render_euclidean,
    Modulation: _render_modulation,
    Operation:  _render_operation,
}


def query(node, cycle: int = 0, arc=None, *, seed=0, choose=None) -> List[Event]:
    """
    Events of one cycle of `node`, ordered by onset.

    Args:
        node: Pattern tree (from parse())
        cycle: Cycle index (drives <...> choice, every/when, random draws)
        arc: Optional (start, end) in cycle-relative time; only events
             overlapping it are returned
        seed: Seed for degrade/sometimes/random choice
        choose: Parallel choice policy or its name in `policies`,
                default round_robin

    The whole cycle is always rendered before filtering, so a sub-arc query
    returns exactly the matching events of the full-cycle query.
    """
    ctx = _Context(seed, _resolve_policy(choose), cycle)
    events = _render(node, cycle, Fraction(0), Fraction(1), ctx)
    if arc is not None:
        lo, hi = _to_time(arc[0]), _to_time(arc[1])
        events = [ev for ev in events if ev.start < hi and ev.end > lo]
    events.sort(key=lambda ev: ev.start)
    return events


def query_at(node, t, *, seed=0, choose=None) -> List[Event]:
    """Events active at absolute cycle time `t` (cycle = floor(t))."""
    t = _to_time(t)
    cycle = math.floor(t)
    pos = t - cycle
    return [ev for ev in query(node, cycle, seed=seed, choose=choose) if ev.start <= pos < ev.end]

# -----------------------------
# Sounder (external collaborator)
# -----------------------------
class Sounder(Protocol):
    def sound(self, value, onset: float, duration: float) -> None:
        """Produce `value` at clock time `onset` for `duration` seconds."""
        ...


class CallbackSounder:
    """Adapts a plain function fn(value, onset, duration) to a Sounder."""

    def __init__(self, fn):
        self._fn = fn

    def sound(self, value, onset, duration):
        self._fn(value, onset, duration)

    def __repr__(self):
        return f"<CallbackSounder {getattr(self._fn, '__name__', self._fn)!s}>"

# -----------------------------
# Clock
# -----------------------------
class ThreadClock:
    """Monotonic time source with one-shot threading.Timer callbacks."""

    def now(self) -> float:
        return _time.monotonic()

    def call_at(self, when: float, fn):
        """Run `fn` at clock time `when`. Returns a handle with cancel()."""
        timer = threading.Timer(max(0.0, when - self.now()), fn)
        timer.daemon = True
        timer.start()
        return timer

# -----------------------------
# Cycle Scheduler
# -----------------------------
class SchedulerState(Enum):
    STOPPED = 'stopped'
    RUNNING = 'running'


class ScheduledEvent:
    """An Event bound to a clock time and a cancellable timer."""
    __slots__ = ('id', 'event', 'cycle', 'fire_time', 'duration', 'handle', '_done')

    def __init__(self, id, event: Event, cycle: int, fire_time: float, duration: float):
        self.id = id
        self.event = event
        self.cycle = cycle
        self.fire_time = fire_time
        self.duration = duration
        self.handle = None
        self._done = False

    def claim(self) -> bool:
        """
        Mark as fired or cancelled. Only the first claim succeeds.

        Called with the scheduler lock held.
        """
        if self._done:
            return False
        self._done = True
        return True

    def __repr__(self):
        return (f"<ScheduledEvent #{self.id} {self.event.value!r} "
                f"cycle={self.cycle} at={self.fire_time:.3f}>")


@dataclass
class CycleState:
    pattern: Any
    cycle_start: float
    cycle_index: int = 0
    pending: Dict[int, ScheduledEvent] = field(default_factory=dict)


def _check_rate(cps) -> float:
    cps = float(cps)
    if not cps > 0:
        raise ValueError(f"cycles per second must be positive, got {cps}")
    return cps


def _coerce_pattern(pattern):
    if isinstance(pattern, str):
        return parse(pattern)
    if isinstance(pattern, _NODE_TYPES):
        return pattern
    raise TypeError(f"expected notation text or a pattern node, got {type(pattern).__name__}")


class Scheduler:
    """
    Fires the events of a pattern cycle after cycle against a clock.

    Every mutation (start, replace, stop, timer callbacks) runs under one
    lock. The Sounder is called outside the lock.

    Args:
        sounder: Sounder, or a function fn(value, onset, duration)
        cps: Cycles per second
        clock: Time source with now() and call_at(); default ThreadClock
        seed: Seed for degrade/sometimes/random choice
        choose: Parallel choice policy (cycle, count, seed) -> index,
                or its name in `policies`
        on_error: Optional callback(SounderError)

    Sounder failures are put on `errors` (a queue.Queue), passed to
    `on_error` and printed. The cycle keeps running.
    """

    def __init__(self, sounder, cps=0.5, *, clock=None, seed=0, choose=None, on_error=None):
        if not hasattr(sounder, 'sound') and callable(sounder):
            sounder = CallbackSounder(sounder)
        self._sounder = sounder
        self._clock = clock if clock is not None else ThreadClock()
        self._cps = _check_rate(cps)
        self._pending_cps = None          # applied at the next cycle boundary
        self._seed = seed
        self._choose = _resolve_policy(choose)
        self.on_error = on_error
        self.errors = queue.Queue()

        self._lock = threading.RLock()
        self._state = SchedulerState.STOPPED
        self._cycle: Optional[CycleState] = None
        self._ids = itertools.count()
        self._generation = 0              # invalidates boundary timers of earlier runs
        self._boundary = None

    # --- Properties ---

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SchedulerState.RUNNING

    @property
    def phase(self) -> str:
        """'stopped', 'scheduling' (timers pending) or 'idle' (waiting for the next cycle)."""
        with self._lock:
            if self._state is SchedulerState.STOPPED:
                return 'stopped'
            return 'scheduling' if self._cycle.pending else 'idle'

    @property
    def cps(self) -> float:
        return self._cps

    @property
    def pattern(self):
        with self._lock:
            return self._cycle.pattern if self._cycle else None

    @property
    def cycle_index(self) -> Optional[int]:
        with self._lock:
            return self._cycle.cycle_index if self._cycle else None

    @property
    def pending(self) -> List[ScheduledEvent]:
        """Snapshot of scheduled, not yet fired events, by fire time."""
        with self._lock:
            if self._cycle is None:
                return []
            return sorted(self._cycle.pending.values(), key=lambda item: (item.fire_time, item.id))

    # --- Control ---

    def start(self, pattern, cps=None):
        """
        Start firing `pattern` from cycle 0 at the current clock time.

        Raises:
            AlreadyRunning: scheduler is running (nothing changes)
            LexError, MalformedPattern: bad notation (nothing changes)
        """
        node = _coerce_pattern(pattern)
        if cps is not None:
            cps = _check_rate(cps)

        with self._lock:
            if self._state is SchedulerState.RUNNING:
                raise AlreadyRunning("scheduler is already running")
            if cps is not None:
                self._cps = cps
            self._pending_cps = None
            self._generation += 1
            self._state = SchedulerState.RUNNING
            self._cycle = CycleState(node, self._clock.now())

            count = self._schedule_cycle()
            self._arm_boundary()
            _log("scheduler", f"start cps={self._cps} events={count} pattern={node!r}")

    def replace(self, pattern):
        """
        Swap the running pattern now.

        Old events later in the current cycle are cancelled, events already
        sounding are left alone, and the new pattern's remaining events for
        this cycle are scheduled. The next cycle uses the new pattern from
        its start.

        Raises:
            NotRunning: scheduler is stopped
            LexError, MalformedPattern: bad notation (old pattern keeps running)
        """
        node = _coerce_pattern(pattern)

        with self._lock:
            if self._state is not SchedulerState.RUNNING:
                raise NotRunning("replace() needs a running scheduler")
            state = self._cycle
            elapsed = self._elapsed()

            cancelled = 0
            for item in list(state.pending.values()):
                if item.cycle > state.cycle_index or (
                        item.cycle == state.cycle_index and item.event.start > elapsed):
                    if self._cancel(item):
                        cancelled += 1

            state.pattern = node
            scheduled = self._schedule_cycle(after=elapsed)
            _log("scheduler", f"replace at {float(elapsed):.3f}: cancelled={cancelled} "
                              f"scheduled={scheduled} pattern={node!r}")

    def stop(self):
        """Cancel everything pending and stop. Safe to call when stopped."""
        with self._lock:
            if self._state is SchedulerState.STOPPED:
                return
            self._generation += 1
            if self._boundary is not None:
                self._boundary.cancel()
                self._boundary = None
            for item in list(self._cycle.pending.values()):
                self._cancel(item)
            self._state = SchedulerState.STOPPED
            self._cycle = None
            self._pending_cps = None
            _log("scheduler", "stop")

    def set_rate(self, cps):
        """
        Change cycles per second.

        While running, the new rate is latched at the next cycle boundary so
        the current cycle keeps its timing.
        """
        cps = _check_rate(cps)
        with self._lock:
            if self._state is SchedulerState.RUNNING:
                self._pending_cps = cps
                _log("scheduler", f"rate {cps} pending until next cycle")
            else:
                self._cps = cps

    def status(self) -> dict:
        """Snapshot for UI rendering."""
        with self._lock:
            running = self._cycle is not None
            return {
                'state': self._state.value,
                'phase': self.phase,
                'cycle': self._cycle.cycle_index if running else None,
                'cps': self._cps,
                'pending_cps': self._pending_cps,
                'pending': len(self._cycle.pending) if running else 0,
                'pattern': repr(self._cycle.pattern) if running else None,
            }

    def __repr__(self):
        return f"<Scheduler {self._state.value} cps={self._cps}>"

    # --- Internals (lock held) ---

    def _elapsed(self) -> Time:
        """Position inside the current cycle, in [0, 1]."""
        position = (self._clock.now() - self._cycle.cycle_start) * self._cps
        # past 1 means the boundary timer is late; the rest of this cycle is over
        return _to_time(_clamp(position, 0.0, 1.0))

    def _schedule_cycle(self, after: Optional[Time] = None) -> int:
        state = self._cycle
        events = query(state.pattern, state.cycle_index, seed=self._seed, choose=self._choose)
        count = 0
        for ev in events:
            if not ev.has_onset():
                continue
            if after is not None and ev.start <= after:
                continue
            self._schedule(ev)
            count += 1
        return count

    def _schedule(self, event: Event):
        state = self._cycle
        fire_time = state.cycle_start + float(event.start) / self._cps
        duration = float(event.duration) / self._cps
        item = ScheduledEvent(next(self._ids), event, state.cycle_index, fire_time, duration)
        state.pending[item.id] = item
        item.handle = self._clock.call_at(fire_time, lambda: self._fire(item))

    def _cancel(self, item: ScheduledEvent) -> bool:
        if not item.claim():
            return False
        if item.handle is not None:
            item.handle.cancel()
        self._cycle.pending.pop(item.id, None)
        _log("cancel", f"{item!r}", level=2)
        return True

    def _arm_boundary(self):
        when = self._cycle.cycle_start + 1.0 / self._cps
        generation = self._generation
        self._boundary = self._clock.call_at(when, lambda: self._on_boundary(generation))

    def _on_boundary(self, generation: int):
        with self._lock:
            if self._state is not SchedulerState.RUNNING or generation != self._generation:
                return
            state = self._cycle
            state.cycle_start += 1.0 / self._cps
            state.cycle_index += 1
            if self._pending_cps is not None:
                self._cps = self._pending_cps
                self._pending_cps = None
                _log("scheduler", f"rate now {self._cps}")
            count = self._schedule_cycle()
            self._arm_boundary()
            _log("cycle", f"cycle={state.cycle_index} events={count}")

    # --- Firing ---

    def _fire(self, item: ScheduledEvent):
        with self._lock:
            if not item.claim():
                return
            if self._cycle is not None:
                self._cycle.pending.pop(item.id, None)

        _log("fire", f"{item.event.value!r} at={item.fire_time:.3f} dur={item.duration:.3f}", level=2)
        try:
            self._sounder.sound(item.event.value, item.fire_time, item.duration)
        except Exception as e:
            self._report(e, item)

    def _report(self, exc: Exception, item: ScheduledEvent):
        if isinstance(exc, SounderError):
            error = exc
        else:
            error = SounderError(f"cannot sound {item.event.value!r}: {exc}",
                                 item.event.value, item.fire_time)
            error.__cause__ = exc
        self.errors.put(error)
        _warn(f"sounder error: {error}")
        if self.on_error is not None:
            try:
                self.on_error(error)
            except Exception as e:
                _warn(f"on_error callback error: {e}")
