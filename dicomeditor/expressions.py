"""
expressions.py - The script expression language.

An element directive's body is a small template: literal text mixed with
parameter references and function calls, e.g.::

    @empty()
    @hash(this,8)
    ANON-@integer(PatientID,ptid,6)
    @lookup(this,ptid,default,"UNKNOWN")
    @always()YES
    @hashuid(@UIDROOT,this)

Bodies are parsed once, when the script is compiled, into a tuple of
terms (Literal, ParamRef, Call).  Evaluation walks those terms against an
EvalContext holding the dataset, the directive's own tag, the script
parameters and the lookup/integer tables.

Functions
---------
remove, keep, process   actions; must be the whole body
always                  prefix; create the element when it is absent
empty                   ""
blank(n)                n spaces
param(@NAME)            parameter text
contents(el[,re,repl])  element value, optionally rewritten with re.sub
hash(el[,maxlen])       decimal MD5 of HASHSALT + value, truncated
hashuid(root,el)        root.hash, at most 64 characters
integer(el[,type],w)    stable integer pseudonym, zero-padded to w digits
incrementdate(el,days)  DA/DT value shifted by a number of days
lookup(el,type[,action[,default]])
                        lookup-table replacement for "type/value"

Element arguments accept ``this``, ``GGGGEEEE``, ``(GGGG,EEEE)``,
``[GGGG,EEEE]`` or a DICOM keyword such as ``PatientID``.
"""

import enum
import hashlib
import logging
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional, Protocol, Union

from pydicom.datadict import tag_for_keyword
from pydicom.dataset import Dataset
from pydicom.multival import MultiValue
from pydicom.tag import BaseTag, Tag

from dicomeditor.errors import LookupMissError, ScriptEvalError

logger = logging.getLogger(__name__)

# Name of the optional parameter that salts @hash, @hashuid and @integer.
HASH_SALT_PARAM = "HASHSALT"

MAX_UID_LENGTH = 64

_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_TAG_ARG_RE = re.compile(
    r"^[(\[]?\s*([0-9A-Fa-f]{4})\s*,?\s*([0-9A-Fa-f]{4})\s*[)\]]?$"
)


class Action(enum.Enum):
    """Element-level outcomes that are not a replacement value."""
    REMOVE = "remove"
    KEEP = "keep"
    PROCESS = "process"


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class ParamRef:
    name: str


@dataclass(frozen=True)
class Call:
    name: str
    args: tuple[Union[Literal, ParamRef], ...] = ()


Term = Union[Literal, ParamRef, Call]


# ---------------------------------------------------------------------------
# Evaluation context
# ---------------------------------------------------------------------------

class IntegerSource(Protocol):
    def get_int(self, key_type: str, value: str) -> int: ...


@dataclass(frozen=True)
class EvalContext:
    """Everything an expression may consult while it is evaluated."""
    dataset: Dataset
    tag: BaseTag
    parameters: Mapping[str, str]
    lookup: Mapping[str, str]
    integer_table: Optional[IntegerSource] = None
    hash_salt: str = ""

    def at(self, dataset: Dataset, tag: BaseTag) -> "EvalContext":
        return replace(self, dataset=dataset, tag=tag)

    def resolve_tag(self, name: str) -> BaseTag:
        return resolve_tag(name, self.tag)

    def element_text(self, name: str) -> str:
        return element_text(self.dataset, self.resolve_tag(name))


def resolve_tag(name: str, this: Optional[BaseTag] = None) -> BaseTag:
    """
    Resolve an element argument to a tag.

    Raises
    ------
    ScriptEvalError
        If *name* is neither ``this``, a hex tag nor a known keyword.
    """
    name = name.strip()
    if name.lower() == "this":
        if this is None:
            raise ScriptEvalError("'this' used outside an element directive")
        return this
    m = _TAG_ARG_RE.match(name)
    if m:
        return Tag(int(m.group(1), 16), int(m.group(2), 16))
    tag = tag_for_keyword(name)
    if tag is None:
        raise ScriptEvalError(f"Unknown element {name!r}")
    return Tag(tag)


def element_text(ds: Dataset, tag: BaseTag) -> str:
    """The value of an element as script text ("" when absent)."""
    elem = ds.get(tag)
    if elem is None or elem.value is None or elem.VR == "SQ":
        return ""
    value = elem.value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("latin-1").rstrip("\x00 ")
    if isinstance(value, (MultiValue, list, tuple)):
        return "\\".join(str(v) for v in value)
    return str(value).strip()


def md5_decimal(text: str) -> str:
    """MD5 of the UTF-8 text, rendered as an unsigned decimal integer."""
    digest = hashlib.md5(text.encode("utf-8")).digest()
    return str(int.from_bytes(digest, "big"))


# ---------------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------------

def _int_arg(value: str, what: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise ScriptEvalError(f"{what} must be an integer, got {value!r}") from None


def _fn_empty(ctx: EvalContext, args: list[str]) -> str:
    return ""


def _fn_blank(ctx: EvalContext, args: list[str]) -> str:
    return " " * max(_int_arg(args[0], "@blank width"), 0)


def _fn_param(ctx: EvalContext, args: list[str]) -> str:
    # The argument has already been resolved to the parameter's text.
    return args[0]


def _fn_contents(ctx: EvalContext, args: list[str]) -> str:
    value = ctx.element_text(args[0])
    if len(args) == 3:
        try:
            value = re.sub(args[1], args[2], value)
        except re.error as exc:
            raise ScriptEvalError(f"Bad regular expression {args[1]!r}: {exc}") from exc
    return value


def _fn_hash(ctx: EvalContext, args: list[str]) -> str:
    result = md5_decimal(ctx.hash_salt + ctx.element_text(args[0]))
    if len(args) == 2 and args[1].strip():
        result = result[:_int_arg(args[1], "@hash length")]
    return result


def _fn_hashuid(ctx: EvalContext, args: list[str]) -> str:
    root = args[0].strip().rstrip(".")
    digits = md5_decimal(ctx.hash_salt + ctx.element_text(args[1]))
    uid = f"{root}.{digits}" if root else digits
    return uid[:MAX_UID_LENGTH].rstrip(".")


def _fn_integer(ctx: EvalContext, args: list[str]) -> str:
    tag = ctx.resolve_tag(args[0])
    key_type = args[1].strip() if len(args) == 3 else f"{int(tag):08X}"
    width = _int_arg(args[-1], "@integer width")
    value = element_text(ctx.dataset, tag)
    if ctx.integer_table is not None:
        n = ctx.integer_table.get_int(key_type, value)
    else:
        n = int(md5_decimal(f"{ctx.hash_salt}{key_type}/{value}"))
        if width > 0:
            n %= 10 ** width
    return str(n).zfill(width) if width > 0 else str(n)


def _fn_incrementdate(ctx: EvalContext, args: list[str]) -> str:
    value = ctx.element_text(args[0])
    days = _int_arg(args[1], "@incrementdate days")
    if not value:
        return ""
    try:
        date = datetime.strptime(value[:8], "%Y%m%d")
    except ValueError:
        logger.warning("Cannot shift unparseable date %r in %s; emptied", value, ctx.tag)
        return ""
    # DT values keep their time-of-day suffix.
    return (date + timedelta(days=days)).strftime("%Y%m%d") + value[8:]


_LOOKUP_ACTIONS = ("keep", "remove", "empty", "default")


def _fn_lookup(ctx: EvalContext, args: list[str]) -> Union[str, Action]:
    value = ctx.element_text(args[0])
    key = f"{args[1].strip()}/{value}"
    if key in ctx.lookup:
        return ctx.lookup[key]
    action = args[2].strip().lower() if len(args) > 2 else ""
    if action == "keep":
        return value
    if action == "remove":
        return Action.REMOVE
    if action == "empty":
        return ""
    if action == "default":
        return args[3]
    raise LookupMissError(key)


def _action(action: Action) -> Callable[[EvalContext, list[str]], Action]:
    return lambda ctx, args: action


@dataclass(frozen=True)
class FunctionSpec:
    impl: Callable[[EvalContext, list[str]], Union[str, Action]]
    min_args: int
    max_args: int
    element_args: tuple[int, ...] = ()


FUNCTIONS: dict[str, FunctionSpec] = {
    "remove": FunctionSpec(_action(Action.REMOVE), 0, 0),
    "keep": FunctionSpec(_action(Action.KEEP), 0, 0),
    "process": FunctionSpec(_action(Action.PROCESS), 0, 0),
    "always": FunctionSpec(_fn_empty, 0, 0),
    "empty": FunctionSpec(_fn_empty, 0, 0),
    "blank": FunctionSpec(_fn_blank, 1, 1),
    "param": FunctionSpec(_fn_param, 1, 1),
    "contents": FunctionSpec(_fn_contents, 1, 3, (0,)),
    "hash": FunctionSpec(_fn_hash, 1, 2, (0,)),
    "hashuid": FunctionSpec(_fn_hashuid, 2, 2, (1,)),
    "integer": FunctionSpec(_fn_integer, 2, 3, (0,)),
    "incrementdate": FunctionSpec(_fn_incrementdate, 2, 2, (0,)),
    "lookup": FunctionSpec(_fn_lookup, 2, 4, (0,)),
}

ACTION_FUNCTIONS = ("remove", "keep", "process")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _split_args(text: str) -> list[str]:
    """Split an argument list on commas that are outside double quotes."""
    args, current, quoted = [], [], False
    for ch in text:
        if ch == '"':
            quoted = not quoted
        if ch == "," and not quoted:
            args.append("".join(current))
            current = []
        else:
            current.append(ch)
    if quoted:
        raise ScriptEvalError(f"Unterminated quote in arguments {text!r}")
    args.append("".join(current))
    return args


def _parse_arg(raw: str) -> Union[Literal, ParamRef]:
    arg = raw.strip()
    if len(arg) >= 2 and arg[0] == '"' and arg[-1] == '"':
        return Literal(arg[1:-1])
    if arg.startswith("@"):
        name = arg[1:]
        if not _IDENT_RE.fullmatch(name):
            raise ScriptEvalError(f"Invalid argument {arg!r}: nested calls are not supported")
        return ParamRef(name)
    return Literal(arg)


def _find_close(text: str, start: int) -> int:
    """Index of the ')' closing the argument list that starts at *start*."""
    quoted = False
    for i in range(start, len(text)):
        ch = text[i]
        if ch == '"':
            quoted = not quoted
        elif ch == ")" and not quoted:
            return i
    raise ScriptEvalError(f"Unterminated function call in {text!r}")


def parse(text: str) -> tuple[Term, ...]:
    """
    Parse an expression body into terms.

    Raises
    ------
    ScriptEvalError
        On unterminated calls or malformed arguments.
    """
    terms: list[Term] = []
    literal: list[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch != "@":
            literal.append(ch)
            i += 1
            continue
        if text.startswith("@@", i):
            literal.append("@")
            i += 2
            continue
        m = _IDENT_RE.match(text, i + 1)
        if not m:
            literal.append("@")
            i += 1
            continue
        if literal:
            terms.append(Literal("".join(literal)))
            literal = []
        name = m.group(0)
        i = m.end()
        if i < len(text) and text[i] == "(":
            close = _find_close(text, i + 1)
            inner = text[i + 1:close]
            args = tuple(_parse_arg(a) for a in _split_args(inner)) if inner.strip() else ()
            terms.append(Call(name.lower(), args))
            i = close + 1
        else:
            terms.append(ParamRef(name))
    if literal:
        terms.append(Literal("".join(literal)))
    return tuple(terms)


# ---------------------------------------------------------------------------
# Compiled expressions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Expression:
    """A parsed and validated element script."""
    source: str
    terms: tuple[Term, ...]
    always: bool = False

    @property
    def action(self) -> Optional[Action]:
        """The action of an action-only body, or None."""
        if len(self.terms) == 1 and isinstance(self.terms[0], Call):
            name = self.terms[0].name
            if name in ACTION_FUNCTIONS:
                return Action(name)
        return None

    def evaluate(self, ctx: EvalContext) -> Union[str, Action]:
        """
        Evaluate against *ctx*.

        Returns either the replacement text or an Action.

        Raises
        ------
        LookupMissError
            When a lookup has no entry and no fallback.
        ScriptEvalError
            When a value-producing function yields an action inside a
            larger expression, or an argument is invalid.
        """
        parts: list[str] = []
        for term in self.terms:
            if isinstance(term, Literal):
                parts.append(term.text)
            elif isinstance(term, ParamRef):
                parts.append(ctx.parameters[term.name])
            else:
                args = [
                    a.text if isinstance(a, Literal) else ctx.parameters[a.name]
                    for a in term.args
                ]
                result = FUNCTIONS[term.name].impl(ctx, args)
                if isinstance(result, Action):
                    if len(self.terms) > 1:
                        raise ScriptEvalError(
                            f"@{term.name} produced '{result.value}' inside {self.source!r}"
                        )
                    return result
                parts.append(result)
        return "".join(parts)


def compile_expression(text: str, parameters: Mapping[str, str]) -> Expression:
    """
    Parse *text* and check it against the known functions and parameters.

    Raises
    ------
    ScriptEvalError
        For unknown functions, unbound parameters, wrong argument counts,
        invalid literal element arguments or misplaced actions.
    """
    terms = list(parse(text.strip()))
    always = False
    if terms and isinstance(terms[0], Call) and terms[0].name == "always":
        always = True
        terms.pop(0)

    for index, term in enumerate(terms):
        if isinstance(term, ParamRef):
            _check_param(term.name, parameters, text)
        if not isinstance(term, Call):
            continue
        spec = FUNCTIONS.get(term.name)
        if spec is None:
            raise ScriptEvalError(f"Unknown function @{term.name} in {text!r}")
        if term.name == "always":
            raise ScriptEvalError(f"@always() must start the expression: {text!r}")
        if term.name in ACTION_FUNCTIONS and len(terms) > 1:
            raise ScriptEvalError(f"@{term.name}() must be the whole expression: {text!r}")
        if not spec.min_args <= len(term.args) <= spec.max_args:
            raise ScriptEvalError(
                f"@{term.name} takes {spec.min_args}-{spec.max_args} arguments, "
                f"got {len(term.args)} in {text!r}"
            )
        for pos, arg in enumerate(term.args):
            if isinstance(arg, ParamRef):
                _check_param(arg.name, parameters, text)
            elif pos in spec.element_args:
                resolve_tag(arg.text, Tag(0))
        if term.name == "param" and isinstance(term.args[0], Literal):
            # @param(NAME) without the leading @ is accepted too.
            name = term.args[0].text.strip()
            _check_param(name, parameters, text)
            terms[index] = Call("param", (ParamRef(name),))
        if term.name == "lookup" and len(term.args) > 2:
            action = term.args[2]
            if isinstance(action, Literal) and action.text.strip().lower() not in _LOOKUP_ACTIONS:
                raise ScriptEvalError(f"Unknown @lookup fallback {action.text!r} in {text!r}")
            if isinstance(action, Literal) and action.text.strip().lower() == "default" \
                    and len(term.args) != 4:
                raise ScriptEvalError(f"@lookup default fallback needs a value: {text!r}")

    return Expression(source=text, terms=tuple(terms), always=always)


def _check_param(name: str, parameters: Mapping[str, str], text: str) -> None:
    if name not in parameters:
        raise ScriptEvalError(f"Unbound parameter @{name} in {text!r}")
