"""Resource name rules, normalisation and repair suggestions.

Each resource kind carries a :class:`NameRule`. :func:`format_name` runs a
deterministic normalisation pipeline that is a fixed point on its own
output, and :func:`validate_and_format` either returns the normalised name
or raises :class:`~genesys.errors.ValidationError` with a suggestion the
caller may accept.

Buckets live in a global namespace with extra structural rules (no IP
shaped names, reserved prefixes and suffixes, dot/hyphen runs). Inputs
that break one of those are rejected rather than silently rewritten.
"""
from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .errors import ValidationError

GENERIC_PREFIX = "genesys-"

_IP_SHAPED = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")
_WHITESPACE = re.compile(r"\s+")

BUCKET_RESERVED_PREFIXES = ("xn--", "sthree-", "amzn-s3-demo-")
BUCKET_RESERVED_SUFFIXES = ("-s3alias", "--ol-s3", "--x-s3", ".mrap")

_COMMON_BUCKET_NAMES = (
    "test", "test-bucket", "my-bucket", "bucket", "demo", "example", "sample",
    "temp", "tmp", "data", "backup", "storage", "files", "uploads", "downloads",
    "images", "photos", "videos", "docs", "www", "app", "api", "web", "site",
    "admin", "user", "users",
)
LIKELY_TAKEN_NAMES = frozenset(
    list(_COMMON_BUCKET_NAMES) + [f"{name}-bucket" for name in _COMMON_BUCKET_NAMES]
)


@dataclass(frozen=True)
class NameRule:
    """Naming constraints and formatter settings for one resource kind."""

    kind: str
    min_len: int
    max_len: int
    allowed: str
    separators: str
    first_char: str
    last_char: str
    default: str
    description: str
    examples: tuple[str, ...] = ()
    lowercase: bool = False
    keep_spaces: bool = False
    prefix: str = ""
    suffix: str = ""
    repair: Callable[[str], str] | None = None
    reject: Callable[[str], str | None] | None = None
    _invalid: re.Pattern[str] = field(init=False, repr=False, compare=False)
    _runs: re.Pattern[str] = field(init=False, repr=False, compare=False)
    _full: re.Pattern[str] = field(init=False, repr=False, compare=False)
    _first: re.Pattern[str] = field(init=False, repr=False, compare=False)
    _last: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_invalid", re.compile(f"[^{self.allowed}]"))
        object.__setattr__(self, "_runs", re.compile(f"[{re.escape(self.separators)}]{{2,}}"))
        object.__setattr__(self, "_full", re.compile(f"^[{self.allowed}]+$"))
        object.__setattr__(self, "_first", re.compile(f"^[{self.first_char}]"))
        object.__setattr__(self, "_last", re.compile(f"[{self.last_char}]$"))

    @property
    def strip_chars(self) -> str:
        return self.separators + " "

    def to_dict(self) -> dict[str, object]:
        """Return the rule metadata shown in help output."""
        return {
            "kind": self.kind,
            "min_length": self.min_len,
            "max_length": self.max_len,
            "allowed_characters": self.allowed,
            "description": self.description,
            "examples": list(self.examples),
        }


@dataclass(frozen=True)
class AvailabilityHint:
    """Heuristic result of a name-availability check."""

    name: str
    likely_taken: bool
    reason: str | None = None


# ------------------------------------------------------------------
# Bucket specifics


def _bucket_structural_problem(name: str) -> str | None:
    lowered = name.lower()
    if _IP_SHAPED.match(lowered):
        return "bucket names must not be formatted as an IP address"
    if ".." in lowered:
        return "bucket names must not contain consecutive dots"
    if ".-" in lowered or "-." in lowered:
        return "bucket names must not contain a dot next to a hyphen"
    for prefix in BUCKET_RESERVED_PREFIXES:
        if lowered.startswith(prefix):
            return f"bucket names must not start with the reserved prefix '{prefix}'"
    for suffix in BUCKET_RESERVED_SUFFIXES:
        if lowered.endswith(suffix):
            return f"bucket names must not end with the reserved suffix '{suffix}'"
    return None


def _repair_bucket(name: str) -> str:
    value = name
    if _IP_SHAPED.match(value):
        value = GENERIC_PREFIX + value.replace(".", "-")
    changed = True
    while changed:
        changed = False
        for suffix in BUCKET_RESERVED_SUFFIXES:
            if value.endswith(suffix):
                value = value[: -len(suffix)].rstrip(".-")
                changed = True
    for prefix in BUCKET_RESERVED_PREFIXES:
        if value.startswith(prefix):
            value = GENERIC_PREFIX + value
            break
    return value


# ------------------------------------------------------------------
# Rule table

_RULES: dict[str, NameRule] = {
    rule.kind: rule
    for rule in (
        NameRule(
            kind="bucket",
            min_len=3,
            max_len=63,
            allowed="a-z0-9.-",
            separators=".-",
            first_char="a-z0-9",
            last_char="a-z0-9",
            default="genesys-bucket",
            description="3-63 lowercase letters, digits, dots and hyphens; globally unique.",
            examples=("my-app-assets", "logs.example-corp"),
            lowercase=True,
            prefix="bucket-",
            suffix="-bucket",
            repair=_repair_bucket,
            reject=_bucket_structural_problem,
        ),
        NameRule(
            kind="instance",
            min_len=1,
            max_len=255,
            allowed="A-Za-z0-9 ._-",
            separators="-_.",
            first_char="A-Za-z0-9",
            last_char="A-Za-z0-9",
            default="genesys-instance",
            description="Up to 255 letters, digits, spaces, dots, underscores and hyphens.",
            examples=("web-server-01", "API Worker"),
            keep_spaces=True,
            prefix="instance-",
        ),
        NameRule(
            kind="network",
            min_len=1,
            max_len=255,
            allowed="A-Za-z0-9 ._-",
            separators="-_.",
            first_char="A-Za-z0-9",
            last_char="A-Za-z0-9",
            default="genesys-network",
            description="Up to 255 letters, digits, spaces, dots, underscores and hyphens.",
            examples=("main-vpc", "staging network"),
            keep_spaces=True,
            prefix="network-",
        ),
        NameRule(
            kind="function",
            min_len=1,
            max_len=64,
            allowed="A-Za-z0-9_-",
            separators="-_",
            first_char="A-Za-z",
            last_char="A-Za-z0-9",
            default="genesys-function",
            description="1-64 letters, digits, hyphens and underscores, starting with a letter.",
            examples=("image-resizer", "process_orders"),
            prefix="fn-",
        ),
        NameRule(
            kind="table",
            min_len=3,
            max_len=255,
            allowed="A-Za-z0-9_.-",
            separators="-_.",
            first_char="A-Za-z",
            last_char="A-Za-z0-9",
            default="genesys-table",
            description="3-255 letters, digits, dots, underscores and hyphens, starting with a letter.",
            examples=("orders", "user-sessions"),
            prefix="table-",
        ),
        NameRule(
            kind="role",
            min_len=1,
            max_len=64,
            allowed="A-Za-z0-9+=,.@_-",
            separators="-_.",
            first_char="A-Za-z",
            last_char="A-Za-z0-9+=,@",
            default="genesys-role",
            description="1-64 letters, digits and +=,.@_- characters, starting with a letter.",
            examples=("genesys-lambda-role", "app.reader"),
            prefix=GENERIC_PREFIX,
        ),
        NameRule(
            kind="policy",
            min_len=1,
            max_len=128,
            allowed="A-Za-z0-9+=,.@_-",
            separators="-_.",
            first_char="A-Za-z",
            last_char="A-Za-z0-9+=,@",
            default="genesys-policy",
            description="1-128 letters, digits and +=,.@_- characters, starting with a letter.",
            examples=("genesys-s3-read", "reporting@prod"),
            prefix=GENERIC_PREFIX,
        ),
    )
}


def get_rule(kind: str) -> NameRule:
    """Return the :class:`NameRule` registered for *kind*."""
    try:
        return _RULES[kind]
    except KeyError as exc:
        known = ", ".join(sorted(_RULES))
        raise ValidationError(
            f"No naming rules for resource kind '{kind}' (known: {known}).",
            field="kind",
        ) from exc


def naming_rules() -> dict[str, NameRule]:
    """Return every registered rule keyed by kind."""
    return dict(_RULES)


# ------------------------------------------------------------------
# Formatting and validation


def _truncate(rule: NameRule, value: str) -> str:
    return value[: rule.max_len].rstrip(rule.strip_chars)


def format_name(kind: str, raw: str) -> str:
    """Normalise *raw* according to the rule for *kind*."""
    rule = get_rule(kind)
    value = raw.strip()
    if rule.lowercase:
        value = value.lower()
    if rule.keep_spaces:
        value = _WHITESPACE.sub(" ", value)
    value = rule._invalid.sub("-", value)
    value = rule._runs.sub("-", value)
    value = value.strip(rule.strip_chars)

    if value and not rule._first.match(value):
        value = rule.prefix + value
    if value and not rule._last.search(value):
        value = value + rule.suffix

    value = _truncate(rule, value)
    if rule.repair is not None and value:
        value = _truncate(rule, rule.repair(value))

    if len(value) < rule.min_len:
        candidate = GENERIC_PREFIX + value if value else ""
        value = candidate if len(candidate) >= rule.min_len else rule.default
    return value


def is_valid_name(kind: str, name: str) -> bool:
    """Return True when *name* already satisfies every rule for *kind*."""
    rule = get_rule(kind)
    if not rule.min_len <= len(name) <= rule.max_len:
        return False
    if not rule._full.match(name):
        return False
    if not rule._first.match(name) or not rule._last.search(name):
        return False
    if rule.reject is not None and rule.reject(name) is not None:
        return False
    return True


def validate_and_format(kind: str, raw_name: str) -> str:
    """Return the normalised name or raise with a repair suggestion."""
    rule = get_rule(kind)
    candidate = (raw_name or "").strip()
    if not candidate:
        raise ValidationError(
            f"A {kind} name is required.",
            field="name",
            suggestion=rule.default,
        )

    if rule.reject is not None:
        problem = rule.reject(candidate)
        if problem is not None:
            raise ValidationError(
                f"Invalid {kind} name '{raw_name}': {problem}.",
                field="name",
                suggestion=format_name(kind, candidate),
            )

    formatted = format_name(kind, candidate)
    if not is_valid_name(kind, formatted):
        raise ValidationError(
            f"Invalid {kind} name '{raw_name}': {rule.description}",
            field="name",
            suggestion=rule.default,
        )
    return formatted


# ------------------------------------------------------------------
# Helpers for generated and globally unique names


def check_availability(name: str) -> AvailabilityHint:
    """Flag names that are very likely already taken in a global namespace.

    This is a heuristic; the provider's answer to Create is authoritative.
    """
    lowered = name.lower()
    if lowered in LIKELY_TAKEN_NAMES:
        return AvailabilityHint(name, True, "name is a common generic bucket name")
    if len(lowered) < 8 and "-" not in lowered:
        return AvailabilityHint(name, True, "short names without a hyphen are usually taken")
    return AvailabilityHint(name, False)


def auto_generate_name(kind: str, prefix: str = "", *, now: datetime | None = None) -> str:
    """Return ``<prefix>-YYYYmmdd-HHMMSS`` formatted for *kind*."""
    moment = now or datetime.now(UTC)
    base = prefix.strip() or GENERIC_PREFIX.rstrip("-")
    return format_name(kind, f"{base}-{moment.strftime('%Y%m%d-%H%M%S')}")


def suggest_unique_bucket_name(name: str, *, now: datetime | None = None) -> str:
    """Append a unix timestamp to *name* while staying within 63 characters."""
    moment = now or datetime.now(UTC)
    rule = get_rule("bucket")
    suffix = f"-{int(moment.timestamp())}"
    base = format_name("bucket", name)[: rule.max_len - len(suffix)].rstrip(rule.strip_chars)
    return format_name("bucket", f"{base}{suffix}")


__all__ = [
    "AvailabilityHint",
    "LIKELY_TAKEN_NAMES",
    "NameRule",
    "auto_generate_name",
    "check_availability",
    "format_name",
    "get_rule",
    "is_valid_name",
    "naming_rules",
    "suggest_unique_bucket_name",
    "validate_and_format",
]
