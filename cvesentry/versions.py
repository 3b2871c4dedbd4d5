"""Version ordering and affected-range containment.

Pure functions, no I/O.  Versions compare component by component in a
semantic-versioning-like order: numeric components compare numerically,
other components lexically, trailing zero components are insignificant
(``1.0`` == ``1.0.0``) and pre-releases sort before their release
(``2.0.0-rc1`` < ``2.0.0``).

Affected ranges come from the ``cpe.version`` column and may be

- an exact version (``1.4.2``),
- a wildcard (``*``, ``-``, empty) meaning every version,
- a prefix wildcard (``1.4.*``, ``1.x``),
- comparator lists (``<2.0``, ``>=1.0,<2.0``, ``<= 3.1``),
- prose sentinels (``before 2.0``, ``prior to 2.0``, ``2.0 and earlier``,
  ``through 2.0``), treated as open intervals.
"""

import re
from dataclasses import dataclass
from typing import Any

_WILDCARDS = {"", "*", "-", "any", "all", "all versions", "n/a"}
_POST_MARKERS = {"post", "p", "patch", "pl", "r", "rev", "final", "ga", "release", "sp"}
_COMPARATOR_RE = re.compile(r"(<=|>=|==|!=|<|>|=)\s*([^\s,<>=!]+)")
_VERSION_TOKEN_RE = re.compile(r"\d+|[a-z]+")
_CONCRETE_RE = re.compile(r"v?(\d+(?:\.\d+)*(?:[-.+]?[a-z][a-z0-9.]*)?)", re.IGNORECASE)

_SENTINELS = [
    (re.compile(r"^(?:all\s+versions\s+)?(?:before|prior\s+to|below|older\s+than|up\s+to\s+but\s+excluding)\s+(.+)$"), "<"),
    (re.compile(r"^(?:up\s+to(?:\s+and\s+including)?|through|until)\s+(.+)$"), "<="),
    (re.compile(r"^(.+?)\s+and\s+(?:earlier|before|below|prior|older)$"), "<="),
    (re.compile(r"^(.+?)\s+and\s+(?:later|above|newer|after)$"), ">="),
    (re.compile(r"^(?:after|since|from)\s+(.+)$"), ">"),
]


def _component(token: str) -> tuple[int, int, str]:
    if token.isdigit():
        return (1, int(token), "")
    return (0, 0, token)


@dataclass(frozen=True)
class Version:
    """A parsed version with a total ordering.

    Attributes:
        text: The original string.
        release: Leading numeric components.
        stage: 0 for a pre-release, 1 for a final release, 2 for a
            post/patch release.
        suffix: Components after the release part.
    """

    text: str
    release: tuple[int, ...]
    stage: int
    suffix: tuple[tuple[int, int, str], ...]

    @property
    def specificity(self) -> int:
        """How many components the version spells out."""
        return len(self.release) + len(self.suffix)

    def _key(self) -> tuple[Any, ...]:
        release = list(self.release)
        while release and release[-1] == 0:
            release.pop()
        return (tuple(release), self.stage, self.suffix)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __lt__(self, other: "Version") -> bool:
        return self._key() < other._key()

    def __le__(self, other: "Version") -> bool:
        return self._key() <= other._key()

    def __gt__(self, other: "Version") -> bool:
        return self._key() > other._key()

    def __ge__(self, other: "Version") -> bool:
        return self._key() >= other._key()


def parse_version(text: str) -> Version | None:
    """Parse a version string.

    Args:
        text: Something like ``1.2.3``, ``v2.0.0-rc1`` or ``4.1p2``.

    Returns:
        ``Version``, or ``None`` if the string has no numeric release part.
    """
    raw = (text or "").strip().lower()
    if raw.startswith("v") and raw[1:2].isdigit():
        raw = raw[1:]
    raw = raw.split("+", 1)[0]
    tokens = _VERSION_TOKEN_RE.findall(raw)
    if not tokens or not tokens[0].isdigit():
        return None

    release: list[int] = []
    idx = 0
    while idx < len(tokens) and tokens[idx].isdigit():
        release.append(int(tokens[idx]))
        idx += 1
    rest = tokens[idx:]
    if not rest:
        stage = 1
    elif rest[0] in _POST_MARKERS:
        stage = 2
    else:
        stage = 0
    return Version(
        text=text,
        release=tuple(release),
        stage=stage,
        suffix=tuple(_component(t) for t in rest),
    )


def concrete_version(spec: str | None) -> str | None:
    """Extract the concrete version a dependency declaration pins.

    Declarations like ``^1.2.3``, ``~> 1.2``, ``>=1.0,<2`` or ``==1.2.3``
    all yield their first version literal, which is the lowest version
    the declaration admits.

    Args:
        spec: Declared dependency version.

    Returns:
        Version string, or ``None`` for ``*``/``latest``/git URLs.
    """
    if not spec:
        return None
    text = str(spec).strip()
    if not text or text.lower() in {"*", "latest", "x", "next"}:
        return None
    if "://" in text or text.startswith(("git+", "file:", "link:", "workspace:")):
        return None
    m = _CONCRETE_RE.search(text)
    if not m:
        return None
    return m.group(1).rstrip(".-+")


@dataclass(frozen=True)
class Bound:
    op: str
    version: Version

    def admits(self, v: Version) -> bool:
        if self.op == "<":
            return v < self.version
        if self.op == "<=":
            return v <= self.version
        if self.op == ">":
            return v > self.version
        if self.op == ">=":
            return v >= self.version
        if self.op == "!=":
            return v != self.version
        return v == self.version


class VersionRange:
    """An affected-version interval parsed from a ``cpe.version`` value.

    Use ``VersionRange.parse(expr)`` and then ``contains(version)``.
    An expression that cannot be parsed yields a range that contains
    nothing, so garbage never produces evidence.
    """

    def __init__(
        self,
        expr: str,
        bounds: list[Bound] | None = None,
        prefix: tuple[int, ...] | None = None,
        everything: bool = False,
        nothing: bool = False,
    ):
        self.expr = expr
        self.bounds = bounds or []
        self.prefix = prefix
        self.everything = everything
        self.nothing = nothing

    def __repr__(self) -> str:
        return f"VersionRange({self.expr!r})"

    @classmethod
    def parse(cls, expr: str | None) -> "VersionRange":
        text = re.sub(r"\s+", " ", (expr or "").strip().lower())
        if text in _WILDCARDS:
            return cls(text, everything=True)

        prefix_match = re.fullmatch(r"v?(\d+(?:\.\d+)*)\.(?:\*|x)", text)
        if prefix_match:
            return cls(text, prefix=tuple(int(p) for p in prefix_match.group(1).split(".")))

        for pattern, op in _SENTINELS:
            m = pattern.match(text)
            if m:
                v = parse_version(m.group(1))
                if v is None:
                    return cls(text, nothing=True)
                return cls(text, bounds=[Bound(op, v)])

        comparators = _COMPARATOR_RE.findall(text)
        if comparators:
            bounds: list[Bound] = []
            for op, raw in comparators:
                v = parse_version(raw)
                if v is None:
                    return cls(text, nothing=True)
                bounds.append(Bound("==" if op == "=" else op, v))
            return cls(text, bounds=bounds)

        exact = parse_version(text)
        if exact is None:
            return cls(text, nothing=True)
        return cls(text, bounds=[Bound("==", exact)])

    def contains(self, version: str | Version | None) -> bool:
        """Check whether ``version`` falls inside the affected range."""
        if self.nothing:
            return False
        v = version if isinstance(version, Version) else parse_version(version or "")
        if v is None:
            return False
        if self.everything:
            return True
        if self.prefix is not None:
            return v.release[: len(self.prefix)] == self.prefix
        return all(b.admits(v) for b in self.bounds)


def range_from_bounds(
    exact: str | None = None,
    start_including: str | None = None,
    start_excluding: str | None = None,
    end_including: str | None = None,
    end_excluding: str | None = None,
) -> str:
    """Build a range expression from NVD ``cpeMatch`` bound fields.

    Returns:
        ``>=1.0,<2.0`` style string, the exact version when there are no
        bounds, or ``*``.
    """
    parts: list[str] = []
    if start_including:
        parts.append(f">={start_including}")
    if start_excluding:
        parts.append(f">{start_excluding}")
    if end_including:
        parts.append(f"<={end_including}")
    if end_excluding:
        parts.append(f"<{end_excluding}")
    if parts:
        return ",".join(parts)
    if exact and exact not in ("*", "-"):
        return exact
    return exact or "*"
