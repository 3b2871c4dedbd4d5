"""Dependency manifest inspection.

Pure functions that find the version a repository declares for a given
vendor/product in one of the common manifest formats.  No network calls;
the Evidence Matcher fetches the file and hands the text in.
"""

import json
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Callable

import tomli

from .versions import concrete_version

MANIFEST_FILENAMES = (
    "package.json",
    "composer.json",
    "requirements.txt",
    "go.mod",
    "pom.xml",
    "Cargo.toml",
    "Gemfile",
)


@dataclass(frozen=True)
class DeclaredDependency:
    """A dependency declaration found in a manifest.

    Attributes:
        name: Dependency name as written in the manifest.
        spec: Declared version spec (``^1.2.3``, ``>=1.0`` ...).
        version: Concrete version extracted from ``spec``.
        line: The manifest line the declaration came from.
    """

    name: str
    spec: str
    version: str
    line: str


def _norm(name: str) -> str:
    return re.sub(r"[-_.\s]+", "-", (name or "").strip().lower())


def names_match(candidate: str, vendor: str, product: str) -> bool:
    """Check whether a manifest dependency name refers to vendor/product.

    Accepts the bare product, ``vendor/product`` (Composer, scoped npm
    ``@vendor/product``), and module paths whose last segment is the
    product (Go, Maven coordinates).
    """
    cand = _norm(candidate).lstrip("@")
    prod = _norm(product)
    vend = _norm(vendor)
    if not cand or not prod:
        return False
    if cand == prod:
        return True
    if cand == f"{vend}/{prod}" or cand == f"{vend}:{prod}":
        return True
    last = re.split(r"[/:]", cand)[-1]
    if last == prod:
        return True
    # Go major-version suffix: github.com/acme/widget/v2
    parts = cand.split("/")
    return len(parts) >= 2 and re.fullmatch(r"v\d+", parts[-1]) is not None and parts[-2] == prod


def _line_of(content: str, needle: str) -> str:
    for line in content.splitlines():
        if needle in line:
            return line.strip()
    return needle


def _declared(name: str, spec: str, line: str) -> DeclaredDependency | None:
    version = concrete_version(spec)
    if version is None:
        return None
    return DeclaredDependency(name=name, spec=spec.strip(), version=version, line=line)


# ─── Format parsers ──────────────────────────────────────────────────────────


def _from_json_sections(content: str, sections: tuple[str, ...], vendor: str, product: str) -> DeclaredDependency | None:
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    for section in sections:
        deps = data.get(section)
        if not isinstance(deps, dict):
            continue
        for name, spec in deps.items():
            if isinstance(spec, str) and names_match(name, vendor, product):
                found = _declared(name, spec, _line_of(content, f'"{name}"'))
                if found:
                    return found
    return None


def parse_package_json(content: str, vendor: str, product: str) -> DeclaredDependency | None:
    return _from_json_sections(
        content,
        ("dependencies", "devDependencies", "peerDependencies", "optionalDependencies"),
        vendor,
        product,
    )


def parse_composer_json(content: str, vendor: str, product: str) -> DeclaredDependency | None:
    return _from_json_sections(content, ("require", "require-dev"), vendor, product)


_REQUIREMENT_RE = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)\s*(?:\[[^\]]*\])?\s*((?:[<>=!~]=?|===)\s*[^;#\s]+(?:\s*,\s*[<>=!~]=?\s*[^;#\s,]+)*)")


def parse_requirements_txt(content: str, vendor: str, product: str) -> DeclaredDependency | None:
    for raw in content.splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line or line.startswith("-"):
            continue
        m = _REQUIREMENT_RE.match(line)
        if m and names_match(m.group(1), vendor, product):
            found = _declared(m.group(1), m.group(2), raw.strip())
            if found:
                return found
    return None


_GO_REQUIRE_RE = re.compile(r"^\s*(?:require\s+)?([\w.\-~/]+)\s+(v[\w.\-+]+)")


def parse_go_mod(content: str, vendor: str, product: str) -> DeclaredDependency | None:
    for raw in content.splitlines():
        m = _GO_REQUIRE_RE.match(raw)
        if m and "/" in m.group(1) and names_match(m.group(1), vendor, product):
            found = _declared(m.group(1), m.group(2), raw.strip())
            if found:
                return found
    return None


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child_text(element: ET.Element, name: str) -> str:
    for child in element:
        if _local(child.tag) == name:
            return (child.text or "").strip()
    return ""


def parse_pom_xml(content: str, vendor: str, product: str) -> DeclaredDependency | None:
    try:
        root = ET.fromstring(content)
    except ET.ParseError:
        return None
    for element in root.iter():
        if _local(element.tag) != "dependency":
            continue
        group = _child_text(element, "groupId")
        artifact = _child_text(element, "artifactId")
        version = _child_text(element, "version")
        if not artifact or not version or version.startswith("${"):
            continue
        if names_match(f"{group}:{artifact}", vendor, product):
            found = _declared(artifact, version, _line_of(content, f"<artifactId>{artifact}"))
            if found:
                return found
    return None


_CARGO_SECTIONS = ("dependencies", "dev-dependencies", "build-dependencies")


def _cargo_tables(data: dict[str, Any]) -> list[dict[str, Any]]:
    """Dependency tables at the top level and under ``[target.<cfg>]``."""
    scopes = [data] + [t for t in (data.get("target") or {}).values() if isinstance(t, dict)]
    return [s[name] for s in scopes for name in _CARGO_SECTIONS if isinstance(s.get(name), dict)]


def _cargo_line(content: str, name: str) -> str:
    for line in content.splitlines():
        stripped = line.strip()
        if re.match(rf"{re.escape(name)}\s*=", stripped) or stripped.endswith(f"dependencies.{name}]"):
            return stripped
    return name


def parse_cargo_toml(content: str, vendor: str, product: str) -> DeclaredDependency | None:
    try:
        data = tomli.loads(content)
    except tomli.TOMLDecodeError:
        return None
    for table in _cargo_tables(data):
        for name, value in table.items():
            spec = value.get("version") if isinstance(value, dict) else value
            if isinstance(spec, str) and names_match(name, vendor, product):
                found = _declared(name, spec, _cargo_line(content, name))
                if found:
                    return found
    return None



_GEM_RE = re.compile(r"""^\s*gem\s+['"]([^'"]+)['"]\s*,\s*['"]([^'"]+)['"]""")


def parse_gemfile(content: str, vendor: str, product: str) -> DeclaredDependency | None:
    for raw in content.splitlines():
        m = _GEM_RE.match(raw)
        if m and names_match(m.group(1), vendor, product):
            found = _declared(m.group(1), m.group(2), raw.strip())
            if found:
                return found
    return None


PARSERS: dict[str, Callable[[str, str, str], DeclaredDependency | None]] = {
    "package.json": parse_package_json,
    "composer.json": parse_composer_json,
    "requirements.txt": parse_requirements_txt,
    "go.mod": parse_go_mod,
    "pom.xml": parse_pom_xml,
    "Cargo.toml": parse_cargo_toml,
    "Gemfile": parse_gemfile,
}


def find_declared_dependency(path: str, content: str, vendor: str, product: str) -> DeclaredDependency | None:
    """Find the declaration of vendor/product in a manifest file.

    Args:
        path: Repository path of the manifest; only the file name matters.
        content: Manifest text.
        vendor: Affected vendor.
        product: Affected product.

    Returns:
        ``DeclaredDependency`` or ``None`` if the format is unknown or the
        product is not declared with a concrete version.
    """
    filename = path.rsplit("/", 1)[-1]
    parser = PARSERS.get(filename)
    if parser is None:
        return None
    return parser(content, vendor, product)
