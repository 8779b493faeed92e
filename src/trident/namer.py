"""Process naming rules: decide which group a process belongs to, if any.

Two rule sources exist:
- a YAML rule file (load_rules), an ordered list of match rules
- the -procnames/-namemapping shorthand (NameMapper)

Both implement MatchNamer.match_and_name(): (True, group) or (False, "").
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Protocol

import structlog
import yaml

from trident.errors import ConfigError
from trident.models import ProcAttributes

log = structlog.get_logger()

DEFAULT_TEMPLATE = "{{.ExeBase}}"

_TEMPLATE_VAR = re.compile(r"\{\{\s*\.(\w+)(?:\.(\w+))?\s*\}\}")
_TEMPLATE_FIELDS = {"Comm", "ExeBase", "ExeFull", "Username", "PID", "StartTime", "Matches"}
_RULE_KEYS = {"name", "comm", "exe", "cmdline", "environ"}


class MatchNamer(Protocol):
    def match_and_name(self, attrs: ProcAttributes) -> tuple[bool, str]: ...


def _argv0(attrs: ProcAttributes) -> str:
    return attrs.cmdline[0] if attrs.cmdline else ""


@dataclass
class MatchRule:
    """One entry of the rule list.

    Every condition present must hold; within comm and exe any listed
    value may match, while every cmdline and environ regex must match.
    """

    name: str = DEFAULT_TEMPLATE
    comm: frozenset[str] = frozenset()
    exe: tuple[str, ...] = ()
    cmdline: tuple[re.Pattern[str], ...] = ()
    environ: Mapping[str, re.Pattern[str]] = field(default_factory=dict)

    def _match_exe(self, attrs: ProcAttributes) -> bool:
        candidates = {p for p in (attrs.exe, _argv0(attrs)) if p}
        for pattern in self.exe:
            for path in candidates:
                target = path if "/" in pattern else os.path.basename(path)
                if fnmatchcase(target, pattern):
                    return True
        return False

    def match(self, attrs: ProcAttributes) -> dict[str, str] | None:
        """Return the captured groups if the rule matches, else None."""
        if self.comm and attrs.name not in self.comm:
            return None
        if self.exe and not self._match_exe(attrs):
            return None

        captures: dict[str, str] = {}
        if self.cmdline:
            joined = " ".join(attrs.cmdline)
            for regex in self.cmdline:
                m = regex.search(joined)
                if m is None:
                    return None
                _add_captures(captures, m)

        if self.environ:
            env = attrs.environ()
            for var, regex in self.environ.items():
                value = env.get(var)
                if value is None:
                    return None
                m = regex.search(value)
                if m is None:
                    return None
                _add_captures(captures, m)

        return captures

    def render(self, attrs: ProcAttributes, captures: Mapping[str, str]) -> str:
        """Fill the name template from the process and the captures."""
        exe_full = _argv0(attrs) or attrs.exe
        values = {
            "Comm": attrs.name,
            "ExeBase": os.path.basename(exe_full) if exe_full else attrs.name,
            "ExeFull": exe_full,
            "Username": attrs.username,
            "PID": str(attrs.pid),
            "StartTime": f"{attrs.start_time:.0f}",
        }

        def substitute(m: re.Match[str]) -> str:
            if m.group(1) == "Matches":
                return captures.get(m.group(2) or "", "")
            return values[m.group(1)]

        return _TEMPLATE_VAR.sub(substitute, self.name).strip()

    @classmethod
    def from_dict(cls, index: int, data: Mapping) -> MatchRule:
        """Build a rule from one parsed YAML entry, validating as we go."""
        if not isinstance(data, Mapping):
            raise ConfigError(f"rule {index}: expected a mapping, got {type(data).__name__}")
        unknown = set(data) - _RULE_KEYS
        if unknown:
            raise ConfigError(f"rule {index}: unknown keys {sorted(unknown)}")

        template = str(data.get("name", DEFAULT_TEMPLATE))
        for m in _TEMPLATE_VAR.finditer(template):
            if m.group(1) not in _TEMPLATE_FIELDS:
                raise ConfigError(f"rule {index}: unknown template field {m.group(0)!r}")

        comm = frozenset(_as_list(index, "comm", data.get("comm")))
        exe = tuple(_as_list(index, "exe", data.get("exe")))
        cmdline = tuple(
            _compile(index, "cmdline", p) for p in _as_list(index, "cmdline", data.get("cmdline"))
        )
        environ_data = data.get("environ") or {}
        if not isinstance(environ_data, Mapping):
            raise ConfigError(f"rule {index}: environ must map variable names to regexes")
        environ = {str(k): _compile(index, f"environ.{k}", v) for k, v in environ_data.items()}

        if not (comm or exe or cmdline or environ):
            raise ConfigError(f"rule {index}: needs at least one of comm, exe, cmdline, environ")

        return cls(name=template, comm=comm, exe=exe, cmdline=cmdline, environ=environ)


def _add_captures(captures: dict[str, str], m: re.Match[str]) -> None:
    for i, value in enumerate(m.groups(), start=1):
        captures[str(i)] = value or ""
    for key, value in m.groupdict().items():
        captures[key] = value or ""


def _as_list(index: int, key: str, value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, Sequence):
        return [str(v) for v in value]
    raise ConfigError(f"rule {index}: {key} must be a string or a list of strings")


def _compile(index: int, key: str, pattern: object) -> re.Pattern[str]:
    try:
        return re.compile(str(pattern))
    except re.error as e:
        raise ConfigError(f"rule {index}: bad {key} regex {pattern!r}: {e}") from e


class RuleNamer:
    """Ordered match rules; the first matching rule names the process."""

    def __init__(self, rules: Sequence[MatchRule]) -> None:
        self.rules = list(rules)

    def match_and_name(self, attrs: ProcAttributes) -> tuple[bool, str]:
        for rule in self.rules:
            captures = rule.match(attrs)
            if captures is None:
                continue
            name = rule.render(attrs, captures)
            # An empty name rejects rather than falling through to later rules
            return (bool(name), name)
        return (False, "")

    def __len__(self) -> int:
        return len(self.rules)


def parse_rules(data: object) -> RuleNamer:
    """Build a RuleNamer from an already-parsed YAML document."""
    if not isinstance(data, Mapping) or "process_names" not in data:
        raise ConfigError("rule file must contain a 'process_names' list")
    entries = data["process_names"]
    if not isinstance(entries, list) or not entries:
        raise ConfigError("'process_names' must be a non-empty list")
    return RuleNamer([MatchRule.from_dict(i, entry) for i, entry in enumerate(entries)])


def load_rules(path: Path) -> RuleNamer:
    """Load naming rules from a YAML file."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read rule file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse rule file {path}: {e}") from e

    namer = parse_rules(data)
    log.info("rules_loaded", path=str(path), rules=len(namer))
    return namer


class NameMapper:
    """The -procnames/-namemapping shorthand.

    mapping: comm -> regex; when the regex finds a group in the joined
    command line the process is named "<comm>:<first group>".
    names: accepted names after remapping; empty accepts everything.
    """

    def __init__(
        self,
        names: Sequence[str] = (),
        mapping: Mapping[str, re.Pattern[str]] | None = None,
    ) -> None:
        self.names = frozenset(names)
        self.mapping = dict(mapping or {})

    @classmethod
    def from_flags(cls, procnames: str = "", namemapping: str = "") -> NameMapper:
        names = [n for n in procnames.split(",") if n] if procnames else []
        parts = namemapping.split(",") if namemapping else []
        if len(parts) % 2:
            raise ConfigError("-namemapping must be a list of name,regex pairs")
        mapping: dict[str, re.Pattern[str]] = {}
        for i in range(0, len(parts), 2):
            try:
                mapping[parts[i]] = re.compile(parts[i + 1])
            except re.error as e:
                raise ConfigError(f"-namemapping: bad regex for {parts[i]!r}: {e}") from e
        return cls(names, mapping)

    def match_and_name(self, attrs: ProcAttributes) -> tuple[bool, str]:
        name = attrs.name
        regex = self.mapping.get(name)
        if regex is not None:
            m = regex.search(" ".join(attrs.cmdline))
            if m is not None and m.groups():
                name = f"{name}:{m.group(1)}"
        if self.names and name not in self.names:
            return (False, "")
        return (bool(name), name)


def build_namer(
    config_path: Path | None = None,
    procnames: str = "",
    namemapping: str = "",
) -> MatchNamer:
    """Pick the namer for the command-line selection.

    With neither a rule file nor shorthand selectors every process is
    accepted and grouped under its comm.
    """
    if config_path is not None:
        if procnames or namemapping:
            raise ConfigError("-config.path cannot be combined with -procnames/-namemapping")
        return load_rules(config_path)
    if not (procnames or namemapping):
        log.warning("no_process_selection", msg="grouping every process by comm")
    return NameMapper.from_flags(procnames, namemapping)
