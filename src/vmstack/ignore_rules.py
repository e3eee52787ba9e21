"""Payload paths excluded from change detection.

Some instance fields are owned by something other than this reconciler:
disk attachments are made by an external mechanism, and the placeholder
metadata key only exists so its presence never shows up as a diff. An
ignore rule names such paths for a node kind; a change at a matching
path (or anywhere beneath it) is dropped before the planner sees it.

Rules file format (IGNORE_RULES_FILE):

    enableDefaultRules: true
    logIgnoredChanges: true
    rules:
      - kind: compute_instance
        paths: ["labels.managed-by"]
        reason: Label set by the fleet agent

Path patterns are dotted; "*" stands for exactly one segment (or part of
one) and "**" for any number of segments.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from dataclasses import dataclass, field
from functools import cached_property
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError

from .composer import PLACEHOLDER_METADATA_KEY

logger = logging.getLogger(__name__)


class IgnoreRulesError(Exception):
    """Raised when ignore rules configuration is invalid."""

    pass


def compile_path_pattern(pattern: str, *, include_children: bool = True) -> re.Pattern[str]:
    """Compile a dotted path pattern; fullmatch it against ``path + "."``.

    With include_children, every path beneath a match matches too.
    """
    parts: list[str] = []
    for segment in pattern.split("."):
        if segment == "**":
            parts.append(r"(?:[^.]+\.)*")
        elif segment == "*":
            parts.append(r"[^.]+\.")
        else:
            parts.append(re.escape(segment).replace(r"\*", "[^.]*") + r"\.")
    if include_children:
        parts.append(r"(?:[^.]+\.)*")
    return re.compile("".join(parts))


@dataclass(frozen=True)
class IgnoreRule:
    """Paths of one node kind whose changes are never acted on.

    Attributes:
        kind: Node kind, fnmatch-style ("*" for every kind).
        paths: Dotted path patterns.
        reason: Why the paths are ignored; logged with every suppressed change.
    """

    kind: str
    paths: tuple[str, ...]
    reason: str = ""

    @cached_property
    def _patterns(self) -> tuple[re.Pattern[str], ...]:
        return tuple(compile_path_pattern(p) for p in self.paths)

    def matches_kind(self, kind: str) -> bool:
        return self.kind == "*" or fnmatch.fnmatchcase(kind, self.kind)

    def should_ignore_path(self, path: str) -> bool:
        candidate = path + "."
        return any(p.fullmatch(candidate) for p in self._patterns)


DEFAULT_IGNORE_RULES: tuple[IgnoreRule, ...] = (
    IgnoreRule(
        kind="*",
        paths=("self_link", "id", "fingerprint", "creation_timestamp", "etag"),
        reason="Assigned by the provider",
    ),
    IgnoreRule(
        kind="compute_instance",
        paths=("attached_disks",),
        reason="Disks are attached by an external mechanism",
    ),
    IgnoreRule(
        kind="compute_instance",
        paths=(f"metadata.{PLACEHOLDER_METADATA_KEY}",),
        reason="Placeholder key, its value is owned by OS Login tooling",
    ),
    IgnoreRule(
        kind="service_account",
        paths=("unique_id", "email"),
        reason="Populated after creation",
    ),
)


class _RuleDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: StrictStr = "*"
    paths: list[StrictStr] = Field(min_length=1)
    reason: StrictStr = ""


class _RulesDocument(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    enable_default_rules: bool = Field(True, alias="enableDefaultRules")
    log_ignored_changes: bool = Field(True, alias="logIgnoredChanges")
    rules: list[_RuleDocument] = Field(default_factory=list)


@dataclass
class IgnoreRulesConfig:
    """User rules plus the switches controlling defaults and audit logging."""

    rules: list[IgnoreRule] = field(default_factory=list)
    enable_default_rules: bool = True
    log_ignored_changes: bool = True

    def get_effective_rules(self) -> list[IgnoreRule]:
        defaults = list(DEFAULT_IGNORE_RULES) if self.enable_default_rules else []
        return [*defaults, *self.rules]

    @classmethod
    def from_yaml(cls, yaml_content: str, source: str = "ignore rules") -> IgnoreRulesConfig:
        """Parse a rules document.

        Raises:
            IgnoreRulesError: If the YAML is invalid or does not validate.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise IgnoreRulesError(f"Invalid YAML in {source}: {e}") from e

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise IgnoreRulesError(f"{source} must be a YAML mapping")

        try:
            document = _RulesDocument.model_validate(data)
        except ValidationError as e:
            problems = "\n".join(
                f"  - {'.'.join(str(x) for x in error['loc'])}: {error['msg']}"
                for error in e.errors()
            )
            raise IgnoreRulesError(f"Invalid {source}:\n{problems}") from e

        return cls(
            rules=[
                IgnoreRule(kind=rule.kind, paths=tuple(rule.paths), reason=rule.reason)
                for rule in document.rules
            ],
            enable_default_rules=document.enable_default_rules,
            log_ignored_changes=document.log_ignored_changes,
        )

    @classmethod
    def from_file(cls, path: Path) -> IgnoreRulesConfig:
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise IgnoreRulesError(f"Cannot read ignore rules file {path}: {e}") from e
        return cls.from_yaml(content, source=str(path))

    @classmethod
    def from_env(cls) -> IgnoreRulesConfig:
        """Load rules from the environment.

        Environment Variables:
            IGNORE_RULES_FILE: YAML rules document (optional)
            ENABLE_DEFAULT_IGNORE_RULES: "false" drops the built-in rules
            LOG_IGNORED_CHANGES: "false" silences the per-change audit log

        The environment switches take precedence over the file's own.
        """

        def env_flag(key: str) -> bool | None:
            value = os.environ.get(key)
            if value is None:
                return None
            return value.lower() in ("true", "1", "yes")

        rules_file = os.environ.get("IGNORE_RULES_FILE")
        config = cls.from_file(Path(rules_file)) if rules_file else cls()

        enable_defaults = env_flag("ENABLE_DEFAULT_IGNORE_RULES")
        if enable_defaults is not None:
            config.enable_default_rules = enable_defaults
        log_ignored = env_flag("LOG_IGNORED_CHANGES")
        if log_ignored is not None:
            config.log_ignored_changes = log_ignored
        return config


class IgnoreRulesEvaluator:
    """Answers whether a change at (kind, path) should be dropped."""

    def __init__(self, config: IgnoreRulesConfig | None = None) -> None:
        self._config = config or IgnoreRulesConfig()
        self._rules = self._config.get_effective_rules()

    def should_ignore_change(self, kind: str, path: str) -> tuple[bool, str | None]:
        """Return (ignored, reason) for a change at a payload path."""
        rule = next(
            (r for r in self._rules if r.matches_kind(kind) and r.should_ignore_path(path)),
            None,
        )
        if rule is None:
            return False, None
        if self._config.log_ignored_changes:
            logger.debug(
                "Ignoring change",
                extra={"kind": kind, "path": path, "reason": rule.reason},
            )
        return True, rule.reason
