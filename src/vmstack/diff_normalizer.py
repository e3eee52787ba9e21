"""Payload diffs that ignore purely syntactic differences.

A node's last-applied payload is compared with its desired payload leaf
by leaf. A leaf that differs is dropped when an ignore rule covers its
path, or when both sides normalize to the same value:

- set-valued fields (tags, roles, CIDR lists) compare without order
- "", {} and missing are the same for labels and descriptions
- GCE echoes some numbers as strings and some flags in another case
- GCE fills in a few defaults the payload never states

Idempotence depends on this module: a converged stack must produce no
significant change, however the provider happened to order a set.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any

from .ignore_rules import IgnoreRulesConfig, IgnoreRulesEvaluator, compile_path_pattern

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """How a value is canonicalized before comparison."""

    EMPTY_EQUIVALENCE = "empty_equivalence"
    BOOLEAN_NORMALIZE = "boolean_normalize"
    NUMERIC_STRING = "numeric_string"
    CASE_INSENSITIVE = "case_insensitive"
    ARRAY_UNORDERED = "array_unordered"
    DEFAULT_VALUE = "default_value"


def _empty_as_none(value: Any, params: dict[str, Any]) -> Any:
    if isinstance(value, str | list | tuple | dict) and not value:
        return None
    return value


_TRUTHY = ("true", "yes", "1", "on")
_FALSY = ("false", "no", "0", "off")


def _as_bool(value: Any, params: dict[str, Any]) -> Any:
    if isinstance(value, str):
        lowered = value.lower()
        if lowered in _TRUTHY:
            return True
        if lowered in _FALSY:
            return False
    elif isinstance(value, int) and not isinstance(value, bool) and value in (0, 1):
        return bool(value)
    return value


def _as_number(value: Any, params: dict[str, Any]) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return float(value) if "." in value else int(value)
    except ValueError:
        return value


def _lowercase(value: Any, params: dict[str, Any]) -> Any:
    return value.lower() if isinstance(value, str) else value


def _sorted_tuple(value: Any, params: dict[str, Any]) -> Any:
    # Duplicates are kept; mixed element types sort by their string form
    if isinstance(value, list | tuple):
        return tuple(sorted(value, key=str))
    return value


def _default_if_missing(value: Any, params: dict[str, Any]) -> Any:
    return params.get("default") if value is None else value


_NORMALIZERS: dict[NormalizationType, Callable[[Any, dict[str, Any]], Any]] = {
    NormalizationType.EMPTY_EQUIVALENCE: _empty_as_none,
    NormalizationType.BOOLEAN_NORMALIZE: _as_bool,
    NormalizationType.NUMERIC_STRING: _as_number,
    NormalizationType.CASE_INSENSITIVE: _lowercase,
    NormalizationType.ARRAY_UNORDERED: _sorted_tuple,
    NormalizationType.DEFAULT_VALUE: _default_if_missing,
}


@dataclass(frozen=True)
class NormalizationRule:
    """Canonicalization applied to one path of matching node kinds.

    Attributes:
        kind: Node kind, fnmatch-style ("*" for every kind).
        path_pattern: Dotted path; "*" within a segment, "**" across segments.
        normalization_type: Canonicalization to apply.
        params: Extra arguments (e.g. {"default": 1000} for DEFAULT_VALUE).
        reason: Logged whenever the rule makes two values equal.
    """

    kind: str
    path_pattern: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    @cached_property
    def _pattern(self) -> re.Pattern[str]:
        return compile_path_pattern(self.path_pattern, include_children=False)

    def matches(self, kind: str, path: str) -> bool:
        if self.kind != "*" and not fnmatch.fnmatchcase(kind, self.kind):
            return False
        return self._pattern.fullmatch(path + ".") is not None

    def apply(self, value: Any) -> Any:
        return _NORMALIZERS[self.normalization_type](value, self.params)


def _rules(
    normalization_type: NormalizationType,
    reason: str,
    *targets: tuple[str, str],
    **params: Any,
) -> list[NormalizationRule]:
    return [
        NormalizationRule(
            kind=kind,
            path_pattern=path,
            normalization_type=normalization_type,
            params=dict(params),
            reason=reason,
        )
        for kind, path in targets
    ]


DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    *_rules(NormalizationType.ARRAY_UNORDERED, "Network tags are a set",
            ("*", "tags"), ("firewall", "target_tags")),
    *_rules(NormalizationType.ARRAY_UNORDERED, "Role bindings are a set",
            ("*", "roles")),
    *_rules(NormalizationType.ARRAY_UNORDERED, "CIDR lists and allow entries are unordered",
            ("firewall", "*_ranges"), ("firewall", "allow")),
    *_rules(NormalizationType.ARRAY_UNORDERED, "OAuth scopes are a set",
            ("compute_instance", "service_account.scopes")),
    *_rules(NormalizationType.EMPTY_EQUIVALENCE, "Empty equals missing",
            ("*", "labels"), ("*", "description")),
    *_rules(NormalizationType.BOOLEAN_NORMALIZE, "Flags may be echoed as strings",
            ("*", "allow_stopping_for_update"), ("api", "disable_on_destroy")),
    *_rules(NormalizationType.CASE_INSENSITIVE, "GCE accepts TRUE and true alike",
            ("compute_instance", "metadata.enable-oslogin"), ("firewall", "direction")),
    *_rules(NormalizationType.NUMERIC_STRING, "Numbers may be echoed as strings",
            ("compute_instance", "boot_disk.size_gb"), ("firewall", "priority")),
    *_rules(NormalizationType.DEFAULT_VALUE, "Firewall priority defaults to 1000",
            ("firewall", "priority"), default=1000),
    *_rules(NormalizationType.DEFAULT_VALUE, "Network tier defaults to PREMIUM",
            ("external_ip", "network_tier"), default="PREMIUM"),
]


class DiffNormalizer:
    """Applies every matching rule, in order, to both sides of a change."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        defaults = DEFAULT_NORMALIZATION_RULES if enable_default_rules else []
        self._rules = [*defaults, *(rules or [])]

    def normalize_value(self, value: Any, kind: str, path: str) -> Any:
        for rule in self._rules:
            if rule.matches(kind, path):
                value = rule.apply(value)
        return value

    def are_equivalent(
        self,
        before: Any,
        after: Any,
        kind: str,
        path: str,
    ) -> tuple[bool, str | None]:
        """Return (equivalent, reason); reason names the first matching rule."""
        if self.normalize_value(before, kind, path) != self.normalize_value(after, kind, path):
            return False, None
        rule = next((r for r in self._rules if r.matches(kind, path)), None)
        if rule is None:
            return True, "Values are equal"
        return True, rule.reason or f"Normalized via {rule.normalization_type.value}"


@dataclass(frozen=True)
class FieldChange:
    """One significant difference at a payload path."""

    path: str
    before: Any
    after: Any


@dataclass
class DiffResult:
    """Significant changes between two payloads, plus what was filtered out."""

    changes: list[FieldChange] = field(default_factory=list)
    ignored_count: int = 0
    normalized_count: int = 0

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    @property
    def changed_paths(self) -> list[str]:
        return [change.path for change in self.changes]


def flatten_payload(payload: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested mappings to dotted leaf paths.

    Lists and empty mappings are leaves, so an empty block that is present
    still differs from one that is absent.
    """
    flat: dict[str, Any] = {}
    for key, value in payload.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict) and value:
            flat.update(flatten_payload(value, path))
        else:
            flat[path] = value
    return flat


@dataclass
class NormalizationConfig:
    """Normalization switches read from the environment."""

    rules: list[NormalizationRule] = field(default_factory=list)
    enable_default_rules: bool = True
    log_normalizations: bool = True

    @classmethod
    def from_env(cls) -> NormalizationConfig:
        """Load configuration from environment.

        Environment Variables:
            ENABLE_DEFAULT_NORMALIZATION_RULES: If "false", disable defaults
            LOG_NORMALIZATIONS: If "false", don't log normalizations
        """

        def flag(key: str) -> bool:
            return os.environ.get(key, "true").lower() in ("true", "1", "yes")

        return cls(
            enable_default_rules=flag("ENABLE_DEFAULT_NORMALIZATION_RULES"),
            log_normalizations=flag("LOG_NORMALIZATIONS"),
        )


class PayloadDiffProcessor:
    """Turns two payloads of one node into its significant changes."""

    def __init__(
        self,
        normalizer: DiffNormalizer | None = None,
        ignore_rules: IgnoreRulesEvaluator | None = None,
        config: NormalizationConfig | None = None,
    ) -> None:
        self._config = config or NormalizationConfig()
        self._normalizer = normalizer or DiffNormalizer(
            rules=self._config.rules,
            enable_default_rules=self._config.enable_default_rules,
        )
        self._ignore_rules = ignore_rules or IgnoreRulesEvaluator(IgnoreRulesConfig())

    @property
    def normalizer(self) -> DiffNormalizer:
        return self._normalizer

    def diff(self, kind: str, before: dict[str, Any], after: dict[str, Any]) -> DiffResult:
        """Compare the last-applied payload (before) with the desired one (after).

        Args:
            kind: Node kind value, e.g. "compute_instance".

        Returns:
            DiffResult with significant changes sorted by path. A path present
            on one side only is a change even if its value is None.
        """
        flat_before = flatten_payload(before)
        flat_after = flatten_payload(after)
        result = DiffResult()

        for path in sorted(flat_before.keys() | flat_after.keys()):
            old, new = flat_before.get(path), flat_after.get(path)
            if old == new and (path in flat_before) == (path in flat_after):
                continue

            if self._ignore_rules.should_ignore_change(kind, path)[0]:
                result.ignored_count += 1
                continue

            equivalent, reason = self._normalizer.are_equivalent(old, new, kind, path)
            if equivalent:
                result.normalized_count += 1
                if self._config.log_normalizations:
                    logger.debug(
                        "Change normalized away",
                        extra={"kind": kind, "path": path, "reason": reason},
                    )
                continue

            result.changes.append(FieldChange(path=path, before=old, after=new))

        return result


def create_diff_processor_from_env() -> PayloadDiffProcessor:
    """Create a PayloadDiffProcessor from environment configuration.

    Raises:
        IgnoreRulesError: If IGNORE_RULES_FILE cannot be loaded.
    """
    return PayloadDiffProcessor(
        ignore_rules=IgnoreRulesEvaluator(IgnoreRulesConfig.from_env()),
        config=NormalizationConfig.from_env(),
    )
