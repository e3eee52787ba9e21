"""Tests for ignore rules."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from vmstack.ignore_rules import (
    DEFAULT_IGNORE_RULES,
    IgnoreRule,
    IgnoreRulesConfig,
    IgnoreRulesError,
    IgnoreRulesEvaluator,
)


class TestIgnoreRule:
    """Tests for IgnoreRule path matching."""

    def test_exact_path(self) -> None:
        """Test an exact path matches."""
        rule = IgnoreRule(kind="compute_instance", paths=("metadata.ssh-keys",))
        assert rule.should_ignore_path("metadata.ssh-keys")
        assert not rule.should_ignore_path("metadata.enable-oslogin")

    def test_sub_paths(self) -> None:
        """Test a pattern also covers everything beneath it."""
        rule = IgnoreRule(kind="compute_instance", paths=("attached_disks",))
        assert rule.should_ignore_path("attached_disks")
        assert rule.should_ignore_path("attached_disks.0.source")

    def test_single_wildcard(self) -> None:
        """Test '*' matches one segment."""
        rule = IgnoreRule(kind="*", paths=("labels.*",))
        assert rule.should_ignore_path("labels.owner")
        assert not rule.should_ignore_path("labels")

    def test_double_wildcard(self) -> None:
        """Test '**' matches any depth."""
        rule = IgnoreRule(kind="*", paths=("**.fingerprint",))
        assert rule.should_ignore_path("fingerprint")
        assert rule.should_ignore_path("network_interface.fingerprint")

    def test_kind_match(self) -> None:
        """Test kind scoping with wildcards."""
        assert IgnoreRule(kind="*", paths=("x",)).matches_kind("firewall")
        assert IgnoreRule(kind="compute_*", paths=("x",)).matches_kind("compute_instance")
        assert not IgnoreRule(kind="firewall", paths=("x",)).matches_kind("external_ip")


class TestDefaults:
    """Tests for the default rules."""

    def test_defaults_cover_disk_and_placeholder(self) -> None:
        """Test the disk attachment and placeholder key are excluded."""
        evaluator = IgnoreRulesEvaluator()
        assert evaluator.should_ignore_change("compute_instance", "attached_disks")[0]
        assert evaluator.should_ignore_change("compute_instance", "metadata.ssh-keys")[0]

    def test_defaults_do_not_hide_real_changes(self) -> None:
        """Test ordinary fields are never ignored by default."""
        evaluator = IgnoreRulesEvaluator()
        for path in ("machine_type", "tags", "metadata.enable-oslogin", "labels.env"):
            assert not evaluator.should_ignore_change("compute_instance", path)[0]

    def test_defaults_can_be_disabled(self) -> None:
        """Test effective rules without defaults."""
        config = IgnoreRulesConfig(enable_default_rules=False)
        assert config.get_effective_rules() == []
        assert len(IgnoreRulesConfig().get_effective_rules()) == len(DEFAULT_IGNORE_RULES)


class TestIgnoreRulesConfig:
    """Tests for loading rules from YAML."""

    def test_from_yaml(self) -> None:
        """Test a valid document."""
        config = IgnoreRulesConfig.from_yaml(textwrap.dedent(
            """
            enableDefaultRules: false
            rules:
              - kind: compute_instance
                paths: ["labels.managed-by"]
                reason: Set by the fleet agent
            """
        ))
        assert config.enable_default_rules is False
        assert config.rules == [
            IgnoreRule(
                kind="compute_instance",
                paths=("labels.managed-by",),
                reason="Set by the fleet agent",
            )
        ]

    def test_empty_document(self) -> None:
        """Test an empty document gives defaults."""
        assert IgnoreRulesConfig.from_yaml("") == IgnoreRulesConfig()

    @pytest.mark.parametrize(
        ("content", "message"),
        [
            ("- a\n- b\n", "must be a YAML mapping"),
            ("rules: 3\n", "rules: Input should be a valid list"),
            ("rules: [{paths: []}]\n", "rules.0.paths: List should have at least 1 item"),
            ("rules: [{paths: [1]}]\n", "rules.0.paths.0: Input should be a valid string"),
            ("rules: [{path: [a]}]\n", "rules.0.path: Extra inputs are not permitted"),
            ("rules: [\n", "Invalid YAML"),
        ],
    )
    def test_invalid(self, content: str, message: str) -> None:
        """Test malformed documents are rejected with a clear message."""
        with pytest.raises(IgnoreRulesError, match=message):
            IgnoreRulesConfig.from_yaml(content)

    def test_from_env_with_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test rules file is read from IGNORE_RULES_FILE."""
        rules_file = tmp_path / "ignore.yaml"
        rules_file.write_text("rules:\n  - kind: firewall\n    paths: [description]\n")
        monkeypatch.setenv("IGNORE_RULES_FILE", str(rules_file))
        monkeypatch.setenv("LOG_IGNORED_CHANGES", "false")
        monkeypatch.delenv("ENABLE_DEFAULT_IGNORE_RULES", raising=False)

        config = IgnoreRulesConfig.from_env()

        assert config.log_ignored_changes is False
        assert config.enable_default_rules is True
        assert config.rules[0].paths == ("description",)

    def test_env_overrides_file_switches(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test environment switches win over the file's own."""
        rules_file = tmp_path / "ignore.yaml"
        rules_file.write_text("enableDefaultRules: true\nrules: []\n")
        monkeypatch.setenv("IGNORE_RULES_FILE", str(rules_file))
        monkeypatch.setenv("ENABLE_DEFAULT_IGNORE_RULES", "false")

        assert IgnoreRulesConfig.from_env().get_effective_rules() == []

    def test_from_env_missing_file(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a missing rules file is a configuration error."""
        monkeypatch.setenv("IGNORE_RULES_FILE", "/nonexistent/ignore.yaml")
        with pytest.raises(IgnoreRulesError, match="Cannot read"):
            IgnoreRulesConfig.from_env()
