"""
Unit tests for run conditions
"""

import pytest

from pipewright.conditions import evaluate, parse_condition
from pipewright.errors import ConditionError, ParseError
from pipewright.model import TriggerContext

MAIN = TriggerContext(branch="main", event="push", sha="abc123")
DEVELOP = TriggerContext(branch="develop", event="push", sha="def456")


class TestEvaluate:
    """Tests for condition evaluation"""

    def test_branch_equality(self):
        """Should compare the branch against a literal"""
        assert evaluate("branch == main", MAIN) is True
        assert evaluate("branch == main", DEVELOP) is False

    def test_missing_condition_is_true(self):
        """Should treat an absent or blank condition as always true"""
        assert evaluate(None, DEVELOP) is True
        assert evaluate("   ", DEVELOP) is True

    def test_expression_wrapper_and_aliases(self):
        """Should accept ${{ }} wrapped expressions with github.* names"""
        assert evaluate("${{ github.ref_name == 'main' }}", MAIN) is True
        assert evaluate("${{ github.ref == 'refs/heads/main' }}", MAIN) is True
        assert evaluate("${{ github.event_name != 'push' }}", MAIN) is False

    def test_glob_match(self):
        """Should glob-match with =~"""
        ctx = TriggerContext(branch="release/1.2", event="push")
        assert evaluate("event == push && branch =~ 'release/*'", ctx) is True
        assert evaluate("branch =~ feature/*", ctx) is False

    def test_boolean_operators(self):
        """Should honour ||, && and ! with parentheses"""
        assert evaluate("branch == main || branch == develop", DEVELOP) is True
        assert evaluate("!(branch == main)", DEVELOP) is True
        assert evaluate("!(branch == main) && event == pull_request", DEVELOP) is False

    def test_literals(self):
        """Should support true/false and literal-only comparisons"""
        assert evaluate("true", DEVELOP) is True
        assert evaluate("false", MAIN) is False
        assert evaluate("main == main", DEVELOP) is True

    def test_upstream_conclusion(self):
        """Should expose the upstream workflow conclusion"""
        ctx = TriggerContext(event="workflow_run", upstream_conclusion="success", upstream_workflow="build")
        assert evaluate("conclusion == success && workflow == build", ctx) is True
        assert evaluate("${{ github.event.workflow_run.conclusion == 'failure' }}", ctx) is False


class TestParseCondition:
    """Tests for condition parsing"""

    def test_condition_is_reusable(self):
        """Should give the same answer every time for the same context"""
        cond = parse_condition("branch == main")
        assert [cond(MAIN), cond(MAIN), cond(DEVELOP)] == [True, True, False]
        assert cond.source == "branch == main"

    @pytest.mark.parametrize("text", [
        "branch ==",
        "(branch == main",
        "branch",
        "branch == main &&",
        "== main",
        "branch == main)",
    ])
    def test_malformed(self, text):
        """Should raise ConditionError for malformed expressions"""
        with pytest.raises(ConditionError):
            parse_condition(text)

    def test_condition_error_is_parse_error(self):
        """Should be reported as a parse error carrying the expression"""
        with pytest.raises(ParseError) as exc:
            parse_condition("branch ~ main")
        assert exc.value.details["expression"] == "branch ~ main"
