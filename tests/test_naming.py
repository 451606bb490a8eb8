from __future__ import annotations

import pytest

from pgfork.core.naming import TemplateError, collect_template_vars, render_name, resolve_name, sanitize_branch_name


def test_render_name_substitutes_both_placeholder_styles() -> None:
    variables = {"PR_NUMBER": "123", "BRANCH": "feature_auth"}
    assert render_name("preview_{{PR_NUMBER}}", variables) == "preview_123"
    assert render_name("preview_{{ .BRANCH }}_db", variables) == "preview_feature_auth_db"


def test_render_name_rejects_unknown_variables() -> None:
    with pytest.raises(TemplateError, match="PR_NUMBER"):
        render_name("preview_{{PR_NUMBER}}", {})


def test_render_name_rejects_names_over_identifier_limit() -> None:
    with pytest.raises(TemplateError, match="63"):
        render_name("db_{{SUFFIX}}", {"SUFFIX": "x" * 61})


def test_render_name_rejects_empty_result() -> None:
    with pytest.raises(TemplateError):
        render_name("{{NAME}}", {"NAME": ""})


def test_resolve_name_leaves_plain_names_alone() -> None:
    assert resolve_name("app_copy", {}) == "app_copy"


def test_sanitize_branch_name() -> None:
    assert sanitize_branch_name("feature/Auth-Flow.v2") == "feature_auth_flow_v2"
    assert sanitize_branch_name("123-hotfix") == "br_123_hotfix"
    assert len(sanitize_branch_name("a" * 100)) == 63


def test_collect_template_vars_from_ci_environment() -> None:
    variables = collect_template_vars(
        {
            "GITHUB_PR_NUMBER": "42",
            "GITHUB_HEAD_REF": "feature/login",
            "GITHUB_SHA": "0123456789abcdef",
            "PGFORK_VAR_TEAM": "payments",
            "PGFORK_VAR_": "ignored",
            "HOME": "/root",
        }
    )
    assert variables == {
        "PR_NUMBER": "42",
        "BRANCH": "feature_login",
        "COMMIT_SHORT": "01234567",
        "TEAM": "payments",
    }


def test_gitlab_variables_take_precedence() -> None:
    variables = collect_template_vars({"GITHUB_PR_NUMBER": "1", "CI_MERGE_REQUEST_IID": "7", "GITHUB_SHA": "abc"})
    assert variables["PR_NUMBER"] == "7"
    assert "COMMIT_SHORT" not in variables
