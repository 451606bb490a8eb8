from __future__ import annotations

import re
from typing import Mapping

MAX_IDENTIFIER_LENGTH = 63
VARIABLE_ENV_PREFIX = "PGFORK_VAR_"

_PLACEHOLDER = re.compile(r"\{\{\s*\.?([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class TemplateError(ValueError):
    pass


def render_name(pattern: str, variables: Mapping[str, str]) -> str:
    missing: list[str] = []

    def _substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in variables:
            missing.append(name)
            return ""
        return variables[name]

    rendered = _PLACEHOLDER.sub(_substitute, pattern)
    if missing:
        raise TemplateError(f"Unknown template variable(s): {', '.join(sorted(set(missing)))}")
    if "{{" in rendered or "}}" in rendered:
        raise TemplateError(f"Malformed template placeholder in {pattern!r}")
    if not rendered:
        raise TemplateError(f"Template {pattern!r} resolved to an empty name")
    if len(rendered) > MAX_IDENTIFIER_LENGTH:
        raise TemplateError(f"Resolved name exceeds {MAX_IDENTIFIER_LENGTH} characters: {rendered!r}")
    return rendered


def sanitize_branch_name(branch: str) -> str:
    result = branch.replace("/", "_").replace("-", "_").replace(".", "_").lower()
    if result and result[0].isdigit():
        result = "br_" + result
    return result[:MAX_IDENTIFIER_LENGTH]


def collect_template_vars(environ: Mapping[str, str]) -> dict[str, str]:
    variables = {
        key[len(VARIABLE_ENV_PREFIX) :]: value
        for key, value in environ.items()
        if key.startswith(VARIABLE_ENV_PREFIX) and len(key) > len(VARIABLE_ENV_PREFIX)
    }

    # GitLab values win over GitHub when both are present.
    for key in ("GITHUB_PR_NUMBER", "CI_MERGE_REQUEST_IID"):
        if environ.get(key):
            variables["PR_NUMBER"] = environ[key]
    for key in ("GITHUB_HEAD_REF", "CI_COMMIT_REF_NAME"):
        if environ.get(key):
            variables["BRANCH"] = sanitize_branch_name(environ[key])
    for key in ("GITHUB_SHA", "CI_COMMIT_SHA"):
        commit = environ.get(key, "")
        if len(commit) >= 8:
            variables["COMMIT_SHORT"] = commit[:8]
    return variables


def resolve_name(value: str, variables: Mapping[str, str]) -> str:
    if "{{" not in value:
        return value
    return render_name(value, variables)
