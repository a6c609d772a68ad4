from __future__ import annotations

from helicone_integrator.models import ChangeAttempt


REVIEW_PR_TITLE = "[REVIEW] Add Helicone observability integration"
FINAL_PR_TITLE = "Add Helicone observability for LLM monitoring"
_FOOTER = "*Generated by helicone-integrator.*"


def branch_name(integration_id: str, *, prefix: str = "helicone-integration") -> str:
    """Staging branch for an integration; depends on the id alone so every attempt reuses it."""
    return f"{prefix}-{integration_id}"


def format_changes_summary(modified_files: tuple[str, ...], added_files: tuple[str, ...]) -> str:
    sections: list[str] = []
    if modified_files:
        sections.append(
            "### Modified Files\n" + "\n".join(f"- `{path}`" for path in modified_files)
        )
    if added_files:
        sections.append("### Added Files\n" + "\n".join(f"- `{path}`" for path in added_files))
    if not sections:
        return "No file changes."
    return "\n\n".join(sections)


def commit_message(attempt: int) -> str:
    if attempt <= 1:
        return "Add Helicone integration"
    return f"Address review feedback (attempt {attempt})"


def review_pr_body(*, integration_id: str, change: ChangeAttempt) -> str:
    return f"""## Review Required

This PR adds Helicone observability to track and monitor LLM usage.

{change.summary}

## Changes

{change.changes_summary}

## How to review

1. Review the changes in this PR.
2. To approve, run: `helicone-integrator review {integration_id} approve`
3. To request changes, run: `helicone-integrator review {integration_id} reject "feedback here"`
4. To reject without further attempts, run: `helicone-integrator review {integration_id} reject`

Feedback is applied to this same branch, so this PR updates in place.

---

{_FOOTER}"""


def final_pr_body(*, attempts: int, continuation_token: str | None) -> str:
    lines = [
        "## Add Helicone Observability for LLM Monitoring",
        "",
        "This PR integrates [Helicone](https://helicone.ai) to provide observability "
        "for your LLM API calls.",
        "",
        "### What is Helicone?",
        "",
        "Helicone is a proxy-based observability platform that provides:",
        "- Real-time monitoring of LLM API calls",
        "- Cost tracking and usage analytics",
        "- Latency metrics and error tracking",
        "- Custom tagging and filtering",
        "",
        "### How It Works",
        "",
        "This integration routes your existing LLM API calls through Helicone's proxy "
        "endpoints. No new dependencies are added, only configuration changes to your "
        "existing LLM clients.",
        "",
        "### Next Steps",
        "",
        "1. Set the `HELICONE_API_KEY` environment variable.",
        "2. Visit the [Helicone Dashboard](https://helicone.ai/dashboard) to view metrics.",
        "",
    ]
    if attempts > 1:
        lines.extend(
            [
                "### Review Process",
                "",
                f"This integration was refined through {attempts} attempts based on review feedback.",
                "",
            ]
        )
    if continuation_token:
        lines.extend([f"Agent session: `{continuation_token}`", ""])
    lines.extend(["---", "", _FOOTER])
    return "\n".join(lines)
