from __future__ import annotations


def build_integration_prompt(
    *,
    repo_full_name: str,
    task: str,
    base_branch: str,
    guidance: str | None = None,
) -> str:
    if guidance is not None and guidance.strip():
        return f"{guidance.strip()}\n\nRepository: {repo_full_name}\nBase branch: {base_branch}"
    return f"""
You are integrating Helicone observability into repository {repo_full_name}.

Task:
- {task}
- Base branch is: {base_branch}

Context:
- Helicone is a proxy-based observability platform for LLM APIs.
- It needs no new packages: route existing LLM clients through Helicone's proxy
  endpoints and send a `Helicone-Auth: Bearer <HELICONE_API_KEY>` header.
- Proxy endpoints:
  - OpenAI: https://oai.helicone.ai/v1
  - Anthropic: https://anthropic.helicone.ai
  - Azure OpenAI: https://oai.helicone.ai/openai/deployments/<deployment-name>
    with a `Helicone-OpenAI-API-Base` header naming the Azure resource.

Rules:
- Find where LLM clients are constructed and change only their base URL and headers.
- Read the contribution guidelines (CONTRIBUTING.md, PR templates) and follow them.
- Add HELICONE_API_KEY wherever the project documents its environment variables.
- Match the existing code style exactly. Do not refactor, reformat or add emoji.
- Keep existing tests passing; update tests that construct the changed clients.
- Commit your changes with a message in the style of the recent git log.
- If the project makes no LLM API calls, change nothing.

Response format:
- Reply with a short plain-text summary of what you changed and why.
""".strip()


def build_feedback_prompt(*, feedback: str) -> str:
    return f"""
The previous integration attempt was rejected by a reviewer.

Reviewer feedback:
{feedback}

Instructions:
- Address the feedback with the smallest set of changes that resolves it.
- Keep the rules from the original task: no refactoring, match the existing style.
- Commit your changes with a message in the style of the recent git log.

Response format:
- Reply with a short plain-text summary of what you changed in this attempt.
""".strip()
