"""
The Implementer: turns a change request into a unified diff.

Single-shot: one call, one reply. Retrying and judging the reply is the
generator's job, not the agent's.
"""

from __future__ import annotations

from typing import Any

from patchwright.agents import AgentContext, BaseAgent
from patchwright.router import RouterResponse

VALIDATION_EXAMPLE = """diff --git a/example.py b/example.py
--- a/example.py
+++ b/example.py
@@ -1,3 +1,4 @@
 def example():
+    print("added line")
     return True
"""


class DiffAgent(BaseAgent):
    role = "implementer"

    system_prompt = """You are a code modification assistant. You MUST output ONLY a unified diff or the token NO_CHANGES.

STRICT OUTPUT REQUIREMENTS:
- NO prose, explanations, markdown formatting, or code blocks are allowed
- Output must start with "diff --git" (for diffs) OR be exactly "NO_CHANGES"
- Every diff block MUST have "---" and "+++" headers
- Every diff block MUST have "@@ ... @@" hunk markers
- If creating a new file, use /dev/null as the source path
- The diff must be directly applicable with 'git apply'

ALLOWED OUTPUTS:
1. A valid unified diff starting with "diff --git a/... b/..."
2. The single token "NO_CHANGES"

ANY OTHER OUTPUT WILL BE REJECTED."""

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        sections = []
        if context.repository_context:
            sections.append(context.repository_context)
        sections.append(
            f"USER REQUEST: {context.prompt}\n\n"
            "Generate a unified diff to implement this request. Output ONLY the diff, nothing else."
        )
        if context.apply_feedback:
            sections.append(
                "PATCH FAILURE FEEDBACK:\n"
                "The previous diff did not apply to the working copy. git reported:\n"
                f"{context.apply_feedback}\n"
                "Regenerate the diff against the current file contents."
            )
        if context.fallback_files or context.global_fallback:
            scope = (
                f"FALLBACK MODE for files: {', '.join(context.fallback_files)}"
                if context.fallback_files else "FALLBACK MODE"
            )
            sections.append(
                f"{scope}\n"
                "Generate diffs that REPLACE THE ENTIRE FILE CONTENT:\n"
                "- Delete all lines of the old file and add all lines of the new file"
            )
        if context.validation_error:
            sections.append(
                f"VALIDATION ERROR: {context.validation_error}\n\n"
                'Please output a valid unified diff starting with "diff --git", including --- and +++ '
                'headers and @@ hunk markers. Or output exactly "NO_CHANGES".\n\n'
                f"Example:\n{VALIDATION_EXAMPLE}"
            )

        return [self._system_msg(), self._user_msg("\n\n---\n\n".join(sections))]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> dict[str, Any]:
        return {
            "raw": response.content,
            "model": response.model,
            "tokens_used": response.tokens_used,
            "attempt": context.attempt,
        }
