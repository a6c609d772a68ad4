from __future__ import annotations

from pathlib import Path
import logging
import shutil

from helicone_integrator.models import StagedBranch, WorkspaceHandle, parse_github_repo_url
from helicone_integrator.observability import log_event
from helicone_integrator.shell import CommandError, run


LOGGER = logging.getLogger("helicone_integrator.git_ops")


class WorkspaceError(RuntimeError):
    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class WorkspaceManager:
    """One working copy per integration under `<workspaces_dir>/<integration_id>`."""

    def __init__(self, workspaces_dir: Path, *, author_name: str, author_email: str) -> None:
        self.workspaces_dir = workspaces_dir
        self.author_name = author_name
        self.author_email = author_email

    def workspace_path(self, integration_id: str) -> Path:
        return self.workspaces_dir / integration_id

    def clone(self, integration_id: str, clone_url: str, branch: str) -> WorkspaceHandle:
        path = self.workspace_path(integration_id)
        if path.exists():
            # Leftover from an interrupted clone; start over.
            log_event(LOGGER, "git_workspace_removed", workspace_path=str(path))
            shutil.rmtree(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        log_event(LOGGER, "git_workspace_cloned", workspace_path=str(path), branch=branch)
        try:
            run(["git", "clone", "--branch", branch, clone_url, str(path)])
            run(["git", "-C", str(path), "config", "user.name", self.author_name])
            run(["git", "-C", str(path), "config", "user.email", self.author_email])
        except CommandError as exc:
            raise WorkspaceError(f"Failed to clone {clone_url} ({branch}): {exc.stderr.strip()}") from exc
        return WorkspaceHandle(
            integration_id=integration_id,
            path=str(path),
            clone_url=clone_url,
            base_branch=branch,
        )

    def restore(self, handle: WorkspaceHandle, branch: str) -> None:
        """Reset the working copy to `origin/<branch>`, re-cloning if it disappeared."""
        path = Path(handle.path)
        if not (path / ".git").exists():
            self.clone(handle.integration_id, handle.clone_url, handle.base_branch)
        log_event(LOGGER, "git_workspace_restored", workspace_path=handle.path, branch=branch)
        try:
            run(["git", "-C", handle.path, "fetch", "origin", "--prune"])
            run(["git", "-C", handle.path, "checkout", "-B", branch, f"origin/{branch}"])
            run(["git", "-C", handle.path, "reset", "--hard", f"origin/{branch}"])
            run(["git", "-C", handle.path, "clean", "-ffdx"])
        except CommandError as exc:
            raise WorkspaceError(f"Failed to restore workspace to origin/{branch}: {exc.stderr.strip()}") from exc

    def head_sha(self, handle: WorkspaceHandle) -> str:
        try:
            return run(["git", "-C", handle.path, "rev-parse", "HEAD"]).strip()
        except CommandError as exc:
            raise WorkspaceError(f"Failed to read HEAD: {exc.stderr.strip()}") from exc

    def changes_since(
        self, handle: WorkspaceHandle, base_sha: str
    ) -> tuple[tuple[str, ...], tuple[str, ...]]:
        """Return (modified, added) paths between `base_sha` and the working tree.

        Covers commits made after `base_sha`, uncommitted edits and untracked
        files. Deletions and renames count as modifications.
        """
        try:
            diff = run(["git", "-C", handle.path, "diff", "--name-status", base_sha])
            untracked = run(
                ["git", "-C", handle.path, "ls-files", "--others", "--exclude-standard"]
            )
        except CommandError as exc:
            raise WorkspaceError(f"Failed to inspect working tree: {exc.stderr.strip()}") from exc

        modified: list[str] = []
        added: list[str] = []
        for line in diff.splitlines():
            parts = line.split("\t")
            if len(parts) < 2:
                continue
            status = parts[0].strip()
            path = parts[-1].strip()
            if status.startswith("A"):
                added.append(path)
            else:
                modified.append(path)
        for line in untracked.splitlines():
            path = line.strip()
            if path and path not in added:
                added.append(path)
        return tuple(sorted(set(modified))), tuple(sorted(added))

    def stage_branch(
        self, handle: WorkspaceHandle, *, branch: str, base_ref: str, message: str
    ) -> StagedBranch:
        """Put the working tree on `branch`, commit what is left uncommitted, and push."""
        log_event(LOGGER, "git_branch_reset", workspace_path=handle.path, branch=branch)
        try:
            run(["git", "-C", handle.path, "checkout", "-B", branch])
            run(["git", "-C", handle.path, "add", "-A"])
            staged = run(["git", "-C", handle.path, "diff", "--cached", "--name-only"]).strip()
            committed = False
            if staged:
                log_event(
                    LOGGER,
                    "git_commit",
                    workspace_path=handle.path,
                    staged_count=len(staged.splitlines()),
                )
                run(["git", "-C", handle.path, "commit", "-m", message])
                committed = True
            else:
                ahead = run(
                    ["git", "-C", handle.path, "rev-list", "--count", f"{base_ref}..HEAD"]
                ).strip()
                if ahead in {"", "0"}:
                    raise WorkspaceError("No changes to commit", retryable=False)
            head_sha = run(["git", "-C", handle.path, "rev-parse", "HEAD"]).strip()
        except CommandError as exc:
            raise WorkspaceError(f"Failed to prepare branch {branch}: {exc.stderr.strip()}") from exc

        self.push_branch(handle, branch)
        return StagedBranch(
            branch=branch,
            head_sha=head_sha,
            committed=committed,
            compare_url=self.compare_url(handle, branch),
        )

    def push_branch(self, handle: WorkspaceHandle, branch: str) -> None:
        log_event(LOGGER, "git_push", workspace_path=handle.path, branch=branch)
        try:
            # The lease lets a re-executed first push replace a half-finished one on the fork.
            run(["git", "-C", handle.path, "push", "--force-with-lease", "-u", "origin", branch])
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_push_failed",
                workspace_path=handle.path,
                branch=branch,
                exit_code=exc.exit_code,
            )
            raise WorkspaceError(f"Failed to push {branch}: {exc.stderr.strip()}") from exc

    def compare_url(self, handle: WorkspaceHandle, branch: str) -> str | None:
        try:
            owner, name = parse_github_repo_url(handle.clone_url)
        except ValueError:
            return None
        return f"https://github.com/{owner}/{name}/compare/{handle.base_branch}...{branch}"
