from __future__ import annotations

from pathlib import Path

import pytest

from helicone_integrator.git_ops import WorkspaceError, WorkspaceManager
from helicone_integrator.models import WorkspaceHandle
from helicone_integrator.observability import configure_logging
from helicone_integrator.shell import CommandError, run


CLONE_URL = "https://github.com/helicone-bot/widgets.git"


def _manager(tmp_path: Path) -> WorkspaceManager:
    return WorkspaceManager(
        tmp_path / "workspaces", author_name="Helicone Bot", author_email="bot@helicone.ai"
    )


def _handle(path: Path) -> WorkspaceHandle:
    return WorkspaceHandle(
        integration_id="abc123", path=str(path), clone_url=CLONE_URL, base_branch="main"
    )


def _command_error(argv: list[str], stderr: str = "boom") -> CommandError:
    return CommandError("failed", argv=tuple(argv), exit_code=1, stderr=stderr)


def test_clone_replaces_leftover_workspace(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = _manager(tmp_path)
    leftover = manager.workspace_path("abc123")
    leftover.mkdir(parents=True)
    (leftover / "partial").write_text("x", encoding="utf-8")

    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(cmd)
        return ""

    monkeypatch.setattr("helicone_integrator.git_ops.run", fake_run)

    handle = manager.clone("abc123", CLONE_URL, "main")

    assert not leftover.exists()
    assert handle == _handle(leftover)
    assert calls == [
        ["git", "clone", "--branch", "main", CLONE_URL, str(leftover)],
        ["git", "-C", str(leftover), "config", "user.name", "Helicone Bot"],
        ["git", "-C", str(leftover), "config", "user.email", "bot@helicone.ai"],
    ]


def test_clone_failure_is_wrapped(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        raise _command_error(cmd, "fatal: repository not found\n")

    monkeypatch.setattr("helicone_integrator.git_ops.run", fake_run)

    with pytest.raises(WorkspaceError, match="repository not found") as exc_info:
        manager.clone("abc123", CLONE_URL, "main")
    assert exc_info.value.retryable is True


def test_restore_resets_to_remote_branch(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    path = manager.workspace_path("abc123")
    (path / ".git").mkdir(parents=True)
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(cmd)
        return ""

    monkeypatch.setattr("helicone_integrator.git_ops.run", fake_run)

    manager.restore(_handle(path), "helicone-integration-abc123")

    assert calls == [
        ["git", "-C", str(path), "fetch", "origin", "--prune"],
        [
            "git",
            "-C",
            str(path),
            "checkout",
            "-B",
            "helicone-integration-abc123",
            "origin/helicone-integration-abc123",
        ],
        ["git", "-C", str(path), "reset", "--hard", "origin/helicone-integration-abc123"],
        ["git", "-C", str(path), "clean", "-ffdx"],
    ]


def test_restore_reclones_missing_workspace(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = _manager(tmp_path)
    path = manager.workspace_path("abc123")
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(cmd)
        return ""

    monkeypatch.setattr("helicone_integrator.git_ops.run", fake_run)

    manager.restore(_handle(path), "main")

    assert calls[0] == ["git", "clone", "--branch", "main", CLONE_URL, str(path)]
    assert calls[-1] == ["git", "-C", str(path), "clean", "-ffdx"]


def test_changes_since_classifies_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        if "diff" in cmd:
            return (
                "M\tsrc/client.ts\n"
                "A\tsrc/helicone.ts\n"
                "D\tsrc/old.ts\n"
                "R100\tsrc/a.ts\tsrc/b.ts\n"
                "garbage\n"
            )
        if "ls-files" in cmd:
            return ".env.example\nsrc/helicone.ts\n"
        raise AssertionError(cmd)

    monkeypatch.setattr("helicone_integrator.git_ops.run", fake_run)

    modified, added = manager.changes_since(_handle(tmp_path), "base")

    assert modified == ("src/b.ts", "src/client.ts", "src/old.ts")
    assert added == (".env.example", "src/helicone.ts")


def test_stage_branch_commits_and_pushes(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(cmd)
        if cmd[3:5] == ["diff", "--cached"]:
            return "src/client.ts\n"
        if cmd[3:4] == ["rev-parse"]:
            return "deadbeef\n"
        return ""

    monkeypatch.setattr("helicone_integrator.git_ops.run", fake_run)

    staged = manager.stage_branch(
        _handle(tmp_path),
        branch="helicone-integration-abc123",
        base_ref="origin/main",
        message="Add Helicone integration",
    )

    assert staged.committed is True
    assert staged.head_sha == "deadbeef"
    assert staged.compare_url == (
        "https://github.com/helicone-bot/widgets/compare/main...helicone-integration-abc123"
    )
    assert ["git", "-C", str(tmp_path), "commit", "-m", "Add Helicone integration"] in calls
    assert calls[-1] == [
        "git",
        "-C",
        str(tmp_path),
        "push",
        "--force-with-lease",
        "-u",
        "origin",
        "helicone-integration-abc123",
    ]


def test_stage_branch_pushes_agent_commits_without_new_commit(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = _manager(tmp_path)
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(cmd)
        if cmd[3:4] == ["rev-list"]:
            return "2\n"
        if cmd[3:4] == ["rev-parse"]:
            return "cafebabe\n"
        return ""

    monkeypatch.setattr("helicone_integrator.git_ops.run", fake_run)

    staged = manager.stage_branch(
        _handle(tmp_path), branch="b", base_ref="origin/main", message="unused"
    )

    assert staged.committed is False
    assert staged.head_sha == "cafebabe"
    assert not any(cmd[3:4] == ["commit"] for cmd in calls)
    assert ["git", "-C", str(tmp_path), "rev-list", "--count", "origin/main..HEAD"] in calls


def test_stage_branch_without_changes_is_not_retryable(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = _manager(tmp_path)

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        if cmd[3:4] == ["rev-list"]:
            return "0\n"
        if cmd[3:4] == ["push"]:
            raise AssertionError("must not push")
        return ""

    monkeypatch.setattr("helicone_integrator.git_ops.run", fake_run)

    with pytest.raises(WorkspaceError, match="No changes to commit") as exc_info:
        manager.stage_branch(_handle(tmp_path), branch="b", base_ref="origin/main", message="m")
    assert exc_info.value.retryable is False


def test_push_failure_is_logged_and_retryable(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging("low")
    manager = _manager(tmp_path)

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        if cmd[3:4] == ["push"]:
            raise _command_error(cmd, "rejected: stale info\n")
        return ""

    monkeypatch.setattr("helicone_integrator.git_ops.run", fake_run)

    with pytest.raises(WorkspaceError, match="stale info") as exc_info:
        manager.push_branch(_handle(tmp_path), "b")

    assert exc_info.value.retryable is True
    err = capsys.readouterr().err
    assert "event=git_push_failed" in err
    assert "exit_code=1" in err


def test_compare_url_for_non_github_remote(tmp_path: Path) -> None:
    handle = WorkspaceHandle(
        integration_id="abc123",
        path=str(tmp_path),
        clone_url="file:///tmp/mirror.git",
        base_branch="main",
    )
    assert _manager(tmp_path).compare_url(handle, "b") is None


def _git(*args: str) -> str:
    return run(["git", "-c", "user.name=Seed", "-c", "user.email=seed@example.com", *args])


def _seeded_remote(tmp_path: Path) -> Path:
    remote = tmp_path / "remote.git"
    seed = tmp_path / "seed"
    _git("init", "--bare", str(remote))
    _git("init", str(seed))
    _git("-C", str(seed), "checkout", "-B", "main")
    (seed / "README.md").write_text("widgets\n", encoding="utf-8")
    _git("-C", str(seed), "add", "README.md")
    _git("-C", str(seed), "commit", "-m", "Initial commit")
    _git("-C", str(seed), "push", str(remote), "main")
    return remote


def test_feedback_stage_can_be_re_executed_after_push(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    handle = manager.clone("abc123", str(_seeded_remote(tmp_path)), "main")
    workdir = Path(handle.path)
    branch = "helicone-integration-abc123"

    (workdir / "helicone.ts").write_text("export const HELICONE = true;\n", encoding="utf-8")
    first = manager.stage_branch(
        handle, branch=branch, base_ref="origin/main", message="Add Helicone integration"
    )

    manager.restore(handle, branch)
    (workdir / "helicone.ts").write_text("export const HELICONE = 'eu';\n", encoding="utf-8")
    second = manager.stage_branch(
        handle, branch=branch, base_ref=first.head_sha, message="Address review feedback"
    )
    again = manager.stage_branch(
        handle, branch=branch, base_ref=first.head_sha, message="Address review feedback"
    )

    assert second.committed is True
    assert second.head_sha != first.head_sha
    assert again.committed is False
    assert again.head_sha == second.head_sha
    remote_tip = run(["git", "-C", handle.path, "rev-parse", f"origin/{branch}"]).strip()
    assert remote_tip == second.head_sha

    manager.restore(handle, branch)
    with pytest.raises(WorkspaceError, match="No changes to commit"):
        manager.stage_branch(
            handle,
            branch=branch,
            base_ref=second.head_sha,
            message="Address review feedback (attempt 3)",
        )
