import json
import subprocess
from pathlib import Path

import pytest

from ralph.tasklist import ConfigurationError, read_branch_name
from ralph.workspace import WorkspaceProvisioner, sanitize_component, workspace_path


def _run(cmd: list[str], cwd: Path) -> str:
    return subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True).stdout


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _write_prd(path: Path, branch: str | None = "ralph/login", passes: bool = False) -> None:
    path.write_text(
        json.dumps(
            {
                "project": "shop",
                "branchName": branch,
                "description": "",
                "userStories": [{"id": "US-001", "title": "Login", "passes": passes}],
            }
        ),
        encoding="utf-8",
    )


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    repo_path = tmp_path / "shop"
    repo_path.mkdir()
    _init_git_repo(repo_path)
    _write_prd(repo_path / "prd.json")
    return repo_path


def test_workspace_path_is_deterministic(tmp_path: Path) -> None:
    first = workspace_path("shop", "ralph/login", tmp_path)
    second = workspace_path("shop", "ralph/login", tmp_path)

    assert first == second == tmp_path / "shop-ralph-login"
    assert workspace_path("shop", "ralph/signup", tmp_path) != first


def test_sanitize_component() -> None:
    assert sanitize_component("feature/a b") == "feature-a-b"
    assert sanitize_component("///") == "default"


def test_missing_branch_fails_before_touching_disk(repo: Path, tmp_path: Path) -> None:
    _write_prd(repo / "prd.json", branch=None)
    root = tmp_path / "worktrees"

    with pytest.raises(ConfigurationError, match="branchName"):
        WorkspaceProvisioner(repo, root).provision()

    assert not root.exists()


def test_missing_task_list_is_configuration_error(repo: Path, tmp_path: Path) -> None:
    (repo / "prd.json").unlink()

    with pytest.raises(ConfigurationError, match="not found"):
        WorkspaceProvisioner(repo, tmp_path / "worktrees").provision()


def test_provision_creates_branch_worktree_and_copies_task_list(
    repo: Path, tmp_path: Path
) -> None:
    root = tmp_path / "worktrees"
    events: list[dict] = []

    workspace = WorkspaceProvisioner(repo, root, event_hook=events.append).provision()

    assert workspace.path == (root / "shop-ralph-login").resolve()
    assert workspace.action == "created"
    assert workspace.task_list_action == "copied"
    assert read_branch_name(workspace.path / "prd.json") == "ralph/login"
    assert _run(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=workspace.path).strip() == (
        "ralph/login"
    )
    names = [event["event"] for event in events]
    assert "workspace_branch_created" in names
    assert "workspace_created" in names


def test_provision_reuses_workspace_and_in_progress_task_list(repo: Path, tmp_path: Path) -> None:
    provisioner = WorkspaceProvisioner(repo, tmp_path / "worktrees")
    first = provisioner.provision()
    _write_prd(first.path / "prd.json", passes=True)

    second = provisioner.provision()

    assert second.path == first.path
    assert second.action == "reused"
    assert second.task_list_action == "reused"
    payload = json.loads((second.path / "prd.json").read_text(encoding="utf-8"))
    assert payload["userStories"][0]["passes"] is True


def test_provision_replaces_task_list_for_other_branch(repo: Path, tmp_path: Path) -> None:
    provisioner = WorkspaceProvisioner(repo, tmp_path / "worktrees")
    first = provisioner.provision()
    _write_prd(first.path / "prd.json", branch="ralph/older", passes=True)

    second = provisioner.provision()

    assert second.task_list_action == "replaced"
    assert read_branch_name(second.path / "prd.json") == "ralph/login"


def test_force_reset_destroys_workspace_and_branch(repo: Path, tmp_path: Path) -> None:
    provisioner = WorkspaceProvisioner(repo, tmp_path / "worktrees")
    first = provisioner.provision()
    (first.path / "work.txt").write_text("agent output\n", encoding="utf-8")
    _run(["git", "add", "work.txt"], cwd=first.path)
    _run(["git", "commit", "-m", "agent work"], cwd=first.path)
    (first.path / "scratch.txt").write_text("uncommitted\n", encoding="utf-8")

    reset = provisioner.provision(force=True)

    assert reset.path == first.path
    assert reset.action == "reset"
    assert not (reset.path / "work.txt").exists()
    assert not (reset.path / "scratch.txt").exists()
    branch_head = _run(["git", "rev-parse", "ralph/login"], cwd=repo).strip()
    source_head = _run(["git", "rev-parse", "HEAD"], cwd=repo).strip()
    assert branch_head == source_head


def test_force_without_existing_workspace_just_creates(repo: Path, tmp_path: Path) -> None:
    workspace = WorkspaceProvisioner(repo, tmp_path / "worktrees").provision(force=True)

    assert workspace.action == "created"
    assert (workspace.path / "prd.json").exists()
