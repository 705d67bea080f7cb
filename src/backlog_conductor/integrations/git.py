"""Git subprocess wrappers for worktree, branch and merge operations."""

import subprocess
from dataclasses import dataclass
from pathlib import Path


class GitError(Exception):
    """Raised when a git command fails."""

    def __init__(self, message: str, stderr: str = "", returncode: int | None = None):
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False
    is_detached: bool = False
    prunable: bool = False


def run_git(args: list[str], cwd: str | Path | None = None, strip: bool = True) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip() if strip else result.stdout
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or "").strip() or (e.stdout or "").strip()
        raise GitError(f"git {' '.join(args)} failed: {stderr}", stderr=stderr, returncode=e.returncode) from e


def is_git_repo(path: str | Path) -> bool:
    if not Path(path).is_dir():
        return False
    try:
        return run_git(["rev-parse", "--is-inside-work-tree"], cwd=path) == "true"
    except GitError:
        return False


# ── Worktrees ────────────────────────────────────────────────────────


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_branch: str = "main",
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch]
    args += [str(worktree_path)]
    if not create_branch:
        args.append(branch)
    else:
        args.append(base_branch)
    return run_git(args, cwd=repo_path)


def worktree_add_detached(repo_path: str | Path, worktree_path: str | Path, ref: str) -> str:
    """Create a worktree with a detached HEAD at ``ref``."""
    return run_git(["worktree", "add", "--detach", str(worktree_path), ref], cwd=repo_path)


def _to_info(current: dict) -> WorktreeInfo:
    return WorktreeInfo(
        path=current.get("worktree", ""),
        branch=current.get("branch", "").replace("refs/heads/", ""),
        head=current.get("HEAD", ""),
        is_bare=current.get("bare", False),
        is_detached=current.get("detached", False),
        prunable=current.get("prunable", False),
    )


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    worktrees = []
    current: dict = {}

    for line in output.split("\n"):
        if not line:
            if current:
                worktrees.append(_to_info(current))
                current = {}
            continue

        if line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True
        elif line == "detached":
            current["detached"] = True
        elif line.startswith("prunable"):
            current["prunable"] = True

    if current:
        worktrees.append(_to_info(current))

    return worktrees


def worktree_for_branch(repo_path: str | Path, branch: str) -> WorktreeInfo | None:
    """The worktree that has ``branch`` checked out, if any."""
    for wt in worktree_list(repo_path):
        if wt.branch == branch and not wt.prunable:
            return wt
    return None


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    """Drop administrative records of worktrees whose directories are gone."""
    return run_git(["worktree", "prune"], cwd=repo_path)


# ── Branches ─────────────────────────────────────────────────────────


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def create_branch(repo_path: str | Path, branch: str, base: str) -> str:
    return run_git(["branch", branch, base], cwd=repo_path)


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path)


def list_branches(repo_path: str | Path, pattern: str | None = None) -> list[str]:
    args = ["branch", "--format=%(refname:short)"]
    if pattern:
        args += ["--list", pattern]
    output = run_git(args, cwd=repo_path)
    return [line.strip() for line in output.split("\n") if line.strip()]


def rev_parse(cwd: str | Path, ref: str = "HEAD") -> str:
    return run_git(["rev-parse", ref], cwd=cwd)


def ahead_behind(repo_path: str | Path, branch: str, base: str) -> tuple[int, int]:
    """Commits ``branch`` has that ``base`` lacks, and the reverse."""
    output = run_git(["rev-list", "--left-right", "--count", f"{base}...{branch}"], cwd=repo_path)
    behind, ahead = output.split()
    return int(ahead), int(behind)


def commit_count(repo_path: str | Path, rev_range: str) -> int:
    return int(run_git(["rev-list", "--count", rev_range], cwd=repo_path))


# ── Working tree state ───────────────────────────────────────────────


def status_porcelain(cwd: str | Path) -> list[str]:
    """Changed paths (tracked and untracked) in a working directory."""
    # Each line is "XY path"; X is a space for unstaged changes.
    output = run_git(["status", "--porcelain"], cwd=cwd, strip=False)
    return [line[3:] for line in output.splitlines() if line.strip()]


def is_clean(cwd: str | Path) -> bool:
    return not status_porcelain(cwd)


def commit_all(cwd: str | Path, message: str) -> bool:
    """Stage everything and commit. Returns False if there was nothing to commit."""
    run_git(["add", "-A"], cwd=cwd)
    if not run_git(["diff", "--cached", "--name-only"], cwd=cwd):
        return False
    run_git(["commit", "-m", message], cwd=cwd)
    return True


def conflicted_files(cwd: str | Path) -> list[str]:
    output = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=cwd)
    return [line for line in output.split("\n") if line]


# ── Merge primitives ─────────────────────────────────────────────────


def merge_squash(cwd: str | Path, source: str) -> str:
    """Stage the squashed changes of ``source``. The caller commits."""
    return run_git(["merge", "--squash", source], cwd=cwd)


def merge_no_ff(cwd: str | Path, source: str, message: str) -> str:
    return run_git(["merge", "--no-ff", "-m", message, source], cwd=cwd)


def merge_ff_only(cwd: str | Path, ref: str) -> str:
    return run_git(["merge", "--ff-only", ref], cwd=cwd)


def commit(cwd: str | Path, message: str) -> str:
    return run_git(["commit", "-m", message], cwd=cwd)


def rebase(cwd: str | Path, onto: str) -> str:
    return run_git(["rebase", onto], cwd=cwd)


def abort_merge(cwd: str | Path) -> None:
    """Restore the working tree after a failed merge or squash."""
    run_git(["reset", "--merge"], cwd=cwd)


def abort_rebase(cwd: str | Path) -> None:
    run_git(["rebase", "--abort"], cwd=cwd)
