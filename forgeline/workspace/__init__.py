"""
FORGELINE Workspace Isolation

Each running Feature gets its own 'git worktree' on its own branch,
so parallel agents never see each other's half-written files.

Git itself is driven synchronously (subprocess.run) and pushed onto a
worker thread; create / merge_back / destroy for one path are
serialized behind a per-path asyncio.Lock.
"""

from __future__ import annotations

import asyncio
import re
import shutil
import subprocess
from pathlib import Path

from loguru import logger
from pydantic import BaseModel

from forgeline.errors import (
    BranchCheckedOutError,
    LockContentionError,
    NotARepositoryError,
    PermissionDeniedError,
    UncommittedChangesError,
    WorkspaceError,
)


class WorktreeRecord(BaseModel):
    path: str
    branch: str | None = None
    is_trunk: bool = False
    has_changes: bool = False
    changed_files_count: int = 0


# stderr fragment -> typed error, first match wins
_GIT_ERRORS: list[tuple[re.Pattern[str], type[WorkspaceError]]] = [
    (re.compile(r"already checked out|is already used by worktree|already used by worktree", re.I), BranchCheckedOutError),
    (re.compile(r"index\.lock|unable to create .*\.lock|another git process", re.I), LockContentionError),
    (re.compile(r"not a git repository", re.I), NotARepositoryError),
    (re.compile(r"permission denied", re.I), PermissionDeniedError),
]


def git_error(cmd: list[str], stderr: str) -> WorkspaceError:
    message = f"Git failed: {' '.join(cmd[:3])}"
    for pattern, error_cls in _GIT_ERRORS:
        if pattern.search(stderr):
            return error_cls(f"{message}: {stderr.strip().splitlines()[0]}", raw=stderr)
    return WorkspaceError(f"{message}: {stderr.strip() or 'unknown error'}", raw=stderr)


def _run_cmd(cmd: list[str], cwd: Path, check: bool = True) -> str:
    try:
        result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=60)
    except FileNotFoundError as e:
        raise NotARepositoryError(f"Directory does not exist: {cwd}", raw=str(e)) from e
    except PermissionError as e:
        raise PermissionDeniedError(f"Cannot access {cwd}: {e}", raw=str(e)) from e
    except subprocess.TimeoutExpired as e:
        raise LockContentionError(f"Git timed out: {' '.join(cmd[:3])}", raw=str(e)) from e
    if check and result.returncode != 0:
        raise git_error(cmd, result.stderr)
    return result.stdout


def _git(cwd: Path, *args: str, check: bool = True) -> str:
    return _run_cmd(["git", *args], cwd=cwd, check=check)


class WorktreeManager:
    """
    Provisions, inspects, merges and destroys per-Feature worktrees.
    """

    def __init__(self, worktree_dir: str = ".forgeline/worktrees", base_branch: str | None = None):
        self.worktree_dir = worktree_dir
        self.base_branch = base_branch
        self._locks: dict[str, asyncio.Lock] = {}
        self._owners: dict[str, Path] = {}

    def _lock_for(self, path: str | Path) -> asyncio.Lock:
        key = str(Path(path).resolve())
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def worktree_path_for(self, repo_path: Path, branch_name: str) -> Path:
        return Path(repo_path).resolve() / self.worktree_dir / branch_name.replace("/", "-")

    # -- async surface -----------------------------------------------------

    async def create(self, repo_path: Path, branch_name: str) -> WorktreeRecord:
        path = self.worktree_path_for(repo_path, branch_name)
        async with self._lock_for(path):
            return await asyncio.to_thread(self._create, Path(repo_path).resolve(), branch_name, path)

    async def status(self, worktree_path: str | Path) -> WorktreeRecord:
        return await asyncio.to_thread(self._status, Path(worktree_path))

    async def commit(self, worktree_path: str | Path, message: str) -> str | None:
        async with self._lock_for(worktree_path):
            return await asyncio.to_thread(self._commit, Path(worktree_path), message)

    async def merge_back(self, repo_path: Path, branch_name: str, worktree_path: str | Path) -> str:
        async with self._lock_for(worktree_path):
            return await asyncio.to_thread(
                self._merge_back, Path(repo_path).resolve(), branch_name, Path(worktree_path)
            )

    async def destroy(
        self,
        worktree_path: str | Path,
        branch_name: str | None = None,
        repo_path: Path | None = None,
    ) -> None:
        """Force-remove without merging. Passing branch_name also deletes the branch."""
        async with self._lock_for(worktree_path):
            await asyncio.to_thread(self._destroy, Path(worktree_path), branch_name, repo_path)

    async def list_worktrees(self, repo_path: Path) -> list[WorktreeRecord]:
        return await asyncio.to_thread(self._list, Path(repo_path).resolve())

    # -- sync implementation -----------------------------------------------

    def _ensure_repo(self, repo_path: Path) -> None:
        if not repo_path.exists():
            raise NotARepositoryError(f"Not a git repository: {repo_path}")
        _git(repo_path, "rev-parse", "--git-dir")

    def _ensure_excluded(self, repo_path: Path) -> None:
        """Keep worktrees out of the trunk's `git status`."""
        git_dir = Path(_git(repo_path, "rev-parse", "--path-format=absolute", "--git-common-dir").strip())
        exclude = git_dir / "info" / "exclude"
        entry = f"/{self.worktree_dir.strip('/')}/"
        current = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        if entry not in current.splitlines():
            exclude.parent.mkdir(parents=True, exist_ok=True)
            with open(exclude, "a", encoding="utf-8") as f:
                f.write(("" if not current or current.endswith("\n") else "\n") + entry + "\n")

    def _branch_exists(self, repo_path: Path, name: str) -> bool:
        out = _git(repo_path, "branch", "--list", name)
        return bool(out.strip())

    def _create(self, repo_path: Path, branch_name: str, path: Path) -> WorktreeRecord:
        self._ensure_repo(repo_path)

        for existing in self._list(repo_path):
            if Path(existing.path).resolve() == path.resolve() and existing.branch == branch_name:
                logger.info(f"[WORKSPACE] Reusing worktree {path}")
                self._owners[str(path.resolve())] = repo_path
                return existing

        if path.exists():
            logger.warning(f"[WORKSPACE] Found stale directory {path}. Removing...")
            shutil.rmtree(path)
            _git(repo_path, "worktree", "prune", check=False)

        path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_excluded(repo_path)
        if self._branch_exists(repo_path, branch_name):
            _git(repo_path, "worktree", "add", str(path), branch_name)
        else:
            base = self.base_branch or "HEAD"
            _git(repo_path, "worktree", "add", "-b", branch_name, str(path), base)

        self._owners[str(path.resolve())] = repo_path
        logger.info(f"[WORKSPACE] Created {path} on {branch_name}")
        return WorktreeRecord(path=str(path), branch=branch_name)

    def _status(self, path: Path) -> WorktreeRecord:
        if not path.exists():
            raise WorkspaceError(f"Worktree does not exist: {path}")
        porcelain = _git(path, "status", "--porcelain")
        changed = [line for line in porcelain.splitlines() if line.strip()]
        branch = _git(path, "rev-parse", "--abbrev-ref", "HEAD", check=False).strip() or None
        return WorktreeRecord(
            path=str(path),
            branch=branch,
            has_changes=bool(changed),
            changed_files_count=len(changed),
        )

    @staticmethod
    def _identity_args(cwd: Path) -> list[str]:
        """Fallback committer identity when the repo has none configured."""
        if _git(cwd, "config", "user.email", check=False).strip():
            return []
        return ["-c", "user.name=FORGELINE", "-c", "user.email=forgeline@localhost"]

    def _commit(self, path: Path, message: str) -> str | None:
        _git(path, "add", "-A")
        if not _git(path, "status", "--porcelain").strip():
            logger.info("[WORKSPACE] Nothing to commit.")
            return None
        _git(path, *self._identity_args(path), "commit", "-m", message)
        return _git(path, "rev-parse", "HEAD").strip()

    def _merge_back(self, repo_path: Path, branch_name: str, path: Path) -> str:
        record = self._status(path)
        if record.has_changes:
            raise UncommittedChangesError(
                f"Refusing to merge {branch_name}: {record.changed_files_count} uncommitted change(s) in {path}"
            )

        identity = self._identity_args(repo_path)
        try:
            _git(repo_path, *identity, "merge", "--no-ff", "--no-edit", branch_name)
        except WorkspaceError as e:
            _git(repo_path, "merge", "--abort", check=False)
            raise WorkspaceError(f"Merge of {branch_name} failed: {e.message}", raw=e.raw) from e

        sha = _git(repo_path, "rev-parse", "HEAD").strip()
        _git(repo_path, "worktree", "remove", str(path))
        _git(repo_path, "branch", "-D", branch_name, check=False)
        _git(repo_path, "worktree", "prune", check=False)
        self._owners.pop(str(path.resolve()), None)
        logger.info(f"[WORKSPACE] Merged {branch_name} into trunk at {sha[:8]}")
        return sha

    def _owner_of(self, path: Path) -> Path | None:
        owner = self._owners.get(str(path.resolve()))
        if owner is not None:
            return owner
        if not path.exists():
            return None
        common = _git(path, "rev-parse", "--path-format=absolute", "--git-common-dir", check=False).strip()
        return Path(common).parent if common else None

    def _destroy(self, path: Path, branch_name: str | None, repo_path: Path | None = None) -> None:
        repo_path = Path(repo_path).resolve() if repo_path else self._owner_of(path)

        if repo_path is not None:
            _git(repo_path, "worktree", "remove", "--force", str(path), check=False)
        if path.exists():
            shutil.rmtree(path)
        if repo_path is not None:
            if branch_name:
                _git(repo_path, "branch", "-D", branch_name, check=False)
            _git(repo_path, "worktree", "prune", check=False)

        self._owners.pop(str(path.resolve()), None)
        logger.info(f"[WORKSPACE] Destroyed {path}")

    def _list(self, repo_path: Path) -> list[WorktreeRecord]:
        out = _git(repo_path, "worktree", "list", "--porcelain")
        records: list[WorktreeRecord] = []
        for i, block in enumerate(b for b in out.strip().split("\n\n") if b.strip()):
            fields = dict(
                line.split(" ", 1) if " " in line else (line, "")
                for line in block.splitlines()
            )
            branch = fields.get("branch", "")
            records.append(WorktreeRecord(
                path=fields.get("worktree", ""),
                branch=branch.removeprefix("refs/heads/") or None,
                is_trunk=i == 0,
            ))
        return records


