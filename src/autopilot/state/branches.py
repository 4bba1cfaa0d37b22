from __future__ import annotations

import re
import shutil
import subprocess
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from loguru import logger


class GitError(RuntimeError):
    """Raised when a git command exits non-zero."""

    def __init__(self, args: list[str], stderr: str) -> None:
        super().__init__(f"git {' '.join(args)} failed: {stderr}")
        self.args_list = args
        self.stderr = stderr


class GitClient:
    """Branch and worktree lifecycle for one repository root."""

    def __init__(
        self, repo_root: Path, *, main_branch: str = "main", remote: str = "origin"
    ) -> None:
        self.repo_root = repo_root
        self.main_branch = main_branch
        self.remote = remote

    def run(self, args: list[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        logger.debug(f"git {' '.join(args)}")
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise GitError(args, proc.stderr.strip() or proc.stdout.strip())
        return proc

    def output(self, args: list[str]) -> str:
        return self.run(args).stdout.strip()

    def succeeds(self, args: list[str]) -> bool:
        return self.run(args, check=False).returncode == 0

    def current_branch(self) -> str:
        return self.output(["rev-parse", "--abbrev-ref", "HEAD"])

    def local_branch_exists(self, branch: str) -> bool:
        listed = self.output(["branch", "--list", branch])
        return any(line.strip("*+ ").strip() == branch for line in listed.splitlines())

    def remote_branch_exists(self, branch: str) -> bool:
        proc = self.run(["ls-remote", "--heads", self.remote, branch], check=False)
        return proc.returncode == 0 and bool(proc.stdout.strip())

    def fetch_and_checkout(self, branch: str) -> bool:
        if not self.succeeds(["fetch", self.remote, branch]):
            return False
        return self.succeeds(["checkout", branch])

    def checkout_existing(self, branch: str) -> bool:
        """Check out a branch present locally or on the remote; never creates one."""
        if self.local_branch_exists(branch):
            return self.succeeds(["checkout", branch])
        return self.fetch_and_checkout(branch)

    def ensure_branch(self, branch: str) -> None:
        """Check out ``branch``: local, then remote, then fresh from main, then from HEAD."""
        if self.local_branch_exists(branch):
            self.run(["checkout", branch])
            return
        if self.fetch_and_checkout(branch):
            return
        try:
            self.run(["checkout", self.main_branch])
            self.run(["pull", self.remote, self.main_branch], check=False)
            self.run(["checkout", "-b", branch])
        except GitError as exc:
            logger.warning(
                f"Could not branch from {self.main_branch} ({exc.stderr}); "
                "creating the branch from the current HEAD"
            )
            self.run(["checkout", "-b", branch])

    def return_to_main(self) -> None:
        proc = self.run(["checkout", self.main_branch], check=False)
        if proc.returncode != 0:
            logger.warning(f"Could not return to {self.main_branch}: {proc.stderr.strip()}")

    @contextmanager
    def returning_to_main(self) -> Iterator[None]:
        try:
            yield
        finally:
            self.return_to_main()

    def commit_paths(self, paths: list[str], message: str) -> bool:
        """Stage paths and commit; returns False when nothing was staged."""
        self.run(["add", "--", *paths])
        staged = self.output(["diff", "--cached", "--name-only"])
        if not staged:
            return False
        self.run(["commit", "-m", message])
        return True

    def push(self, branch: str, *, force_with_lease: bool = False) -> None:
        args = ["push"]
        if force_with_lease:
            args.append("--force-with-lease")
        self.run([*args, "-u", self.remote, branch])

    def is_ancestor(self, ancestor: str, descendant: str = "HEAD") -> bool:
        return self.succeeds(["merge-base", "--is-ancestor", ancestor, descendant])

    def integrate_main(self) -> str:
        """Bring main into the current branch: rebase, else merge, else commit the conflict.

        Returns which strategy applied. Conflict markers left by the last fallback
        are committed as-is for the agent to resolve.
        """
        if self.is_ancestor(self.main_branch):
            return "up-to-date"
        if self.succeeds(["rebase", self.main_branch]):
            return "rebase"
        self.run(["rebase", "--abort"], check=False)
        if self.succeeds(["merge", self.main_branch, "--no-edit"]):
            return "merge"
        self.run(["add", "."])
        self.run(["commit", "--no-edit"])
        return "conflict-commit"

    def sync_with_remote(self) -> str:
        """Fetch, switch to main and pull. Returns the base branch actually used."""
        logger.info("Syncing with remote...")
        self.run(["fetch", "--all", "--prune"])

        sync_branch = self.main_branch
        if not self.remote_branch_exists(sync_branch) and sync_branch != "master":
            if self.remote_branch_exists("master"):
                logger.warning(
                    f'Remote branch "{sync_branch}" not found, falling back to "master".'
                )
                sync_branch = "master"

        if self.current_branch() != sync_branch:
            logger.warning(f"Switching to {sync_branch}...")
            checkout = self.run(["checkout", sync_branch], check=False)
            if checkout.returncode != 0:
                create = self.run(
                    ["checkout", "-b", sync_branch, f"{self.remote}/{sync_branch}"], check=False
                )
                if create.returncode != 0:
                    detail = f"{checkout.stderr}\n{create.stderr}"
                    if re.search(
                        r"already checked out|branch named .* already exists", detail, re.I
                    ):
                        logger.warning(
                            f"Could not switch to {sync_branch} in this worktree; "
                            "skipping base-branch pull."
                        )
                        return sync_branch
                    raise GitError(["checkout", "-b", sync_branch], create.stderr.strip())

        if self.output(["status", "--porcelain"]):
            logger.warning("Working tree has uncommitted changes, stashing...")
            self.run(["stash"], check=False)
        self.run(["pull", self.remote, sync_branch])
        return sync_branch

    def provision_worktree(self, path: Path) -> Path:
        """Replace any stale worktree at ``path`` with a fresh detached one from main."""
        path.parent.mkdir(parents=True, exist_ok=True)
        self.run(["worktree", "remove", "--force", str(path)], check=False)
        shutil.rmtree(path, ignore_errors=True)
        self.run(["worktree", "prune"], check=False)
        self.run(["worktree", "add", "-d", str(path), self.main_branch])
        return path


def worktree_path(base_dir: Path, host_repo: str, repo_short: str, task_id: str) -> Path:
    repo_key = re.sub(r"[^a-zA-Z0-9._-]+", "-", host_repo)
    return base_dir / repo_key / f"{repo_short}-{task_id}"
