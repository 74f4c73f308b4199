"""Local mirrors of template repositories.

One mirror per repository identity lives under ``<mirrors_root>/<sha256(identity)>``,
so every contract that references the same repository shares it. An existing
mirror is brought up to date by returning to the default branch, pulling, and
then checking out the requested ref; a branch ref is reset to its
remote-tracking head. Every non-zero exit from the repository
tool is fatal and carries the captured output.
"""

from __future__ import annotations

import logging
import os
import pathlib
import shutil
import subprocess
import tempfile
from typing import List, Optional, Sequence, Tuple, Union

from pactum.errors import RepositoryOperationError, TemplateNotFoundError
from pactum.integrity import content_hash
from pactum.location import LocationURL

logger = logging.getLogger(__name__)

FALLBACK_DEFAULT_BRANCH = "master"


class GitRunner:
    """Runs the repository-control tool and raises on failure."""

    def __init__(self, executable: str = "git"):
        self.executable = executable

    def run(self, args: Sequence[str], cwd: Optional[pathlib.Path] = None) -> subprocess.CompletedProcess:
        cmd: List[str] = [self.executable, *args]
        where = str(cwd) if cwd is not None else None
        logger.debug(f"Running {' '.join(cmd)} (cwd={where})")
        try:
            proc = subprocess.run(cmd, cwd=where, capture_output=True, text=True, check=False)
        except FileNotFoundError as exc:
            raise RepositoryOperationError(cmd, 127, stderr=str(exc), cwd=where) from exc
        if proc.stdout:
            logger.debug(f"stdout: {proc.stdout.strip()}")
        if proc.stderr:
            logger.debug(f"stderr: {proc.stderr.strip()}")
        if proc.returncode != 0:
            raise RepositoryOperationError(cmd, proc.returncode, proc.stdout or "", proc.stderr or "", cwd=where)
        return proc


class RepositoryFetcher:
    """Maintains local mirrors and reads files out of them."""

    def __init__(
        self,
        mirrors_root: Union[str, pathlib.Path],
        runner: Optional[GitRunner] = None,
        default_branch: str = "",
    ):
        self.mirrors_root = pathlib.Path(mirrors_root)
        self.runner = runner or GitRunner()
        self.configured_default_branch = default_branch

    def mirror_dir_for(self, identity: str) -> pathlib.Path:
        return self.mirrors_root / content_hash(identity.encode("utf-8"))

    def default_branch(self, mirror: pathlib.Path) -> str:
        """Configured default branch, else the remote's HEAD, else ``master``."""
        if self.configured_default_branch:
            return self.configured_default_branch
        try:
            proc = self.runner.run(["rev-parse", "--abbrev-ref", "origin/HEAD"], cwd=mirror)
        except RepositoryOperationError as exc:
            logger.debug(f"Could not detect default branch in {mirror} ({exc.exit_code}); using {FALLBACK_DEFAULT_BRANCH}")
            return FALLBACK_DEFAULT_BRANCH
        name = proc.stdout.strip()
        if name.startswith("origin/"):
            name = name[len("origin/"):]
        return name or FALLBACK_DEFAULT_BRANCH

    def _clone(self, clone_url: str, mirror: pathlib.Path) -> None:
        self.mirrors_root.mkdir(parents=True, exist_ok=True)
        scratch = pathlib.Path(tempfile.mkdtemp(prefix=".clone-", dir=str(self.mirrors_root)))
        try:
            logger.info(f"Cloning {clone_url}")
            self.runner.run(["clone", clone_url, str(scratch)])
            os.replace(scratch, mirror)
        finally:
            if scratch.exists():
                shutil.rmtree(scratch, ignore_errors=True)

    def ensure_mirror_at(self, clone_url: str, identity: str, ref: str = "") -> pathlib.Path:
        """Clone or update the mirror for ``identity`` and check out ``ref``."""
        mirror = self.mirror_dir_for(identity)
        if not mirror.exists():
            self._clone(clone_url, mirror)
            default = self.default_branch(mirror)
        else:
            default = self.default_branch(mirror)
            logger.info(f"Updating mirror of {identity}")
            self.runner.run(["checkout", default], cwd=mirror)
            self.runner.run(["pull", "--all"], cwd=mirror)
        target = ref or default
        logger.info(f"Checking out {target} in mirror of {identity}")
        self.runner.run(["checkout", target], cwd=mirror)
        if target != default and self._is_remote_branch(mirror, target):
            # pull only advanced the default branch; local branch heads may lag origin
            self.runner.run(["reset", "--hard", f"origin/{target}"], cwd=mirror)
        return mirror

    def _is_remote_branch(self, mirror: pathlib.Path, name: str) -> bool:
        try:
            self.runner.run(["show-ref", "--verify", "--quiet", f"refs/remotes/origin/{name}"], cwd=mirror)
        except RepositoryOperationError:
            return False
        return True

    def ensure_local_mirror(self, location: LocationURL) -> pathlib.Path:
        return self.ensure_mirror_at(location.clone_url(), location.repository_identity(), location.ref)

    def fetch(self, location: LocationURL) -> Tuple[bytes, pathlib.Path]:
        """Read the file addressed by ``location`` from its checked-out mirror."""
        mirror = self.ensure_local_mirror(location)
        inner = location.inner_path()
        target = (mirror / inner).resolve()
        if not inner or not target.is_relative_to(mirror.resolve()) or not target.is_file():
            raise TemplateNotFoundError(
                f"file {inner!r} not found in repository {location.repository_identity()} "
                f"at {location.ref or 'default branch'}"
            )
        logger.debug(f"Read {target} from mirror {mirror}")
        return target.read_bytes(), target
