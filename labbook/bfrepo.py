"""Management of the BitFunnel repository that experiments are run against, from
cloning and checking out a specific revision to building the tool and invoking its
``filter``, ``statistics``, ``termtable``, and ``repl`` commands.

These are the "work" half of each pipeline stage: the pipeline runner treats any
exception raised from here as a failed stage and rolls its lock record back.
"""

import logging
import os
from contextlib import contextmanager

from labbook import utils

# NOTE: git remotes are case-insensitive, which is why they're lowercase here.
BITFUNNEL_HTTPS_REMOTE = "https://github.com/bitfunnel/bitfunnel"
BITFUNNEL_SSH_REMOTE = "git@github.com:bitfunnel/bitfunnel.git"


class RepositoryError(Exception):
    pass


class BfRepo:
    """Manages a local clone of the BitFunnel repository.

    Args:
        bitfunnel_root (str): Where the repository lives (or will be cloned to).
    """

    def __init__(self, bitfunnel_root: str):
        # absolute, since stage work runs from inside other directories
        self.bitfunnel_root = os.path.abspath(bitfunnel_root)
        """The root of the repository checkout."""
        self.build_root = os.path.join(self.bitfunnel_root, "build-make")
        """The directory the makefile build happens in."""
        self.bitfunnel_executable = os.path.join(
            self.build_root, "tools", "BitFunnel", "src", "BitFunnel"
        )
        """The compiled BitFunnel tool."""

    def get_path(self) -> str:
        return self.bitfunnel_root

    def is_cloned(self) -> bool:
        return os.path.isdir(os.path.join(self.bitfunnel_root, ".git"))

    def clone(self):
        """Clone the canonical GitHub repository into ``bitfunnel_root``."""
        logging.info("Cloning BitFunnel into '%s'", self.bitfunnel_root)
        utils.run_command(
            ["git", "clone", BITFUNNEL_HTTPS_REMOTE, self.bitfunnel_root]
        )

    def fetch(self):
        """Fetch from the canonical repository.

        Raises:
            RepositoryError: If ``origin`` doesn't point at the canonical repository.
        """
        with utils.scoped_chdir(self.bitfunnel_root):
            origin_url = utils.get_command_output(
                ["git", "config", "--get", "remote.origin.url"], check=True
            )
            if origin_url.lower() not in [BITFUNNEL_SSH_REMOTE, BITFUNNEL_HTTPS_REMOTE]:
                raise RepositoryError(
                    f"The remote 'origin' in the repository located at "
                    f"'{self.bitfunnel_root}' is required to point at the canonical "
                    f"BitFunnel repository, found '{origin_url}'."
                )
            utils.run_command(["git", "fetch", "origin"])

    @contextmanager
    def checkout(self, revision: str):
        """Check out ``revision`` for the duration of a ``with`` block.

        On the way out, whatever was checked out beforehand is restored: the previous
        branch, or the previous commit if HEAD was detached.
        """
        with utils.scoped_chdir(self.bitfunnel_root):
            # the "short name" of HEAD, usually a branch but just "HEAD" when detached
            head_ref = utils.get_command_output(
                ["git", "rev-parse", "--abbrev-ref=strict", "HEAD"], check=True
            )
            head_sha = utils.get_command_output(["git", "rev-parse", "HEAD"], check=True)
            logging.info("Checking out BitFunnel revision %s", revision)
            utils.run_command(["git", "checkout", revision])

        present_ref = head_sha if head_ref == "HEAD" else head_ref
        try:
            yield revision
        finally:
            with utils.scoped_chdir(self.bitfunnel_root):
                logging.info("Restoring BitFunnel checkout to %s", present_ref)
                utils.run_command(["git", "checkout", present_ref])

    def configure_build(self):
        """Run the configuration script that generates the makefile."""
        with utils.scoped_chdir(self.bitfunnel_root):
            utils.run_command(["sh", "Configure_Make.sh"])

    def build(self):
        with utils.scoped_chdir(self.build_root):
            utils.run_command(["make", "-j4"])

    def run_filter(self, manifest_path: str, sample_dir: str, sample_args: list[str] = None):
        """Run the ``filter`` command, drawing a sample of the manifest's corpus files
        into ``sample_dir``."""
        arguments = [self.bitfunnel_executable, "filter", manifest_path, sample_dir]
        if sample_args is not None:
            arguments.extend(sample_args)
        utils.run_command(arguments)

    def run_statistics(self, manifest_path: str, config_dir: str):
        utils.run_command(
            [
                self.bitfunnel_executable,
                "statistics",
                manifest_path,
                config_dir,
                "-text",
            ]
        )

    def run_termtable(self, config_dir: str):
        utils.run_command([self.bitfunnel_executable, "termtable", config_dir])

    def run_repl(self, config_dir: str, script_file: str):
        utils.run_command(
            [self.bitfunnel_executable, "repl", config_dir, "-script", script_file]
        )
