"""The lab book: the layout of a lab's stage directories and the work each stage does.

A lab keeps one corpus, any number of named samples drawn from it (each with the
BitFunnel configuration generated from it), and any number of named experiments,
each run against one sample's configuration. With the default configuration, the
directories are laid out as::

    data/corpus/                  corpus stage
    data/samples/<sample>/        sample stage
    data/configs/<sample>/        config stage
    data/experiments/<name>/      experiment stage

Every run goes through :code:`labbook.staging.PipelineRunner`, so a stage whose
cache is still valid is skipped and a stage whose dependencies changed is refused.

Example:
    .. code-block:: python

        from labbook.experiment import LabBook

        lab = LabBook()
        lab.run_corpus()
        lab.run_sample("small", ["-fraction", "0.1"])
        lab.run_config("small")
        lab.run_experiment("latency", "small", "scripts/latency.txt")
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from labbook import bfrepo, hashing, utils
from labbook.lockfile import LOCK_FILENAME
from labbook.locks import (
    CONFIG,
    CORPUS,
    EXPERIMENT,
    SAMPLE,
    ConfigLock,
    CorpusLock,
    ExperimentLock,
    LockManager,
    SampleLock,
)
from labbook.staging import (
    CorruptCacheError,
    LockProtocolError,
    NotCachedError,
    PipelineRunner,
    StageRun,
    StaleDependencyError,
)

CORPUS_MANIFEST = "corpus-manifest.txt"
"""The file in a sample directory listing the corpus files the sample was drawn from."""
SAMPLE_MANIFEST = "sample-manifest.txt"
"""The file in a config directory listing the sample files statistics were gathered on."""


@dataclass
class StageStatus:
    """A row of the lab's status report."""

    stage: str
    directory: str
    locked: bool
    state: str
    detail: str = ""


def write_manifest(path: str, files: list[str]):
    """Write a BitFunnel manifest, one absolute file path per line."""
    with open(path, "w") as outfile:
        for file in files:
            outfile.write(os.path.abspath(file) + "\n")


def stage_data_files(lock: LockManager) -> list[str]:
    """Every data file in a stage's directory, leaving out its lock file."""
    return hashing.list_data_files(lock.directory, ignore=lock.store.is_lock_file)


def sample_work(
    repo: bfrepo.BfRepo, corpus: LockManager, sample_dir: str, sample_args: list[str]
):
    os.makedirs(sample_dir, exist_ok=True)
    manifest_path = os.path.join(sample_dir, CORPUS_MANIFEST)
    write_manifest(manifest_path, stage_data_files(corpus))
    repo.run_filter(manifest_path, sample_dir, sample_args)


def config_work(repo: bfrepo.BfRepo, sample: LockManager, config_dir: str):
    os.makedirs(config_dir, exist_ok=True)
    manifest_path = os.path.join(config_dir, SAMPLE_MANIFEST)
    sample_files = [
        path
        for path in stage_data_files(sample)
        if os.path.basename(path) != CORPUS_MANIFEST
    ]
    write_manifest(manifest_path, sample_files)
    repo.run_statistics(manifest_path, config_dir)
    repo.run_termtable(config_dir)


def experiment_work(
    repo: bfrepo.BfRepo,
    config_dir: str,
    experiment_dir: str,
    script_path: str,
    revision: str = None,
):
    """Run a repl script from inside the experiment directory, so anything the script
    writes lands there. If a revision is given, BitFunnel is checked out at that
    revision and rebuilt first."""
    os.makedirs(experiment_dir, exist_ok=True)
    # the repl runs from inside the experiment directory
    config_dir = os.path.abspath(config_dir)
    script_path = os.path.abspath(script_path)

    def run_repl():
        with utils.scoped_chdir(experiment_dir):
            repo.run_repl(config_dir, script_path)

    if revision is None:
        run_repl()
        return
    with repo.checkout(revision):
        repo.build()
        run_repl()


class LabBook:
    """Lays out a lab's stage directories and runs its stages.

    Args:
        config (dict): The lab configuration, see ``utils.get_configuration()``. If
            ``None``, it's loaded from ``labbook_config.json``.
        repo (BfRepo): The BitFunnel repository to run stage work with. Created from
            the configured ``bitfunnel_path`` if not provided.
        runner (PipelineRunner): The runner to run stages with.
    """

    def __init__(
        self,
        config: dict = None,
        repo: bfrepo.BfRepo = None,
        runner: PipelineRunner = None,
    ):
        if config is None:
            config = utils.get_configuration()
        self.config = config
        self.corpus_path = config["corpus_path"]
        self.samples_path = config["samples_path"]
        self.configs_path = config["configs_path"]
        self.experiments_path = config["experiments_path"]
        self.lock_filename = config.get("lock_filename", LOCK_FILENAME)

        if repo is None:
            repo = bfrepo.BfRepo(config["bitfunnel_path"])
        self.repo = repo
        if runner is None:
            runner = PipelineRunner()
        self.runner = runner

    # -- stage layout --

    def corpus_lock(self) -> CorpusLock:
        return CorpusLock(self.corpus_path, self.lock_filename)

    def sample_lock(self, sample_name: str) -> SampleLock:
        return SampleLock(
            os.path.join(self.samples_path, sample_name),
            sample_name,
            self.corpus_lock(),
            self.lock_filename,
        )

    def config_lock(self, sample_name: str) -> ConfigLock:
        return ConfigLock(
            os.path.join(self.configs_path, sample_name),
            self.sample_lock(sample_name),
            self.lock_filename,
        )

    def experiment_lock(self, experiment_name: str, sample_name: str) -> ExperimentLock:
        return ExperimentLock(
            os.path.join(self.experiments_path, experiment_name),
            self.config_lock(sample_name),
            self.sample_lock(sample_name),
            self.lock_filename,
        )

    def lock_for(
        self, stage: str, sample_name: str = None, experiment_name: str = None
    ) -> LockManager:
        """Get the lock manager for a stage kind by name.

        Raises:
            ValueError: If the stage kind is unknown or a name it needs is missing.
        """
        if stage == CORPUS:
            return self.corpus_lock()
        if stage not in [SAMPLE, CONFIG, EXPERIMENT]:
            raise ValueError(f"Unknown stage '{stage}'.")
        if sample_name is None:
            raise ValueError(f"Stage '{stage}' requires a sample name.")
        if stage == SAMPLE:
            return self.sample_lock(sample_name)
        if stage == CONFIG:
            return self.config_lock(sample_name)
        if experiment_name is None:
            raise ValueError("Stage 'experiment' requires an experiment name.")
        return self.experiment_lock(experiment_name, sample_name)

    def list_samples(self) -> list[str]:
        """Names of every sample directory in the lab."""
        if not os.path.isdir(self.samples_path):
            return []
        return sorted(
            name
            for name in os.listdir(self.samples_path)
            if os.path.isdir(os.path.join(self.samples_path, name))
        )

    def list_experiments(self) -> list[str]:
        if not os.path.isdir(self.experiments_path):
            return []
        return sorted(
            name
            for name in os.listdir(self.experiments_path)
            if os.path.isdir(os.path.join(self.experiments_path, name))
        )

    # -- running stages --

    def run_corpus(self, force: bool = False) -> StageRun:
        """Lock the corpus as it currently is on disk. There's no work to do, the corpus
        is provided from outside the lab."""
        return self.runner.run(self.corpus_lock(), None, force=force)

    def run_sample(
        self, sample_name: str, sample_args: list[str] = None, force: bool = False
    ) -> StageRun:
        """Draw a sample from the corpus with BitFunnel's ``filter`` command.

        Args:
            sample_name (str): The name (and directory) of the sample.
            sample_args (list[str]): Extra arguments passed through to ``filter``.
            force (bool): Re-run even if the cached sample is valid or stale.
        """
        lock = self.sample_lock(sample_name)
        return self.runner.run(
            lock,
            sample_work,
            self.repo,
            lock.corpus,
            lock.directory,
            sample_args,
            force=force,
        )

    def run_config(self, sample_name: str, force: bool = False) -> StageRun:
        """Generate the BitFunnel configuration (statistics and term table) for a sample."""
        lock = self.config_lock(sample_name)
        return self.runner.run(
            lock, config_work, self.repo, lock.sample, lock.directory, force=force
        )

    def run_experiment(
        self,
        experiment_name: str,
        sample_name: str,
        script_path: str,
        revision: str = None,
        force: bool = False,
    ) -> StageRun:
        """Run a BitFunnel repl script against a sample's configuration.

        Args:
            experiment_name (str): The name (and directory) of the experiment.
            sample_name (str): The sample whose configuration the experiment uses.
            script_path (str): The repl script to run.
            revision (str): If given, check out and build this BitFunnel revision first.
            force (bool): Re-run even if the cached experiment is valid or stale.
        """
        lock = self.experiment_lock(experiment_name, sample_name)
        return self.runner.run(
            lock,
            experiment_work,
            self.repo,
            lock.config.directory,
            lock.directory,
            script_path,
            revision,
            force=force,
        )

    def invalidate(
        self, stage: str, sample_name: str = None, experiment_name: str = None
    ) -> Optional[bytes]:
        """Force-invalidate a stage so its next run executes regardless of its cache."""
        lock = self.lock_for(stage, sample_name, experiment_name)
        return self.runner.invalidate(lock)

    # -- reporting --

    def stage_status(self, lock: LockManager) -> StageStatus:
        """Check a single stage without modifying anything."""
        locked = lock.is_locked()
        try:
            stage_run = self.runner.check(lock)
        except NotCachedError as e:
            return StageStatus(lock.name, lock.directory, locked, "missing dependency", str(e))
        except StaleDependencyError as e:
            return StageStatus(lock.name, lock.directory, locked, "stale", str(e))
        except CorruptCacheError as e:
            return StageStatus(lock.name, lock.directory, locked, "corrupt", str(e))
        except LockProtocolError as e:
            return StageStatus(lock.name, lock.directory, locked, "error", str(e))
        except OSError as e:
            logging.debug("Unable to check stage %s: %s", lock.name, e)
            return StageStatus(lock.name, lock.directory, locked, "unreadable", str(e))
        return StageStatus(lock.name, lock.directory, locked, stage_run.state.value)

    def status(
        self, sample_name: str = None, experiment_name: str = None
    ) -> list[StageStatus]:
        """Check every stage relevant to the passed sample/experiment, in dependency order.

        The corpus is always included, sample and config stages only with a sample name,
        and the experiment stage only with both names.
        """
        locks = [self.corpus_lock()]
        if sample_name is not None:
            locks.append(self.sample_lock(sample_name))
            locks.append(self.config_lock(sample_name))
            if experiment_name is not None:
                locks.append(self.experiment_lock(experiment_name, sample_name))
        return [self.stage_status(lock) for lock in locks]
