"""Lock managers for each kind of pipeline stage.

The pipeline has a fixed shape::

    corpus -> sample -> config -> experiment
                  \\___________________/

Every stage kind exposes the same three read-only capabilities (see
:code:`LockManager`): the live signatures of its dependencies, its own live
signature, and whether a lock record currently exists. They only differ in how
those signatures are derived, so each kind is a small standalone class rather
than a subclass of some shared base.

None of these ever write or delete anything. Deciding what to do with the
answers is the job of :code:`labbook.staging.PipelineRunner`.
"""

from typing import Optional, Protocol, runtime_checkable

from labbook import hashing
from labbook.lockfile import LOCK_FILENAME, LockRecord, LockStore

CORPUS = "corpus"
SAMPLE = "sample"
CONFIG = "config"
EXPERIMENT = "experiment"

STAGE_NAMES = [CORPUS, SAMPLE, CONFIG, EXPERIMENT]
"""Stage kinds in dependency order."""

STAGE_DEPENDENCIES = {
    CORPUS: [],
    SAMPLE: [CORPUS],
    CONFIG: [SAMPLE],
    EXPERIMENT: [CONFIG, SAMPLE],
}
"""The fixed edges of the stage graph, keyed by stage kind."""


@runtime_checkable
class LockManager(Protocol):
    """The capability set every stage offers to the pipeline runner and to the stages
    downstream of it."""

    name: str
    directory: str
    store: LockStore

    def dependencies(self) -> dict[str, "LockManager"]:
        ...

    def dependency_signatures(self) -> dict[str, str]:
        ...

    def signature(self) -> str:
        ...

    def is_locked(self) -> bool:
        ...

    def record(self) -> Optional[LockRecord]:
        ...


def _live_signatures(dependencies: dict[str, LockManager]) -> dict[str, str]:
    """Ask each dependency for its signature as of right now."""
    return {name: dependency.signature() for name, dependency in dependencies.items()}


def _data_signature(store: LockStore, salt: str = None) -> str:
    return hashing.directory_signature(
        store.directory, ignore=store.is_lock_file, salt=salt
    )


class CorpusLock:
    """The root of the pipeline, a directory of corpus data files.

    Args:
        corpus_dir (str): The corpus directory.
        lock_filename (str): Name of the lock file inside the directory.
    """

    def __init__(self, corpus_dir: str, lock_filename: str = LOCK_FILENAME):
        self.name = CORPUS
        self.directory = corpus_dir
        self.store = LockStore(corpus_dir, lock_filename)

    def dependencies(self) -> dict[str, LockManager]:
        return {}

    def dependency_signatures(self) -> dict[str, str]:
        return {}

    def signature(self) -> str:
        """Signature of every data file inside the corpus."""
        return _data_signature(self.store)

    def is_locked(self) -> bool:
        return self.store.exists()

    def record(self) -> Optional[LockRecord]:
        return self.store.load()

    def __repr__(self):
        return f"CorpusLock({self.directory!r})"


class SampleLock:
    """A named sample drawn from the corpus.

    The sample's name is part of its signature, so two samples with byte-identical
    data files but different names are never treated as interchangeable.

    Args:
        sample_dir (str): The directory the sample's data files are written to.
        sample_name (str): The declared name of the sample.
        corpus (CorpusLock): The corpus this sample is drawn from.
        lock_filename (str): Name of the lock file inside the directory.
    """

    def __init__(
        self,
        sample_dir: str,
        sample_name: str,
        corpus: LockManager,
        lock_filename: str = LOCK_FILENAME,
    ):
        self.name = SAMPLE
        self.directory = sample_dir
        self.sample_name = sample_name
        self.corpus = corpus
        self.store = LockStore(sample_dir, lock_filename)

    def dependencies(self) -> dict[str, LockManager]:
        return {CORPUS: self.corpus}

    def dependency_signatures(self) -> dict[str, str]:
        return _live_signatures(self.dependencies())

    def signature(self) -> str:
        """Signature of every data file in the sample, salted with the sample name."""
        return _data_signature(self.store, salt=self.sample_name)

    def is_locked(self) -> bool:
        return self.store.exists()

    def record(self) -> Optional[LockRecord]:
        return self.store.load()

    def __repr__(self):
        return f"SampleLock({self.directory!r}, {self.sample_name!r})"


class ConfigLock:
    """The BitFunnel configuration (statistics and term table) generated from a sample.

    Args:
        config_dir (str): The directory the configuration step writes into.
        sample (SampleLock): The sample that powers this configuration.
        lock_filename (str): Name of the lock file inside the directory.
    """

    def __init__(
        self, config_dir: str, sample: LockManager, lock_filename: str = LOCK_FILENAME
    ):
        self.name = CONFIG
        self.directory = config_dir
        self.sample = sample
        self.store = LockStore(config_dir, lock_filename)

    def dependencies(self) -> dict[str, LockManager]:
        return {SAMPLE: self.sample}

    def dependency_signatures(self) -> dict[str, str]:
        return _live_signatures(self.dependencies())

    def signature(self) -> str:
        """Signature of every file the configuration step generated."""
        return _data_signature(self.store)

    def is_locked(self) -> bool:
        return self.store.exists()

    def record(self) -> Optional[LockRecord]:
        return self.store.load()

    def __repr__(self):
        return f"ConfigLock({self.directory!r})"


class ExperimentLock:
    """A terminal experiment run against a configuration and the sample behind it.

    Nothing depends on an experiment, so its own signature is always empty and its
    validity is defined entirely by its dependencies.

    Args:
        experiment_dir (str): The directory the experiment writes its results into.
        config (ConfigLock): The configuration the experiment runs with.
        sample (SampleLock): The sample the experiment queries.
        lock_filename (str): Name of the lock file inside the directory.
    """

    def __init__(
        self,
        experiment_dir: str,
        config: LockManager,
        sample: LockManager,
        lock_filename: str = LOCK_FILENAME,
    ):
        self.name = EXPERIMENT
        self.directory = experiment_dir
        self.config = config
        self.sample = sample
        self.store = LockStore(experiment_dir, lock_filename)

    def dependencies(self) -> dict[str, LockManager]:
        return {CONFIG: self.config, SAMPLE: self.sample}

    def dependency_signatures(self) -> dict[str, str]:
        return _live_signatures(self.dependencies())

    def signature(self) -> str:
        return hashing.EMPTY_SIGNATURE

    def is_locked(self) -> bool:
        return self.store.exists()

    def record(self) -> Optional[LockRecord]:
        return self.store.load()

    def __repr__(self):
        return f"ExperimentLock({self.directory!r})"
