# flake8: noqa

# make all submodules directly accessible from a single labbook import
from labbook import (
    bfrepo,
    experiment,
    hashing,
    lockfile,
    locks,
    staging,
    utils,
)

# make super important things accessible directly off of the top level module
from labbook.experiment import LabBook
from labbook.hashing import compute_content_signature, compute_signature
from labbook.lockfile import LockFileFormatError, LockRecord, LockStore
from labbook.locks import ConfigLock, CorpusLock, ExperimentLock, LockManager, SampleLock
from labbook.staging import (
    CorruptCacheError,
    LockProtocolError,
    NotCachedError,
    PipelineRunner,
    RunState,
    StageRun,
    StaleDependencyError,
    WorkExecutionError,
)

__version__ = "0.1.0"
