"""The pipeline runner, which decides whether a stage needs to run and keeps its lock
record consistent around the run.

Running a stage goes through the following sequence:

1. **Check** - every dependency must be locked, and if the stage itself is locked,
   the dependency signatures in its lock record must match the live signatures of
   those dependencies. A match means the cached artifacts are still good and
   nothing runs. A mismatch aborts without touching anything.
2. **Invalidate** - the stage's lock record is deleted (its bytes kept in memory)
   before any work begins, so a crash mid-run can never leave a record claiming
   half-written artifacts are valid.
3. **Run** - the stage's work is executed.
4. **Commit or roll back** - on success a fresh record is written; on failure the
   previous record is put back byte for byte (as long as the failed work left the
   stage's artifacts untouched) and the failure re-raised.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import psutil

from labbook import utils
from labbook.lockfile import LockRecord
from labbook.locks import LockManager


class LockProtocolError(Exception):
    """Base class for errors raised while checking or running a stage.

    Args:
        stage (str): The name of the stage the error concerns.
        message (str): The human readable explanation.
    """

    def __init__(self, stage: str, message: str):
        super().__init__(message)
        self.stage = stage


class NotCachedError(LockProtocolError):
    """A dependency of the stage has no lock record, so it has to be run first."""

    def __init__(self, stage: str, dependency: str):
        self.dependency = dependency
        super().__init__(
            stage,
            f"Stage '{stage}' cannot run: dependency '{dependency}' has no cached "
            f"result - run '{dependency}' first.",
        )


class StaleDependencyError(LockProtocolError):
    """A dependency's live signature no longer matches what the stage was built against."""

    def __init__(
        self, stage: str, dependency: str, recorded: Optional[str], current: Optional[str]
    ):
        self.dependency = dependency
        self.recorded = recorded
        """The signature of the dependency stored in the stage's lock record."""
        self.current = current
        """The live signature of the dependency."""
        super().__init__(
            stage,
            f"Stage '{stage}' is stale: dependency '{dependency}' changed since it was "
            f"last built (recorded {utils.short_signature(recorded)}, current "
            f"{utils.short_signature(current)}). Re-run stage '{dependency}', or force "
            f"a rebuild of '{stage}'.",
        )


class CorruptCacheError(LockProtocolError):
    """A locked stage's own artifacts no longer match its lock record. Since nothing
    should modify artifacts outside of a run, this means they were tampered with."""

    def __init__(self, stage: str, recorded: str, current: str):
        self.recorded = recorded
        self.current = current
        super().__init__(
            stage,
            f"Stage '{stage}' has a corrupt cache: its artifacts were modified outside "
            f"of a run (recorded {utils.short_signature(recorded)}, current "
            f"{utils.short_signature(current)}). Force-invalidate '{stage}' and re-run it.",
        )


class WorkExecutionError(LockProtocolError):
    """The stage's work failed. The lock record has been rolled back (or left deleted, if
    the failed work modified the stage's artifacts) by the time this is raised, and the
    original exception is available as ``__cause__``."""

    def __init__(self, stage: str, cause: BaseException = None):
        self.cause = cause
        message = f"Stage '{stage}' failed"
        if cause is not None:
            message += f": {type(cause).__name__}: {cause}"
        super().__init__(stage, message)


class RunState(Enum):
    CHECKING = "checking"
    NOT_CACHED = "not cached"
    VALID_CACHE = "valid cache"
    STALE = "stale"
    INVALIDATED = "invalidated"
    RUNNING = "running"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled back"
    DONE = "done"


@dataclass
class StageRun:
    """What happened during a single check or run of a stage."""

    stage: str
    directory: str
    states: list[RunState] = field(default_factory=list)
    """Every state the run passed through, in order."""
    executed: bool = False
    """Whether the stage's work was actually called."""
    record: Optional[LockRecord] = None
    """The lock record in effect when the run finished, if any."""
    duration: float = 0.0
    """Seconds spent executing the stage's work."""

    @property
    def state(self) -> Optional[RunState]:
        if len(self.states) == 0:
            return None
        return self.states[-1]

    def transition(self, state: RunState):
        logging.debug("Stage %s -> %s", self.stage, state.value)
        self.states.append(state)


def _log_stats(pre_mem_usage, post_mem_usage, exec_time_start, exec_time_end):
    mem_change = post_mem_usage - pre_mem_usage
    logging.debug(
        "Memory (current usage/change) - %s / %s"
        % (
            utils.human_readable_mem_usage(post_mem_usage),
            utils.human_readable_mem_usage(mem_change),
        )
    )
    logging.info(
        "Timing - execution: %s"
        % utils.human_readable_time(exec_time_end - exec_time_start)
    )


def _find_mismatches(
    recorded: dict[str, str], live: dict[str, str]
) -> list[tuple[str, Optional[str], Optional[str]]]:
    """Compare recorded and live dependency signatures key by key.

    Returns:
        A list of ``(dependency, recorded, current)`` tuples for every dependency that
        is missing on either side or whose signature differs, live keys first.
    """
    mismatches = []
    keys = list(live.keys()) + sorted(key for key in recorded if key not in live)
    for key in keys:
        if recorded.get(key) != live.get(key):
            mismatches.append((key, recorded.get(key), live.get(key)))
    return mismatches


def _artifacts_unchanged(lock: LockManager, previous: Optional[bytes]) -> bool:
    """Whether the record in ``previous`` still describes the stage's artifacts after a
    failed run, i.e. whether it's safe to put back.

    A record with no own signature only vouches for its dependencies, so it's always
    safe. Otherwise the stage's live signature has to match the recorded one, if the
    failed work overwrote anything (or the artifacts can't be read at all) the record
    stays deleted so the next run is a cache miss.
    """
    if previous is None:
        return True
    try:
        recorded = LockRecord.from_json(previous, source=lock.store.path).own_signature
        if recorded == "":
            return True
        current = lock.signature()
    except OSError as e:
        logging.warning(
            "Unable to verify artifacts of stage %s after failure, leaving it "
            "invalidated: %s",
            lock.name,
            e,
        )
        return False
    if current != recorded:
        logging.warning(
            "Stage %s artifacts were modified by the failed run (recorded %s, current "
            "%s), leaving it invalidated",
            lock.name,
            utils.short_signature(recorded),
            utils.short_signature(current),
        )
        return False
    return True


class PipelineRunner:
    """Runs stages under the locking protocol.

    Args:
        verify_integrity (bool): On a cache hit, also recompute the stage's own signature
            and raise a ``CorruptCacheError`` if it disagrees with the lock record.
        dry (bool): Only check stages and log what would happen, never invalidate,
            execute, or write anything.
    """

    def __init__(self, verify_integrity: bool = True, dry: bool = False):
        self.verify_integrity = verify_integrity
        self.dry = dry

    def _verify(
        self, lock: LockManager, stage_run: StageRun, force: bool = False
    ) -> dict[str, str]:
        """Run the checking phase, returning the live dependency signatures captured
        while doing so. The final state is left on ``stage_run``."""
        stage_run.transition(RunState.CHECKING)

        for dependency_name, dependency in lock.dependencies().items():
            if not dependency.is_locked():
                stage_run.transition(RunState.NOT_CACHED)
                raise NotCachedError(lock.name, dependency_name)

        live_signatures = lock.dependency_signatures()
        record = lock.record()
        stage_run.record = record

        if record is None:
            logging.debug("No lock record found at '%s'", lock.store.path)
            stage_run.transition(RunState.NOT_CACHED)
            return live_signatures

        mismatches = _find_mismatches(record.dependency_signatures, live_signatures)
        if len(mismatches) > 0:
            stage_run.transition(RunState.STALE)
            for dependency_name, recorded, current in mismatches:
                logging.warning(
                    "Dependency '%s' changed (recorded %s, current %s)",
                    dependency_name,
                    utils.short_signature(recorded),
                    utils.short_signature(current),
                )
            if force:
                logging.warning("Forcing a rebuild of stale stage %s", lock.name)
                return live_signatures
            dependency_name, recorded, current = mismatches[0]
            raise StaleDependencyError(lock.name, dependency_name, recorded, current)

        stage_run.transition(RunState.VALID_CACHE)
        if self.verify_integrity and record.own_signature != "" and not force:
            current = lock.signature()
            if current != record.own_signature:
                raise CorruptCacheError(lock.name, record.own_signature, current)
        return live_signatures

    def check(self, lock: LockManager) -> StageRun:
        """Determine whether a stage's cache is usable without modifying anything.

        Returns:
            A ``StageRun`` whose state is ``NOT_CACHED`` or ``VALID_CACHE``.

        Raises:
            NotCachedError: If a dependency isn't locked.
            StaleDependencyError: If a dependency changed since the stage was locked.
            CorruptCacheError: If the stage's artifacts changed outside of a run.
        """
        stage_run = StageRun(lock.name, lock.directory)
        self._verify(lock, stage_run)
        return stage_run

    def invalidate(self, lock: LockManager) -> Optional[bytes]:
        """Force-invalidate a stage by deleting its lock record.

        Returns:
            The bytes of the removed record, or ``None`` if the stage wasn't locked.
        """
        if self.dry:
            logging.info("Dry run, would remove '%s'", lock.store.path)
            return None
        previous = lock.store.delete()
        if previous is None:
            logging.info("Stage %s was not locked", lock.name)
        else:
            logging.info("Invalidated stage %s", lock.name)
        return previous

    def run(
        self,
        lock: LockManager,
        work: Callable = None,
        *args,
        force: bool = False,
        **kwargs,
    ) -> StageRun:
        """Check a stage and, if its cache isn't usable, run it and re-lock it.

        Args:
            lock (LockManager): The lock manager of the stage to run.
            work (Callable): The stage's work, called as ``work(*args, **kwargs)``. Any
                exception it raises counts as a failure. ``None`` means there is nothing
                to execute and the stage is simply (re-)locked as it currently is on disk.
            force (bool): Run even if the cache is valid or stale. Dependencies must still
                be locked.

        Returns:
            A ``StageRun`` ending in ``DONE`` (cache hit) or ``COMMITTED``.

        Raises:
            NotCachedError: If a dependency isn't locked. Nothing is modified.
            StaleDependencyError: If a dependency changed and ``force`` isn't set. Nothing
                is modified.
            CorruptCacheError: If the cached artifacts were tampered with. Nothing is
                modified.
            WorkExecutionError: If ``work`` failed. The previous lock record has been
                restored, unless the failed work modified the stage's artifacts.
        """
        stage_run = StageRun(lock.name, lock.directory)
        utils.set_logging_prefix(f"[{lock.name}] ")
        logging.info("-----")
        logging.info("Stage %s (%s)", lock.name, lock.directory)
        try:
            live_signatures = self._verify(lock, stage_run, force)

            if stage_run.state == RunState.VALID_CACHE and not force:
                logging.info("Stage %s is cached, skipping", lock.name)
                stage_run.transition(RunState.DONE)
                return stage_run

            if self.dry:
                logging.info(
                    "Dry run, stage %s would be invalidated and executed", lock.name
                )
                return stage_run

            previous = lock.store.delete()
            stage_run.record = None
            stage_run.transition(RunState.INVALIDATED)

            stage_run.transition(RunState.RUNNING)
            logging.info("Stage %s executing...", lock.name)
            pre_mem_usage = psutil.Process().memory_info().rss
            exec_time_start = time.perf_counter()
            try:
                if work is not None:
                    stage_run.executed = True
                    work(*args, **kwargs)
            except Exception as e:
                stage_run.duration = time.perf_counter() - exec_time_start
                logging.error("Stage %s failed, rolling back lock record", lock.name)
                if _artifacts_unchanged(lock, previous):
                    lock.store.restore(previous)
                stage_run.record = lock.record()
                stage_run.transition(RunState.ROLLED_BACK)
                if isinstance(e, WorkExecutionError):
                    raise
                raise WorkExecutionError(lock.name, e) from e
            exec_time_end = time.perf_counter()
            stage_run.duration = exec_time_end - exec_time_start
            _log_stats(
                pre_mem_usage,
                psutil.Process().memory_info().rss,
                exec_time_start,
                exec_time_end,
            )

            # the dependency signatures are the ones captured before the run, if a
            # dependency changed underneath us the next check will catch it
            record = LockRecord(
                own_signature=lock.signature(), dependency_signatures=live_signatures
            )
            lock.store.save(record)
            stage_run.record = record
            stage_run.transition(RunState.COMMITTED)
            logging.info("Stage %s complete", lock.name)
            return stage_run
        finally:
            utils.set_logging_prefix("")
