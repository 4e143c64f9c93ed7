"""Lock records and the on-disk store that persists them.

A lock record is the unit of trust for a single stage directory: the stage's own
signature plus the signatures of its dependencies at the time the stage was last
successfully produced. Records are never edited in place. A store can only load,
wholesale replace, delete, or restore one.

Every write goes through a temporary sibling file that is flushed and
``fsync``-ed before being renamed over the real path, so at any point the file on
disk is either the old record, absent, or the new record.
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Optional

from labbook import hashing

LOCK_FILENAME = "LOCKFILE"
"""The default name of the lock file kept in the root of every stage directory."""


class LockFileFormatError(IOError):
    """Raised when a lock file exists but can't be parsed into a record."""


@dataclass(frozen=True)
class LockRecord:
    """The persisted proof of a stage's last known good state.

    Args:
        own_signature (str): Signature of this stage's own output artifacts. Empty for
            stages defined entirely by their inputs.
        dependency_signatures (dict[str, str]): Signature of each dependency stage,
            keyed by dependency name, as of when this stage was produced.
    """

    own_signature: str = hashing.EMPTY_SIGNATURE
    dependency_signatures: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        # take a private copy so a caller's dictionary can't change a frozen record
        object.__setattr__(
            self, "dependency_signatures", dict(self.dependency_signatures)
        )

    def to_dict(self) -> dict:
        return {
            "ownSignature": self.own_signature,
            "dependencySignatures": dict(self.dependency_signatures),
        }

    def to_json(self) -> bytes:
        """Serialize into the bytes written to the lock file."""
        return (json.dumps(self.to_dict(), indent=4, sort_keys=True) + "\n").encode(
            "utf-8"
        )

    @classmethod
    def from_json(cls, raw: bytes, source: str = "<lock record>") -> "LockRecord":
        """Parse the bytes of a lock file.

        Raises:
            LockFileFormatError: If the bytes aren't a well-formed lock record.
        """
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise LockFileFormatError(
                f"Lock file '{source}' is not valid JSON: {e}"
            ) from e

        if not isinstance(data, dict):
            raise LockFileFormatError(f"Lock file '{source}' is not a JSON object.")

        own_signature = data.get("ownSignature", hashing.EMPTY_SIGNATURE)
        dependency_signatures = data.get("dependencySignatures", {})
        if own_signature is None:
            own_signature = hashing.EMPTY_SIGNATURE
        if not isinstance(own_signature, str):
            raise LockFileFormatError(
                f"Lock file '{source}' has a non-string 'ownSignature'."
            )
        if not isinstance(dependency_signatures, dict) or not all(
            isinstance(key, str) and isinstance(value, str)
            for key, value in dependency_signatures.items()
        ):
            raise LockFileFormatError(
                f"Lock file '{source}' has a malformed 'dependencySignatures' mapping."
            )
        return cls(
            own_signature=own_signature, dependency_signatures=dependency_signatures
        )


def _fsync_directory(directory: str):
    """Make a rename or unlink inside ``directory`` durable."""
    # NOTE: directories can't be opened for fsync on windows
    if os.name == "nt":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write_bytes(path: str, data: bytes):
    """Write ``data`` to ``path`` such that a crash leaves either the previous file or
    the complete new one, never a partial write."""
    directory = os.path.dirname(os.path.abspath(path))
    tmp_path = os.path.join(
        directory, f".{os.path.basename(path)}.tmp-{os.getpid()}-{time.time_ns()}"
    )
    try:
        with open(tmp_path, "wb") as outfile:
            outfile.write(data)
            outfile.flush()
            os.fsync(outfile.fileno())
        os.replace(tmp_path, path)
    except OSError:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
    _fsync_directory(directory)


class LockStore:
    """Reads, writes, and deletes the lock record of one stage directory.

    Only one process may write a given stage's lock file at a time, the store does
    not arbitrate between concurrent writers.

    Args:
        directory (str): The stage directory the lock file lives in.
        filename (str): The lock file's name inside ``directory``.
    """

    def __init__(self, directory: str, filename: str = LOCK_FILENAME):
        self.directory = directory
        """The stage directory this store manages the lock file for."""
        self.filename = filename
        """The name of the lock file inside the stage directory."""

    @property
    def path(self) -> str:
        return os.path.join(self.directory, self.filename)

    def is_lock_file(self, filename: str) -> bool:
        """Whether the passed path, relative to the stage directory, is this store's lock
        file or one of its temporary siblings. Used to keep lock files out of artifact
        signatures, so a file with the lock's name in a subdirectory isn't one."""
        return filename == self.filename or filename.startswith(f".{self.filename}.tmp-")

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def load_raw(self) -> Optional[bytes]:
        """Get the exact bytes of the lock file, or ``None`` if there isn't one."""
        try:
            with open(self.path, "rb") as infile:
                return infile.read()
        except FileNotFoundError:
            return None

    def load(self) -> Optional[LockRecord]:
        """Load the lock record, or ``None`` if the stage isn't locked.

        Raises:
            LockFileFormatError: If the lock file exists but is malformed.
            OSError: If the lock file exists but can't be read.
        """
        raw = self.load_raw()
        if raw is None:
            return None
        return LockRecord.from_json(raw, source=self.path)

    def save(self, record: LockRecord):
        """Durably replace the lock file with ``record``."""
        logging.debug("Writing lock record '%s'", self.path)
        os.makedirs(self.directory, exist_ok=True)
        atomic_write_bytes(self.path, record.to_json())

    def delete(self) -> Optional[bytes]:
        """Remove the lock file, returning the bytes it held so they can be restored.

        Returns:
            The previous contents of the lock file, or ``None`` if there was none.
        """
        raw = self.load_raw()
        if raw is None:
            return None
        logging.debug("Removing lock record '%s'", self.path)
        os.remove(self.path)
        _fsync_directory(self.directory)
        return raw

    def restore(self, raw: Optional[bytes]):
        """Put back exactly the lock file a previous ``delete()`` returned.

        Passing ``None`` (nothing was there before) ensures no lock file exists.
        """
        if raw is None:
            if self.exists():
                self.delete()
            return
        logging.debug("Restoring lock record '%s'", self.path)
        os.makedirs(self.directory, exist_ok=True)
        atomic_write_bytes(self.path, raw)
