"""Utility functions for computing content signatures of stage artifacts.

A signature is what a lock file records about a stage: a lowercase hex SHA-512
digest computed over a set of files. Every stage's cache validity is decided by
comparing these strings, so the computation has to be deterministic no matter
what order the filesystem hands us files in.

The basic idea is that each file's contents are hashed individually, the
resulting ``(relative path, file digest)`` pairs are sorted by path, and the
final signature is the hash of that sorted listing. Reordering the input has no
effect, while adding, removing, renaming, or editing a file changes the result.
"""

import hashlib
import os
from collections.abc import Iterable
from typing import Callable, Union

CHUNK_SIZE = 1024 * 1024 * 8
"""Files are streamed through the hash function in chunks of this many bytes."""

HASH_ALGORITHM = "sha512"
"""The hashlib algorithm used for all signatures."""

EMPTY_SIGNATURE = ""
"""The signature of a stage whose validity is defined entirely by its inputs."""


def _new_hash():
    return hashlib.new(HASH_ALGORITHM)


def hash_file(path: str) -> str:
    """Returns the hex digest of a single file's contents.

    Raises:
        OSError: If the file cannot be opened or read.
    """
    file_hash = _new_hash()
    with open(path, "rb") as infile:
        while True:
            chunk = infile.read(CHUNK_SIZE)
            if not chunk:
                break
            file_hash.update(chunk)
    return file_hash.hexdigest()


def _relative_key(path: str, root: str = None) -> str:
    """The stable sort key for a file: its path relative to ``root`` (if given), in
    posix form so signatures are the same across platforms."""
    if root is not None:
        path = os.path.relpath(path, root)
    return os.path.normpath(path).replace(os.sep, "/")


def compute_signature(
    paths: Iterable[str], root: str = None, salt: str = None
) -> str:
    """Compute the combined signature of a set of files.

    Args:
        paths: The files to include. Order does not matter, and a path listed more
            than once only counts once.
        root (str): If provided, paths are keyed relative to this directory, so that
            moving an entire artifact directory elsewhere doesn't change its signature.
        salt (str): An optional string folded into the final digest. Two file sets
            with identical contents but different salts get different signatures.

    Returns:
        The lowercase hex signature string.

    Raises:
        OSError: If any of the files cannot be read.
    """
    entries = {}
    for path in paths:
        entries[_relative_key(path, root)] = path

    combined = _new_hash()
    for key in sorted(entries):
        # NOTE: null separators keep a path from bleeding into the digest that follows it
        combined.update(key.encode("utf-8"))
        combined.update(b"\0")
        combined.update(hash_file(entries[key]).encode("ascii"))
        combined.update(b"\n")
    if salt is not None:
        combined.update(b"\0salt\0")
        combined.update(salt.encode("utf-8"))
    return combined.hexdigest()


def compute_content_signature(content: Union[bytes, str]) -> str:
    """Compute the signature of a raw buffer rather than a set of files."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    content_hash = _new_hash()
    content_hash.update(content)
    return content_hash.hexdigest()


def is_signature(value: str) -> bool:
    """Check whether the passed string looks like a signature this module produces
    (or the empty signature)."""
    if value == EMPTY_SIGNATURE:
        return True
    if len(value) != _new_hash().digest_size * 2:
        return False
    return all(char in "0123456789abcdef" for char in value)


def list_data_files(
    directory: str, ignore: Callable[[str], bool] = None
) -> list[str]:
    """Enumerate every data file in a stage's artifact directory.

    Subdirectories are walked recursively and only regular files are returned.

    Args:
        directory (str): The stage directory to list.
        ignore (Callable): An optional predicate taking a file's path relative to
            ``directory``. Files it returns ``True`` for are left out, this is how a
            stage's lock file keeps out of its own signature while a file of the same
            name in a subdirectory still counts.

    Returns:
        A sorted list of file paths (each prefixed with ``directory``).

    Raises:
        FileNotFoundError: If ``directory`` does not exist.
    """
    if not os.path.isdir(directory):
        raise FileNotFoundError(f"Artifact directory '{directory}' does not exist.")

    files = []
    for base, dirs, filenames in os.walk(directory):
        dirs.sort()
        for filename in filenames:
            path = os.path.join(base, filename)
            if ignore is not None and ignore(os.path.relpath(path, directory)):
                continue
            if os.path.isfile(path):
                files.append(path)
    return sorted(files)


def directory_signature(
    directory: str, ignore: Callable[[str], bool] = None, salt: str = None
) -> str:
    """Shortcut for the signature of every data file in a directory, keyed relative to it."""
    return compute_signature(
        list_data_files(directory, ignore), root=directory, salt=salt
    )
