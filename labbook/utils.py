""" Helper and utility functions for the library. """

import json
import logging
import os
import subprocess
import sys
from contextlib import contextmanager

from rich import get_console, reconfigure
from rich.logging import RichHandler

TIMESTAMP_FORMAT = "%Y-%m-%d-T%H%M%S"
"""The datetime format string used for timestamps in log file names."""
CONFIGURATION_FILE = "labbook_config.json"
"""The expected configuration filename."""

CONFIGURATION_DEFAULTS = {
    "bitfunnel_path": "bitfunnel/",
    "corpus_path": "data/corpus",
    "samples_path": "data/samples",
    "configs_path": "data/configs",
    "experiments_path": "data/experiments",
    "logs_path": "logs/",
    "lock_filename": "LOCKFILE",
}


def get_configuration() -> dict[str, str]:
    """Load the configuration file if available, with defaults for any
    keys not found. The config file should be "labbook_config.json"
    in the lab root.

    The defaults are:

    .. code-block:: json

        {
            "bitfunnel_path": "bitfunnel/",
            "corpus_path": "data/corpus",
            "samples_path": "data/samples",
            "configs_path": "data/configs",
            "experiments_path": "data/experiments",
            "logs_path": "logs/",
            "lock_filename": "LOCKFILE"
        }

    Returns:
        the dictionary of configuration keys/values.
    """

    # try to find configuration file in this dir or parent dirs
    search_depth = 3
    prefix = ""
    while not os.path.exists(f"{prefix}{CONFIGURATION_FILE}") and search_depth > 0:
        prefix += "../"
        search_depth -= 1

    if os.path.exists(f"{prefix}{CONFIGURATION_FILE}"):
        with open(f"{prefix}{CONFIGURATION_FILE}") as infile:
            config = json.load(infile)

        # in case of any values that don't exist in explicit config
        for key in CONFIGURATION_DEFAULTS:
            if key not in config:
                config[key] = CONFIGURATION_DEFAULTS[key]

        # update relative paths if the config was found in a parent dir
        for key in config:
            if key.endswith("_path") and not os.path.isabs(config[key]):
                config[key] = f"{prefix}{config[key]}"
    else:
        config = dict(CONFIGURATION_DEFAULTS)

    return config


def human_readable_mem_usage(byte_count: int) -> str:
    """Takes the given byte count and returns a nicely formatted string that includes the suffix (K/M/GB).

    Args:
        byte_count (int): The number of bytes to convert into KB/MB/GB.
    """

    negative = False
    if byte_count < 0:
        negative = True
        byte_count *= -1

    suffix = "B"
    if byte_count > 10**9:
        suffix = "GB"
        byte_count /= 10**9
    elif byte_count > 10**6:
        suffix = "MB"
        byte_count /= 10**6
    elif byte_count > 10**3:
        suffix = "KB"
        byte_count /= 10**3

    if negative:
        return f"-{byte_count:.2f}{suffix}"
    return f"{byte_count:.2f}{suffix}"


def human_readable_time(seconds: float) -> str:
    """Takes the given time in seconds and returns a nicely formatted string that includes the suffix.

    Args:
        seconds (float): The time in seconds to convert.
    """

    converted = seconds
    suffix = "s"

    if seconds > 60 * 60:
        suffix = "h"
        converted /= 60 * 60
    elif seconds > 60:
        suffix = "m"
        converted /= 60
    elif seconds < 0.0000001:
        suffix = "ns"
        converted *= 10**9
    elif seconds < 0.0001:
        suffix = "us"
        converted *= 10**6
    elif seconds < 0.1:
        suffix = "ms"
        converted *= 10**3

    return f"{converted:.2f}{suffix}"


def short_signature(signature: str) -> str:
    """Abbreviate a signature for log and error messages."""
    if signature is None:
        return "<none>"
    if signature == "":
        return "<empty>"
    return signature[:12]


def get_command_output(cmd, silent=False, check=False, cwd=None) -> str:
    """Runs the command passed and returns its stdout, with surrounding whitespace
    stripped.

    Args:
        cmd: An array of strings, as one would pass to :code:`subprocess.run()`
        silent (bool): Don't warn when the command can't be run.
        check (bool): Raise instead of returning an empty string when the command
            can't be run or exits non-zero.
        cwd (str): Directory to run the command in.

    Raises:
        subprocess.CalledProcessError: If ``check`` and the command exits non-zero.
        OSError: If ``check`` and the executable can't be started.
    """
    try:
        cmd_return = subprocess.run(
            cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, cwd=cwd
        )
    except OSError:
        if check:
            raise
        if not silent:
            logging.warning("Unable to run command '%s'" % cmd)
        return ""
    if cmd_return.returncode != 0:
        if check:
            raise subprocess.CalledProcessError(
                cmd_return.returncode,
                cmd,
                output=cmd_return.stdout,
                stderr=cmd_return.stderr,
            )
        return ""
    return cmd_return.stdout.decode("utf-8").strip()


def run_command(cmd, cwd=None):
    """Runs a command, logging its output line by line as it occurs.

    Args:
        cmd: An array of strings, as one would pass to :code:`subprocess.run()`
        cwd (str): Directory to run the command in.

    Raises:
        subprocess.CalledProcessError: If the command exits non-zero.
    """
    logging.debug("Running command '%s'" % " ".join(str(part) for part in cmd))

    with subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        bufsize=1,
        text=True,
        cwd=cwd,
    ) as p:
        for line in p.stdout:
            logging.info(line.rstrip())
        returncode = p.wait()

    if returncode != 0:
        raise subprocess.CalledProcessError(returncode, cmd)


@contextmanager
def scoped_chdir(path: str):
    """Change into ``path`` for the duration of a ``with`` block, always changing
    back to the previous working directory on the way out (including on errors)."""
    previous = os.getcwd()
    logging.debug("Entering directory '%s'", path)
    os.chdir(path)
    try:
        yield path
    finally:
        os.chdir(previous)
        logging.debug("Returned to directory '%s'", previous)


class PrefixedLogFactory:
    """Log record factory that stamps a ``prefix`` field onto every record.

    Using a class rather than a closure lets ``set_logging_prefix`` update the prefix
    on the existing factory instead of wrapping a new function around the old one on
    every call.
    """

    def __init__(self, original_factory, prefix):
        self.original_factory = original_factory
        self.prefix = prefix

    def __call__(self, *args, **kwargs):
        record = self.original_factory(*args, **kwargs)
        record.prefix = self.prefix
        return record


def set_logging_prefix(prefix: str):
    """Set the prefix content of the logger, which is incorporated in the log formatter.
    This is used to tag log lines with the stage currently running."""
    old_factory = logging.getLogRecordFactory()

    if isinstance(old_factory, PrefixedLogFactory):
        old_factory.prefix = prefix
    else:
        logging.setLogRecordFactory(PrefixedLogFactory(old_factory, prefix))


def init_logging(
    log_path=None,
    level=logging.INFO,
    no_color=False,
    quiet=False,
    plain=False,
    all_loggers=False,
):
    """Sets up logging configuration, including the associated file output.

    Args:
        log_path (str): File to write the log to. If :code:`None`, only log
            to console.
        level: The logging level to output.
        no_color (bool): Suppress colors in console output.
        quiet (bool): Suppress all console log output.
        plain (bool): Output plain text log rather than rich output.
        all_loggers (bool): Keep loggers from other libraries enabled.
    """
    plain_log_formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] - %(prefix)s%(message)s"
    )
    rich_log_formatter = logging.Formatter("%(prefix)s%(message)s")

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.propagate = False
    root_logger.handlers = []

    if plain:
        # 4 characters so that it lines up all nice
        logging.addLevelName(logging.DEBUG, "DBUG")

    set_logging_prefix("")

    if log_path is not None:
        log_dir = os.path.dirname(log_path)
        if log_dir != "":
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(plain_log_formatter)
        root_logger.addHandler(file_handler)

    if plain and not quiet:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(plain_log_formatter)
        root_logger.addHandler(console_handler)

    if not plain:
        if no_color:
            reconfigure(no_color=True)
        if not quiet:
            console_handler = RichHandler(
                console=get_console(),
                show_time=True,
                show_level=True,
                show_path=True,
                rich_tracebacks=True,
                log_time_format="%X",
                keywords=["-----", "LOCKFILE"],
            )
            console_handler.setFormatter(rich_log_formatter)
            root_logger.addHandler(console_handler)

    if not all_loggers:
        # https://stackoverflow.com/questions/27538879/how-to-disable-loggers-from-other-modules
        for name, logger in logging.root.manager.loggerDict.items():
            logger.disabled = True
