import json
import os
import shutil

import pytest

from labbook.experiment import LabBook
from labbook.locks import ConfigLock, CorpusLock, ExperimentLock, SampleLock

DATA_ROOT = "test/examples/data"


def _write_files(directory: str, files: dict):
    """Write a dictionary of relative path -> contents into ``directory``."""
    for relative_path, contents in files.items():
        path = os.path.join(directory, relative_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as outfile:
            outfile.write(contents)


@pytest.fixture()
def configuration():
    config = {
        "bitfunnel_path": "test/examples/bitfunnel",
        "corpus_path": f"{DATA_ROOT}/corpus",
        "samples_path": f"{DATA_ROOT}/samples",
        "configs_path": f"{DATA_ROOT}/configs",
        "experiments_path": f"{DATA_ROOT}/experiments",
        "logs_path": "test/examples/logs",
        "lock_filename": "LOCKFILE",
    }
    return config


@pytest.fixture(autouse=True)
def configuration_file(request, configuration):
    if "noautofixt" in request.keywords:
        yield
        return

    with open("labbook_config.json", "w") as outfile:
        json.dump(configuration, outfile)
    yield
    try:
        os.remove("labbook_config.json")
    except FileNotFoundError:
        pass


@pytest.fixture()
def clear_filesystem():
    shutil.rmtree(DATA_ROOT, ignore_errors=True)
    yield
    shutil.rmtree(DATA_ROOT, ignore_errors=True)


@pytest.fixture(scope="session", autouse=True)
def clear_proj_root():
    yield
    shutil.rmtree("test/examples", ignore_errors=True)


@pytest.fixture()
def corpus(clear_filesystem, configuration):
    """A corpus directory with a few chunk files, not yet locked."""
    _write_files(
        configuration["corpus_path"],
        {
            "chunk-0.txt": "the quick brown fox\n",
            "chunk-1.txt": "jumps over the lazy dog\n",
            "nested/chunk-2.txt": "lorem ipsum\n",
        },
    )
    return CorpusLock(configuration["corpus_path"])


@pytest.fixture()
def sample(corpus, configuration):
    """A sample directory drawn from ``corpus``, not yet locked."""
    sample_dir = os.path.join(configuration["samples_path"], "small")
    _write_files(sample_dir, {"sample-0.txt": "the quick brown fox\n"})
    return SampleLock(sample_dir, "small", corpus)


@pytest.fixture()
def config(sample, configuration):
    """A config directory generated from ``sample``, not yet locked."""
    config_dir = os.path.join(configuration["configs_path"], "small")
    _write_files(
        config_dir,
        {"DocFreqTable-0.csv": "term,frequency\nfox,1\n", "TermTable-0.bin": "0101"},
    )
    return ConfigLock(config_dir, sample)


@pytest.fixture()
def experiment(config, sample, configuration):
    experiment_dir = os.path.join(configuration["experiments_path"], "latency")
    os.makedirs(experiment_dir, exist_ok=True)
    return ExperimentLock(experiment_dir, config, sample)


@pytest.fixture()
def mock_commands(mocker):
    """Mock out every external command, recording the argument lists it was called with."""
    return mocker.patch("labbook.utils.run_command")


@pytest.fixture()
def lab(configuration, clear_filesystem, mock_commands):
    return LabBook(configuration)


@pytest.fixture()
def write_files():
    """Helper for writing a dictionary of relative path -> contents into a directory."""
    return _write_files
