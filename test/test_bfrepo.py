import os

import pytest

from labbook import bfrepo

REPO_ROOT = "test/examples/data/bitfunnel"


@pytest.fixture()
def repo(clear_filesystem):
    os.makedirs(os.path.join(REPO_ROOT, "build-make"), exist_ok=True)
    return bfrepo.BfRepo(REPO_ROOT)


def _commands(mock_commands):
    return [call.args[0] for call in mock_commands.call_args_list]


def test_paths_are_absolute(repo):
    assert os.path.isabs(repo.get_path())
    assert repo.build_root == os.path.join(os.path.abspath(REPO_ROOT), "build-make")
    assert repo.bitfunnel_executable.startswith(repo.build_root)


def test_is_cloned(repo):
    assert not repo.is_cloned()
    os.makedirs(os.path.join(REPO_ROOT, ".git"))
    assert repo.is_cloned()


def test_clone(repo, mock_commands):
    repo.clone()
    assert _commands(mock_commands) == [
        ["git", "clone", bfrepo.BITFUNNEL_HTTPS_REMOTE, repo.get_path()]
    ]


@pytest.mark.parametrize(
    "origin",
    [
        "https://github.com/BitFunnel/BitFunnel",
        "git@github.com:BitFunnel/BitFunnel.git",
    ],
)
def test_fetch_from_canonical_remote(repo, mock_commands, mocker, origin):
    """Remote URLs compare case-insensitively."""
    mocker.patch("labbook.utils.get_command_output", return_value=origin)
    repo.fetch()
    assert _commands(mock_commands) == [["git", "fetch", "origin"]]


def test_fetch_rejects_other_remote(repo, mock_commands, mocker):
    mocker.patch(
        "labbook.utils.get_command_output",
        return_value="https://github.com/someone/fork",
    )
    cwd = os.getcwd()
    with pytest.raises(bfrepo.RepositoryError):
        repo.fetch()
    mock_commands.assert_not_called()
    assert os.getcwd() == cwd


def test_checkout_restores_branch(repo, mock_commands, mocker):
    mocker.patch(
        "labbook.utils.get_command_output", side_effect=["master", "a" * 40]
    )
    with repo.checkout("v1.0") as revision:
        assert revision == "v1.0"
        assert _commands(mock_commands) == [["git", "checkout", "v1.0"]]

    assert _commands(mock_commands)[-1] == ["git", "checkout", "master"]


def test_checkout_restores_detached_head(repo, mock_commands, mocker):
    """With a detached HEAD there's no branch to go back to, so the commit is used."""
    mocker.patch("labbook.utils.get_command_output", side_effect=["HEAD", "b" * 40])
    with repo.checkout("v1.0"):
        pass
    assert _commands(mock_commands)[-1] == ["git", "checkout", "b" * 40]


def test_checkout_restores_on_error(repo, mock_commands, mocker):
    mocker.patch(
        "labbook.utils.get_command_output", side_effect=["master", "a" * 40]
    )
    cwd = os.getcwd()
    with pytest.raises(RuntimeError):
        with repo.checkout("v1.0"):
            raise RuntimeError("build failed")
    assert _commands(mock_commands)[-1] == ["git", "checkout", "master"]
    assert os.getcwd() == cwd


def test_build_commands(repo, mock_commands):
    repo.configure_build()
    repo.build()
    assert _commands(mock_commands) == [["sh", "Configure_Make.sh"], ["make", "-j4"]]


def test_tool_commands(repo, mock_commands):
    repo.run_filter("manifest.txt", "samples/small")
    repo.run_statistics("manifest.txt", "configs/small")
    repo.run_termtable("configs/small")
    repo.run_repl("configs/small", "script.txt")

    executable = repo.bitfunnel_executable
    assert _commands(mock_commands) == [
        [executable, "filter", "manifest.txt", "samples/small"],
        [executable, "statistics", "manifest.txt", "configs/small", "-text"],
        [executable, "termtable", "configs/small"],
        [executable, "repl", "configs/small", "-script", "script.txt"],
    ]


def test_experiment_at_revision_builds_and_restores(
    repo, mock_commands, mocker, write_files
):
    """Running an experiment at a revision checks it out, builds, runs the script, and
    goes back to the previous checkout."""
    from labbook.experiment import experiment_work

    mocker.patch(
        "labbook.utils.get_command_output", side_effect=["master", "a" * 40]
    )
    write_files("test/examples/data/scripts", {"latency.txt": "query one fox\n"})

    experiment_work(
        repo,
        "test/examples/data/configs/small",
        "test/examples/data/experiments/latency",
        "test/examples/data/scripts/latency.txt",
        revision="v1.0",
    )

    commands = _commands(mock_commands)
    assert commands[0] == ["git", "checkout", "v1.0"]
    assert commands[1] == ["make", "-j4"]
    assert commands[2][1] == "repl"
    assert commands[3] == ["git", "checkout", "master"]
